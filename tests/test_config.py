# -*- coding: utf-8 -*-
# tests/test_config.py

from __future__ import annotations

import json

import pytest

from meshdiag.config import ClientConfig, config_path, load_config, normalize_url
from meshdiag.location import DEFAULT_FLOORS
from meshdiag.models import Location


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("ws://localhost:8080", "ws://localhost:8080/api"),
        ("ws://localhost:8080/", "ws://localhost:8080/api"),
        ("ws://localhost:8080/api", "ws://localhost:8080/api"),
        ("http://z2m.lan:8080", "ws://z2m.lan:8080/api"),
        ("https://z2m.example.com/api/", "wss://z2m.example.com/api"),
    ],
)
def test_normalize_url(raw, expected):
    assert normalize_url(raw) == expected


def _write(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_defaults_without_file_or_env(tmp_path):
    cfg = load_config(path=tmp_path / "missing.json", env={})
    assert cfg == ClientConfig()
    assert cfg.url == "ws://localhost:8080/api"
    assert cfg.timeout_s == 10.0
    assert cfg.floors == DEFAULT_FLOORS


def test_file_values(tmp_path):
    path = _write(tmp_path, {
        "url": "http://z2m.lan:8080",
        "timeout": 2500,
        "network_map_timeout_s": 300,
        "state_window_s": 8,
        "floors": ["cellar", "ground", "first"],
        "coordinator_location": {"floor": "ground", "sector": "north"},
    })
    cfg = load_config(path=path, env={})
    assert cfg.url == "ws://z2m.lan:8080/api"
    assert cfg.timeout_s == 2.5
    assert cfg.network_map_timeout_s == 300.0
    assert cfg.state_window_s == 8.0
    assert cfg.floors == ("cellar", "ground", "first")
    assert cfg.coordinator_location == Location("ground", "north")


def test_env_beats_file_and_cli_beats_env(tmp_path):
    path = _write(tmp_path, {"url": "ws://from-file:8080", "timeout": 2000})
    env = {"Z2M_URL": "ws://from-env:8080", "Z2M_TIMEOUT": "4000"}

    cfg = load_config(path=path, env=env)
    assert cfg.url == "ws://from-env:8080/api"
    assert cfg.timeout_s == 4.0

    cfg = load_config(path=path, env=env, cli_url="ws://from-cli:8080", cli_timeout_s=1.5)
    assert cfg.url == "ws://from-cli:8080/api"
    assert cfg.timeout_s == 1.5


def test_bad_env_timeout_is_ignored(tmp_path):
    cfg = load_config(path=tmp_path / "missing.json", env={"Z2M_TIMEOUT": "soon"})
    assert cfg.timeout_s == 10.0


def test_malformed_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{ not json", encoding="utf-8")
    assert load_config(path=path, env={}) == ClientConfig()

    path.write_text("[1, 2, 3]", encoding="utf-8")
    assert load_config(path=path, env={}) == ClientConfig()


def test_incomplete_coordinator_location_is_dropped(tmp_path):
    path = _write(tmp_path, {"coordinator_location": {"floor": "ground"}})
    assert load_config(path=path, env={}).coordinator_location is None


def test_config_path_follows_xdg(tmp_path):
    assert config_path({"XDG_CONFIG_HOME": str(tmp_path)}) == tmp_path / "meshdiag" / "config.json"
    assert config_path({"HOME": str(tmp_path)}) == tmp_path / ".config" / "meshdiag" / "config.json"


def test_bad_file_values_fall_back_per_key(tmp_path):
    path = _write(tmp_path, {
        "url": "ws://z2m.lan:8080",
        "timeout": "ten",
        "network_map_timeout_s": None,
        "state_window_s": [5],
        "publish_linger_s": -1,
        "floors": "ground",
    })
    cfg = load_config(path=path, env={})
    assert cfg.url == "ws://z2m.lan:8080/api"
    assert cfg.timeout_s == 10.0
    assert cfg.network_map_timeout_s == 120.0
    assert cfg.state_window_s == 5.0
    assert cfg.publish_linger_s == 1.0
    assert cfg.floors == DEFAULT_FLOORS
