# -*- coding: utf-8 -*-
# meshdiag/config.py
"""
Client configuration.

Resolution order per key: CLI argument > environment > config file > default.

Environment:
  Z2M_URL      bridge WebSocket URL (e.g. wss://z2m.example.com/api)
  Z2M_TIMEOUT  bridge request timeout in milliseconds

Config file ($XDG_CONFIG_HOME/meshdiag/config.json):
  {
    "url": "ws://localhost:8080",
    "timeout": 10000,                 # ms
    "network_map_timeout_s": 120,
    "state_window_s": 5,
    "publish_linger_s": 1,
    "floors": ["basement", "ground", "upper"],
    "coordinator_location": {"floor": "ground", "sector": "center"}
  }
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .location import DEFAULT_FLOORS
from .models import Location

log = logging.getLogger("meshdiag.config")

DEFAULT_URL = "ws://localhost:8080"
DEFAULT_TIMEOUT_S = 10.0
DEFAULT_NETWORK_MAP_TIMEOUT_S = 120.0
DEFAULT_STATE_WINDOW_S = 5.0
DEFAULT_PUBLISH_LINGER_S = 1.0


@dataclass(frozen=True)
class ClientConfig:
    url: str = DEFAULT_URL + "/api"
    timeout_s: float = DEFAULT_TIMEOUT_S
    network_map_timeout_s: float = DEFAULT_NETWORK_MAP_TIMEOUT_S
    state_window_s: float = DEFAULT_STATE_WINDOW_S
    publish_linger_s: float = DEFAULT_PUBLISH_LINGER_S
    floors: Tuple[str, ...] = DEFAULT_FLOORS
    coordinator_location: Optional[Location] = None


def normalize_url(url: str) -> str:
    """Strip trailing '/', ensure '/api', map http(s) to ws(s)."""
    url = url.strip().rstrip("/")
    if not url.endswith("/api"):
        url = f"{url}/api"
    if url.startswith("http:"):
        url = "ws:" + url[len("http:"):]
    elif url.startswith("https:"):
        url = "wss:" + url[len("https:"):]
    return url


def config_path(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    base = env.get("XDG_CONFIG_HOME") or str(Path(env.get("HOME", "~")).expanduser() / ".config")
    return Path(base) / "meshdiag" / "config.json"


def read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            cfg = json.load(f)
    except (OSError, ValueError) as e:
        log.warning("ignoring unreadable config %s: %s", path, e)
        return {}
    return cfg if isinstance(cfg, dict) else {}


def _location(raw: Any) -> Optional[Location]:
    if not isinstance(raw, dict):
        return None
    floor = str(raw.get("floor") or "").strip()
    sector = str(raw.get("sector") or "").strip()
    if not floor or not sector:
        return None
    return Location(floor=floor, sector=sector)


def _env_timeout_s(env: Mapping[str, str]) -> Optional[float]:
    raw = env.get("Z2M_TIMEOUT")
    if not raw:
        return None
    try:
        return int(raw) / 1000.0
    except ValueError:
        log.warning("ignoring non-numeric Z2M_TIMEOUT=%r", raw)
        return None


def _file_number(cfg: Mapping[str, Any], key: str) -> Optional[float]:
    raw = cfg.get(key)
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        log.warning("ignoring non-numeric %s=%r in config file", key, raw)
        return None
    if value != value or value <= 0:
        log.warning("ignoring non-positive %s=%r in config file", key, raw)
        return None
    return value


def _file_floors(cfg: Mapping[str, Any]) -> Tuple[str, ...]:
    raw = cfg.get("floors")
    if raw is None:
        return DEFAULT_FLOORS
    if not isinstance(raw, list) or not raw or not all(isinstance(f, str) and f.strip() for f in raw):
        log.warning("ignoring malformed floors=%r in config file", raw)
        return DEFAULT_FLOORS
    return tuple(raw)


def load_config(
        path: Optional[Path] = None,
        cli_url: Optional[str] = None,
        cli_timeout_s: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
) -> ClientConfig:
    env = os.environ if env is None else env
    path = path or config_path(env)
    cfg = read_config_file(path)

    file_timeout = _file_number(cfg, "timeout")
    url = cli_url or env.get("Z2M_URL") or cfg.get("url") or DEFAULT_URL
    timeout_s = (
        cli_timeout_s
        or _env_timeout_s(env)
        or (file_timeout / 1000.0 if file_timeout else None)
        or DEFAULT_TIMEOUT_S
    )

    return ClientConfig(
        url=normalize_url(str(url)),
        timeout_s=float(timeout_s),
        network_map_timeout_s=_file_number(cfg, "network_map_timeout_s") or DEFAULT_NETWORK_MAP_TIMEOUT_S,
        state_window_s=_file_number(cfg, "state_window_s") or DEFAULT_STATE_WINDOW_S,
        publish_linger_s=_file_number(cfg, "publish_linger_s") or DEFAULT_PUBLISH_LINGER_S,
        floors=_file_floors(cfg),
        coordinator_location=_location(cfg.get("coordinator_location")),
    )
