# -*- coding: utf-8 -*-
# tests/test_protocol.py

from __future__ import annotations

import asyncio
import json

import pytest

from meshdiag.config import ClientConfig
from meshdiag.errors import BridgeError, RequestTimeout, TransportFailure
from meshdiag.protocol import (
    CLOSED,
    BridgeProtocol,
    _Failure,
    decode_frame,
    encode_frame,
    matches_response,
)

from helpers import FakeChannel, FakeOpener, msg

FAST = ClientConfig(url="ws://bridge.test/api", timeout_s=0.2, state_window_s=0.05, publish_linger_s=0.05)


def _protocol(factory, config=FAST):
    opener = FakeOpener(factory)
    return BridgeProtocol(config, open_channel=opener), opener


# ---------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------

def test_decode_frame():
    assert decode_frame('{"topic": "bridge/info", "payload": {"version": "1.40"}}') == msg(
        "bridge/info", {"version": "1.40"}
    )
    assert decode_frame(b'{"topic": "Lamp"}') == msg("Lamp", None)
    assert decode_frame("not json") is None
    assert decode_frame("[1, 2]") is None
    assert decode_frame('{"payload": 1}') is None
    assert decode_frame(b"\xff\xfe") is None


def test_encode_frame_defaults_to_empty_payload():
    assert json.loads(encode_frame("bridge/request/info", None)) == {"topic": "bridge/request/info", "payload": {}}


def test_matches_response():
    assert matches_response("bridge/devices", "bridge/request/devices", "bridge/devices")
    assert not matches_response("bridge/info", "bridge/request/devices", "bridge/devices")
    # no response topic: any admin topic answers
    assert matches_response("bridge/state", "bridge/request/x", None)
    assert not matches_response("Kitchen lamp", "bridge/request/x", None)
    assert not matches_response("bridge/state", None, None)


# ---------------------------------------------------------------------
# request()
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_request_returns_first_matching_payload():
    info = {"version": "1.40.1", "network": {"channel": 15}}
    proto, opener = _protocol(lambda: FakeChannel(
        preload=[msg("Kitchen lamp", {"state": "ON"})],
        script={"bridge/request/info": [msg("bridge/devices", []), msg("bridge/info", info)]},
    ))

    result = await proto.request("bridge/request/info", {}, "bridge/info")

    assert result == info
    channel = opener.channels[0]
    assert channel.sent == [("bridge/request/info", {})]
    assert channel.closed
    assert opener.urls == ["ws://bridge.test/api"]


@pytest.mark.asyncio
async def test_request_without_response_topic_takes_any_admin_topic():
    proto, _ = _protocol(lambda: FakeChannel(
        script={"bridge/request/health_check": [msg("Lamp", {"state": "OFF"}), msg("bridge/state", {"state": "online"})]},
    ))
    assert await proto.request("bridge/request/health_check", {}) == {"state": "online"}


@pytest.mark.asyncio
async def test_request_timeout():
    proto, opener = _protocol(lambda: FakeChannel(preload=[msg("Lamp", {"state": "ON"})]))

    with pytest.raises(RequestTimeout) as info:
        await proto.request("bridge/request/devices", {}, "bridge/devices", timeout_s=0.05)

    assert "timed out after 50ms" in str(info.value)
    assert info.value.operation == "bridge/request/devices"
    assert info.value.topic == "bridge/devices"
    assert opener.channels[0].closed


@pytest.mark.asyncio
async def test_request_closed_before_response():
    proto, opener = _protocol(lambda: FakeChannel(preload=[msg("Lamp", {}), CLOSED]))

    with pytest.raises(TransportFailure, match="closed before receiving response"):
        await proto.request("bridge/request/devices", {}, "bridge/devices")
    assert opener.channels[0].closed


@pytest.mark.asyncio
async def test_request_transport_error():
    proto, opener = _protocol(lambda: FakeChannel(preload=[_Failure(OSError("connection reset"))]))

    with pytest.raises(TransportFailure, match="connection reset"):
        await proto.request("bridge/request/info", {}, "bridge/info")
    assert opener.channels[0].closed


@pytest.mark.asyncio
async def test_request_bridge_error_status():
    reply = {"status": "error", "error": "Device 'Nope' does not exist", "data": {}}
    proto, _ = _protocol(lambda: FakeChannel(
        script={"bridge/request/device/rename": [msg("bridge/response/device/rename", reply)]},
    ))

    with pytest.raises(BridgeError, match="does not exist") as info:
        await proto.request(
            "bridge/request/device/rename", {"from": "Nope", "to": "Yes"}, "bridge/response/device/rename",
        )
    assert info.value.payload == reply


@pytest.mark.asyncio
async def test_connect_failure_is_transport_failure():
    async def refuse(url, timeout_s):
        raise ConnectionRefusedError("refused")

    proto = BridgeProtocol(FAST, open_channel=refuse)
    with pytest.raises(TransportFailure, match="refused"):
        await proto.request("bridge/request/info", {}, "bridge/info")


@pytest.mark.asyncio
async def test_connect_hang_is_timeout():
    async def hang(url, timeout_s):
        await asyncio.sleep(10)

    proto = BridgeProtocol(FAST, open_channel=hang)
    with pytest.raises(RequestTimeout):
        await proto.request("bridge/request/info", {}, "bridge/info", timeout_s=0.05)


# ---------------------------------------------------------------------
# collect() / publish()
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_collect_empty_window_is_not_an_error():
    proto, opener = _protocol(lambda: FakeChannel())
    assert await proto.collect(lambda t, p: True, 0.05) == []
    assert opener.channels[0].closed


@pytest.mark.asyncio
async def test_collect_keeps_arrival_order_and_filters():
    proto, _ = _protocol(lambda: FakeChannel(preload=[
        msg("Lamp", {"state": "ON"}),
        msg("bridge/logging", {"level": "info"}),
        msg("Sensor", {"battery": 80}),
        msg("Lamp", {"state": "OFF"}),
        CLOSED,
    ]))

    got = await proto.collect(lambda t, p: not t.startswith("bridge/"), 5.0)

    assert [(m.topic, m.payload) for m in got] == [
        ("Lamp", {"state": "ON"}),
        ("Sensor", {"battery": 80}),
        ("Lamp", {"state": "OFF"}),
    ]


@pytest.mark.asyncio
async def test_collect_stops_at_limit():
    proto, _ = _protocol(lambda: FakeChannel(preload=[msg("a", 1), msg("b", 2), msg("c", 3)]))
    got = await proto.collect(lambda t, p: True, 5.0, limit=2)
    assert [m.topic for m in got] == ["a", "b"]


@pytest.mark.asyncio
async def test_collect_sends_request_first():
    proto, opener = _protocol(lambda: FakeChannel(
        script={"bridge/request/devices": [msg("bridge/devices", [1]), CLOSED]},
    ))
    got = await proto.collect(lambda t, p: t == "bridge/devices", 5.0, "bridge/request/devices", {})
    assert got == [msg("bridge/devices", [1])]
    assert opener.channels[0].sent == [("bridge/request/devices", {})]


@pytest.mark.asyncio
async def test_collect_transport_error_propagates():
    proto, opener = _protocol(lambda: FakeChannel(preload=[msg("a", 1), _Failure(OSError("broken pipe"))]))
    with pytest.raises(TransportFailure):
        await proto.collect(lambda t, p: True, 5.0)
    assert opener.channels[0].closed


@pytest.mark.asyncio
async def test_publish_sends_and_closes():
    proto, opener = _protocol(lambda: FakeChannel(preload=[msg("Lamp", {"state": "ON"})]))
    await proto.publish("Lamp/set", {"state": "OFF"})
    channel = opener.channels[0]
    assert channel.sent == [("Lamp/set", {"state": "OFF"})]
    assert channel.closed


@pytest.mark.asyncio
async def test_collect_on_slow_connect_returns_empty():
    async def slow(url, timeout_s):
        await asyncio.sleep(0.2)
        return FakeChannel(preload=[msg("Lamp", {"state": "ON"})])

    proto = BridgeProtocol(FAST, open_channel=slow)
    assert await proto.collect(lambda t, p: True, 0.05) == []


@pytest.mark.asyncio
async def test_collect_connect_refused_still_fails():
    async def refuse(url, timeout_s):
        raise ConnectionRefusedError("refused")

    proto = BridgeProtocol(FAST, open_channel=refuse)
    with pytest.raises(TransportFailure):
        await proto.collect(lambda t, p: True, 0.05)


@pytest.mark.asyncio
async def test_publish_connect_gets_request_timeout_not_linger():
    opened = []

    async def slowish(url, timeout_s):
        await asyncio.sleep(0.1)
        channel = FakeChannel()
        opened.append(channel)
        return channel

    # linger 0.05s, request timeout 0.2s
    proto = BridgeProtocol(FAST, open_channel=slowish)
    await proto.publish("Lamp/set", {"state": "ON"})
    assert opened[0].sent == [("Lamp/set", {"state": "ON"})]
    assert opened[0].closed


@pytest.mark.asyncio
async def test_publish_connect_hang_is_timeout():
    async def hang(url, timeout_s):
        await asyncio.sleep(10)

    proto = BridgeProtocol(ClientConfig(timeout_s=0.05), open_channel=hang)
    with pytest.raises(RequestTimeout):
        await proto.publish("Lamp/set", {"state": "ON"})
