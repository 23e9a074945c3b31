# -*- coding: utf-8 -*-
# meshdiag/protocol.py
"""
Request/response layer against the bridge's WebSocket API.

Frames are JSON objects {"topic": str, "payload": any}. Every operation
opens its own short-lived Channel; inbound frames are pushed into the
channel's inbox queue by a reader task, and exactly one consumer drains
it until a Deadline runs out. The channel is closed on every exit path.

Two shapes:
  request()  - send, then wait for the first matching response
               (RequestTimeout when the deadline passes first)
  collect()  - optionally send, then gather matching frames for a fixed
               window; an empty result is a normal outcome
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

import websockets
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from .config import ClientConfig
from .errors import BridgeError, RequestTimeout, TransportFailure

log = logging.getLogger("meshdiag.protocol")

ADMIN_PREFIX = "bridge/"
RESPONSE_PREFIX = "bridge/response/"


@dataclass(frozen=True)
class Message:
    topic: str
    payload: Any = None


Predicate = Callable[[str, Any], bool]


class Deadline:
    """Hard per-operation deadline on the monotonic clock."""

    def __init__(self, duration_s: float) -> None:
        self.started = time.monotonic()
        self.expires = self.started + max(0.0, float(duration_s))

    def remaining(self) -> float:
        return max(0.0, self.expires - time.monotonic())

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def expired(self) -> bool:
        return self.remaining() <= 0.0


class _Closed:
    pass


CLOSED = _Closed()


@dataclass
class _Failure:
    error: BaseException


# ---------------------------------------------------------------------
# Task spawn helper
# ---------------------------------------------------------------------

def spawn_task(coro, name: str) -> asyncio.Task:
    """create_task + name + crash logging (never swallow a task failure)."""
    task = asyncio.create_task(coro)
    if hasattr(task, "set_name"):
        task.set_name(name)

    def _done_callback(t: asyncio.Task):
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            log.error("Task CRASHED: %s", name, exc_info=exc)

    task.add_done_callback(_done_callback)
    return task


def decode_frame(raw: Any) -> Optional[Message]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError):
        log.debug("ignoring non-JSON frame")
        return None
    if not isinstance(obj, dict) or not isinstance(obj.get("topic"), str):
        return None
    return Message(topic=obj["topic"], payload=obj.get("payload"))


def encode_frame(topic: str, payload: Any) -> str:
    return json.dumps({"topic": topic, "payload": payload if payload is not None else {}})


# ---------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------

class Channel:
    """
    One connection. Inbox items are Message, CLOSED (orderly end of
    stream) or _Failure (transport error).
    """

    def __init__(self) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, topic: str, payload: Any = None) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class WebSocketChannel(Channel):
    def __init__(self, ws, url: str) -> None:
        super().__init__()
        self._ws = ws
        self._url = url
        self._reader = spawn_task(self._pump(), f"ws-reader:{url}")

    @classmethod
    async def open(cls, url: str, timeout_s: float) -> "WebSocketChannel":
        ws = await websockets.connect(url, open_timeout=max(timeout_s, 0.1))
        return cls(ws, url)

    async def _pump(self) -> None:
        try:
            async for raw in self._ws:
                msg = decode_frame(raw)
                if msg is not None:
                    self.inbox.put_nowait(msg)
        except ConnectionClosedOK:
            pass
        except (WebSocketException, OSError) as e:
            self.inbox.put_nowait(_Failure(e))
            return
        self.inbox.put_nowait(CLOSED)

    async def send(self, topic: str, payload: Any = None) -> None:
        await self._ws.send(encode_frame(topic, payload))

    async def close(self) -> None:
        self._reader.cancel()
        await asyncio.gather(self._reader, return_exceptions=True)
        try:
            await self._ws.close()
        except (WebSocketException, OSError) as e:
            log.debug("close %s: %s", self._url, type(e).__name__)


OpenChannel = Callable[[str, float], Awaitable[Channel]]


# ---------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------

def matches_response(topic: str, request_topic: Optional[str], response_topic: Optional[str]) -> bool:
    if response_topic:
        return topic == response_topic
    return bool(request_topic) and topic.startswith(ADMIN_PREFIX)


class BridgeProtocol:
    def __init__(self, config: ClientConfig, open_channel: Optional[OpenChannel] = None) -> None:
        self.config = config
        self._open_channel = open_channel or WebSocketChannel.open

    async def _open(self, operation: str, deadline: Deadline) -> Channel:
        try:
            return await asyncio.wait_for(
                self._open_channel(self.config.url, deadline.remaining()),
                timeout=max(deadline.remaining(), 0.001),
            )
        except asyncio.TimeoutError:
            log.warning("%s: connect to %s timed out", operation, self.config.url)
            raise RequestTimeout(
                f"Connecting to {self.config.url} timed out after {deadline.elapsed():.1f}s",
                operation=operation, elapsed_s=deadline.elapsed(),
            ) from None
        except (WebSocketException, OSError) as e:
            log.warning("%s: connect to %s failed: %s", operation, self.config.url, e)
            raise TransportFailure(
                f"WebSocket error: {e}", operation=operation, elapsed_s=deadline.elapsed(),
            ) from e

    async def _send(self, channel: Channel, topic: str, payload: Any, operation: str, deadline: Deadline) -> None:
        try:
            await channel.send(topic, payload)
        except (WebSocketException, OSError) as e:
            raise TransportFailure(
                f"WebSocket error: {e}", operation=operation, topic=topic, elapsed_s=deadline.elapsed(),
            ) from e

    async def _next(self, channel: Channel, deadline: Deadline, operation: str):
        """Next inbox item; asyncio.TimeoutError once the deadline is gone."""
        remaining = deadline.remaining()
        if remaining <= 0.0:
            raise asyncio.TimeoutError
        item = await asyncio.wait_for(channel.inbox.get(), timeout=remaining)
        if isinstance(item, _Failure):
            log.warning("%s: transport error after %.2fs: %s", operation, deadline.elapsed(), item.error)
            raise TransportFailure(
                f"WebSocket error: {item.error}", operation=operation, elapsed_s=deadline.elapsed(),
            ) from item.error
        return item

    async def request(
            self,
            topic: Optional[str],
            payload: Any = None,
            response_topic: Optional[str] = None,
            *,
            timeout_s: Optional[float] = None,
            operation: Optional[str] = None,
    ) -> Any:
        """Send `topic` and resolve with the payload of the first matching response."""
        operation = operation or topic or response_topic or "request"
        timeout_s = self.config.timeout_s if timeout_s is None else timeout_s
        deadline = Deadline(timeout_s)

        channel = await self._open(operation, deadline)
        try:
            if topic:
                await self._send(channel, topic, payload, operation, deadline)
            while True:
                item = await self._next(channel, deadline, operation)
                if item is CLOSED:
                    raise TransportFailure(
                        "WebSocket closed before receiving response",
                        operation=operation, elapsed_s=deadline.elapsed(),
                    )
                if not matches_response(item.topic, topic, response_topic):
                    continue
                log.debug("%s: response %s after %.2fs", operation, item.topic, deadline.elapsed())
                return _check_status(item, operation)
        except asyncio.TimeoutError:
            log.warning("%s: no response within %.1fs", operation, timeout_s)
            raise RequestTimeout(
                f"Request timed out after {timeout_s * 1000:.0f}ms",
                operation=operation, topic=response_topic or topic, elapsed_s=deadline.elapsed(),
            ) from None
        finally:
            await channel.close()

    async def collect(
            self,
            predicate: Predicate,
            duration_s: float,
            request_topic: Optional[str] = None,
            request_payload: Any = None,
            *,
            limit: Optional[int] = None,
            operation: str = "collect",
    ) -> List[Message]:
        """Gather matching frames (arrival order) until the window closes."""
        deadline = Deadline(duration_s)
        results: List[Message] = []

        try:
            channel = await self._open(operation, deadline)
        except RequestTimeout:
            log.info("%s: no connection within the %.1fs window, nothing collected", operation, duration_s)
            return results
        try:
            if request_topic:
                await self._send(channel, request_topic, request_payload, operation, deadline)
            while limit is None or len(results) < limit:
                try:
                    item = await self._next(channel, deadline, operation)
                except asyncio.TimeoutError:
                    break
                if item is CLOSED:
                    break
                if predicate(item.topic, item.payload):
                    results.append(item)
        finally:
            await channel.close()

        log.debug("%s: collected %d message(s) in %.2fs", operation, len(results), deadline.elapsed())
        return results

    async def publish(self, topic: str, payload: Any = None, *, linger_s: Optional[float] = None) -> None:
        """Fire-and-forget: send, keep the channel open briefly, surface transport errors."""
        linger_s = self.config.publish_linger_s if linger_s is None else linger_s
        operation = f"publish {topic}"

        # connecting gets the request timeout; the linger starts once the frame is out
        deadline = Deadline(self.config.timeout_s)
        channel = await self._open(operation, deadline)
        try:
            await self._send(channel, topic, payload, operation, deadline)
            linger = Deadline(linger_s)
            while True:
                try:
                    item = await self._next(channel, linger, operation)
                except asyncio.TimeoutError:
                    break
                if item is CLOSED:
                    break
        finally:
            await channel.close()


def _check_status(msg: Message, operation: str) -> Any:
    payload = msg.payload
    if (
            msg.topic.startswith(RESPONSE_PREFIX)
            and isinstance(payload, dict)
            and payload.get("status") == "error"
    ):
        raise BridgeError(
            str(payload.get("error") or "bridge reported an error"),
            payload=payload, operation=operation, topic=msg.topic,
        )
    return payload
