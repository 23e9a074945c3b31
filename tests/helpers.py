# -*- coding: utf-8 -*-
# tests/helpers.py

from __future__ import annotations

from typing import Any, Callable, Iterable, List, Optional, Tuple

from meshdiag.graph import build_routing_graph
from meshdiag.models import Link, Location, Node, Relationship, Role, RoutingGraph
from meshdiag.protocol import Channel, Message

COORD = "0x00000000000000c0"


def node(ieee: str, role: Role = Role.ROUTER, name: Optional[str] = None, **kw) -> Node:
    return Node(ieee=ieee, name=name or ieee, role=role, **kw)


def parent_link(child: str, parent: str, lqi: int = 100, depth: int = 1) -> Link:
    return Link(source=child, target=parent, lqi=lqi, relationship=Relationship.PARENT, depth=depth)


def make_graph(
        nodes: Iterable[Node],
        parents: Iterable[Tuple[str, str]],
        lqi: int = 100,
) -> RoutingGraph:
    links: List[Link] = [parent_link(c, p, lqi) for c, p in parents]
    return build_routing_graph(list(nodes), links)


def loc(floor: str, sector: str) -> Location:
    return Location(floor=floor, sector=sector)


# ---------------------------------------------------------------------
# Scripted channels
# ---------------------------------------------------------------------

class FakeChannel(Channel):
    """
    In-memory channel. `preload` items are queued on open; `script` maps
    a sent topic to the items queued in reply.
    """

    def __init__(self, preload=(), script=None) -> None:
        super().__init__()
        self.script = script or {}
        self.sent: List[Tuple[str, Any]] = []
        self.closed = False
        for item in preload:
            self.inbox.put_nowait(item)

    async def send(self, topic: str, payload: Any = None) -> None:
        self.sent.append((topic, payload))
        for item in self.script.get(topic, ()):
            self.inbox.put_nowait(item)

    async def close(self) -> None:
        self.closed = True


class FakeOpener:
    """Hands out one FakeChannel per open call, built by `factory`."""

    def __init__(self, factory: Callable[[], FakeChannel]) -> None:
        self.factory = factory
        self.channels: List[FakeChannel] = []
        self.urls: List[str] = []

    async def __call__(self, url: str, timeout_s: float) -> FakeChannel:
        self.urls.append(url)
        channel = self.factory()
        self.channels.append(channel)
        return channel

    @property
    def sent(self) -> List[Tuple[str, Any]]:
        return [s for ch in self.channels for s in ch.sent]


def msg(topic: str, payload: Any = None) -> Message:
    return Message(topic=topic, payload=payload)
