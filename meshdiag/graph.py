# -*- coding: utf-8 -*-
# meshdiag/graph.py
"""
Routing graph construction from raw neighbor-table links.

Only two kinds of observation become routing edges:
  - relationship PARENT (any depth)
  - relationship CHILD with a known depth (< 255)

Siblings, unknown relations and stale children never describe a
forwarding path. The raw data can be contradictory; cycles are kept
and reported by find_parent_cycles(), never repaired here.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import DEPTH_UNKNOWN, Link, Node, Relationship, Role, RoutingGraph

log = logging.getLogger("meshdiag.graph")


def is_routing_edge(link: Link) -> bool:
    if link.relationship == Relationship.PARENT:
        return True
    if link.relationship == Relationship.CHILD and link.depth < DEPTH_UNKNOWN:
        return True
    return False


def build_routing_graph(nodes: Iterable[Node], links: Iterable[Link]) -> RoutingGraph:
    """parent-of / children-of maps. Last observation for a source wins."""
    graph = RoutingGraph(nodes={n.ieee: n for n in nodes})

    dropped = 0
    for link in links:
        if link.source not in graph.nodes or link.target not in graph.nodes:
            dropped += 1
            continue
        if not is_routing_edge(link):
            continue

        graph.parent_of[link.source] = (link.target, link.lqi)
        graph.children_of.setdefault(link.target, []).append((link.source, link.lqi))

    if dropped:
        log.debug("dropped %d link(s) with dangling endpoints", dropped)
    log.info(
        "routing graph: %d nodes, %d parent edges",
        len(graph.nodes), len(graph.parent_of),
    )
    return graph


# ---------------------------------------------------------------------
# Raw network map payload
# ---------------------------------------------------------------------

def _map_value(payload: Any) -> Dict[str, Any]:
    """Unwrap {data: {value: {...}}} / {value: {...}} / {...}."""
    obj = payload if isinstance(payload, dict) else {}
    for key in ("data", "value"):
        inner = obj.get(key)
        if isinstance(inner, dict):
            obj = inner
    return obj


def _endpoint_ieee(link: Dict[str, Any], side: str) -> Optional[str]:
    ref = link.get(side)
    if isinstance(ref, dict) and ref.get("ieeeAddr"):
        return str(ref["ieeeAddr"])
    flat = link.get(f"{side}IeeeAddr")
    return str(flat) if flat else None


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_network_map(payload: Any) -> Tuple[List[Node], List[Link]]:
    """Turn the bridge's raw network map into typed nodes and links."""
    value = _map_value(payload)

    nodes: List[Node] = []
    for raw in value.get("nodes") or []:
        if not isinstance(raw, dict):
            continue
        role = Role.parse(raw.get("type"))
        ieee = raw.get("ieeeAddr")
        if role is None or not ieee:
            log.debug("skipping network map node %r", raw)
            continue
        definition = raw.get("definition") or {}
        nodes.append(
            Node(
                ieee=str(ieee),
                name=str(raw.get("friendlyName") or ieee),
                role=role,
                network_address=_as_int(raw.get("networkAddress"), 0),
                model=definition.get("model") or raw.get("modelID"),
                vendor=definition.get("vendor") or raw.get("manufacturerName"),
                model_description=definition.get("description"),
            )
        )

    links: List[Link] = []
    for raw in value.get("links") or []:
        if not isinstance(raw, dict):
            continue
        source = _endpoint_ieee(raw, "source")
        target = _endpoint_ieee(raw, "target")
        if not source or not target:
            log.debug("skipping network map link %r", raw)
            continue
        lqi = raw.get("lqi", raw.get("linkquality"))
        links.append(
            Link(
                source=source,
                target=target,
                lqi=_as_int(lqi, 0),
                relationship=_as_int(raw.get("relationship"), Relationship.UNKNOWN),
                depth=_as_int(raw.get("depth"), DEPTH_UNKNOWN),
            )
        )

    return nodes, links


# ---------------------------------------------------------------------
# Consistency checks
# ---------------------------------------------------------------------

def find_parent_cycles(graph: RoutingGraph) -> List[List[str]]:
    """Each cycle in parent_of once, listed child → parent from where the walk entered it."""
    cycles: List[List[str]] = []
    state: Dict[str, int] = {}  # 1 = on current walk, 2 = done

    for start in graph.nodes:
        if start in state:
            continue
        path: List[str] = []
        cur: Optional[str] = start
        while cur is not None and cur not in state:
            state[cur] = 1
            path.append(cur)
            cur = graph.parent(cur)
        if cur is not None and state.get(cur) == 1:
            cycles.append(path[path.index(cur):])
        for ieee in path:
            state[ieee] = 2

    return cycles


def orphans(graph: RoutingGraph) -> List[str]:
    """Non-coordinator nodes without any parent edge."""
    return [
        ieee for ieee, node in graph.nodes.items()
        if node.role is not Role.COORDINATOR and ieee not in graph.parent_of
    ]
