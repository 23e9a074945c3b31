# -*- coding: utf-8 -*-
# meshdiag/client.py
"""
Bridge client: telemetry queries, device/group/bridge commands and the
two composite analyses (diagnose, analyze_routing).

The client only fetches snapshots and hands them to the pure analysis
functions; proposed re-routings are returned, never applied.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from .config import ClientConfig
from .diagnostics import diagnose
from .errors import MeshDiagError, NotFound
from .graph import build_routing_graph, find_parent_cycles, orphans, parse_network_map
from .location import DistanceModel, LocationResolver
from .models import DiagnosticReport, Group, Node, Role, RoutingAnalysis, RoutingGraph
from .optimizer import optimize
from .protocol import ADMIN_PREFIX, BridgeProtocol, OpenChannel

log = logging.getLogger("meshdiag.client")

LOG_LEVELS = ("debug", "info", "warning", "error")
DEVICE_STATE_WINDOW_S = 5.0


# ---------------------------------------------------------------------
# Payload → model
# ---------------------------------------------------------------------

def node_from_device(raw: Dict[str, Any]) -> Optional[Node]:
    role = Role.parse(raw.get("type"))
    ieee = raw.get("ieee_address")
    if role is None or not ieee:
        return None
    definition = raw.get("definition") or {}
    return Node(
        ieee=str(ieee),
        name=str(raw.get("friendly_name") or ieee),
        role=role,
        network_address=int(raw.get("network_address") or 0),
        power_source=raw.get("power_source"),
        interview_completed=bool(raw.get("interview_completed", True)),
        disabled=bool(raw.get("disabled", False)),
        model=definition.get("model") or raw.get("model_id"),
        vendor=definition.get("vendor") or raw.get("manufacturer"),
        model_description=definition.get("description"),
        description=raw.get("description"),
    )


def group_from_payload(raw: Dict[str, Any]) -> Group:
    members = [
        (str(m.get("ieee_address")), int(m.get("endpoint") or 0))
        for m in raw.get("members") or []
        if isinstance(m, dict)
    ]
    return Group(id=int(raw.get("id", 0)), name=str(raw.get("friendly_name", "")), members=members)


def _is_state_message(topic: str, payload: Any) -> bool:
    return bool(topic) and not topic.startswith(ADMIN_PREFIX) and isinstance(payload, dict)


def search_nodes(nodes: List[Node], query: str) -> List[Node]:
    q = query.lower()
    fields = ("name", "model", "vendor", "model_description")
    return [
        n for n in nodes
        if any(q in (getattr(n, f) or "").lower() for f in fields)
    ]


# ---------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------

class BridgeClient:
    def __init__(self, config: ClientConfig, open_channel: Optional[OpenChannel] = None) -> None:
        self.config = config
        self.protocol = BridgeProtocol(config, open_channel=open_channel)

    # --- devices ------------------------------------------------------

    async def get_devices(self) -> List[Node]:
        payload = await self.protocol.request(
            "bridge/request/devices", {}, "bridge/devices", operation="get_devices",
        )
        nodes = []
        for raw in payload or []:
            node = node_from_device(raw) if isinstance(raw, dict) else None
            if node is not None:
                nodes.append(node)
        return nodes

    async def get_device(self, name_or_ieee: str) -> Node:
        for node in await self.get_devices():
            if node.name == name_or_ieee or node.ieee == name_or_ieee:
                return node
        raise NotFound(f'Device "{name_or_ieee}" not found', operation="get_device", device=name_or_ieee)

    async def search_devices(self, query: str) -> List[Node]:
        return search_nodes(await self.get_devices(), query)

    async def find_devices_by_type(self, role: Role) -> List[Node]:
        return [n for n in await self.get_devices() if n.role is role]

    async def collect_device_states(self, duration_s: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
        """Latest state payload per device topic seen during the window."""
        duration_s = self.config.state_window_s if duration_s is None else duration_s
        messages = await self.protocol.collect(
            _is_state_message, duration_s, operation="collect_device_states",
        )
        states: Dict[str, Dict[str, Any]] = {}
        for msg in messages:
            states[msg.topic] = msg.payload
        log.info("collected state for %d device(s) in %.1fs", len(states), duration_s)
        return states

    async def get_device_state(self, name: str, duration_s: float = DEVICE_STATE_WINDOW_S) -> Optional[Dict[str, Any]]:
        messages = await self.protocol.collect(
            lambda topic, payload: topic == name and isinstance(payload, dict),
            duration_s, limit=1, operation="get_device_state",
        )
        return messages[0].payload if messages else None

    async def set_device_state(self, name: str, payload: Dict[str, Any]) -> None:
        await self.protocol.publish(f"{name}/set", payload)

    async def rename_device(self, old_name: str, new_name: str) -> None:
        await self.protocol.request(
            "bridge/request/device/rename", {"from": old_name, "to": new_name},
            "bridge/response/device/rename", operation="rename_device",
        )

    async def remove_device(self, name: str, force: bool = False) -> None:
        await self.protocol.request(
            "bridge/request/device/remove", {"id": name, "force": force},
            "bridge/response/device/remove", operation="remove_device",
        )

    async def set_device_options(self, name: str, options: Dict[str, Any]) -> None:
        await self.protocol.request(
            "bridge/request/device/options", {"id": name, "options": options},
            "bridge/response/device/options", operation="set_device_options",
        )

    # --- groups -------------------------------------------------------

    async def get_groups(self) -> List[Group]:
        payload = await self.protocol.request(
            "bridge/request/groups", {}, "bridge/groups", operation="get_groups",
        )
        return [group_from_payload(g) for g in payload or [] if isinstance(g, dict)]

    async def get_group(self, name_or_id: str) -> Group:
        for group in await self.get_groups():
            if group.name == name_or_id or str(group.id) == str(name_or_id):
                return group
        raise NotFound(f'Group "{name_or_id}" not found', operation="get_group", device=str(name_or_id))

    async def set_group_state(self, name_or_id: str, payload: Dict[str, Any]) -> None:
        await self.protocol.publish(f"{name_or_id}/set", payload)

    # --- bridge -------------------------------------------------------

    async def get_bridge_info(self) -> Dict[str, Any]:
        return await self.protocol.request(
            "bridge/request/info", {}, "bridge/info", operation="get_bridge_info",
        )

    async def get_bridge_state(self) -> Dict[str, Any]:
        return await self.protocol.request(
            "bridge/request/state", {}, "bridge/state", operation="get_bridge_state",
        )

    async def restart_bridge(self) -> None:
        await self.protocol.request(
            "bridge/request/restart", {}, "bridge/response/restart", operation="restart_bridge",
        )

    async def permit_join(self, permit: bool, time_s: Optional[int] = None, device: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"value": permit}
        if time_s is not None:
            payload["time"] = time_s
        if device:
            payload["device"] = device
        await self.protocol.request(
            "bridge/request/permit_join", payload, "bridge/response/permit_join", operation="permit_join",
        )

    async def set_log_level(self, level: str) -> None:
        if level not in LOG_LEVELS:
            raise ValueError(f"log level must be one of: {', '.join(LOG_LEVELS)}")
        await self.protocol.request(
            "bridge/request/options", {"options": {"advanced": {"log_level": level}}},
            "bridge/response/options", operation="set_log_level",
        )

    async def test_connection(self) -> Dict[str, Any]:
        try:
            info = await self.get_bridge_info()
        except MeshDiagError as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "info": info}

    # --- network ------------------------------------------------------

    async def get_network_map(self, timeout_s: Optional[float] = None) -> Any:
        """Raw network map. Slow on big meshes, hence the separate timeout."""
        return await self.protocol.request(
            "bridge/request/networkmap", {"type": "raw", "routes": True},
            "bridge/response/networkmap",
            timeout_s=timeout_s or self.config.network_map_timeout_s,
            operation="get_network_map",
        )

    # --- analyses -----------------------------------------------------

    async def diagnose(self, window_s: Optional[float] = None) -> DiagnosticReport:
        devices, states = await asyncio.gather(
            self.get_devices(), self.collect_device_states(window_s),
        )
        return diagnose(devices, states)

    async def get_routing_graph(self, timeout_s: Optional[float] = None) -> RoutingGraph:
        payload, devices = await asyncio.gather(
            self.get_network_map(timeout_s), self.get_devices(),
        )
        nodes, links = parse_network_map(payload)

        # the map carries no metadata; take description/power from the device list
        by_ieee = {d.ieee: d for d in devices}
        for node in nodes:
            known = by_ieee.get(node.ieee)
            if known is not None:
                node.description = known.description
                node.power_source = known.power_source
                node.disabled = known.disabled
                node.interview_completed = known.interview_completed

        graph = build_routing_graph(nodes, links)
        for cycle in find_parent_cycles(graph):
            log.warning("parent cycle in raw topology: %s", " -> ".join(cycle))
        lost = orphans(graph)
        if lost:
            log.info("%d node(s) without a parent edge", len(lost))
        return graph

    async def analyze_routing(self, timeout_s: Optional[float] = None) -> Tuple[RoutingGraph, RoutingAnalysis]:
        graph = await self.get_routing_graph(timeout_s)
        resolver = LocationResolver(self.config.coordinator_location)
        locations = resolver.resolve_all(graph.nodes.values())
        analysis = optimize(graph, locations, DistanceModel(self.config.floors))
        return graph, analysis
