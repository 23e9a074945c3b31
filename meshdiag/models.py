# -*- coding: utf-8 -*-
# meshdiag/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple


# ---------------------------------------------------------------------
# Network members
# ---------------------------------------------------------------------

class Role(str, Enum):
    COORDINATOR = "Coordinator"
    ROUTER = "Router"
    END_DEVICE = "EndDevice"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        for role in cls:
            if role.value == value:
                return role
        return None


class Relationship(IntEnum):
    PARENT = 0
    CHILD = 1
    SIBLING = 2
    UNKNOWN = 3
    STALE_CHILD = 4


DEPTH_UNKNOWN = 255


@dataclass
class Node:
    """One device on the mesh. `ieee` never changes, `name` may."""
    ieee: str
    name: str
    role: Role
    network_address: int = 0
    power_source: Optional[str] = None
    interview_completed: bool = True
    disabled: bool = False
    model: Optional[str] = None
    vendor: Optional[str] = None
    model_description: Optional[str] = None
    description: Optional[str] = None

    @property
    def is_battery(self) -> bool:
        return (self.power_source or "").lower() == "battery"

    @property
    def can_route(self) -> bool:
        return self.role in (Role.COORDINATOR, Role.ROUTER)


@dataclass(frozen=True)
class Link:
    """Raw neighbor-table observation. Never mutated, only filtered."""
    source: str
    target: str
    lqi: int
    relationship: int
    depth: int = DEPTH_UNKNOWN


@dataclass
class Group:
    id: int
    name: str
    members: List[Tuple[str, int]] = field(default_factory=list)


@dataclass
class RoutingGraph:
    nodes: Dict[str, Node] = field(default_factory=dict)
    parent_of: Dict[str, Tuple[str, int]] = field(default_factory=dict)
    children_of: Dict[str, List[Tuple[str, int]]] = field(default_factory=dict)

    def parent(self, ieee: str) -> Optional[str]:
        entry = self.parent_of.get(ieee)
        return entry[0] if entry else None

    def coordinator(self) -> Optional[Node]:
        for node in self.nodes.values():
            if node.role is Role.COORDINATOR:
                return node
        return None


@dataclass(frozen=True)
class Location:
    floor: str
    sector: str


# ---------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------

class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.CRITICAL: 0, Severity.WARNING: 1, Severity.INFO: 2}


@dataclass(frozen=True)
class Issue:
    device: str
    kind: str
    severity: Severity
    message: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "device": self.device,
            "type": self.kind,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.value is not None:
            out["value"] = self.value
        return out


@dataclass
class DeviceSummary:
    name: str
    ieee: str
    role: Role
    lqi: Optional[float] = None
    battery: Optional[float] = None
    last_seen: Any = None
    model: Optional[str] = None


@dataclass
class DiagnosticSummary:
    total_devices: int = 0
    routers: int = 0
    end_devices: int = 0
    coordinator: int = 0
    disabled: int = 0
    critical: int = 0
    warnings: int = 0
    info: int = 0


@dataclass
class DiagnosticReport:
    summary: DiagnosticSummary
    issues: List[Issue]
    devices: List[DeviceSummary]

    def low_signal(self, threshold: float = 50) -> List[DeviceSummary]:
        rows = [d for d in self.devices if d.lqi is not None and d.lqi < threshold]
        return sorted(rows, key=lambda d: d.lqi)

    def low_battery(self, threshold: float = 25) -> List[DeviceSummary]:
        rows = [d for d in self.devices if d.battery is not None and d.battery < threshold]
        return sorted(rows, key=lambda d: d.battery)

    def to_dict(self) -> Dict[str, Any]:
        s = self.summary
        return {
            "summary": {
                "totalDevices": s.total_devices,
                "routers": s.routers,
                "endDevices": s.end_devices,
                "coordinator": s.coordinator,
                "disabled": s.disabled,
                "criticalIssues": s.critical,
                "warnings": s.warnings,
                "info": s.info,
            },
            "issues": [i.to_dict() for i in self.issues],
            "devices": [
                {
                    "name": d.name,
                    "ieee": d.ieee,
                    "type": d.role.value,
                    "lqi": d.lqi,
                    "battery": d.battery,
                    "lastSeen": d.last_seen,
                    "model": d.model,
                }
                for d in self.devices
            ],
        }


# ---------------------------------------------------------------------
# Routing optimization
# ---------------------------------------------------------------------

@dataclass
class RoutingCandidate:
    """
    Optimizer working state for one device.

    `candidates` holds (parent ieee, distance) pairs that beat the current
    parent by more than the improvement threshold, nearest first.
    After a run, `proposed_parent` is the assigned new parent and
    `alternatives` the best surviving options (proposed parent first).
    """
    device: str
    location: Location
    current_parent: str
    current_distance: float
    current_lqi: int
    candidates: List[Tuple[str, float]] = field(default_factory=list)
    proposed_parent: Optional[str] = None
    alternatives: List[Tuple[str, float]] = field(default_factory=list)

    def improvement(self, parent: str) -> float:
        for ieee, dist in self.candidates:
            if ieee == parent:
                return self.current_distance - dist
        return 0.0

    def best_improvement(self) -> float:
        if not self.candidates:
            return 0.0
        return self.current_distance - self.candidates[0][1]


@dataclass
class RoutingAnalysis:
    anomalies: List[RoutingCandidate] = field(default_factory=list)
    optimal: List[str] = field(default_factory=list)
    assignments: Dict[str, str] = field(default_factory=dict)
    unplaced: List[str] = field(default_factory=list)
