# -*- coding: utf-8 -*-
# meshdiag/optimizer.py
"""
Routing optimizer: proposes closer parents for devices.

Pipeline (one pure pass over a snapshot):
  1. candidates:  routers/coordinator strictly nearer than 0.7x the
                  current parent distance, nearest first
  2. conflicts:   A and B conflict when each is in the other's list;
                  connected components via BFS
  3. resolution:  pairs pick the best of three strategies, larger
                  components are assigned greedily
  4. propagation: remaining devices take their first safe candidate,
                  repeated until a pass assigns nothing
  5. result:      assigned devices are anomalies, the rest optimal

A candidate is "safe" when walking the tentative parent chain upward
from it never reaches the device being assigned. The chain starts as
the current parent of every node and is overwritten by assignments.
Members of a conflict component are settled in step 3 only.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, List, Mapping, Optional, Set, Tuple

import numpy as np

from .errors import EmptyTopology
from .location import DistanceModel
from .models import Location, Role, RoutingAnalysis, RoutingCandidate, RoutingGraph

log = logging.getLogger("meshdiag.optimizer")

IMPROVEMENT_RATIO = 0.7
UNKNOWN_DISTANCE = 999.0
MAX_ALTERNATIVES = 3


# ---------------------------------------------------------------------
# Tentative parent structure
# ---------------------------------------------------------------------

class TentativeParents:
    """device -> tentative parent index, with an upward reachability query."""

    def __init__(self, graph: RoutingGraph) -> None:
        self.order: List[str] = list(graph.nodes)
        self.index: Dict[str, int] = {ieee: i for i, ieee in enumerate(self.order)}
        self.parent = np.full(len(self.order), -1, dtype=np.int64)
        for child, (par, _lqi) in graph.parent_of.items():
            self.parent[self.index[child]] = self.index[par]
        self.assigned: Dict[str, str] = {}

    def reaches(self, start: str, target: str) -> bool:
        """True when `target` lies on the parent chain starting at `start`."""
        i = self.index[start]
        t = self.index[target]
        # the raw graph may hold cycles of its own; n steps bound the walk
        for _ in range(len(self.order) + 1):
            if i == t:
                return True
            i = int(self.parent[i])
            if i < 0:
                return False
        return False

    def is_safe(self, device: str, candidate: str) -> bool:
        if self.assigned.get(candidate) == device:
            return False
        return not self.reaches(candidate, device)

    def try_assign(self, device: str, candidate: Optional[str]) -> bool:
        if candidate is None or device in self.assigned:
            return False
        if not self.is_safe(device, candidate):
            log.debug("rejecting %s -> %s (cycle)", device, candidate)
            return False
        self.parent[self.index[device]] = self.index[candidate]
        self.assigned[device] = candidate
        return True


# ---------------------------------------------------------------------
# Step 1: candidates
# ---------------------------------------------------------------------

def build_candidates(
        graph: RoutingGraph,
        locations: Mapping[str, Location],
        model: DistanceModel,
) -> Tuple[List[RoutingCandidate], List[str]]:
    order = list(graph.nodes)
    rank = {ieee: i for i, ieee in enumerate(order)}

    located = [ieee for ieee in order if ieee in locations]
    pos = {ieee: k for k, ieee in enumerate(located)}
    dist = model.matrix([locations[ieee] for ieee in located])

    parents_pool = [ieee for ieee in located if graph.nodes[ieee].can_route]

    candidates: List[RoutingCandidate] = []
    unplaced: List[str] = []

    for ieee in order:
        node = graph.nodes[ieee]
        if node.role is Role.COORDINATOR:
            continue
        entry = graph.parent_of.get(ieee)
        if ieee not in pos or entry is None:
            unplaced.append(ieee)
            continue

        current_parent, lqi = entry
        row = dist[pos[ieee]]
        if current_parent in pos:
            current = float(row[pos[current_parent]])
        else:
            current = UNKNOWN_DISTANCE
        limit = IMPROVEMENT_RATIO * current

        options = [
            (p, float(row[pos[p]]))
            for p in parents_pool
            if p != ieee and p != current_parent and row[pos[p]] < limit
        ]
        options.sort(key=lambda o: (o[1], rank[o[0]]))

        candidates.append(RoutingCandidate(
            device=ieee,
            location=locations[ieee],
            current_parent=current_parent,
            current_distance=current,
            current_lqi=lqi,
            candidates=options,
        ))

    return candidates, unplaced


# ---------------------------------------------------------------------
# Step 2: conflicts
# ---------------------------------------------------------------------

def conflict_components(candidates: List[RoutingCandidate]) -> List[List[str]]:
    """Components (size >= 2) of the mutual-preference graph, BFS order."""
    rank = {c.device: i for i, c in enumerate(candidates)}
    wants: Dict[str, Set[str]] = {c.device: {p for p, _ in c.candidates} for c in candidates}

    adjacency: Dict[str, List[str]] = {}
    for c in candidates:
        for other in wants[c.device]:
            if c.device in wants.get(other, ()):
                adjacency.setdefault(c.device, []).append(other)
    for nbrs in adjacency.values():
        nbrs.sort(key=rank.__getitem__)

    components: List[List[str]] = []
    seen: Set[str] = set()
    for c in candidates:
        if c.device not in adjacency or c.device in seen:
            continue
        seen.add(c.device)
        comp: List[str] = []
        queue = deque([c.device])
        while queue:
            cur = queue.popleft()
            comp.append(cur)
            for nxt in adjacency[cur]:
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        components.append(comp)
    return components


# ---------------------------------------------------------------------
# Step 3: resolution
# ---------------------------------------------------------------------

def _fallback(c: RoutingCandidate, exclude: str, state: TentativeParents) -> Tuple[Optional[str], float]:
    for parent, dist in c.candidates:
        if parent != exclude and state.is_safe(c.device, parent):
            return parent, c.current_distance - dist
    return None, 0.0


def resolve_pair(a: RoutingCandidate, b: RoutingCandidate, state: TentativeParents) -> int:
    """
    Pick among: 0 = A routes through B, 1 = B routes through A,
    2 = neither (both fall back). Returns the chosen strategy.
    """
    imp_ab = a.improvement(b.device)
    imp_ba = b.improvement(a.device)
    alt_a, gain_a = _fallback(a, b.device, state)
    alt_b, gain_b = _fallback(b, a.device, state)

    strategies = [
        (imp_ab + gain_b, [(a.device, b.device), (b.device, alt_b)]),
        (imp_ba + gain_a, [(b.device, a.device), (a.device, alt_a)]),
        (gain_a + gain_b, [(a.device, alt_a), (b.device, alt_b)]),
    ]

    best = 0
    if strategies[1][0] > strategies[best][0]:
        best = 1
    if strategies[2][0] >= strategies[best][0]:
        best = 2
    if strategies[best][0] <= 0:
        best = 2

    for device, parent in strategies[best][1]:
        state.try_assign(device, parent)

    log.debug(
        "pair %s/%s: totals=%s -> strategy %d",
        a.device, b.device, [round(s[0], 3) for s in strategies], best,
    )
    return best


def resolve_group(members: List[RoutingCandidate], state: TentativeParents) -> None:
    rank = {c.device: i for i, c in enumerate(members)}
    ordered = sorted(members, key=lambda c: (-c.best_improvement(), rank[c.device]))
    for c in ordered:
        for parent, _dist in c.candidates:
            if state.try_assign(c.device, parent):
                break


# ---------------------------------------------------------------------
# Step 4: propagation
# ---------------------------------------------------------------------

def propagate(pending: List[RoutingCandidate], state: TentativeParents) -> int:
    passes = 0
    changed = True
    while changed:
        changed = False
        passes += 1
        for c in pending:
            if c.device in state.assigned:
                continue
            for parent, _dist in c.candidates:
                if state.try_assign(c.device, parent):
                    changed = True
                    break
    return passes


# ---------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------

def optimize(
        graph: Optional[RoutingGraph],
        locations: Optional[Mapping[str, Location]],
        model: Optional[DistanceModel] = None,
        resolve_conflicts: bool = True,
) -> RoutingAnalysis:
    if graph is None or not graph.nodes:
        raise EmptyTopology("routing graph has no nodes", operation="optimize")
    if locations is None:
        raise EmptyTopology("no location set given", operation="optimize")
    model = model or DistanceModel()

    candidates, unplaced = build_candidates(graph, locations, model)
    by_device = {c.device: c for c in candidates}
    state = TentativeParents(graph)

    settled: Set[str] = set()
    if resolve_conflicts:
        for comp in conflict_components(candidates):
            members = [by_device[d] for d in comp]
            if len(members) == 2:
                resolve_pair(members[0], members[1], state)
            else:
                resolve_group(members, state)
            settled.update(comp)

    pending = [c for c in candidates if c.candidates and c.device not in settled]
    passes = propagate(pending, state)

    result = RoutingAnalysis(assignments=dict(state.assigned), unplaced=unplaced)
    for c in candidates:
        proposed = state.assigned.get(c.device)
        if proposed is None:
            result.optimal.append(c.device)
            continue
        c.proposed_parent = proposed
        alternatives = [o for o in c.candidates if o[0] == proposed]
        for parent, dist in c.candidates:
            if len(alternatives) >= MAX_ALTERNATIVES:
                break
            if parent != proposed and state.is_safe(c.device, parent):
                alternatives.append((parent, dist))
        c.alternatives = alternatives
        result.anomalies.append(c)

    log.info(
        "optimize: %d devices, %d anomalies, %d optimal, %d unplaced (%d propagation passes)",
        len(candidates), len(result.anomalies), len(result.optimal), len(unplaced), passes,
    )
    return result
