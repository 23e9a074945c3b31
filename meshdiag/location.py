# -*- coding: utf-8 -*-
# meshdiag/location.py
"""
Coarse physical placement of devices and the distance heuristic.

Location metadata is a free-form string of `key: value` lines, e.g.

    floor: ground
    sector: center-west

Sectors sit on a 3x3 compass grid, x = west/center/east (0..2),
y = south/center/north (0..2). Floors are ranked by their position in
the configured floor list. Anything unrecognised counts as center (1).

    distance(a, b) = |ax - bx| + |ay - by| + 1.5 * |floor(a) - floor(b)|

This is a placement heuristic, not an RF model.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .errors import MalformedInput
from .models import Location, Node, Role

log = logging.getLogger("meshdiag.location")

DEFAULT_FLOORS: Tuple[str, ...] = ("basement", "ground", "upper")
FLOOR_WEIGHT = 1.5
CENTER = 1

_X_TOKENS = {"west": 0, "w": 0, "east": 2, "e": 2}
_Y_TOKENS = {"south": 0, "s": 0, "north": 2, "n": 2}
_COMPOUND = {
    "northwest": ("north", "west"), "nw": ("north", "west"),
    "northeast": ("north", "east"), "ne": ("north", "east"),
    "southwest": ("south", "west"), "sw": ("south", "west"),
    "southeast": ("south", "east"), "se": ("south", "east"),
}
_SPLIT = re.compile(r"[\s,/_-]+")


# ---------------------------------------------------------------------
# Metadata parsing
# ---------------------------------------------------------------------

def parse_metadata(text: Optional[str]) -> Dict[str, str]:
    """`key: value` per line; lines without a key or colon are ignored."""
    out: Dict[str, str] = {}
    if not text:
        return out
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        key = key.strip().lower()
        if not sep or not key:
            continue
        out[key] = value.strip()
    return out


def parse_location(text: Optional[str]) -> Location:
    meta = parse_metadata(text)
    floor = meta.get("floor", "")
    sector = meta.get("sector", "")
    if not floor or not sector:
        raise MalformedInput("metadata has no floor/sector")
    return Location(floor=floor, sector=sector)


# ---------------------------------------------------------------------
# Distance model
# ---------------------------------------------------------------------

def sector_coord(sector: str) -> Tuple[int, int]:
    x = y = CENTER
    for token in _SPLIT.split(sector.strip().lower()):
        for part in _COMPOUND.get(token, (token,)):
            if part in _X_TOKENS:
                x = _X_TOKENS[part]
            elif part in _Y_TOKENS:
                y = _Y_TOKENS[part]
    return x, y


class DistanceModel:
    def __init__(self, floors: Sequence[str] = DEFAULT_FLOORS) -> None:
        self._floor_rank = {f.strip().lower(): i for i, f in enumerate(floors)}

    def floor_rank(self, floor: str) -> int:
        return self._floor_rank.get(floor.strip().lower(), CENTER)

    def coords(self, loc: Location) -> Tuple[int, int, int]:
        x, y = sector_coord(loc.sector)
        return x, y, self.floor_rank(loc.floor)

    def distance(self, a: Location, b: Location) -> float:
        ax, ay, af = self.coords(a)
        bx, by, bf = self.coords(b)
        return abs(ax - bx) + abs(ay - by) + FLOOR_WEIGHT * abs(af - bf)

    def matrix(self, locations: Sequence[Location]) -> np.ndarray:
        """Pairwise distances, same formula as distance(), as float64 [n, n]."""
        if not locations:
            return np.zeros((0, 0))
        c = np.array([self.coords(loc) for loc in locations], dtype=np.float64)
        d = np.abs(c[:, None, :] - c[None, :, :])
        return d[:, :, 0] + d[:, :, 1] + FLOOR_WEIGHT * d[:, :, 2]


_DEFAULT_MODEL = DistanceModel()


def distance(a: Location, b: Location) -> float:
    return _DEFAULT_MODEL.distance(a, b)


# ---------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------

class LocationResolver:
    """
    Maps nodes to Locations from their description metadata.

    Nodes without floor + sector are left out, never defaulted. The
    coordinator has no metadata channel and falls back to the configured
    default location.
    """

    def __init__(self, coordinator_location: Optional[Location] = None) -> None:
        self.coordinator_location = coordinator_location

    def resolve(self, node: Node) -> Optional[Location]:
        try:
            return parse_location(node.description)
        except MalformedInput:
            if node.role is Role.COORDINATOR:
                return self.coordinator_location
            log.debug("no location for %s (%s)", node.name, node.ieee)
            return None

    def resolve_all(self, nodes: Iterable[Node]) -> Dict[str, Location]:
        out: Dict[str, Location] = {}
        missing: List[str] = []
        for node in nodes:
            loc = self.resolve(node)
            if loc is None:
                missing.append(node.ieee)
            else:
                out[node.ieee] = loc
        log.info("locations: %d resolved, %d without metadata", len(out), len(missing))
        return out
