#!/usr/bin/env python3
"""
Dasha tree arena and path-aware balancing.

Period trees arrive from the calculation service or storage as nested JSON.
They are loaded into a flat arena of nodes addressed by (level, position),
deepened by a visitor that subdivides missing levels, and written back out
with a single canonical children key.

Features:
- Enumerated set of known nested shapes; unknown shapes raise
- Origin tracking for fetched versus locally calculated nodes
- Default depth everywhere, deep expansion on the active branch and the
  requested drill-down path
- Lightweight "current period" chain without expanding the whole tree
"""

from __future__ import annotations

import logging

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from app.core.errors import UpstreamFormatError
from refactor.dasha import Period, same_planet, subdivide
from refactor.time_utils import (
    add_years,
    coerce_years,
    format_instant,
    parse_instant,
    utc_now,
    years_between,
)

logger = logging.getLogger(__name__)

# Absolute depth bound for any tree
MAX_TREE_DEPTH = 6

# Depth used on the active branch and on the requested path
FOCUSED_DEPTH = 5

DEFAULT_MIN_DEPTH = 3

ORIGIN_FETCHED = "fetched"
ORIGIN_CALCULATED = "calculated"


class NestedShape(str, Enum):
    """Keys under which upstream payloads nest child periods"""

    SUBLEVELS = "sublevels"
    ANTARDASHAS = "antardashas"
    PRATYANTARDASHAS = "pratyantardashas"
    SOOKSHMADASHAS = "sookshmadashas"
    PRANADASHAS = "pranadashas"
    DASHA_LIST = "dasha_list"
    CHILDREN = "children"


CANONICAL_CHILD_KEY = NestedShape.SUBLEVELS.value
CHILD_KEYS = tuple(shape.value for shape in NestedShape)

# Keys that hold the top-level period list of a response
ENVELOPE_KEYS = ("dasha_list", "mahadashas")
CANONICAL_ROOT_KEY = "dasha_list"

PLANET_KEYS = ("planet", "lord")
START_KEYS = ("start_date", "start")
END_KEYS = ("end_date", "end")
DURATION_KEYS = ("duration_years",)

_CORE_KEYS = set(PLANET_KEYS + START_KEYS + END_KEYS + DURATION_KEYS + CHILD_KEYS)


@dataclass
class PeriodNode:
    """A period stored in the arena"""

    planet: str
    start: datetime
    end: datetime
    duration_years: float
    level: int
    position: int
    parent: int | None = None
    children: list[int] = field(default_factory=list)
    origin: str = ORIGIN_FETCHED
    extra: dict[str, Any] = field(default_factory=dict)

    def is_active(self, reference_time: datetime) -> bool:
        return self.start <= reference_time < self.end


@dataclass
class PathNode:
    """One level of the currently running period chain"""

    level: int
    planet: str
    start: datetime
    end: datetime
    duration_years: float
    origin: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "planet": self.planet,
            "start_date": format_instant(self.start),
            "end_date": format_instant(self.end),
            "duration_years": self.duration_years,
            "origin": self.origin,
        }


def _first(entry: dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = entry.get(key)
        if value is not None:
            return value
    return None


def _looks_like_period_list(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) > 0
        and isinstance(value[0], dict)
        and any(key in value[0] for key in PLANET_KEYS)
    )


def _children_of_entry(entry: dict[str, Any]) -> list[dict[str, Any]]:
    """Return the nested period list of a payload entry.

    Only the enumerated NestedShape keys are read. A period list stored
    under any other key means the upstream format drifted.
    """
    for key in CHILD_KEYS:
        value = entry.get(key)
        if isinstance(value, list) and value:
            return value

    for key, value in entry.items():
        if key not in _CORE_KEYS and _looks_like_period_list(value):
            raise UpstreamFormatError(f"Unknown nested period key '{key}'")
    return []


def extract_period_list(payload: Any) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    """
    Locate the top-level period list in a response or stored payload.

    Recognised envelopes are a bare list, ``dasha_list`` / ``mahadashas``
    at the top level, or the same keys under ``data``.

    Returns:
        Tuple of (period entries, remaining envelope fields)

    Raises:
        UpstreamFormatError: when no known envelope is present
    """
    if isinstance(payload, list):
        return payload, {}
    if not isinstance(payload, dict):
        raise UpstreamFormatError(f"Expected a period payload, got {type(payload).__name__}")

    for key in ENVELOPE_KEYS:
        value = payload.get(key)
        if isinstance(value, list):
            envelope = {k: v for k, v in payload.items() if k not in ENVELOPE_KEYS}
            return value, envelope

    data = payload.get("data")
    if isinstance(data, (dict, list)):
        return extract_period_list(data)

    raise UpstreamFormatError(
        f"No period list found; keys present: {sorted(payload.keys())}"
    )


class PeriodArena:
    """
    Flat storage for a period tree.

    Nodes live in ``nodes``; ``roots`` lists the top-level indices in order.
    Each node is also addressable by (level, position), where position is
    the node's order of insertion within its level.
    """

    def __init__(self, envelope: dict[str, Any] | None = None):
        self.nodes: list[PeriodNode] = []
        self.roots: list[int] = []
        self.envelope: dict[str, Any] = dict(envelope or {})
        self._addresses: dict[tuple[int, int], int] = {}
        self._level_sizes: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self.nodes)

    def _add(
        self,
        planet: str,
        start: datetime,
        end: datetime,
        duration_years: float,
        parent: int | None,
        origin: str,
        extra: dict[str, Any] | None = None,
    ) -> int:
        level = 1 if parent is None else self.nodes[parent].level + 1
        if level > MAX_TREE_DEPTH:
            raise UpstreamFormatError(f"Period tree deeper than {MAX_TREE_DEPTH} levels")
        position = self._level_sizes.get(level, 0)
        self._level_sizes[level] = position + 1

        index = len(self.nodes)
        self.nodes.append(
            PeriodNode(
                planet=planet,
                start=start,
                end=end,
                duration_years=duration_years,
                level=level,
                position=position,
                parent=parent,
                origin=origin,
                extra=dict(extra or {}),
            )
        )
        self._addresses[(level, position)] = index
        if parent is None:
            self.roots.append(index)
        else:
            self.nodes[parent].children.append(index)
        return index

    def _add_entry(self, entry: Any, parent: int | None) -> None:
        if not isinstance(entry, dict):
            raise UpstreamFormatError(f"Period entry must be an object, got {type(entry).__name__}")

        planet = _first(entry, PLANET_KEYS)
        start = parse_instant(_first(entry, START_KEYS))
        if not isinstance(planet, str) or start is None:
            raise UpstreamFormatError(f"Period entry missing planet or start: {sorted(entry.keys())}")

        end = parse_instant(_first(entry, END_KEYS))
        duration = coerce_years(_first(entry, DURATION_KEYS))
        if duration is None and end is not None:
            duration = years_between(start, end)
        if end is None and duration is not None:
            end = add_years(start, duration)
        if end is None or duration is None:
            raise UpstreamFormatError(f"Period entry for {planet} has neither end nor duration")

        extra = {k: v for k, v in entry.items() if k not in _CORE_KEYS}
        origin = extra.pop("origin", ORIGIN_FETCHED)
        index = self._add(planet, start, end, duration, parent, origin, extra)

        for child in _children_of_entry(entry):
            self._add_entry(child, index)

    @classmethod
    def from_payload(cls, payload: Any) -> "PeriodArena":
        """Build an arena from a nested payload in any known shape"""
        entries, envelope = extract_period_list(payload)
        arena = cls(envelope)
        for entry in entries:
            arena._add_entry(entry, None)
        return arena

    @classmethod
    def from_periods(cls, periods: list[Period], origin: str = ORIGIN_CALCULATED) -> "PeriodArena":
        arena = cls()
        for period in periods:
            arena.attach(None, [period], origin)
        return arena

    def attach(self, parent: int | None, periods: list[Period], origin: str = ORIGIN_CALCULATED) -> list[int]:
        """Append periods (and their sublevels) under ``parent``"""
        indices = []
        for period in periods:
            index = self._add(
                period.planet, period.start, period.end, period.duration_years, parent, origin
            )
            indices.append(index)
            if period.sublevels:
                self.attach(index, period.sublevels, origin)
        return indices

    def node_at(self, level: int, position: int) -> PeriodNode | None:
        index = self._addresses.get((level, position))
        return None if index is None else self.nodes[index]

    def children_of(self, index: int) -> list[PeriodNode]:
        return [self.nodes[i] for i in self.nodes[index].children]

    def find_child(self, parent: int | None, planet: str) -> int | None:
        """Index of the child of ``parent`` (or root) ruled by ``planet``"""
        candidates = self.roots if parent is None else self.nodes[parent].children
        for index in candidates:
            if same_planet(self.nodes[index].planet, planet):
                return index
        return None

    def depth(self) -> int:
        return max((node.level for node in self.nodes), default=0)

    def _node_dict(self, index: int, nested: bool = True) -> dict[str, Any]:
        node = self.nodes[index]
        data = dict(node.extra)
        data.update(
            {
                "planet": node.planet,
                "start_date": format_instant(node.start),
                "end_date": format_instant(node.end),
                "duration_years": node.duration_years,
            }
        )
        if node.origin != ORIGIN_FETCHED:
            data["origin"] = node.origin
        if nested and node.children:
            data[CANONICAL_CHILD_KEY] = [self._node_dict(child) for child in node.children]
        return data

    def period_dicts(self, indices: list[int], nested: bool = True) -> list[dict[str, Any]]:
        return [self._node_dict(index, nested) for index in indices]

    def to_payload(self) -> dict[str, Any]:
        """Serialize back to nested JSON using the canonical keys"""
        payload = dict(self.envelope)
        payload[CANONICAL_ROOT_KEY] = self.period_dicts(self.roots)
        return payload


def balance(
    arena: PeriodArena,
    min_depth_default: int = DEFAULT_MIN_DEPTH,
    target_path: tuple[str, ...] | list[str] = (),
    now: datetime | None = None,
) -> bool:
    """
    Deepen a period tree until every branch meets its depth policy.

    A node at level L is expanded when L is below its effective depth:
    FOCUSED_DEPTH for the active node and for the node named by
    ``target_path[L-1]``, ``min_depth_default`` otherwise. The path is only
    forwarded into the branch that matched it.

    Args:
        arena: Tree to balance, modified in place
        min_depth_default: Depth for branches that are neither active nor targeted
        target_path: Planet names of the drill-down path, one per level
        now: Reference instant for activity checks

    Returns:
        True when any level was calculated (the tree needs persisting)
    """
    reference = now or utc_now()
    path = tuple(target_path)
    dirty = False

    stack = [(index, path) for index in reversed(arena.roots)]
    while stack:
        index, node_path = stack.pop()
        node = arena.nodes[index]
        level = node.level

        on_path = len(node_path) >= level and same_planet(node.planet, node_path[level - 1])
        if node.is_active(reference) or on_path:
            effective = FOCUSED_DEPTH
        else:
            effective = min_depth_default
        effective = min(effective, MAX_TREE_DEPTH)

        if level >= effective:
            continue

        if not node.children:
            periods = subdivide(node.planet, node.start, node.duration_years, node.end)
            if periods:
                arena.attach(index, periods, ORIGIN_CALCULATED)
                dirty = True

        child_path = node_path if on_path else ()
        for child in reversed(node.children):
            stack.append((child, child_path))

    if dirty:
        logger.debug(f"Balanced tree to {len(arena)} nodes, depth {arena.depth()}")
    return dirty


def extract_active_path(arena: PeriodArena, now: datetime | None = None) -> list[PathNode]:
    """
    Chain of currently running periods, one per level (at most FOCUSED_DEPTH).

    Missing levels are calculated on the fly; the arena is not modified.
    """
    reference = now or utc_now()
    chain: list[PathNode] = []
    current: list[Any] = [arena.nodes[i] for i in arena.roots]

    for level in range(1, FOCUSED_DEPTH + 1):
        active = next((p for p in current if p.start <= reference < p.end), None)
        if active is None:
            break

        chain.append(
            PathNode(
                level=level,
                planet=active.planet,
                start=active.start,
                end=active.end,
                duration_years=active.duration_years,
                origin=getattr(active, "origin", ORIGIN_CALCULATED),
            )
        )

        if isinstance(active, PeriodNode) and active.children:
            current = [arena.nodes[i] for i in active.children]
        else:
            current = subdivide(active.planet, active.start, active.duration_years, active.end)

    return chain
