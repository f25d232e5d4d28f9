#!/usr/bin/env python3
"""
Vimshottari Dasha period subdivision.
120-year cycle of planetary periods with nested sub-periods.

Every level of the hierarchy is derived the same way:
- Mahadasha (major periods)
- Antardasha (sub-periods)
- Pratyantardasha (sub-sub-periods)
- Sookshma (sub-sub-sub-periods)
- Prana (sub-sub-sub-sub-periods)

A parent period of D years yields nine children in cyclic order starting
from the parent's own lord, each lasting D * years(lord) / 120.
"""

import logging

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from refactor.time_utils import (
    DAYS_PER_YEAR,
    add_years,
    coerce_years,
    format_instant,
    parse_instant,
    utc_now,
    years_between,
)

logger = logging.getLogger(__name__)

# Dasha sequence order (starts from birth nakshatra lord)
DASHA_SEQUENCE = [
    "Ketu",
    "Venus",
    "Sun",
    "Moon",
    "Mars",
    "Rahu",
    "Jupiter",
    "Saturn",
    "Mercury",
]

# Vimshottari period years for each planet
VIMSHOTTARI_YEARS = {
    "Ketu": 7,
    "Venus": 20,
    "Sun": 6,
    "Moon": 10,
    "Mars": 7,
    "Rahu": 18,
    "Jupiter": 16,
    "Saturn": 19,
    "Mercury": 17,
}

# Total cycle duration in years
TOTAL_CYCLE_YEARS = 120

# Level names, 1-based
DASHA_LEVELS = {
    1: "mahadasha",
    2: "antardasha",
    3: "pratyantardasha",
    4: "sookshma",
    5: "prana",
    6: "deha",
}

__all__ = [
    "DASHA_SEQUENCE",
    "VIMSHOTTARI_YEARS",
    "TOTAL_CYCLE_YEARS",
    "DAYS_PER_YEAR",
    "Period",
    "canonical_planet",
    "resolve_lord_index",
    "same_planet",
    "subdivide",
]


@dataclass
class Period:
    """A single ruling period at any level"""

    planet: str
    start: datetime
    end: datetime
    duration_years: float
    sublevels: list["Period"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        data = {
            "planet": self.planet,
            "start_date": format_instant(self.start),
            "end_date": format_instant(self.end),
            "duration_years": self.duration_years,
        }
        if self.sublevels:
            data["sublevels"] = [sp.to_dict() for sp in self.sublevels]
        return data

    def is_active(self, reference_time: datetime | None = None) -> bool:
        """Check if period is active at given time"""
        if reference_time is None:
            reference_time = utc_now()
        return self.start <= reference_time < self.end


def resolve_lord_index(lord: str | None) -> int | None:
    """
    Find the position of a lord in the dasha sequence.

    Exact (case-insensitive) names win; otherwise a substring match in
    either direction is accepted, so "Sun (Surya)" and "merc" both resolve.

    Args:
        lord: Planet name as supplied by callers or upstream payloads

    Returns:
        Index into DASHA_SEQUENCE, or None when nothing matches
    """
    if not isinstance(lord, str):
        return None
    needle = lord.strip().lower()
    if not needle:
        return None

    for index, name in enumerate(DASHA_SEQUENCE):
        if name.lower() == needle:
            return index

    for index, name in enumerate(DASHA_SEQUENCE):
        candidate = name.lower()
        if candidate in needle or needle in candidate:
            return index

    return None


def canonical_planet(lord: str | None) -> str | None:
    """Canonical spelling of a lord name, or None if unknown"""
    index = resolve_lord_index(lord)
    return None if index is None else DASHA_SEQUENCE[index]


def same_planet(left: str | None, right: str | None) -> bool:
    """True when two lord names refer to the same planet"""
    if not left or not right:
        return False
    if left.strip().lower() == right.strip().lower():
        return True
    resolved = canonical_planet(left)
    return resolved is not None and resolved == canonical_planet(right)


def _resolve_duration(start: datetime, duration_years, end) -> float | None:
    duration = coerce_years(duration_years)
    if duration is not None:
        return duration
    end_dt = parse_instant(end)
    if end_dt is not None and end_dt > start:
        return years_between(start, end_dt)
    return None


def subdivide(
    lord: str,
    start: datetime | str,
    duration_years: float | None = None,
    end: datetime | str | None = None,
) -> list[Period]:
    """
    Split a parent period into its nine sub-periods.

    Invalid input never raises; it yields an empty list.

    Args:
        lord: Lord of the parent period
        start: Parent start (datetime or ISO-8601 string)
        duration_years: Parent length in years, preferred when finite
        end: Parent end, used to derive the length when no duration is given

    Returns:
        Nine contiguous periods in cyclic order starting at ``lord``
    """
    index = resolve_lord_index(lord)
    if index is None:
        logger.debug(f"Cannot subdivide: unknown lord {lord!r}")
        return []

    start_dt = parse_instant(start)
    if start_dt is None:
        logger.debug(f"Cannot subdivide {lord}: invalid start {start!r}")
        return []

    duration = _resolve_duration(start_dt, duration_years, end)
    if duration is None or duration <= 0:
        logger.debug(f"Cannot subdivide {lord}: unresolvable duration")
        return []

    periods = []
    cursor = start_dt
    for offset in range(len(DASHA_SEQUENCE)):
        planet = DASHA_SEQUENCE[(index + offset) % len(DASHA_SEQUENCE)]
        child_years = duration * VIMSHOTTARI_YEARS[planet] / TOTAL_CYCLE_YEARS
        child_end = add_years(cursor, child_years)
        periods.append(Period(planet, cursor, child_end, child_years))
        cursor = child_end

    return periods
