#!/usr/bin/env python3
"""
Time utilities for ruling-period calculations.

Provides UTC validation, instant parsing, 365.25-day year arithmetic
and UTC offset resolution for birth data.
"""

from __future__ import annotations

import logging
import math
import re

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

# Days per year used for every period boundary
DAYS_PER_YEAR = Decimal("365.25")

# IST, used when a timezone cannot be resolved
DEFAULT_UTC_OFFSET_HOURS = 5.5

_OFFSET_RE = re.compile(r"^(?:UTC|GMT)?\s*([+-])(\d{1,2})(?::?(\d{2}))?$", re.IGNORECASE)


def ensure_utc(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware and in UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_instant(value: datetime | date | str | None) -> datetime | None:
    """Parse a period boundary into an aware UTC datetime.

    Accepts datetimes, dates (midnight UTC) and ISO-8601 strings, including
    the trailing ``Z`` form. Returns None when the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def format_instant(dt: datetime) -> str:
    """ISO-8601 rendering of a UTC instant with a ``Z`` suffix."""
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def add_years(start: datetime, years: float) -> datetime:
    """Advance an instant by a (fractional) number of 365.25-day years."""
    return start + timedelta(days=years * float(DAYS_PER_YEAR))


def years_between(start: datetime, end: datetime) -> float:
    """Length of [start, end) in 365.25-day years."""
    days = (end - start).total_seconds() / 86400.0
    return days / float(DAYS_PER_YEAR)


def coerce_years(value) -> float | None:
    """Return value as a finite float, or None when it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(result):
        return None
    return result


def parse_offset_literal(text: str) -> float | None:
    """Parse ``+05:30``, ``-0400`` or ``UTC+5`` style offsets into hours."""
    match = _OFFSET_RE.match(text.strip())
    if not match:
        return None
    sign, hours, minutes = match.groups()
    value = int(hours) + int(minutes or 0) / 60.0
    if value > 14:
        return None
    return -value if sign == "-" else value


def resolve_utc_offset_hours(
    tz_name: str | None,
    birth_date: date | None = None,
    birth_time: time | None = None,
    default: float = DEFAULT_UTC_OFFSET_HOURS,
) -> float:
    """
    Resolve a numeric UTC offset for a birth moment.

    IANA names are resolved at the birth instant so historical DST rules
    apply; literal offsets are parsed directly. Anything else falls back
    to ``default``.

    Args:
        tz_name: IANA zone name or literal offset
        birth_date: Local birth date (for DST-aware resolution)
        birth_time: Local birth time
        default: Offset used when resolution fails

    Returns:
        Offset in hours east of UTC
    """
    if not tz_name or not tz_name.strip():
        return default

    literal = parse_offset_literal(tz_name)
    if literal is not None:
        return literal

    try:
        zone = ZoneInfo(tz_name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{tz_name}', using default offset {default}")
        return default

    local = datetime.combine(birth_date or date.today(), birth_time or time(12, 0))
    offset = local.replace(tzinfo=zone).utcoffset()
    if offset is None:
        return default
    return offset.total_seconds() / 3600.0
