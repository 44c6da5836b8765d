"""Minute-of-day arithmetic, operating-hours checks and time display helpers."""

from __future__ import annotations

import logging
import re
from datetime import datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*$")

# Languages shown in 24-hour format; everything else gets 12-hour AM/PM.
TWENTY_FOUR_HOUR_LANGUAGES = frozenset({"ru", "de", "fr", "es", "it", "sr", "hu"})


def parse_time_to_minutes(value: str | time | None) -> int | None:
    """Return minutes since midnight for "H:MM", "HH:MM" or "HH:MM:SS".

    Returns None for empty or malformed input instead of raising.
    """
    if value is None:
        return None
    if isinstance(value, time):
        return value.hour * 60 + value.minute

    match = _TIME_RE.match(str(value))
    if not match:
        logger.warning("Invalid time string encountered for parsing: %r", value)
        return None

    hours = int(match.group(1))
    minutes = int(match.group(2))
    seconds = int(match.group(3) or 0)
    if not (0 <= hours <= 23 and 0 <= minutes <= 59 and 0 <= seconds <= 59):
        logger.warning("Time out of range: %r", value)
        return None
    return hours * 60 + minutes


def add_minutes(base_minutes: int, delta: int) -> int:
    return base_minutes + delta


def intervals_overlap(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return a_start < b_end and a_end > b_start


def is_overnight_operation(opening_minutes: int, closing_minutes: int) -> bool:
    return closing_minutes < opening_minutes


def operating_window(opening_minutes: int, closing_minutes: int) -> tuple[int, int]:
    """Return (start, end) on a timeline where an overnight close lands on the next day."""
    if is_overnight_operation(opening_minutes, closing_minutes):
        return opening_minutes, closing_minutes + MINUTES_PER_DAY
    return opening_minutes, closing_minutes


def unwrap_minutes(minutes: int, opening_minutes: int, closing_minutes: int) -> int:
    """Place a time-of-day on the operating timeline.

    For overnight restaurants, times before closing belong to the early-morning
    tail and are shifted forward by one day. Times in the closed gap between
    closing and opening stay on the opening day.
    """
    if is_overnight_operation(opening_minutes, closing_minutes) and minutes < closing_minutes:
        return minutes + MINUTES_PER_DAY
    return minutes


def is_within_operating_hours(minutes: int, opening_minutes: int, closing_minutes: int) -> bool:
    start, end = operating_window(opening_minutes, closing_minutes)
    return start <= unwrap_minutes(minutes, opening_minutes, closing_minutes) < end


def minutes_to_time_string(minutes: int) -> str:
    minutes %= MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}:00"


def normalize_time_string(value: str) -> str | None:
    """Return "HH:MM:SS" for a parseable time, otherwise None."""
    parsed = parse_time_to_minutes(value)
    if parsed is None:
        return None
    return minutes_to_time_string(parsed)


def format_time_for_display(time24: str, lang: str = "en") -> str:
    parts = time24.split(":")
    try:
        hour24 = int(parts[0])
    except ValueError:
        logger.warning("Invalid hour in time string for display: %s", time24)
        return time24
    if not 0 <= hour24 <= 23:
        logger.warning("Invalid hour in time string for display: %s", time24)
        return time24

    minutes = parts[1].zfill(2) if len(parts) > 1 and parts[1] else "00"

    if lang in TWENTY_FOUR_HOUR_LANGUAGES:
        return f"{hour24:02d}:{minutes}"

    ampm = "PM" if hour24 >= 12 else "AM"
    hour12 = hour24 % 12 or 12
    return f"{hour12}:{minutes} {ampm}"


def resolve_zone(tz_name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", tz_name)
        return ZoneInfo("UTC")


def is_restaurant_open(
    tz_name: str | None,
    opening_time: str,
    closing_time: str,
    *,
    now: datetime | None = None,
) -> bool:
    opening_minutes = parse_time_to_minutes(opening_time)
    closing_minutes = parse_time_to_minutes(closing_time)
    if opening_minutes is None or closing_minutes is None:
        return False

    zone = resolve_zone(tz_name)
    local_now = now.astimezone(zone) if now is not None and now.tzinfo else (now or datetime.now(zone))
    return is_within_operating_hours(local_now.hour * 60 + local_now.minute, opening_minutes, closing_minutes)
