"""Clock-time and timezone helpers shared by the pricing and demand layers."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


_HHMM_PATTERN = re.compile(r"^(?:([01]\d|2[0-3]):([0-5]\d)|24:00)$")

MINUTES_PER_DAY = 24 * 60

WEEKDAY_NAMES = (
    "MONDAY",
    "TUESDAY",
    "WEDNESDAY",
    "THURSDAY",
    "FRIDAY",
    "SATURDAY",
    "SUNDAY",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_hhmm(value: str) -> int:
    """Return minutes since midnight for an ``HH:MM`` string.

    ``24:00`` is accepted as an end-of-day marker. Anything else that does not
    match the 24-hour format raises ``ValueError``.
    """
    if not isinstance(value, str):
        raise ValueError(f"time value must be a string, got {type(value).__name__}")
    match = _HHMM_PATTERN.fullmatch(value.strip())
    if match is None:
        raise ValueError(f"time value '{value}' must follow HH:MM 24-hour format")
    if match.group(1) is None:
        return MINUTES_PER_DAY
    return int(match.group(1)) * 60 + int(match.group(2))


def format_hhmm(minutes: int) -> str:
    minutes = minutes % MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def minute_in_window(minute_of_day: int, start_minute: int, end_minute: int) -> bool:
    """Half-open clock window test; ``start > end`` wraps across midnight.

    A window whose start equals its end covers the whole day.
    """
    if start_minute == end_minute % MINUTES_PER_DAY:
        return True
    if start_minute < end_minute:
        return start_minute <= minute_of_day < end_minute
    return minute_of_day >= start_minute or minute_of_day < end_minute


def resolve_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown timezone '{name}'") from exc


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: str | datetime) -> datetime:
    """Parse ISO-8601 text (``Z`` suffix allowed) into an aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO string so lexical order matches chronological order."""
    return ensure_utc(value).isoformat(timespec="microseconds")


def floor_hour(value: datetime) -> datetime:
    return ensure_utc(value).replace(minute=0, second=0, microsecond=0)


def local_clock(value: datetime, zone: ZoneInfo) -> tuple[int, str]:
    """Return (minute-of-day, weekday name) of ``value`` in ``zone``."""
    local = ensure_utc(value).astimezone(zone)
    return local.hour * 60 + local.minute, WEEKDAY_NAMES[local.weekday()]


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start) / timedelta(hours=1)
