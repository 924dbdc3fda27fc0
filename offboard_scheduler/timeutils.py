"""Time zone helpers for UTC storage and local presentation."""
from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError

_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the IANA zone for ``name`` or raise :class:`ValidationError`."""
    cleaned = str(name or "").strip()
    if not cleaned:
        raise ValidationError("timezone is required.")
    try:
        return ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Invalid timezone: {cleaned}") from exc


def parse_local_date(raw: str) -> date:
    try:
        return date.fromisoformat(str(raw or "").strip())
    except ValueError as exc:
        raise ValidationError(f"scheduledDate must be YYYY-MM-DD, got '{raw}'.") from exc


def parse_local_time(raw: str) -> time:
    match = _TIME_PATTERN.match(str(raw or "").strip())
    if not match:
        raise ValidationError(f"scheduledTime must be HH:MM, got '{raw}'.")
    hour, minute = int(match.group(1)), int(match.group(2))
    second = int(match.group(3) or 0)
    if hour > 23 or minute > 59 or second > 59:
        raise ValidationError(f"scheduledTime is out of range: '{raw}'.")
    return time(hour, minute, second)


def normalize_local_time(raw: str) -> str:
    """Canonical ``HH:MM`` (or ``HH:MM:SS`` when seconds are given) form."""
    parsed = parse_local_time(raw)
    if parsed.second:
        return parsed.strftime("%H:%M:%S")
    return parsed.strftime("%H:%M")


def compute_instant(scheduled_date: str, scheduled_time: str, timezone_name: str) -> datetime:
    """Convert a wall-clock date/time in ``timezone_name`` to a UTC instant.

    Ambiguous times (the repeated hour when clocks fall back) resolve to the
    first occurrence. Times that do not exist in the zone (the skipped hour
    when clocks spring forward) are rejected, so the stored instant always
    renders back to the operator's original input.
    """
    zone = resolve_timezone(timezone_name)
    local = datetime.combine(parse_local_date(scheduled_date), parse_local_time(scheduled_time))
    aware = local.replace(tzinfo=zone, fold=0)
    instant = aware.astimezone(timezone.utc)
    if instant.astimezone(zone).replace(tzinfo=None) != local:
        raise ValidationError(
            f"{scheduled_date} {scheduled_time} does not exist in {timezone_name} "
            "(daylight saving transition)."
        )
    return instant


def local_parts(instant: datetime, timezone_name: str) -> Tuple[str, str]:
    """Render ``instant`` back to ``(YYYY-MM-DD, HH:MM)`` in ``timezone_name``."""
    local = instant.astimezone(resolve_timezone(timezone_name))
    return local.date().isoformat(), local.strftime("%H:%M")


__all__ = [
    "compute_instant",
    "format_datetime",
    "local_parts",
    "normalize_local_time",
    "parse_datetime",
    "parse_local_date",
    "parse_local_time",
    "resolve_timezone",
    "utc_now",
]
