"""
Timezone and send-window utilities for compliance and scheduling.

Send windows are expressed as minute-of-day bounds in the account's local time.
A window whose start is after its end wraps midnight:
    allowed = [start, 1440) U [0, end]
"""
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import logging

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"
MINUTES_PER_DAY = 1440


def as_utc(dt: Any) -> Optional[datetime]:
    """Normalize a datetime to aware UTC. Naive values are assumed to already be UTC."""
    if not isinstance(dt, datetime):
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_zoneinfo(timezone_str: Optional[str] = None) -> ZoneInfo:
    """Get ZoneInfo object, defaulting to Eastern if unknown."""
    if timezone_str:
        try:
            return ZoneInfo(timezone_str)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back to %s", timezone_str, DEFAULT_TIMEZONE)
    return ZoneInfo(DEFAULT_TIMEZONE)


def parse_hhmm(value: str) -> int:
    """Parse "HH:MM" into minute-of-day. Raises ValueError on malformed input."""
    hours_str, _, minutes_str = value.strip().partition(":")
    hours = int(hours_str)
    minutes = int(minutes_str or 0)
    if not (0 <= hours <= 24 and 0 <= minutes < 60):
        raise ValueError(f"Invalid HH:MM value: {value!r}")
    return min(hours * 60 + minutes, MINUTES_PER_DAY)


def format_minutes(minute_of_day: int) -> str:
    return f"{minute_of_day // 60:02d}:{minute_of_day % 60:02d}"


def minute_of_day(local_dt: datetime) -> int:
    return local_dt.hour * 60 + local_dt.minute


def is_within_window(minute: int, start: int, end: int) -> bool:
    """True if minute-of-day falls inside the allowed window (end inclusive)."""
    if start <= end:
        return start <= minute <= end
    return minute >= start or minute <= end


def next_allowed_time(dt: datetime, tz: ZoneInfo, start: int, end: int) -> datetime:
    """
    Return the earliest instant >= dt that falls inside the allowed window.
    Never moves backward. Result is aware UTC.
    """
    dt_utc = as_utc(dt)
    local = dt_utc.astimezone(tz)
    minute = minute_of_day(local)

    if is_within_window(minute, start, end):
        return dt_utc

    target_date = local.date()
    if start <= end and minute > end:
        target_date = target_date + timedelta(days=1)

    start_time = time(start // 60, start % 60) if start < MINUTES_PER_DAY else time(23, 59)
    candidate = datetime.combine(target_date, start_time, tzinfo=tz).astimezone(timezone.utc)
    return max(candidate, dt_utc)
