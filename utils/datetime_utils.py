"""
Datetime utilities for consistent timezone handling across the application.
All datetime operations should use timezone-aware datetimes.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Returns:
        Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def parse_iso_datetime(iso_string: str) -> datetime:
    """
    Parse ISO format datetime string to timezone-aware datetime.
    Handles both 'Z' suffix and '+00:00' timezone formats.

    Args:
        iso_string: ISO format datetime string

    Returns:
        Timezone-aware datetime object

    Raises:
        ValueError: If datetime string cannot be parsed
    """
    normalized = iso_string.replace("Z", "+00:00")

    try:
        dt = datetime.fromisoformat(normalized)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError as e:
        raise ValueError(f"Invalid datetime string: {iso_string}") from e


def to_iso_string(dt: datetime) -> str:
    """
    Convert datetime to ISO format string.
    Naive datetimes are assumed to be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.isoformat()


def ensure_aware(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, leave aware ones untouched."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def local_to_utc(day: date, wall_time: time, tz_name: str) -> datetime:
    """
    Combine a calendar day and a wall-clock time in ``tz_name`` into a UTC datetime.

    Args:
        day: Calendar date in the practitioner's timezone
        wall_time: Local time of day
        tz_name: IANA timezone name (e.g. "Europe/Paris")

    Returns:
        Timezone-aware UTC datetime
    """
    local = datetime.combine(day, wall_time, tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc)


def local_day_bounds(start_day: date, end_day: date, tz_name: str) -> tuple[datetime, datetime]:
    """
    UTC instants covering ``start_day`` 00:00 up to (excluding) the day after ``end_day``.
    """
    start = local_to_utc(start_day, time.min, tz_name)
    end = local_to_utc(end_day + timedelta(days=1), time.min, tz_name)
    return start, end


def iter_days(start_day: date, end_day: date) -> Iterator[date]:
    """Yield every calendar day from start_day to end_day inclusive."""
    current = start_day
    while current <= end_day:
        yield current
        current += timedelta(days=1)


def format_local(dt: datetime, tz_name: str, fmt: str = "%d.%m.%Y %H:%M") -> str:
    """Render an aware datetime in the given timezone for user-facing messages."""
    return ensure_aware(dt).astimezone(ZoneInfo(tz_name)).strftime(fmt)
