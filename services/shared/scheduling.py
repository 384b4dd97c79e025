"""Time window arithmetic shared by the conflict detector and the lifecycle rules."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)``."""

    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start


def resolve_zone(tz_name: str | None) -> tzinfo:
    if not tz_name or tz_name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def ensure_timezone(dt: datetime, tz_name: str | None = "UTC") -> datetime:
    """Return ``dt`` expressed in ``tz_name``; naive values are read as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(resolve_zone(tz_name))


def minutes_since_midnight(dt: datetime, tz_name: str | None = "UTC") -> int:
    localized = ensure_timezone(dt, tz_name)
    return localized.hour * 60 + localized.minute


def combine(day: date, at: time, tz_name: str | None = "UTC") -> datetime:
    return datetime.combine(day, at.replace(tzinfo=None), tzinfo=resolve_zone(tz_name))


def interval(day: date, at: time, duration_minutes: int, tz_name: str | None = "UTC") -> TimeWindow:
    """Build the window of a booking scheduled on ``day`` at ``at``.

    Args:
        day: Calendar date, provider-local.
        at: Wall clock start, provider-local.
        duration_minutes: Length of the service.
        tz_name: IANA zone the wall clock is expressed in.

    Returns:
        TimeWindow with ``end = start + duration``.
    """
    start = combine(day, at, tz_name)
    return TimeWindow(start=start, end=start + timedelta(minutes=duration_minutes))


def overlaps(a: TimeWindow, b: TimeWindow) -> bool:
    # empty windows never collide, even when they sit inside another window
    if a.is_empty or b.is_empty:
        return False
    return a.start < b.end and b.start < a.end


def hours_until(start: datetime, now: datetime) -> float:
    return (ensure_timezone(start) - ensure_timezone(now)).total_seconds() / 3600
