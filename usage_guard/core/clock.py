"""
Wall-clock access and calendar-day boundaries.

Every time-dependent component takes a clock so tests can substitute a fake one.
"""

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo


class SystemClock:
    """Clock backed by the system wall clock, always timezone-aware UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def resolve_timezone(name: str) -> tzinfo:
    """Resolve a timezone name, treating UTC without the tz database."""
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def local_day(moment: datetime, tz: tzinfo) -> date:
    """Calendar day of ``moment`` at the configured timezone."""
    return moment.astimezone(tz).date()


def next_midnight(moment: datetime, tz: tzinfo) -> datetime:
    """Next local midnight strictly after ``moment``."""
    tomorrow = local_day(moment, tz) + timedelta(days=1)
    return datetime.combine(tomorrow, time(0), tzinfo=tz)
