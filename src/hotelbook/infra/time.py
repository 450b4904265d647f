"""Server reference clock.

All lifecycle decisions that depend on "now" use these helpers so that a
client clock never influences them.
"""

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def require_aware(value: datetime, name: str = "now") -> datetime:
    """Reject naive datetimes; return the value converted to UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware")
    return value.astimezone(timezone.utc)


def start_of_day(day: date, tz_name: str = "UTC") -> datetime:
    """Midnight of *day* in the reference timezone, as an aware UTC datetime."""
    local = datetime.combine(day, time.min, tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc)


def local_today(now: datetime, tz_name: str = "UTC") -> date:
    """Calendar date of *now* in the reference timezone."""
    return require_aware(now).astimezone(ZoneInfo(tz_name)).date()
