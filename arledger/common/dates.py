"""Month-safe date arithmetic and local-day normalisation.

Due dates are calendar days. "Today" is always the local calendar day of the
configured timezone, so an AR becomes overdue the day after its due date.
"""

import calendar
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def add_months(value: date, months: int) -> date:
    """Add calendar months, clamping to the last day of the target month.

    >>> add_months(date(2025, 1, 31), 1)
    datetime.date(2025, 2, 28)
    >>> add_months(date(2024, 1, 31), 1)
    datetime.date(2024, 2, 29)
    """

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(value.day, last_day))


def local_today(now: datetime, tz_name: str) -> date:
    """Return the calendar day `now` falls on in `tz_name`."""

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name)).date()


def days_between(earlier: date, later: date) -> int:
    """Whole days from `earlier` to `later` (negative when reversed)."""

    return (later - earlier).days


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
