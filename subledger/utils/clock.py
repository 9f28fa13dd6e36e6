"""
Time source for billing-cycle comparisons.

All timestamps handled by the ledger and reconciler are timezone-aware UTC.
"""

import calendar
from datetime import UTC, datetime


class Clock:
    """Supplies the current time. Subclass to freeze or shift time in tests."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_calendar_month(value: datetime) -> datetime:
    """
    Same day and time one calendar month later.

    Days past the end of the target month are clamped (Jan 31 -> Feb 28/29).
    """
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))
