"""
Tests for calendar and timezone helpers.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from subledger.utils.clock import SystemClock, add_calendar_month, ensure_utc


@pytest.mark.parametrize(
    "start,expected",
    [
        (datetime(2026, 1, 15, 12, 0, tzinfo=UTC), datetime(2026, 2, 15, 12, 0, tzinfo=UTC)),
        (datetime(2026, 1, 31, tzinfo=UTC), datetime(2026, 2, 28, tzinfo=UTC)),
        (datetime(2028, 1, 31, tzinfo=UTC), datetime(2028, 2, 29, tzinfo=UTC)),
        (datetime(2026, 12, 10, tzinfo=UTC), datetime(2027, 1, 10, tzinfo=UTC)),
        (datetime(2026, 3, 31, tzinfo=UTC), datetime(2026, 4, 30, tzinfo=UTC)),
    ],
)
def test_add_calendar_month(start, expected):
    assert add_calendar_month(start) == expected


def test_ensure_utc_naive_is_utc():
    assert ensure_utc(datetime(2026, 1, 1, 9, 0)) == datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


def test_ensure_utc_converts_offset():
    plus_two = timezone(timedelta(hours=2))

    converted = ensure_utc(datetime(2026, 1, 1, 9, 0, tzinfo=plus_two))

    assert converted.tzinfo == UTC
    assert converted.hour == 7


def test_system_clock_is_aware():
    assert SystemClock().now().tzinfo is not None
