"""Shared utilities."""

from subledger.utils.clock import Clock, SystemClock, add_calendar_month

__all__ = ["Clock", "SystemClock", "add_calendar_month"]
