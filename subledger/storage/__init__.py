"""Quota Store: subscribers, webhook delivery claims and token usage (SQLite)."""

from subledger.storage.database import SubscriberDatabase, SubscriberNotFoundError

__all__ = ["SubscriberDatabase", "SubscriberNotFoundError"]
