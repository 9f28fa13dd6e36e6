"""Operator notifications (signed webhook delivery)."""

from subledger.notifications.operator import NotificationSigner, OperatorNotifier

__all__ = ["NotificationSigner", "OperatorNotifier"]
