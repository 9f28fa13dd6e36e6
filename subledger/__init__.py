"""
Subledger - metered token quotas backed by paid subscriptions.

Meters out separate input/output token budgets to subscribers, resets them on
each billing cycle, and keeps plan and quota reconciled with the payment
provider's subscription record.

Key Features:
    - Quota ledger with atomic conditional consumption
    - Subscription reconciliation from provider state (webhooks + self-healing reads)
    - Persisted webhook delivery deduplication
    - Periodic cycle-reset sweeps

Example:
    >>> from subledger import get_settings
    >>> settings = get_settings()
    >>> print(settings.plans.lite_input_tokens)
"""

from subledger.config import get_settings

__all__ = ["get_settings"]
