"""
Observability infrastructure.

Components:
- metrics.py: Prometheus counters and histograms
- logging.py: Structured logging with request context
"""

from subledger.observability.metrics import (
    track_consume_rejected,
    track_consumption,
    track_cycle_reset,
    track_provider_call,
    track_sync,
    track_webhook_delivery,
)

__all__ = [
    "track_consume_rejected",
    "track_consumption",
    "track_cycle_reset",
    "track_provider_call",
    "track_sync",
    "track_webhook_delivery",
]
