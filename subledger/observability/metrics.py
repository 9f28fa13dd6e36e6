"""
Prometheus metrics for the billing core.

Metrics tracked:
- Tokens consumed (counter) per pool and plan
- Rejected consumes (counter) by reason
- Cycle resets (counter) by trigger
- Subscription syncs (counter) by outcome and classification case
- Webhook deliveries (counter) by outcome
- Provider call latency (histogram) per operation

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

# ============================================================================
# QUOTA METRICS
# ============================================================================

tokens_consumed_total = Counter(
    "subledger_tokens_consumed_total",
    "Tokens consumed from subscriber budgets",
    labelnames=["pool", "plan"],
)

consume_rejected_total = Counter(
    "subledger_consume_rejected_total",
    "Consume calls rejected by the ledger",
    labelnames=["reason"],  # insufficient, exhausted, units
)

cycle_resets_total = Counter(
    "subledger_cycle_resets_total",
    "Billing cycle resets applied",
    labelnames=["trigger"],  # consume, sweep, admin
)

# ============================================================================
# RECONCILIATION METRICS
# ============================================================================

subscription_syncs_total = Counter(
    "subledger_subscription_syncs_total",
    "Provider subscription syncs",
    labelnames=["outcome", "case"],
)

webhook_deliveries_total = Counter(
    "subledger_webhook_deliveries_total",
    "Webhook deliveries handled",
    labelnames=["outcome"],  # processed, duplicate, ignored, failed
)

provider_call_duration_seconds = Histogram(
    "subledger_provider_call_duration_seconds",
    "Payment provider call latency in seconds",
    labelnames=["operation", "success"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_consumption(plan: str, input_tokens: int, output_tokens: int) -> None:
    """
    Track a successful consume.

    Args:
        plan: Subscriber plan at the time of the decrement
        input_tokens: Input tokens decremented
        output_tokens: Output tokens decremented
    """
    tokens_consumed_total.labels(pool="input", plan=plan).inc(input_tokens)
    tokens_consumed_total.labels(pool="output", plan=plan).inc(output_tokens)


def track_consume_rejected(reason: str) -> None:
    consume_rejected_total.labels(reason=reason).inc()


def track_cycle_reset(trigger: str) -> None:
    cycle_resets_total.labels(trigger=trigger).inc()


def track_sync(outcome: str, case: str = "none") -> None:
    """
    Track a reconciliation attempt.

    Args:
        outcome: success, provider_error, not_found, unknown_product
        case: Classification case name (none when classification did not run)
    """
    subscription_syncs_total.labels(outcome=outcome, case=case).inc()


def track_webhook_delivery(outcome: str) -> None:
    webhook_deliveries_total.labels(outcome=outcome).inc()


def track_provider_call(operation: str, success: bool, duration_seconds: float) -> None:
    """Track one payment provider call."""
    provider_call_duration_seconds.labels(
        operation=operation,
        success="true" if success else "false",
    ).observe(duration_seconds)


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
