"""Data models for subscribers, quota status and provider state."""

from subledger.models.billing import (
    CancellationReceipt,
    CancellationRequest,
    CheckoutCustomer,
    CheckoutSession,
    ProviderCustomer,
    ProviderSubscription,
    SubscriptionSnapshot,
    SyncResult,
    WebhookEvent,
    WebhookOutcome,
)
from subledger.models.subscriber import (
    Plan,
    Subscriber,
    SubscriberCreate,
    SubscriberUpdate,
    SubscriptionStatus,
)
from subledger.models.usage import (
    GenerationStatus,
    SweepResult,
    TokenStatus,
    TokenUsageAnalytics,
    TokenUsageCreate,
    TokenUsageRecord,
    UsageEstimate,
)

__all__ = [
    "CancellationReceipt",
    "CancellationRequest",
    "CheckoutCustomer",
    "CheckoutSession",
    "GenerationStatus",
    "Plan",
    "ProviderCustomer",
    "ProviderSubscription",
    "Subscriber",
    "SubscriberCreate",
    "SubscriberUpdate",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "SweepResult",
    "SyncResult",
    "TokenStatus",
    "TokenUsageAnalytics",
    "TokenUsageCreate",
    "TokenUsageRecord",
    "UsageEstimate",
    "WebhookEvent",
    "WebhookOutcome",
]
