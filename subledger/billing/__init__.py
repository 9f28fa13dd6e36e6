"""
Billing core.

- plans: immutable plan -> limits table
- ledger: quota allocation, consumption and cycle reset
- classification: provider state -> plan and status
- provider: Stripe client
- reconciler: subscription sync, checkout, cancellation, webhooks
- webhooks: signature-verified webhook intake
- usage_tracking: per-generation token usage log
- sweeps: periodic background sweeps
"""

from subledger.billing.plans import PlanCatalog, PlanLimits
from subledger.billing.ledger import (
    InsufficientQuotaError,
    QuotaExhaustedError,
    QuotaLedger,
    UnitQuotaExceededError,
    estimate_usage,
    project_current_cycle,
)
from subledger.billing.provider import (
    ProviderUnavailableError,
    StripeProviderClient,
    UnknownProductError,
)
from subledger.billing.classification import Classification, ClassificationCase, classify
from subledger.billing.reconciler import (
    SubscriptionNotFoundError,
    SubscriptionReconciler,
    WebhookProcessingError,
)
from subledger.billing.webhooks import WebhookIntake, WebhookVerificationError
from subledger.billing.usage_tracking import UsageTracker
from subledger.billing.sweeps import BillingSweeper

__all__ = [
    "BillingSweeper",
    "Classification",
    "ClassificationCase",
    "InsufficientQuotaError",
    "PlanCatalog",
    "PlanLimits",
    "ProviderUnavailableError",
    "QuotaExhaustedError",
    "QuotaLedger",
    "StripeProviderClient",
    "SubscriptionNotFoundError",
    "SubscriptionReconciler",
    "UnitQuotaExceededError",
    "UnknownProductError",
    "UsageTracker",
    "WebhookIntake",
    "WebhookProcessingError",
    "WebhookVerificationError",
    "classify",
    "estimate_usage",
    "project_current_cycle",
]
