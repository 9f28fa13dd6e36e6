"""
Value objects exchanged between the provider client, the reconciler and callers.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from subledger.models.subscriber import Subscriber


class ProviderCustomer(BaseModel):
    email: str | None = None


class ProviderSubscription(BaseModel):
    """
    Provider subscription record, normalized from the provider's wire format.

    ``raw`` keeps the provider's original object so callers can surface it
    unchanged.
    """

    subscription_id: str
    status: str = Field(description="Provider status (active, cancelled, pending, paused, ...)")
    product_id: str | None = None
    cancel_at_next_billing_date: bool = False
    next_billing_date: datetime | None = None
    customer: ProviderCustomer = Field(default_factory=ProviderCustomer)
    raw: dict[str, Any] = Field(default_factory=dict)


class CheckoutCustomer(BaseModel):
    """Subscriber identity sent to the provider's checkout."""

    subscriber_id: str
    email: str
    name: str | None = None


class CheckoutSession(BaseModel):
    checkout_url: str
    session_id: str


class SyncResult(BaseModel):
    """Result of a successful reconciliation."""

    subscriber: Subscriber
    provider_state: ProviderSubscription


class SubscriptionSnapshot(BaseModel):
    """Answer of a subscription status read."""

    subscription: dict[str, Any] | None = Field(
        default=None, description="Provider subscription object, unmodified"
    )
    synced: bool = False
    message: str
    is_premium: bool = False
    status: str | None = None
    next_billing_date: datetime | None = None
    cancel_at_billing_date: bool | None = None
    subscription_id: str | None = None


class CancellationReceipt(BaseModel):
    message: str
    next_billing_date: datetime | None = None


class CancellationRequest(BaseModel):
    """Summary sent to operators; the provider-side cancellation is manual."""

    subscriber_id: str
    email: str
    name: str | None = None
    subscription_id: str
    next_billing_date: datetime | None = None
    requested_at: datetime


class WebhookEvent(BaseModel):
    """
    Verified provider event.

    Identity fields are read from the event's data object. Depending on the
    event type the subscription and e-mail live in different places.
    """

    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict, description="event.data.object")

    @property
    def subscription_id(self) -> str | None:
        obj = self.payload
        subscription = obj.get("subscription")
        if isinstance(subscription, dict):
            return subscription.get("id")
        if subscription:
            return subscription
        if obj.get("object") == "subscription":
            return obj.get("id")
        return None

    @property
    def customer_email(self) -> str | None:
        obj = self.payload
        if obj.get("customer_email"):
            return obj["customer_email"]

        details = obj.get("customer_details") or {}
        if details.get("email"):
            return details["email"]

        customer = obj.get("customer")
        if isinstance(customer, dict) and customer.get("email"):
            return customer["email"]

        metadata = obj.get("metadata") or {}
        return metadata.get("customer_email") or None


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"  # no actionable identity in the payload
