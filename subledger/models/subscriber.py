"""
Subscriber data models.

One subscriber row per account. The row is the internal projection of the
provider's subscription record plus the token budget for the current cycle.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class Plan(str, Enum):
    """Subscription plan; determines quota size."""

    FREE = "FREE"  # 150K input / 10K output tokens
    LITE = "LITE"  # 3M input / 200K output tokens
    PRO = "PRO"  # 9M input / 600K output tokens

    @property
    def is_paid(self) -> bool:
        return self is not Plan.FREE


class SubscriptionStatus(str, Enum):
    """
    Known values of the subscription status mirror.

    The stored column is free-form: unrecognized provider statuses
    (pending, paused, past_due, ...) are mirrored verbatim.
    """

    FREE = "free"
    ACTIVE = "active"
    CANCELLING = "cancelling"
    EXPIRED = "expired"
    CANCELLATION_REQUESTED = "cancellation_requested"


class Subscriber(BaseModel):
    """
    Account holding a token budget.

    Balances are non-negative at all times; the store enforces this with
    CHECK constraints and conditional decrements.
    """

    # Identity
    subscriber_id: str = Field(..., min_length=1, max_length=128)
    email: str = Field(..., description="Account e-mail, also the provider customer e-mail")
    name: str | None = Field(default=None, max_length=200)

    # Plan and budget
    plan: Plan = Field(default=Plan.FREE)
    input_tokens_remaining: int = Field(default=0, ge=0)
    output_tokens_remaining: int = Field(default=0, ge=0)
    token_reset_date: datetime | None = Field(default=None)

    # Secondary unit quota (videos), reset on the same cadence
    videos_processed_this_month: int = Field(default=0, ge=0)
    video_reset_date: datetime | None = Field(default=None)

    # Provider projection
    subscription_id: str | None = Field(default=None)
    subscription_status: str = Field(default=SubscriptionStatus.FREE.value)
    next_billing_date: datetime | None = Field(default=None)
    cancel_at_billing_date: bool = Field(default=False)

    # Metadata
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: str) -> str:
        """Basic email validation."""
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email format")
        return v.lower()

    @property
    def has_paid_subscription(self) -> bool:
        return self.plan.is_paid and self.subscription_id is not None


class SubscriberCreate(BaseModel):
    """Schema for creating a new subscriber (always starts on FREE)."""

    subscriber_id: str = Field(..., min_length=1, max_length=128)
    email: str = Field(..., description="Account e-mail")
    name: str | None = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: str) -> str:
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email format")
        return v.lower()


class SubscriberUpdate(BaseModel):
    """
    Partial update of a subscriber row.

    Only fields explicitly set are written, so ``subscription_id=None`` clears
    the column while an omitted field is left untouched.
    """

    plan: Plan | None = None
    input_tokens_remaining: int | None = Field(default=None, ge=0)
    output_tokens_remaining: int | None = Field(default=None, ge=0)
    token_reset_date: datetime | None = None
    videos_processed_this_month: int | None = Field(default=None, ge=0)
    video_reset_date: datetime | None = None
    subscription_id: str | None = None
    subscription_status: str | None = None
    next_billing_date: datetime | None = None
    cancel_at_billing_date: bool | None = None
    name: str | None = None
