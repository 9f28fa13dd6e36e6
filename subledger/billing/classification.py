"""
Classification of provider subscription state into internal plan and status.

Every code path that turns provider state into a plan goes through
``classify``. Cases are evaluated in priority order:

1. ACTIVE          active, not cancelling          -> mapped plan, "active"
2. CANCELLING      active, cancel set, date ahead  -> mapped plan, "cancelling"
3. GRACE_ELAPSED   active, cancel set, date passed -> FREE, "expired"
4. CANCELLED       provider cancelled              -> FREE, "expired"
5. OTHER           anything else                   -> FREE, raw provider status
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from subledger.billing.plans import PlanCatalog
from subledger.billing.provider import UnknownProductError
from subledger.models.billing import ProviderSubscription
from subledger.models.subscriber import Plan, SubscriptionStatus

logger = logging.getLogger(__name__)

PROVIDER_ACTIVE = "active"
PROVIDER_CANCELLED = {"cancelled", "canceled"}


class ClassificationCase(str, Enum):
    ACTIVE = "active"
    CANCELLING = "cancelling"
    GRACE_ELAPSED = "grace_elapsed"
    CANCELLED = "cancelled"
    OTHER = "other"


@dataclass(frozen=True)
class Classification:
    """
    Result of ``classify``.

    ``entitled`` is True only for ACTIVE and CANCELLING, the cases where the
    subscriber keeps a paid allocation.
    """

    case: ClassificationCase
    plan: Plan
    status: str
    entitled: bool


def _mapped_plan(
    provider_state: ProviderSubscription, catalog: PlanCatalog, strict: bool
) -> Plan:
    plan = catalog.plan_for_product(provider_state.product_id)
    if plan is not None:
        return plan

    if strict:
        raise UnknownProductError(provider_state.product_id)

    fallback = catalog.lowest_paid_plan
    logger.warning(
        "Unknown provider product, defaulting to lowest paid plan",
        extra={
            "subscription_id": provider_state.subscription_id,
            "product_id": provider_state.product_id,
            "plan": fallback.value,
        },
    )
    return fallback


def classify(
    provider_state: ProviderSubscription,
    now: datetime,
    catalog: PlanCatalog,
    strict: bool = False,
) -> Classification:
    """
    Classify provider state at ``now`` into exactly one case.

    Args:
        provider_state: Normalized provider subscription
        now: Current time (UTC)
        catalog: Plan table with the product mapping
        strict: Raise on unknown product IDs instead of defaulting

    Raises:
        UnknownProductError: Unknown product under strict mapping
    """
    status = (provider_state.status or "").lower()

    if status == PROVIDER_ACTIVE:
        if not provider_state.cancel_at_next_billing_date:
            return Classification(
                ClassificationCase.ACTIVE,
                _mapped_plan(provider_state, catalog, strict),
                SubscriptionStatus.ACTIVE.value,
                entitled=True,
            )

        next_billing = provider_state.next_billing_date
        if next_billing is not None and next_billing > now:
            return Classification(
                ClassificationCase.CANCELLING,
                _mapped_plan(provider_state, catalog, strict),
                SubscriptionStatus.CANCELLING.value,
                entitled=True,
            )

        return Classification(
            ClassificationCase.GRACE_ELAPSED,
            Plan.FREE,
            SubscriptionStatus.EXPIRED.value,
            entitled=False,
        )

    if status in PROVIDER_CANCELLED:
        return Classification(
            ClassificationCase.CANCELLED,
            Plan.FREE,
            SubscriptionStatus.EXPIRED.value,
            entitled=False,
        )

    return Classification(
        ClassificationCase.OTHER,
        Plan.FREE,
        provider_state.status,
        entitled=False,
    )
