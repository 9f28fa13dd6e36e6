"""
Billing API endpoints.

Thin HTTP surface over the quota ledger and subscription reconciler.

Security:
- Administrative endpoints (allocate, reset, sweep, manual sync, account
  creation) require the X-Admin-Key header
- Subscriber identity arrives as a path parameter; authenticating the caller
  is the job of the gateway in front of this service
- Webhooks are authenticated by the provider signature
"""

import hmac
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from subledger.billing.ledger import estimate_usage
from subledger.models.billing import (
    CancellationReceipt,
    CheckoutSession,
    SubscriptionSnapshot,
)
from subledger.models.subscriber import Plan, Subscriber, SubscriberCreate
from subledger.models.usage import (
    GenerationStatus,
    SweepResult,
    TokenStatus,
    TokenUsageAnalytics,
    TokenUsageCreate,
    TokenUsageRecord,
    UsageEstimate,
)
from subledger.observability.logging import RequestContext, get_request_id, set_subscriber_id
from subledger.services import BillingServices
from subledger.storage.database import SubscriberNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["Billing"])

# Pre-flight defaults when the caller sends neither amounts nor text
DEFAULT_CHECK_INPUT_TOKENS = 1000
DEFAULT_CHECK_OUTPUT_TOKENS = 150


# Request / response models


class AvailabilityRequest(BaseModel):
    """Pre-flight check. ``text`` (when given) is estimated instead of the amounts."""

    input_tokens: int = Field(default=DEFAULT_CHECK_INPUT_TOKENS, ge=0)
    output_tokens: int = Field(default=DEFAULT_CHECK_OUTPUT_TOKENS, ge=0)
    text: str | None = None


class AvailabilityResponse(BaseModel):
    status: TokenStatus
    required_input: int
    required_output: int
    estimate: UsageEstimate | None = None


class ConsumeRequest(BaseModel):
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)


class UnitConsumeRequest(BaseModel):
    count: int = Field(default=1, ge=1)


class AllocateRequest(BaseModel):
    plan: Plan
    cycle_end: datetime | None = None


class CheckoutRequest(BaseModel):
    tier: str | None = Field(default=None, description="lite or pro (default: pro)")


class ManualSyncRequest(BaseModel):
    subscription_id: str
    email: str


class MarkSavedRequest(BaseModel):
    summary_id: str


class UsageTrackRequest(BaseModel):
    """Usage record body; identity fields come from the subscriber row."""

    video_id: str
    video_url: str
    video_title: str | None = None
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)
    model: str = "gpt-5-nano"
    operation: str = "summary_generation"
    summary_id: str | None = None
    is_saved: bool = False
    status: GenerationStatus = GenerationStatus.SUCCESS
    error_message: str | None = None


# Dependencies


def get_services(request: Request) -> BillingServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing services not initialized",
        )
    return services


async def verify_admin_key(
    x_admin_key: str = Header(...),
    services: BillingServices = Depends(get_services),
) -> bool:
    """Verify the X-Admin-Key header against the configured admin key."""
    admin_key = services.settings.admin_api_key
    if not admin_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured",
        )
    if not hmac.compare_digest(x_admin_key, admin_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )
    return True


async def load_subscriber(
    subscriber_id: str, services: BillingServices = Depends(get_services)
) -> Subscriber:
    set_subscriber_id(subscriber_id)
    subscriber = await services.db.get_subscriber(subscriber_id)
    if subscriber is None:
        raise SubscriberNotFoundError(subscriber_id)
    return subscriber


# Accounts


@router.post(
    "/subscribers",
    response_model=Subscriber,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_admin_key)],
)
async def create_subscriber(
    body: SubscriberCreate, services: BillingServices = Depends(get_services)
) -> Subscriber:
    """Create a FREE subscriber (admin only). 409 if ID or e-mail exists."""
    subscriber = await services.ledger.open_account(body)
    if subscriber is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Subscriber '{body.subscriber_id}' already exists",
        )
    return subscriber


# Quota


@router.get("/subscribers/{subscriber_id}/tokens", response_model=TokenStatus)
async def get_token_status(
    subscriber_id: str, services: BillingServices = Depends(get_services)
) -> TokenStatus:
    return await services.ledger.get_token_status(subscriber_id)


@router.post("/subscribers/{subscriber_id}/tokens/check", response_model=AvailabilityResponse)
async def check_availability(
    subscriber_id: str,
    body: AvailabilityRequest,
    services: BillingServices = Depends(get_services),
) -> AvailabilityResponse:
    """
    Pre-flight availability check.

    If ``text`` is given its estimate replaces the explicit amounts.
    """
    estimate = None
    needed_input, needed_output = body.input_tokens, body.output_tokens
    if body.text is not None:
        estimate = estimate_usage(body.text)
        needed_input, needed_output = estimate.estimated_input, estimate.estimated_output

    token_status = await services.ledger.check_availability(
        subscriber_id, needed_input, needed_output
    )
    return AvailabilityResponse(
        status=token_status,
        required_input=needed_input,
        required_output=needed_output,
        estimate=estimate,
    )


@router.post("/subscribers/{subscriber_id}/tokens/consume", response_model=TokenStatus)
async def consume_tokens(
    subscriber_id: str,
    body: ConsumeRequest,
    services: BillingServices = Depends(get_services),
) -> TokenStatus:
    """Deduct tokens. 402 with required/available amounts when insufficient."""
    with RequestContext(subscriber_id=subscriber_id, request_id=get_request_id()):
        return await services.ledger.consume(subscriber_id, body.input_tokens, body.output_tokens)


@router.post("/subscribers/{subscriber_id}/units/consume", response_model=TokenStatus)
async def consume_units(
    subscriber_id: str,
    body: UnitConsumeRequest,
    services: BillingServices = Depends(get_services),
) -> TokenStatus:
    with RequestContext(subscriber_id=subscriber_id, request_id=get_request_id()):
        return await services.ledger.consume_units(subscriber_id, body.count)


@router.post(
    "/subscribers/{subscriber_id}/allocate",
    response_model=Subscriber,
    dependencies=[Depends(verify_admin_key)],
)
async def allocate(
    subscriber_id: str,
    body: AllocateRequest,
    services: BillingServices = Depends(get_services),
) -> Subscriber:
    return await services.ledger.allocate(subscriber_id, body.plan, body.cycle_end)


@router.post(
    "/subscribers/{subscriber_id}/reset",
    response_model=Subscriber,
    dependencies=[Depends(verify_admin_key)],
)
async def reset_cycle(
    subscriber_id: str, services: BillingServices = Depends(get_services)
) -> Subscriber:
    return await services.ledger.reset_cycle(subscriber_id)


@router.post(
    "/cycles/reset",
    response_model=SweepResult,
    dependencies=[Depends(verify_admin_key)],
)
async def reset_all_due_cycles(services: BillingServices = Depends(get_services)) -> SweepResult:
    """Reset every paid subscriber whose cycle has ended (cron trigger)."""
    return await services.ledger.reset_all_due_cycles()


# Subscriptions


@router.post("/subscribers/{subscriber_id}/checkout", response_model=CheckoutSession)
async def create_checkout_session(
    body: CheckoutRequest,
    subscriber: Subscriber = Depends(load_subscriber),
    services: BillingServices = Depends(get_services),
) -> CheckoutSession:
    return await services.reconciler.create_checkout_session(subscriber, body.tier)


@router.get("/subscribers/{subscriber_id}/subscription", response_model=SubscriptionSnapshot)
async def get_subscription_status(
    subscriber: Subscriber = Depends(load_subscriber),
    services: BillingServices = Depends(get_services),
) -> SubscriptionSnapshot:
    return await services.reconciler.get_status(subscriber)


@router.post("/subscribers/{subscriber_id}/cancel", response_model=CancellationReceipt)
async def request_cancellation(
    subscriber: Subscriber = Depends(load_subscriber),
    services: BillingServices = Depends(get_services),
) -> CancellationReceipt:
    return await services.reconciler.request_cancellation(subscriber)


@router.post("/checkout/success")
async def checkout_success(
    subscription_id: str = Query(..., min_length=1),
    services: BillingServices = Depends(get_services),
) -> dict:
    """
    Checkout redirect landing: activate the subscription without waiting for the webhook.

    Unauthenticated, so the response only says whether activation happened.
    """
    result = await services.reconciler.activate_from_redirect(subscription_id)
    if result is None:
        return {"activated": False, "message": "Subscription will activate when the payment is confirmed"}
    return {"activated": True}


@router.post("/sync", dependencies=[Depends(verify_admin_key)])
async def manual_sync(
    body: ManualSyncRequest, services: BillingServices = Depends(get_services)
) -> dict:
    return await services.reconciler.manual_sync(body.subscription_id, body.email)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    services: BillingServices = Depends(get_services),
) -> dict:
    """
    Stripe webhook receiver.

    400 on verification failure, 500 when processing failed (Stripe retries).
    """
    payload = await request.body()
    return await services.intake.receive(payload, stripe_signature)


# Usage log


@router.post(
    "/subscribers/{subscriber_id}/usage",
    response_model=TokenUsageRecord | None,
    status_code=status.HTTP_201_CREATED,
)
async def track_usage(
    body: UsageTrackRequest,
    subscriber: Subscriber = Depends(load_subscriber),
    services: BillingServices = Depends(get_services),
) -> TokenUsageRecord | None:
    usage = TokenUsageCreate(
        subscriber_id=subscriber.subscriber_id,
        email=subscriber.email,
        **body.model_dump(),
    )
    return await services.usage.track_generation(usage)


@router.post("/subscribers/{subscriber_id}/usage/videos/{video_id}/saved")
async def mark_usage_saved(
    subscriber_id: str,
    video_id: str,
    body: MarkSavedRequest,
    services: BillingServices = Depends(get_services),
) -> dict:
    updated = await services.usage.mark_as_saved(subscriber_id, video_id, body.summary_id)
    return {"updated": updated}


@router.get("/subscribers/{subscriber_id}/usage/analytics", response_model=TokenUsageAnalytics)
async def usage_analytics(
    subscriber_id: str, services: BillingServices = Depends(get_services)
) -> TokenUsageAnalytics:
    return await services.usage.get_analytics(subscriber_id)


@router.get("/subscribers/{subscriber_id}/usage", response_model=list[TokenUsageRecord])
async def usage_history(
    subscriber_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    services: BillingServices = Depends(get_services),
) -> list[TokenUsageRecord]:
    return await services.usage.get_history(subscriber_id, limit=limit)


@router.get(
    "/subscribers/{subscriber_id}/usage/videos/{video_id}",
    response_model=list[TokenUsageRecord],
)
async def video_usage(
    subscriber_id: str,
    video_id: str,
    services: BillingServices = Depends(get_services),
) -> list[TokenUsageRecord]:
    return await services.usage.get_video_usage(subscriber_id, video_id)
