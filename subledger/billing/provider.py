"""
Stripe provider client.

Fetches subscriptions and creates checkout sessions, normalizing Stripe's
objects into ``ProviderSubscription`` / ``CheckoutSession``.

Every call:
- Runs the blocking SDK call in a worker thread
- Passes through the provider circuit breaker
- Is bounded by the configured HTTP timeout, with SDK retries disabled
"""

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any

import stripe
from pybreaker import CircuitBreaker, CircuitBreakerError

from subledger.config import BillingConfig
from subledger.models.billing import (
    CheckoutCustomer,
    CheckoutSession,
    ProviderCustomer,
    ProviderSubscription,
)
from subledger.observability.metrics import track_provider_call
from subledger.resilience.circuit_breakers import get_stripe_breaker

logger = logging.getLogger(__name__)


class ProviderUnavailableError(Exception):
    """
    Provider call failed or returned a non-success status.

    Attributes:
        status_code: Provider HTTP status (502 when none, 503 when the
            circuit is open or billing is not configured)
        payload: Provider error body, unmodified
    """

    def __init__(self, message: str, status_code: int | None = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code or 502
        self.payload = payload


class UnknownProductError(ProviderUnavailableError):
    """Provider product ID has no configured plan."""

    def __init__(self, product_id: str | None):
        super().__init__(
            f"Unknown provider product: {product_id}",
            status_code=502,
            payload={"product_id": product_id},
        )
        self.product_id = product_id


def as_plain_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromtimestamp(int(value), UTC)


def normalize_subscription(data: dict[str, Any]) -> ProviderSubscription:
    """
    Normalize a Stripe Subscription object.

    - ``canceled`` becomes ``cancelled``
    - product ID is the first item's price ID
    - next billing date is ``current_period_end`` (top level, or the first
      item's on newer API versions)
    - customer e-mail comes from the expanded customer, else
      ``metadata.customer_email``
    """
    items = (data.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}

    period_end = data.get("current_period_end")
    if period_end is None:
        period_end = first_item.get("current_period_end")

    status = data.get("status") or "unknown"
    if status == "canceled":
        status = "cancelled"

    email = None
    customer = data.get("customer")
    if isinstance(customer, dict):
        email = customer.get("email")
    if not email:
        email = (data.get("metadata") or {}).get("customer_email")

    return ProviderSubscription(
        subscription_id=data["id"],
        status=status,
        product_id=price.get("id") if isinstance(price, dict) else price,
        cancel_at_next_billing_date=bool(data.get("cancel_at_period_end")),
        next_billing_date=_timestamp(period_end),
        customer=ProviderCustomer(email=email),
        raw=data,
    )


class StripeProviderClient:
    """
    Payment provider client backed by the Stripe SDK.
    """

    def __init__(self, config: BillingConfig, breaker: CircuitBreaker | None = None):
        """
        Initialize Stripe client.

        Args:
            config: Billing configuration
            breaker: Circuit breaker (defaults to the shared Stripe breaker)
        """
        self.config = config
        self.breaker = breaker or get_stripe_breaker()

        if config.stripe_api_key:
            stripe.api_key = config.stripe_api_key
            stripe.max_network_retries = 0
            stripe.default_http_client = stripe.RequestsClient(
                timeout=config.provider_timeout_seconds
            )
            logger.info("Stripe provider client initialized")
        else:
            logger.warning("Stripe API key not configured - billing disabled")

    @property
    def is_enabled(self) -> bool:
        return self.config.is_configured

    async def _call(self, operation: str, func, *args, **kwargs) -> Any:
        if not self.is_enabled:
            raise ProviderUnavailableError("Payment provider not configured", status_code=503)

        start = time.perf_counter()
        success = False
        try:
            result = await asyncio.to_thread(self.breaker.call, func, *args, **kwargs)
            success = True
            return result
        except CircuitBreakerError as e:
            logger.warning(
                "Stripe circuit breaker OPEN - failing fast",
                extra={"operation": operation},
            )
            raise ProviderUnavailableError(
                "Payment provider unavailable (circuit breaker open)", status_code=503
            ) from e
        except stripe.StripeError as e:
            logger.error(
                "Stripe call failed",
                extra={
                    "operation": operation,
                    "http_status": e.http_status,
                    "error": str(e),
                },
            )
            raise ProviderUnavailableError(
                e.user_message or str(e),
                status_code=e.http_status,
                payload=e.json_body,
            ) from e
        finally:
            track_provider_call(operation, success, time.perf_counter() - start)

    async def fetch_subscription(self, subscription_id: str) -> ProviderSubscription:
        """
        Fetch and normalize a subscription.

        Raises:
            ProviderUnavailableError: On any provider failure
        """
        subscription = await self._call(
            "fetch_subscription",
            stripe.Subscription.retrieve,
            subscription_id,
            expand=["customer"],
        )
        return normalize_subscription(as_plain_dict(subscription))

    async def create_checkout_session(
        self, product_id: str, customer: CheckoutCustomer, return_url: str
    ) -> CheckoutSession:
        """
        Create a subscription-mode checkout session.

        Args:
            product_id: Stripe price ID of the tier being bought
            customer: Subscriber identity
            return_url: Where the provider redirects after payment

        Returns:
            CheckoutSession with the hosted checkout URL

        Raises:
            ProviderUnavailableError: With the provider's status and error body
        """
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            mode="subscription",
            line_items=[{"price": product_id, "quantity": 1}],
            customer_email=customer.email,
            client_reference_id=customer.subscriber_id,
            success_url=return_url,
            subscription_data={
                "metadata": {
                    "subscriber_id": customer.subscriber_id,
                    "customer_email": customer.email,
                }
            },
        )

        logger.info(
            "Created checkout session",
            extra={"subscriber_id": customer.subscriber_id, "session_id": session["id"]},
        )
        return CheckoutSession(checkout_url=session["url"], session_id=session["id"])
