"""
Subscription reconciler.

Keeps each subscriber's plan, status and quota in step with the payment
provider, which owns the truth about subscriptions. Provider state is only
ever turned into a plan through ``classify``, and quota is only re-allocated
here when the classification is entitled to a paid plan.

Projection writes are whole-row: plan, status, dates, subscription ID and
(when it changes) the allocation go out in one statement, so concurrent
syncs of the same subscriber can only ever leave one complete projection.
"""

import logging
from datetime import timedelta
from typing import Any

from subledger.billing.classification import classify
from subledger.billing.ledger import allocation_fields, resolve_reset_date
from subledger.billing.plans import PlanCatalog
from subledger.billing.provider import (
    ProviderUnavailableError,
    StripeProviderClient,
    UnknownProductError,
)
from subledger.config import BillingConfig
from subledger.models.billing import (
    CancellationReceipt,
    CancellationRequest,
    CheckoutCustomer,
    CheckoutSession,
    ProviderSubscription,
    SubscriptionSnapshot,
    SyncResult,
    WebhookEvent,
    WebhookOutcome,
)
from subledger.models.subscriber import (
    Plan,
    Subscriber,
    SubscriberUpdate,
    SubscriptionStatus,
)
from subledger.notifications.operator import OperatorNotifier
from subledger.observability.metrics import track_sync, track_webhook_delivery
from subledger.storage.database import SubscriberDatabase
from subledger.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

CANCELLATION_MESSAGE = (
    "Cancellation request submitted. You will keep premium access until your next "
    "billing date. We will process your request within 24 hours."
)


class SubscriptionNotFoundError(Exception):
    """Subscriber has no paid subscription."""

    status_code = 404


class WebhookProcessingError(Exception):
    """
    Webhook could not be applied.

    The delivery ID has already been released, so the provider's retry of
    the same delivery is processed again.
    """

    status_code = 500

    def __init__(self, message: str, delivery_id: str):
        super().__init__(message)
        self.delivery_id = delivery_id


class SubscriptionReconciler:
    """
    Maps provider subscription state onto subscriber rows.

    Handles:
    - Checkout session creation
    - Sync (provider fetch + classification + projection write)
    - Status reads, self-healing when the billing date has passed
    - Cancellation requests (operator-actioned)
    - Webhook deliveries with persisted deduplication
    """

    def __init__(
        self,
        db: SubscriberDatabase,
        provider: StripeProviderClient,
        catalog: PlanCatalog,
        config: BillingConfig,
        notifier: OperatorNotifier | None = None,
        clock: Clock | None = None,
    ):
        self.db = db
        self.provider = provider
        self.catalog = catalog
        self.config = config
        self.notifier = notifier
        self.clock = clock or SystemClock()

    async def create_checkout_session(
        self, subscriber: Subscriber, selected_tier: str | None = None
    ) -> CheckoutSession:
        """
        Start a checkout for a paid tier.

        Args:
            subscriber: Subscriber buying the plan
            selected_tier: "lite" or "pro" (unknown or missing -> default tier)

        Raises:
            ProviderUnavailableError: Provider failure, with the provider's
                status code and error body unmodified
        """
        plan, product_id = self.catalog.product_for_tier(selected_tier)
        if product_id is None:
            raise ProviderUnavailableError(
                f"No provider product configured for plan {plan.value}",
                status_code=503,
            )

        return await self.provider.create_checkout_session(
            product_id,
            CheckoutCustomer(
                subscriber_id=subscriber.subscriber_id,
                email=subscriber.email,
                name=subscriber.name,
            ),
            self.config.return_url,
        )

    async def sync(self, subscription_id: str, email: str) -> SyncResult | None:
        """
        Re-fetch a subscription and overwrite the subscriber's projection.

        Returns:
            SyncResult, or None if the provider fetch failed, no subscriber
            has ``email``, or the product is unknown under strict mapping
        """
        try:
            provider_state = await self.provider.fetch_subscription(subscription_id)
        except ProviderUnavailableError as e:
            track_sync("provider_error")
            logger.error(
                "Subscription fetch failed",
                extra={
                    "subscription_id": subscription_id,
                    "status_code": e.status_code,
                    "error": str(e),
                },
            )
            return None

        subscriber = await self.db.get_subscriber_by_email(email)
        if subscriber is None:
            track_sync("not_found")
            logger.warning(
                "No subscriber for subscription e-mail",
                extra={"subscription_id": subscription_id},
            )
            return None

        now = self.clock.now()
        try:
            result = classify(
                provider_state, now, self.catalog, strict=self.config.strict_product_mapping
            )
        except UnknownProductError as e:
            track_sync("unknown_product")
            logger.error(
                "Sync rejected: unknown provider product",
                extra={"subscription_id": subscription_id, "product_id": e.product_id},
            )
            return None

        fields: dict[str, Any] = {
            "plan": result.plan,
            "subscription_status": result.status,
            "next_billing_date": provider_state.next_billing_date,
            "cancel_at_billing_date": provider_state.cancel_at_next_billing_date,
            "subscription_id": subscription_id,
        }

        if result.plan.is_paid and result.entitled:
            reset_date = resolve_reset_date(None, provider_state.next_billing_date, now)
            fields.update(allocation_fields(self.catalog.limits_for(result.plan), reset_date))
        elif result.plan is Plan.FREE:
            fields["subscription_id"] = None
            if subscriber.plan.is_paid:
                reset_date = resolve_reset_date(None, None, now)
                fields.update(allocation_fields(self.catalog.limits_for(Plan.FREE), reset_date))

        updated = await self.db.update_subscriber(
            subscriber.subscriber_id, SubscriberUpdate(**fields)
        )
        if updated is None:
            track_sync("not_found")
            return None

        track_sync("success", result.case.value)
        logger.info(
            "Subscription synced",
            extra={
                "subscriber_id": updated.subscriber_id,
                "subscription_id": subscription_id,
                "case": result.case.value,
                "previous_plan": subscriber.plan.value,
                "plan": result.plan.value,
                "status": result.status,
            },
        )
        return SyncResult(subscriber=updated, provider_state=provider_state)

    async def get_status(self, subscriber: Subscriber) -> SubscriptionSnapshot:
        """
        Current subscription status, always read fresh from the provider.

        If the billing date has passed, a sync runs first so the answer and
        the stored projection agree.

        Raises:
            ProviderUnavailableError: If the fresh fetch fails
        """
        if not subscriber.subscription_id:
            return SubscriptionSnapshot(
                message="No active subscription",
                status=subscriber.subscription_status,
            )

        if subscriber.next_billing_date and subscriber.next_billing_date <= self.clock.now():
            result = await self.sync(subscriber.subscription_id, subscriber.email)
            if result is not None:
                return self._snapshot(
                    result.provider_state,
                    result.subscriber,
                    synced=True,
                    message="Subscription synced with provider",
                )

        provider_state = await self.provider.fetch_subscription(subscriber.subscription_id)
        return self._snapshot(
            provider_state, subscriber, synced=False, message="Subscription retrieved"
        )

    @staticmethod
    def _snapshot(
        provider_state: ProviderSubscription,
        subscriber: Subscriber,
        synced: bool,
        message: str,
    ) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            subscription=provider_state.raw,
            synced=synced,
            message=message,
            is_premium=provider_state.status == "active",
            status=subscriber.subscription_status,
            next_billing_date=subscriber.next_billing_date,
            cancel_at_billing_date=subscriber.cancel_at_billing_date,
            subscription_id=provider_state.subscription_id,
        )

    async def request_cancellation(self, subscriber: Subscriber) -> CancellationReceipt:
        """
        Record a cancellation request and notify an operator.

        The provider's cancel API is not called; the operator cancels in the
        provider dashboard and the resulting webhook settles the projection.

        Raises:
            SubscriptionNotFoundError: If the subscriber has no paid subscription
        """
        if not subscriber.has_paid_subscription:
            raise SubscriptionNotFoundError("No active subscription found")

        next_billing_date = subscriber.next_billing_date
        try:
            provider_state = await self.provider.fetch_subscription(subscriber.subscription_id)
            next_billing_date = provider_state.next_billing_date or next_billing_date
        except ProviderUnavailableError as e:
            logger.warning(
                "Using stored billing date for cancellation request",
                extra={"subscriber_id": subscriber.subscriber_id, "error": str(e)},
            )

        await self.db.update_subscriber(
            subscriber.subscriber_id,
            SubscriberUpdate(subscription_status=SubscriptionStatus.CANCELLATION_REQUESTED.value),
        )

        request = CancellationRequest(
            subscriber_id=subscriber.subscriber_id,
            email=subscriber.email,
            name=subscriber.name,
            subscription_id=subscriber.subscription_id,
            next_billing_date=next_billing_date,
            requested_at=self.clock.now(),
        )
        if self.notifier is not None:
            try:
                await self.notifier.notify_cancellation_request(request)
            except Exception as e:
                logger.warning(
                    "Cancellation notification failed",
                    extra={"subscriber_id": subscriber.subscriber_id, "error": str(e)},
                )

        logger.info(
            "Cancellation requested",
            extra={
                "subscriber_id": subscriber.subscriber_id,
                "subscription_id": subscriber.subscription_id,
            },
        )
        return CancellationReceipt(message=CANCELLATION_MESSAGE, next_billing_date=next_billing_date)

    async def handle_webhook(self, event: WebhookEvent, delivery_id: str) -> WebhookOutcome:
        """
        Apply a verified provider event at most once per delivery ID.

        Returns:
            PROCESSED, DUPLICATE (delivery already claimed within the window),
            or IGNORED (event carries no subscription or e-mail)

        Raises:
            WebhookProcessingError: Sync failed; the claim was released
        """
        now = self.clock.now()
        expires_at = now + timedelta(hours=self.config.webhook_dedup_window_hours)

        claimed = await self.db.claim_webhook_delivery(
            delivery_id, event.event_type, now, expires_at
        )
        if not claimed:
            track_webhook_delivery("duplicate")
            logger.info(
                "Duplicate webhook delivery skipped",
                extra={"delivery_id": delivery_id, "event_type": event.event_type},
            )
            return WebhookOutcome.DUPLICATE

        subscription_id = event.subscription_id
        email = event.customer_email
        if not subscription_id or not email:
            track_webhook_delivery("ignored")
            logger.warning(
                "Webhook event without subscription identity",
                extra={
                    "delivery_id": delivery_id,
                    "event_type": event.event_type,
                    "has_subscription_id": bool(subscription_id),
                    "has_email": bool(email),
                },
            )
            return WebhookOutcome.IGNORED

        try:
            result = await self.sync(subscription_id, email)
        except Exception as e:
            await self.db.release_webhook_delivery(delivery_id)
            track_webhook_delivery("failed")
            logger.error(
                "Webhook processing failed",
                extra={"delivery_id": delivery_id, "event_type": event.event_type, "error": str(e)},
            )
            raise WebhookProcessingError(f"Webhook processing failed: {e}", delivery_id) from e

        if result is None:
            await self.db.release_webhook_delivery(delivery_id)
            track_webhook_delivery("failed")
            logger.error(
                "Webhook sync failed",
                extra={
                    "delivery_id": delivery_id,
                    "event_type": event.event_type,
                    "subscription_id": subscription_id,
                },
            )
            raise WebhookProcessingError("Subscription sync failed", delivery_id)

        track_webhook_delivery("processed")
        logger.info(
            "Webhook processed",
            extra={
                "delivery_id": delivery_id,
                "event_type": event.event_type,
                "subscriber_id": result.subscriber.subscriber_id,
            },
        )
        return WebhookOutcome.PROCESSED

    async def activate_from_redirect(self, subscription_id: str) -> SyncResult | None:
        """
        Sync right after the checkout success redirect.

        The webhook may still be in flight; this makes the upgrade visible
        immediately. Failures are logged and return None.
        """
        try:
            provider_state = await self.provider.fetch_subscription(subscription_id)
        except ProviderUnavailableError as e:
            logger.error(
                "Redirect activation fetch failed",
                extra={"subscription_id": subscription_id, "error": str(e)},
            )
            return None

        email = provider_state.customer.email
        if not email:
            logger.warning(
                "Subscription has no customer e-mail", extra={"subscription_id": subscription_id}
            )
            return None

        return await self.sync(subscription_id, email)

    async def manual_sync(self, subscription_id: str, email: str) -> dict[str, Any]:
        """
        Administrative sync.

        Raises:
            ProviderUnavailableError: If the sync failed
        """
        result = await self.sync(subscription_id, email)
        if result is None:
            raise ProviderUnavailableError("Failed to sync subscription")
        return {
            "message": "Subscription synced successfully",
            "subscription": result.provider_state.raw,
        }
