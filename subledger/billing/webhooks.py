"""
Stripe webhook intake.

Verifies the Stripe-Signature header, turns the event into a
``WebhookEvent`` and hands it to the reconciler with the event ID as the
delivery ID. Stripe reuses the event ID on every retry of a delivery.
"""

import logging
from typing import Any

import stripe

from subledger.billing.provider import as_plain_dict
from subledger.billing.reconciler import SubscriptionReconciler
from subledger.config import BillingConfig
from subledger.models.billing import WebhookEvent
from subledger.observability.logging import RequestContext, get_request_id

logger = logging.getLogger(__name__)


class WebhookVerificationError(Exception):
    """Webhook payload or signature rejected at intake."""

    status_code = 400


class WebhookIntake:
    """
    Entry point for provider webhook requests.
    """

    def __init__(self, config: BillingConfig, reconciler: SubscriptionReconciler):
        self.config = config
        self.reconciler = reconciler

    def verify(self, payload: bytes, signature: str) -> stripe.Event:
        """
        Verify and parse a webhook request body.

        Raises:
            WebhookVerificationError: Missing secret, bad payload or bad signature
        """
        if not self.config.stripe_webhook_secret:
            raise WebhookVerificationError("Webhook secret not configured")

        try:
            return stripe.Webhook.construct_event(
                payload, signature, self.config.stripe_webhook_secret
            )
        except ValueError as e:
            raise WebhookVerificationError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError("Invalid signature") from e

    async def receive(self, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify a webhook request and apply it.

        Returns:
            dict: status (processed, duplicate, ignored), event_type, delivery_id

        Raises:
            WebhookVerificationError: If verification fails
            WebhookProcessingError: If the reconciler could not apply the event
        """
        event = self.verify(payload, signature)
        delivery_id = event["id"]
        webhook_event = WebhookEvent(
            event_type=event["type"],
            payload=as_plain_dict(event["data"]["object"]),
        )

        with RequestContext(delivery_id=delivery_id, request_id=get_request_id()):
            logger.info(
                "Processing Stripe webhook event",
                extra={"event_type": webhook_event.event_type},
            )
            outcome = await self.reconciler.handle_webhook(webhook_event, delivery_id)

        return {
            "status": outcome.value,
            "event_type": webhook_event.event_type,
            "delivery_id": delivery_id,
        }
