"""
Operator notifications for actions that need a human.

Cancellation requests are not sent to the provider's cancel API; an
operator completes them in the provider dashboard. This module delivers the
request summary to an operator webhook.

Delivery:
- JSON body signed with HMAC-SHA256 over "timestamp.body"
- Headers: X-Subledger-Signature ("v1=<hex>"), X-Subledger-Timestamp
- Fire-and-forget: failures are logged, never raised to the caller
"""

import hashlib
import hmac
import json
import logging
import time

import httpx

from subledger.config import NotificationConfig
from subledger.models.billing import CancellationRequest

logger = logging.getLogger(__name__)


class NotificationSigner:
    """Signs and verifies notification bodies with a shared secret."""

    SIGNATURE_VERSION = "v1"
    TIMESTAMP_TOLERANCE_SECONDS = 300

    def __init__(self, secret: str):
        if not secret or len(secret) < 32:
            raise ValueError("Notification secret must be at least 32 characters")
        self.secret = secret.encode("utf-8")

    def _digest(self, body: str, timestamp: int) -> str:
        return hmac.new(
            self.secret, f"{timestamp}.{body}".encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def sign(self, body: str, timestamp: int | None = None) -> tuple[str, int]:
        """
        Sign ``body``.

        Returns:
            tuple: (signature, timestamp)
        """
        if timestamp is None:
            timestamp = int(time.time())
        return f"{self.SIGNATURE_VERSION}={self._digest(body, timestamp)}", timestamp

    def verify(self, body: str, signature: str, timestamp: int) -> bool:
        """Constant-time check of a signature produced by ``sign``."""
        version, _, digest = signature.partition("=")
        if version != self.SIGNATURE_VERSION or not digest:
            return False
        if abs(int(time.time()) - timestamp) > self.TIMESTAMP_TOLERANCE_SECONDS:
            return False
        return hmac.compare_digest(digest, self._digest(body, timestamp))


def cancellation_message(request: CancellationRequest) -> str:
    """Human-readable summary for the operator."""
    next_billing = (
        request.next_billing_date.isoformat() if request.next_billing_date else "unknown"
    )
    return (
        "ACTION REQUIRED: cancel subscription in the payment provider dashboard.\n"
        f"Subscriber: {request.subscriber_id} ({request.name or 'N/A'})\n"
        f"Email: {request.email}\n"
        f"Subscription ID: {request.subscription_id}\n"
        f"Next billing date: {next_billing}\n"
        f"Requested at: {request.requested_at.isoformat()}"
    )


class OperatorNotifier:
    """
    Delivers operator notifications over a signed webhook.

    Without a configured URL the message is written to the log instead, so
    requests are never silently lost.
    """

    def __init__(self, config: NotificationConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client
        self._signer = (
            NotificationSigner(config.signing_secret) if config.signing_secret else None
        )

    async def notify_cancellation_request(self, request: CancellationRequest) -> bool:
        """
        Send a cancellation request summary.

        Returns:
            True if delivered (or logged when no URL is configured),
            False if delivery failed
        """
        message = cancellation_message(request)

        if not self.config.operator_webhook_url:
            logger.warning(message, extra={"subscriber_id": request.subscriber_id})
            return True

        body = json.dumps(
            {
                "type": "cancellation_requested",
                "message": message,
                "request": request.model_dump(mode="json"),
            }
        )
        headers = {"Content-Type": "application/json"}
        if self._signer:
            signature, timestamp = self._signer.sign(body)
            headers["X-Subledger-Signature"] = signature
            headers["X-Subledger-Timestamp"] = str(timestamp)

        try:
            if self._client is not None:
                response = await self._client.post(
                    self.config.operator_webhook_url,
                    content=body,
                    headers=headers,
                    timeout=self.config.timeout_seconds,
                )
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                    response = await client.post(
                        self.config.operator_webhook_url, content=body, headers=headers
                    )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "Operator notification failed",
                extra={"subscriber_id": request.subscriber_id, "error": str(e)},
            )
            return False

        logger.info(
            "Operator notified of cancellation request",
            extra={
                "subscriber_id": request.subscriber_id,
                "subscription_id": request.subscription_id,
            },
        )
        return True
