"""
Tests for Stripe webhook verification and intake.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe

from subledger.billing.reconciler import SubscriptionReconciler
from subledger.billing.webhooks import WebhookIntake, WebhookVerificationError
from subledger.config import BillingConfig
from subledger.models.billing import WebhookOutcome
from subledger.observability.logging import RequestContext, get_delivery_id, get_request_id

PAYLOAD = b'{"id": "evt_1"}'


def _event(object_: dict, event_type: str = "customer.subscription.updated") -> dict:
    return {"id": "evt_1", "type": event_type, "data": {"object": object_}}


@pytest.fixture
def mock_reconciler() -> MagicMock:
    mock = MagicMock(spec=SubscriptionReconciler)
    mock.handle_webhook = AsyncMock(return_value=WebhookOutcome.PROCESSED)
    return mock


@pytest.fixture
def intake(test_settings, mock_reconciler) -> WebhookIntake:
    return WebhookIntake(test_settings.billing, mock_reconciler)


@pytest.mark.asyncio
async def test_receive_hands_event_to_reconciler(intake, mock_reconciler):
    event = _event({"object": "subscription", "id": "sub_1", "customer": "cus_1"})

    with patch("stripe.Webhook.construct_event", return_value=event) as construct:
        response = await intake.receive(PAYLOAD, "t=1,v1=abc")

    construct.assert_called_once_with(PAYLOAD, "t=1,v1=abc", "whsec_test_subledger")
    assert response == {
        "status": "processed",
        "event_type": "customer.subscription.updated",
        "delivery_id": "evt_1",
    }

    webhook_event, delivery_id = mock_reconciler.handle_webhook.await_args.args
    assert delivery_id == "evt_1"
    assert webhook_event.subscription_id == "sub_1"


@pytest.mark.asyncio
async def test_receive_reports_duplicate(intake, mock_reconciler):
    mock_reconciler.handle_webhook.return_value = WebhookOutcome.DUPLICATE

    with patch("stripe.Webhook.construct_event", return_value=_event({})):
        response = await intake.receive(PAYLOAD, "t=1,v1=abc")

    assert response["status"] == "duplicate"


@pytest.mark.asyncio
async def test_receive_binds_delivery_id_and_keeps_request_id(intake, mock_reconciler):
    seen = {}

    async def record_context(webhook_event, delivery_id):
        seen["delivery_id"] = get_delivery_id()
        seen["request_id"] = get_request_id()
        return WebhookOutcome.PROCESSED

    mock_reconciler.handle_webhook.side_effect = record_context

    with RequestContext(request_id="req_webhook"):
        with patch("stripe.Webhook.construct_event", return_value=_event({})):
            await intake.receive(PAYLOAD, "t=1,v1=abc")

        assert get_delivery_id() is None

    assert seen == {"delivery_id": "evt_1", "request_id": "req_webhook"}


@pytest.mark.asyncio
async def test_invalid_signature_rejected(intake, mock_reconciler):
    error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")

    with patch("stripe.Webhook.construct_event", side_effect=error):
        with pytest.raises(WebhookVerificationError, match="Invalid signature"):
            await intake.receive(PAYLOAD, "t=1,v1=bad")

    mock_reconciler.handle_webhook.assert_not_awaited()


@pytest.mark.asyncio
async def test_invalid_payload_rejected(intake):
    with patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json")):
        with pytest.raises(WebhookVerificationError, match="Invalid payload"):
            await intake.receive(b"not json", "t=1,v1=abc")


def test_missing_secret_rejected(mock_reconciler):
    intake = WebhookIntake(BillingConfig(stripe_webhook_secret=""), mock_reconciler)

    with pytest.raises(WebhookVerificationError, match="not configured"):
        intake.verify(PAYLOAD, "t=1,v1=abc")


# ============================================================================
# EVENT IDENTITY EXTRACTION
# ============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "object_,subscription_id,email",
    [
        (
            {"object": "checkout.session", "subscription": "sub_1", "customer_email": "a@x.io"},
            "sub_1",
            "a@x.io",
        ),
        (
            {
                "object": "checkout.session",
                "subscription": "sub_2",
                "customer_details": {"email": "b@x.io"},
            },
            "sub_2",
            "b@x.io",
        ),
        (
            {"object": "invoice", "subscription": {"id": "sub_3"}, "customer_email": "c@x.io"},
            "sub_3",
            "c@x.io",
        ),
        (
            {"object": "subscription", "id": "sub_4", "metadata": {"customer_email": "d@x.io"}},
            "sub_4",
            "d@x.io",
        ),
        ({"object": "invoice", "id": "in_1"}, None, None),
    ],
)
async def test_event_identity(intake, mock_reconciler, object_, subscription_id, email):
    with patch("stripe.Webhook.construct_event", return_value=_event(object_)):
        await intake.receive(PAYLOAD, "t=1,v1=abc")

    webhook_event = mock_reconciler.handle_webhook.await_args.args[0]
    assert webhook_event.subscription_id == subscription_id
    assert webhook_event.customer_email == email
