"""
Tests for at-most-once webhook processing.

The dedup guard is persisted in the subscriber store, so replays are caught
across restarts and across instances sharing the database.
"""

import asyncio
from datetime import timedelta

import pytest

from subledger.billing.provider import ProviderUnavailableError
from subledger.billing.reconciler import SubscriptionReconciler, WebhookProcessingError
from subledger.models.billing import WebhookEvent, WebhookOutcome
from subledger.models.subscriber import Plan
from subledger.storage.database import SubscriberDatabase
from tests.conftest import NOW


def _subscription_event(email: str = "sub-1@example.com") -> WebhookEvent:
    return WebhookEvent(
        event_type="customer.subscription.updated",
        payload={
            "object": "subscription",
            "id": "sub_stripe_1",
            "customer": {"email": email},
        },
    )


@pytest.mark.asyncio
async def test_first_delivery_is_processed(reconciler, provider, provider_state, db, make_subscriber):
    await make_subscriber("sub-1")
    provider.fetch_subscription.return_value = provider_state()

    outcome = await reconciler.handle_webhook(_subscription_event(), "evt_1")

    assert outcome is WebhookOutcome.PROCESSED
    assert (await db.get_subscriber("sub-1")).plan is Plan.LITE


@pytest.mark.asyncio
async def test_upgrade_webhook_installs_paid_allocation(
    reconciler, ledger, provider, provider_state, make_subscriber
):
    await make_subscriber("sub-1")
    before = await ledger.get_token_status("sub-1")
    assert (before.plan, before.input_tokens_remaining) == (Plan.FREE, 150_000)
    provider.fetch_subscription.return_value = provider_state(product_id="price_lite")

    outcome = await reconciler.handle_webhook(_subscription_event(), "evt_upgrade")
    status = await ledger.get_token_status("sub-1")

    assert outcome is WebhookOutcome.PROCESSED
    assert status.plan is Plan.LITE
    assert status.input_tokens_remaining == 3_000_000
    assert status.output_tokens_remaining == 200_000
    assert status.token_reset_date == NOW + timedelta(days=30)
    assert status.units_used == 0
    assert status.sufficient is True


@pytest.mark.asyncio
async def test_replayed_delivery_is_applied_once(
    reconciler, provider, provider_state, make_subscriber
):
    await make_subscriber("sub-1")
    provider.fetch_subscription.return_value = provider_state()

    first = await reconciler.handle_webhook(_subscription_event(), "evt_1")
    second = await reconciler.handle_webhook(_subscription_event(), "evt_1")

    assert first is WebhookOutcome.PROCESSED
    assert second is WebhookOutcome.DUPLICATE
    assert provider.fetch_subscription.await_count == 1


@pytest.mark.asyncio
async def test_concurrent_duplicates_process_once(
    reconciler, provider, provider_state, make_subscriber
):
    await make_subscriber("sub-1")
    provider.fetch_subscription.return_value = provider_state()

    outcomes = await asyncio.gather(
        *(reconciler.handle_webhook(_subscription_event(), "evt_1") for _ in range(5))
    )

    assert outcomes.count(WebhookOutcome.PROCESSED) == 1
    assert outcomes.count(WebhookOutcome.DUPLICATE) == 4
    assert provider.fetch_subscription.await_count == 1


@pytest.mark.asyncio
async def test_failed_delivery_releases_claim(
    reconciler, provider, provider_state, db, make_subscriber
):
    await make_subscriber("sub-1")
    provider.fetch_subscription.side_effect = ProviderUnavailableError("down", status_code=503)

    with pytest.raises(WebhookProcessingError) as exc_info:
        await reconciler.handle_webhook(_subscription_event(), "evt_1")
    assert exc_info.value.delivery_id == "evt_1"

    # Provider retries the same delivery once it is back
    provider.fetch_subscription.side_effect = None
    provider.fetch_subscription.return_value = provider_state()

    outcome = await reconciler.handle_webhook(_subscription_event(), "evt_1")

    assert outcome is WebhookOutcome.PROCESSED
    assert (await db.get_subscriber("sub-1")).plan is Plan.LITE


@pytest.mark.asyncio
async def test_unexpected_error_releases_claim(reconciler, provider, make_subscriber):
    await make_subscriber("sub-1")
    provider.fetch_subscription.side_effect = RuntimeError("unexpected")

    with pytest.raises(WebhookProcessingError):
        await reconciler.handle_webhook(_subscription_event(), "evt_1")

    assert await reconciler.db.release_webhook_delivery("evt_1") is False


@pytest.mark.asyncio
async def test_event_without_identity_is_ignored(reconciler, provider):
    event = WebhookEvent(event_type="invoice.created", payload={"object": "invoice", "id": "in_1"})

    outcome = await reconciler.handle_webhook(event, "evt_2")

    assert outcome is WebhookOutcome.IGNORED
    provider.fetch_subscription.assert_not_awaited()
    assert await reconciler.handle_webhook(event, "evt_2") is WebhookOutcome.DUPLICATE


@pytest.mark.asyncio
async def test_delivery_reprocessed_after_window(
    reconciler, provider, provider_state, clock, make_subscriber
):
    await make_subscriber("sub-1")
    provider.fetch_subscription.return_value = provider_state()

    await reconciler.handle_webhook(_subscription_event(), "evt_1")
    clock.advance(hours=23)
    assert await reconciler.handle_webhook(_subscription_event(), "evt_1") is WebhookOutcome.DUPLICATE

    clock.advance(hours=2)
    assert await reconciler.handle_webhook(_subscription_event(), "evt_1") is WebhookOutcome.PROCESSED
    assert provider.fetch_subscription.await_count == 2


@pytest.mark.asyncio
async def test_dedup_survives_restart(
    reconciler, provider, provider_state, catalog, test_settings, clock, make_subscriber
):
    await make_subscriber("sub-1")
    provider.fetch_subscription.return_value = provider_state()
    await reconciler.handle_webhook(_subscription_event(), "evt_1")

    # Second instance on the same database file
    other_db = SubscriberDatabase(test_settings.storage.db_path)
    await other_db.initialize()
    try:
        other = SubscriptionReconciler(
            db=other_db,
            provider=provider,
            catalog=catalog,
            config=test_settings.billing,
            clock=clock,
        )
        outcome = await other.handle_webhook(_subscription_event(), "evt_1")
    finally:
        other_db.close()

    assert outcome is WebhookOutcome.DUPLICATE
    assert provider.fetch_subscription.await_count == 1


@pytest.mark.asyncio
async def test_purge_expired_deliveries(db):
    await db.claim_webhook_delivery("evt_old", "x", NOW, NOW + timedelta(hours=24))
    await db.claim_webhook_delivery("evt_new", "x", NOW, NOW + timedelta(hours=48))

    removed = await db.purge_expired_webhook_deliveries(NOW + timedelta(hours=25))

    assert removed == 1
    assert await db.release_webhook_delivery("evt_old") is False
    assert await db.release_webhook_delivery("evt_new") is True
