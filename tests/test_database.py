"""
Tests for the SQLite subscriber store.
"""

import sqlite3
from datetime import timedelta

import pytest

from subledger.models.subscriber import Plan, SubscriberCreate, SubscriberUpdate
from subledger.storage.database import SubscriberDatabase
from tests.conftest import NOW


async def _create(db: SubscriberDatabase, subscriber_id: str = "sub-1", email: str | None = None):
    return await db.create_subscriber(
        SubscriberCreate(subscriber_id=subscriber_id, email=email or f"{subscriber_id}@example.com"),
        input_tokens=100,
        output_tokens=10,
        reset_date=NOW + timedelta(days=30),
    )


@pytest.mark.asyncio
async def test_create_and_get(db):
    created = await _create(db, email="Mixed@Example.com")

    fetched = await db.get_subscriber("sub-1")
    assert fetched.email == "mixed@example.com"
    assert fetched.plan is Plan.FREE
    assert fetched.token_reset_date == NOW + timedelta(days=30)
    assert fetched.subscription_status == "free"
    assert created.subscriber_id == fetched.subscriber_id

    assert (await db.get_subscriber_by_email("MIXED@example.com")).subscriber_id == "sub-1"


@pytest.mark.asyncio
async def test_create_duplicate_id_or_email(db):
    await _create(db)

    assert await _create(db) is None
    assert await _create(db, subscriber_id="sub-2", email="sub-1@example.com") is None


@pytest.mark.asyncio
async def test_update_writes_only_set_fields(db):
    await _create(db)

    updated = await db.update_subscriber(
        "sub-1", SubscriberUpdate(subscription_status="active", subscription_id="sub_stripe_1")
    )
    assert updated.subscription_id == "sub_stripe_1"
    assert updated.input_tokens_remaining == 100

    cleared = await db.update_subscriber("sub-1", SubscriberUpdate(subscription_id=None))
    assert cleared.subscription_id is None
    assert cleared.subscription_status == "active"


@pytest.mark.asyncio
async def test_reset_allocation_requires_plan_and_due_cycle(db):
    await _create(db)
    await db.update_subscriber(
        "sub-1",
        SubscriberUpdate(plan=Plan.LITE, token_reset_date=NOW - timedelta(hours=1)),
    )
    allocation = SubscriberUpdate(
        input_tokens_remaining=3_000_000, token_reset_date=NOW + timedelta(days=30)
    )

    assert await db.reset_allocation("sub-1", Plan.PRO, allocation, due_at=NOW) is None

    reset = await db.reset_allocation("sub-1", Plan.LITE, allocation, due_at=NOW)
    assert reset.input_tokens_remaining == 3_000_000

    await db.decrement_if_sufficient("sub-1", 1_000, 0)
    assert await db.reset_allocation("sub-1", Plan.LITE, allocation, due_at=NOW) is None
    assert (await db.get_subscriber("sub-1")).input_tokens_remaining == 2_999_000

    unconditional = await db.reset_allocation("sub-1", Plan.LITE, allocation)
    assert unconditional.input_tokens_remaining == 3_000_000


@pytest.mark.asyncio
async def test_update_missing_subscriber(db):
    assert await db.update_subscriber("ghost", SubscriberUpdate(plan=Plan.PRO)) is None


@pytest.mark.asyncio
async def test_decrement_if_sufficient(db):
    await _create(db)

    ok, after = await db.decrement_if_sufficient("sub-1", 60, 10)
    assert ok is True
    assert (after.input_tokens_remaining, after.output_tokens_remaining) == (40, 0)

    ok, after = await db.decrement_if_sufficient("sub-1", 1, 0)
    assert ok is True

    ok, after = await db.decrement_if_sufficient("sub-1", 0, 1)
    assert ok is False
    assert (after.input_tokens_remaining, after.output_tokens_remaining) == (39, 0)


@pytest.mark.asyncio
async def test_decrement_missing_subscriber(db):
    assert await db.decrement_if_sufficient("ghost", 1, 1) == (False, None)


@pytest.mark.asyncio
async def test_check_constraint_blocks_negative_balance(db):
    await _create(db)
    conn = db._get_connection()

    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            "UPDATE subscribers SET input_tokens_remaining = -1 WHERE subscriber_id = 'sub-1'"
        )
    conn.rollback()


@pytest.mark.asyncio
async def test_increment_units_if_available(db):
    await _create(db)

    ok, after = await db.increment_units_if_available("sub-1", 2, unit_limit=3)
    assert ok is True
    assert after.videos_processed_this_month == 2

    ok, after = await db.increment_units_if_available("sub-1", 2, unit_limit=3)
    assert ok is False
    assert after.videos_processed_this_month == 2


@pytest.mark.asyncio
async def test_find_due_filters_plan_and_date(db):
    for subscriber_id, plan, offset in [
        ("lite-due", Plan.LITE, -1),
        ("pro-due", Plan.PRO, -2),
        ("pro-later", Plan.PRO, 1),
        ("free-due", Plan.FREE, -1),
    ]:
        await _create(db, subscriber_id)
        await db.update_subscriber(
            subscriber_id,
            SubscriberUpdate(plan=plan, token_reset_date=NOW + timedelta(days=offset)),
        )

    due = await db.find_due({Plan.LITE, Plan.PRO}, NOW)

    assert [s.subscriber_id for s in due] == ["pro-due", "lite-due"]
    assert await db.find_due(set(), NOW) == []


@pytest.mark.asyncio
async def test_find_due_includes_exact_boundary(db):
    await _create(db)
    await db.update_subscriber("sub-1", SubscriberUpdate(plan=Plan.LITE, token_reset_date=NOW))

    assert len(await db.find_due({Plan.LITE}, NOW)) == 1


@pytest.mark.asyncio
async def test_claim_webhook_delivery(db):
    expires = NOW + timedelta(hours=24)

    assert await db.claim_webhook_delivery("evt_1", "x", NOW, expires) is True
    assert await db.claim_webhook_delivery("evt_1", "x", NOW, expires) is False
    assert await db.claim_webhook_delivery("evt_1", "x", expires, expires + timedelta(hours=24)) is True


@pytest.mark.asyncio
async def test_initialize_is_idempotent(test_settings, db):
    await _create(db)

    again = SubscriberDatabase(test_settings.storage.db_path)
    await again.initialize()
    await again.initialize()
    try:
        assert (await again.get_subscriber("sub-1")) is not None
    finally:
        again.close()
