"""
Pytest configuration and shared fixtures.

Provides:
- Frozen clock
- Test settings with a per-test SQLite database
- Plan catalog, ledger and reconciler wired to a mocked provider
- Factories for subscribers and provider subscription states
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from subledger.billing.ledger import QuotaLedger
from subledger.billing.plans import PlanCatalog
from subledger.billing.provider import StripeProviderClient
from subledger.billing.reconciler import SubscriptionReconciler
from subledger.config import (
    BillingConfig,
    Settings,
    StorageConfig,
    SweepConfig,
)
from subledger.models.billing import ProviderCustomer, ProviderSubscription
from subledger.models.subscriber import SubscriberCreate, SubscriberUpdate
from subledger.notifications.operator import OperatorNotifier
from subledger.storage.database import SubscriberDatabase
from subledger.utils.clock import Clock

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
ADMIN_KEY = "k3y-4f9c2b7e1d8a6c3f5e0b9d2a7c4e1f8b"


class FrozenClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings with Stripe configured, sweeps off and a temp database."""
    return Settings(
        billing=BillingConfig(
            stripe_api_key="sk_test_subledger",
            stripe_webhook_secret="whsec_test_subledger",
            price_id_lite="price_lite",
            price_id_pro="price_pro",
            frontend_url="https://app.subledger.test/",
        ),
        storage=StorageConfig(db_path=str(tmp_path / "subledger.db")),
        sweeps=SweepConfig(enabled=False),
        admin_api_key=ADMIN_KEY,
    )


@pytest.fixture
def catalog(test_settings: Settings) -> PlanCatalog:
    return PlanCatalog.from_config(test_settings.plans, test_settings.billing)


@pytest.fixture
def db(test_settings: Settings):
    database = SubscriberDatabase(test_settings.storage.db_path)
    asyncio.run(database.initialize())
    yield database
    database.close()


@pytest.fixture
def ledger(db: SubscriberDatabase, catalog: PlanCatalog, clock: FrozenClock) -> QuotaLedger:
    return QuotaLedger(db, catalog, clock)


@pytest.fixture
def provider() -> MagicMock:
    """Provider client mock; tests set fetch_subscription return values."""
    mock = MagicMock(spec=StripeProviderClient)
    mock.fetch_subscription = AsyncMock()
    mock.create_checkout_session = AsyncMock()
    return mock


@pytest.fixture
def notifier() -> MagicMock:
    mock = MagicMock(spec=OperatorNotifier)
    mock.notify_cancellation_request = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def reconciler(
    db: SubscriberDatabase,
    provider: MagicMock,
    catalog: PlanCatalog,
    test_settings: Settings,
    notifier: MagicMock,
    clock: FrozenClock,
) -> SubscriptionReconciler:
    return SubscriptionReconciler(
        db=db,
        provider=provider,
        catalog=catalog,
        config=test_settings.billing,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def make_subscriber(ledger: QuotaLedger, db: SubscriberDatabase):
    """
    Factory: open a FREE account, then apply any overrides.

    Usage:
        subscriber = await make_subscriber("sub-1", plan=Plan.PRO)
    """

    async def _make(
        subscriber_id: str = "sub-1", email: str | None = None, **overrides
    ):
        subscriber = await ledger.open_account(
            SubscriberCreate(
                subscriber_id=subscriber_id,
                email=email or f"{subscriber_id}@example.com",
                name=f"Subscriber {subscriber_id}",
            )
        )
        if overrides:
            subscriber = await db.update_subscriber(subscriber_id, SubscriberUpdate(**overrides))
        return subscriber

    return _make


@pytest.fixture
def provider_state():
    """Factory for normalized provider subscriptions."""

    def _state(
        status: str = "active",
        product_id: str | None = "price_lite",
        cancel: bool = False,
        next_billing: datetime | None = NOW + timedelta(days=30),
        email: str | None = "sub-1@example.com",
        subscription_id: str = "sub_stripe_1",
    ) -> ProviderSubscription:
        return ProviderSubscription(
            subscription_id=subscription_id,
            status=status,
            product_id=product_id,
            cancel_at_next_billing_date=cancel,
            next_billing_date=next_billing,
            customer=ProviderCustomer(email=email),
            raw={"id": subscription_id, "status": status},
        )

    return _state
