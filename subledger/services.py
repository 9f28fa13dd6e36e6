"""
Service wiring.

Builds the billing components from ``Settings`` once per process. The API
lifespan and the sweep script share this so both run the same graph.
"""

import logging
from dataclasses import dataclass

from subledger.billing.ledger import QuotaLedger
from subledger.billing.plans import PlanCatalog
from subledger.billing.provider import StripeProviderClient
from subledger.billing.reconciler import SubscriptionReconciler
from subledger.billing.sweeps import BillingSweeper
from subledger.billing.usage_tracking import UsageTracker
from subledger.billing.webhooks import WebhookIntake
from subledger.config import Settings
from subledger.notifications.operator import OperatorNotifier
from subledger.storage.database import SubscriberDatabase
from subledger.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    settings: Settings
    db: SubscriberDatabase
    catalog: PlanCatalog
    ledger: QuotaLedger
    reconciler: SubscriptionReconciler
    intake: WebhookIntake
    usage: UsageTracker
    sweeper: BillingSweeper

    def close(self) -> None:
        self.db.close()


async def build_services(
    settings: Settings,
    provider: StripeProviderClient | None = None,
    notifier: OperatorNotifier | None = None,
    clock: Clock | None = None,
) -> BillingServices:
    """
    Build and initialize every billing component.

    Args:
        settings: Application settings
        provider: Provider client override (tests)
        notifier: Notifier override (tests)
        clock: Time source override (tests)
    """
    clock = clock or SystemClock()

    db = SubscriberDatabase(settings.storage.db_path)
    await db.initialize()

    catalog = PlanCatalog.from_config(settings.plans, settings.billing)
    ledger = QuotaLedger(db, catalog, clock)
    reconciler = SubscriptionReconciler(
        db=db,
        provider=provider or StripeProviderClient(settings.billing),
        catalog=catalog,
        config=settings.billing,
        notifier=notifier or OperatorNotifier(settings.notifications),
        clock=clock,
    )

    logger.info(
        "Billing services ready",
        extra={
            "db_path": settings.storage.db_path,
            "products": len(catalog.products),
            "provider_configured": settings.billing.is_configured,
        },
    )
    return BillingServices(
        settings=settings,
        db=db,
        catalog=catalog,
        ledger=ledger,
        reconciler=reconciler,
        intake=WebhookIntake(settings.billing, reconciler),
        usage=UsageTracker(db),
        sweeper=BillingSweeper(ledger, db, settings.sweeps, clock),
    )
