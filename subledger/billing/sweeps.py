"""
Periodic background sweeps.

Two independent loops:
- Cycle reset: ``QuotaLedger.reset_all_due_cycles`` for paid subscribers
- Dedup purge: delete expired webhook delivery claims

Each iteration logs and survives its own failure; one loop never stops the
other.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from subledger.billing.ledger import QuotaLedger
from subledger.config import SweepConfig
from subledger.storage.database import SubscriberDatabase
from subledger.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class BillingSweeper:
    """
    Runs the billing sweeps as asyncio tasks.

    Usage:
        sweeper = BillingSweeper(ledger, db, settings.sweeps)
        sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        db: SubscriberDatabase,
        config: SweepConfig,
        clock: Clock | None = None,
    ):
        self.ledger = ledger
        self.db = db
        self.config = config
        self.clock = clock or SystemClock()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def reset_due_cycles(self) -> int:
        result = await self.ledger.reset_all_due_cycles()
        return result.count

    async def purge_deliveries(self) -> int:
        purged = await self.db.purge_expired_webhook_deliveries(self.clock.now())
        if purged:
            logger.info("Purged expired webhook deliveries", extra={"purged": purged})
        return purged

    async def run_once(self, purge: bool = True) -> dict[str, int]:
        """
        Run both sweeps once.

        Args:
            purge: Also purge expired webhook delivery claims

        Returns:
            dict: reset and failed (subscribers), purged (delivery claims removed)
        """
        result = await self.ledger.reset_all_due_cycles()
        purged = await self.purge_deliveries() if purge else 0
        return {"reset": result.count, "failed": len(result.failed), "purged": purged}

    def start(self) -> None:
        """Start both loops (no-op if already running)."""
        if self.running:
            return

        self._tasks = [
            asyncio.create_task(
                self._loop("cycle_reset", self.config.cycle_reset_interval_seconds, self.reset_due_cycles),
                name="subledger-cycle-reset",
            ),
            asyncio.create_task(
                self._loop("dedup_purge", self.config.dedup_purge_interval_seconds, self.purge_deliveries),
                name="subledger-dedup-purge",
            ),
        ]
        logger.info(
            "Billing sweeps started",
            extra={
                "cycle_reset_interval_seconds": self.config.cycle_reset_interval_seconds,
                "dedup_purge_interval_seconds": self.config.dedup_purge_interval_seconds,
            },
        )

    async def stop(self) -> None:
        """Cancel both loops and wait for them to finish."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Billing sweeps stopped")

    async def _loop(
        self, name: str, interval_seconds: float, sweep: Callable[[], Awaitable[int]]
    ) -> None:
        while True:
            try:
                await sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Sweep {name} failed: {e}", exc_info=True, extra={"sweep": name})
            await asyncio.sleep(interval_seconds)
