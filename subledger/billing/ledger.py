"""
Quota ledger: allocation, availability, consumption and cycle reset.

Invariants:
- Balances never go negative. Sufficiency is decided inside the store's
  conditional decrement, never from an earlier availability snapshot.
- Readers never trust a balance from an elapsed cycle. Reads evaluate
  ``project_current_cycle``; writes apply ``reset_cycle`` first.
- Balances are only ever set to a plan's full allocation (no top-ups).
"""

import logging
from datetime import datetime

from subledger.billing.plans import PAID_PLANS, PlanCatalog, PlanLimits
from subledger.models.subscriber import Plan, Subscriber, SubscriberCreate, SubscriberUpdate
from subledger.models.usage import SweepResult, TokenStatus, UsageEstimate
from subledger.observability.metrics import (
    track_consume_rejected,
    track_consumption,
    track_cycle_reset,
)
from subledger.storage.database import SubscriberDatabase, SubscriberNotFoundError
from subledger.utils.clock import Clock, SystemClock, add_calendar_month

logger = logging.getLogger(__name__)

# Output is estimated as this percentage of input
OUTPUT_ESTIMATE_PERCENT = 15
CHARS_PER_TOKEN = 4

# Conditional reset attempts when the plan changes between read and write
RESET_ATTEMPTS = 3


class InsufficientQuotaError(Exception):
    """
    Requested tokens exceed the remaining balance.

    Carries required and available amounts for both pools, plus whether the
    next reset would make the request fit.
    """

    status_code = 402

    def __init__(
        self,
        subscriber_id: str,
        required_input: int,
        required_output: int,
        available_input: int,
        available_output: int,
        reset_date: datetime | None,
        resolved_by_reset: bool,
    ):
        self.subscriber_id = subscriber_id
        self.required_input = required_input
        self.required_output = required_output
        self.available_input = available_input
        self.available_output = available_output
        self.reset_date = reset_date
        self.resolved_by_reset = resolved_by_reset
        super().__init__(self._message())

    def _message(self) -> str:
        message = (
            f"Insufficient tokens: need {self.required_input} input / "
            f"{self.required_output} output, have {self.available_input} input / "
            f"{self.available_output} output."
        )
        if not self.resolved_by_reset:
            message += " This request exceeds your plan's full allocation; upgrade to continue."
        elif self.reset_date:
            message += f" Tokens reset on {self.reset_date.date().isoformat()}."
        return message

    def to_dict(self) -> dict:
        return {
            "error": "insufficient_quota",
            "message": str(self),
            "required": {"input": self.required_input, "output": self.required_output},
            "available": {"input": self.available_input, "output": self.available_output},
            "reset_date": self.reset_date.isoformat() if self.reset_date else None,
            "resolved_by_reset": self.resolved_by_reset,
        }


class QuotaExhaustedError(InsufficientQuotaError):
    """Either pool is at zero; nothing can run until the reset."""

    def _message(self) -> str:
        message = "Token quota exhausted."
        if self.reset_date:
            message += f" Wait for your reset on {self.reset_date.date().isoformat()}"
            message += " or upgrade your plan."
        return message

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["error"] = "quota_exhausted"
        return body


class UnitQuotaExceededError(Exception):
    """Monthly unit counter is at the plan's limit."""

    status_code = 402

    def __init__(self, subscriber_id: str, used: int, limit: int, reset_date: datetime | None):
        self.subscriber_id = subscriber_id
        self.used = used
        self.limit = limit
        self.reset_date = reset_date
        super().__init__(f"Monthly limit reached: {used}/{limit} processed")

    def to_dict(self) -> dict:
        return {
            "error": "unit_quota_exceeded",
            "message": str(self),
            "used": self.used,
            "limit": self.limit,
            "reset_date": self.reset_date.isoformat() if self.reset_date else None,
        }


def estimate_usage(text: str) -> UsageEstimate:
    """
    Pre-flight token estimate for ``text``. Advisory only.

    Input is ceil(chars / 4), output is ceil(15% of input). Rounds up so
    checks never under-estimate.
    """
    estimated_input = (len(text or "") + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN
    estimated_output = (estimated_input * OUTPUT_ESTIMATE_PERCENT + 99) // 100
    return UsageEstimate(estimated_input=estimated_input, estimated_output=estimated_output)


def is_cycle_due(subscriber: Subscriber, now: datetime) -> bool:
    return subscriber.token_reset_date is not None and subscriber.token_reset_date <= now


def resolve_reset_date(
    cycle_end: datetime | None, next_billing_date: datetime | None, now: datetime
) -> datetime:
    """
    Effective end of the new cycle.

    Explicit cycle end wins, then a future next billing date, then one
    calendar month from now.
    """
    if cycle_end is not None:
        return cycle_end
    if next_billing_date is not None and next_billing_date > now:
        return next_billing_date
    return add_calendar_month(now)


def allocation_fields(limits: PlanLimits, reset_date: datetime) -> dict:
    """Row fields that install a full allocation of ``limits``."""
    return {
        "input_tokens_remaining": limits.input_limit,
        "output_tokens_remaining": limits.output_limit,
        "token_reset_date": reset_date,
        "videos_processed_this_month": 0,
        "video_reset_date": reset_date,
    }


def project_current_cycle(
    subscriber: Subscriber,
    limits: PlanLimits,
    now: datetime,
    needed_input: int = 0,
    needed_output: int = 0,
) -> TokenStatus:
    """
    Effective balances of ``subscriber`` at ``now`` without writing anything.

    If the stored cycle has elapsed the result is what ``reset_cycle`` would
    install: the plan's full allocation and a zeroed unit counter.
    """
    if is_cycle_due(subscriber, now):
        input_remaining = limits.input_limit
        output_remaining = limits.output_limit
        units_used = 0
        reset_date = resolve_reset_date(None, subscriber.next_billing_date, now)
    else:
        input_remaining = subscriber.input_tokens_remaining
        output_remaining = subscriber.output_tokens_remaining
        units_used = subscriber.videos_processed_this_month
        reset_date = subscriber.token_reset_date

    return TokenStatus(
        subscriber_id=subscriber.subscriber_id,
        plan=subscriber.plan,
        input_tokens_remaining=input_remaining,
        output_tokens_remaining=output_remaining,
        token_reset_date=reset_date,
        units_used=units_used,
        unit_limit=limits.unit_limit,
        sufficient=input_remaining >= needed_input and output_remaining >= needed_output,
        exhausted=input_remaining <= 0 or output_remaining <= 0,
    )


class QuotaLedger:
    """
    Allocation, consumption and reset primitives over the subscriber store.

    All writes are single-row statements: a conditional decrement or an
    overwrite of the allocation fields.
    """

    def __init__(
        self,
        db: SubscriberDatabase,
        catalog: PlanCatalog,
        clock: Clock | None = None,
    ):
        self.db = db
        self.catalog = catalog
        self.clock = clock or SystemClock()

    async def _require(self, subscriber_id: str) -> Subscriber:
        subscriber = await self.db.get_subscriber(subscriber_id)
        if subscriber is None:
            raise SubscriberNotFoundError(subscriber_id)
        return subscriber

    async def open_account(self, subscriber_create: SubscriberCreate) -> Subscriber | None:
        """
        Create a FREE subscriber holding the FREE allocation for one month.

        Returns:
            Subscriber, or None if the ID or e-mail is already taken
        """
        limits = self.catalog.limits_for(Plan.FREE)
        return await self.db.create_subscriber(
            subscriber_create,
            input_tokens=limits.input_limit,
            output_tokens=limits.output_limit,
            reset_date=add_calendar_month(self.clock.now()),
        )

    async def allocate(
        self, subscriber_id: str, plan: Plan, cycle_end: datetime | None = None
    ) -> Subscriber:
        """
        Overwrite balances with the full allocation of ``plan``.

        Args:
            subscriber_id: Subscriber to allocate
            plan: Plan whose limits are installed
            cycle_end: End of the new cycle (defaults to next billing date,
                then one calendar month from now)

        Returns:
            Updated subscriber

        Raises:
            SubscriberNotFoundError: If the subscriber does not exist
        """
        subscriber = await self._require(subscriber_id)
        reset_date = resolve_reset_date(cycle_end, subscriber.next_billing_date, self.clock.now())
        limits = self.catalog.limits_for(plan)

        updated = await self.db.update_subscriber(
            subscriber_id, SubscriberUpdate(**allocation_fields(limits, reset_date))
        )
        if updated is None:
            raise SubscriberNotFoundError(subscriber_id)

        logger.info(
            "Allocated quota",
            extra={
                "subscriber_id": subscriber_id,
                "plan": plan.value,
                "input_tokens": limits.input_limit,
                "output_tokens": limits.output_limit,
                "reset_date": reset_date.isoformat(),
            },
        )
        return updated

    async def check_availability(
        self, subscriber_id: str, needed_input: int, needed_output: int
    ) -> TokenStatus:
        """
        Whether the current cycle's balance covers the request.

        Evaluated against the projected cycle; does not write.
        """
        subscriber = await self._require(subscriber_id)
        return project_current_cycle(
            subscriber,
            self.catalog.limits_for(subscriber.plan),
            self.clock.now(),
            needed_input,
            needed_output,
        )

    async def get_token_status(self, subscriber_id: str) -> TokenStatus:
        return await self.check_availability(subscriber_id, 0, 0)

    async def consume(self, subscriber_id: str, used_input: int, used_output: int) -> TokenStatus:
        """
        Atomically deduct tokens from both pools.

        Applies a due cycle reset first, then a single decrement-if-sufficient
        statement. On failure nothing is deducted.

        Returns:
            Post-decrement token status

        Raises:
            ValueError: If an amount is negative
            SubscriberNotFoundError: If the subscriber does not exist
            QuotaExhaustedError: If either pool is at zero
            InsufficientQuotaError: If either pool is below the request
        """
        if used_input < 0 or used_output < 0:
            raise ValueError("Token amounts must be non-negative")

        subscriber = await self._require(subscriber_id)
        if is_cycle_due(subscriber, self.clock.now()):
            await self._reset(subscriber_id, trigger="consume")

        success, after = await self.db.decrement_if_sufficient(
            subscriber_id, used_input, used_output
        )
        if after is None:
            raise SubscriberNotFoundError(subscriber_id)

        limits = self.catalog.limits_for(after.plan)
        if not success:
            exhausted = after.input_tokens_remaining <= 0 or after.output_tokens_remaining <= 0
            error_cls = QuotaExhaustedError if exhausted else InsufficientQuotaError
            track_consume_rejected("exhausted" if exhausted else "insufficient")
            logger.info(
                "Consume rejected",
                extra={
                    "subscriber_id": subscriber_id,
                    "required_input": used_input,
                    "required_output": used_output,
                    "available_input": after.input_tokens_remaining,
                    "available_output": after.output_tokens_remaining,
                },
            )
            raise error_cls(
                subscriber_id=subscriber_id,
                required_input=used_input,
                required_output=used_output,
                available_input=after.input_tokens_remaining,
                available_output=after.output_tokens_remaining,
                reset_date=after.token_reset_date,
                resolved_by_reset=limits.covers(used_input, used_output),
            )

        track_consumption(after.plan.value, used_input, used_output)
        return project_current_cycle(after, limits, self.clock.now())

    async def consume_units(self, subscriber_id: str, count: int = 1) -> TokenStatus:
        """
        Count ``count`` processed units against the plan's monthly unit limit.

        Raises:
            UnitQuotaExceededError: If the counter would pass the limit
        """
        if count < 1:
            raise ValueError("count must be positive")

        subscriber = await self._require(subscriber_id)
        if is_cycle_due(subscriber, self.clock.now()):
            subscriber = await self._reset(subscriber_id, trigger="consume") or (
                await self._require(subscriber_id)
            )

        limits = self.catalog.limits_for(subscriber.plan)
        success, after = await self.db.increment_units_if_available(
            subscriber_id, count, limits.unit_limit
        )
        if after is None:
            raise SubscriberNotFoundError(subscriber_id)
        if not success:
            track_consume_rejected("units")
            raise UnitQuotaExceededError(
                subscriber_id,
                after.videos_processed_this_month,
                limits.unit_limit,
                after.video_reset_date,
            )

        return project_current_cycle(after, limits, self.clock.now())

    async def reset_cycle(self, subscriber_id: str) -> Subscriber:
        """
        Refill balances to the plan's full allocation and start a new cycle.

        Re-reads the subscriber so the plan in force now determines the
        limits. Idempotent with respect to balances.
        """
        updated = await self._reset(subscriber_id, trigger="admin", only_if_due=False)
        return updated or await self._require(subscriber_id)

    async def _reset(
        self, subscriber_id: str, trigger: str, only_if_due: bool = True
    ) -> Subscriber | None:
        """
        Install the full allocation of the plan currently on the row.

        The write is conditional on the plan that was just read and, with
        ``only_if_due``, on the cycle still being due. A concurrent sync or
        reset is never overwritten: a changed plan is re-read and retried, a
        cycle that is no longer due is skipped.

        Returns:
            Updated subscriber, or None if there was nothing to reset
        """
        for _ in range(RESET_ATTEMPTS):
            subscriber = await self._require(subscriber_id)
            now = self.clock.now()
            if only_if_due and not is_cycle_due(subscriber, now):
                return None

            limits = self.catalog.limits_for(subscriber.plan)
            reset_date = resolve_reset_date(None, subscriber.next_billing_date, now)
            updated = await self.db.reset_allocation(
                subscriber_id,
                subscriber.plan,
                SubscriberUpdate(**allocation_fields(limits, reset_date)),
                due_at=now if only_if_due else None,
            )
            if updated is None:
                continue

            track_cycle_reset(trigger)
            logger.info(
                "Reset billing cycle",
                extra={
                    "subscriber_id": subscriber_id,
                    "plan": subscriber.plan.value,
                    "trigger": trigger,
                    "reset_date": reset_date.isoformat(),
                },
            )
            return updated

        logger.warning(
            "Cycle reset skipped after concurrent changes",
            extra={"subscriber_id": subscriber_id, "trigger": trigger},
        )
        return None

    async def reset_all_due_cycles(self) -> SweepResult:
        """
        Reset every paid subscriber whose cycle has elapsed.

        Each subscriber is re-read and reset independently; rows changed since
        the scan are reset against their current plan or skipped when no
        longer due. A failure is logged and recorded, and the sweep continues.
        """
        due = await self.db.find_due(set(PAID_PLANS), self.clock.now())
        result = SweepResult(scanned=len(due))

        for subscriber in due:
            try:
                if await self._reset(subscriber.subscriber_id, trigger="sweep") is not None:
                    result.count += 1
            except Exception as e:
                result.failed.append(subscriber.subscriber_id)
                logger.warning(
                    "Cycle reset failed",
                    extra={"subscriber_id": subscriber.subscriber_id, "error": str(e)},
                )

        logger.info(
            "Cycle reset sweep complete",
            extra={"scanned": result.scanned, "reset": result.count, "failed": len(result.failed)},
        )
        return result
