"""Billing scheduler: renewal, notice and retry sweeps.

Each sweep selects candidate rows, then handles every row in its own short
transaction that re-selects the row ``FOR UPDATE SKIP LOCKED`` with the same
predicate. A row already moved out of the sweep's window by an earlier pass,
or held by a concurrent lifecycle operation, is skipped. That re-check is
what makes a repeated pass a no-op.

A failing row never aborts the sweep: payment failures become state
transitions, anything else is logged and counted.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from redis.asyncio import Redis
from redis.exceptions import LockError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from signaltiers.billing.collaborators import (
    ProviderDirectory,
    RenewalNotice,
    RenewalNotifier,
)
from signaltiers.billing.models import Subscription, SubscriptionStatus
from signaltiers.billing.payments import ChargeRequest, PaymentProcessor
from signaltiers.core.clock import Clock, SystemClock
from signaltiers.core.config import BillingConfig
from signaltiers.core.logging import (
    LoggerMixin,
    bind_contextvars,
    get_logger,
    set_correlation_id,
    unbind_contextvars,
)
from signaltiers.core.metrics import track_sweep_row, track_sweep_time, track_transition

logger = get_logger(__name__)


class SweepType(str, Enum):
    """The three independently scheduled sweeps."""

    RENEWAL = "renewal"
    NOTICE = "notice"
    RETRY = "retry"


class RowOutcome(str, Enum):
    """What a sweep did with one candidate row."""

    RENEWED = "renewed"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    NOTIFIED = "notified"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class SweepResult:
    """Counts for one sweep pass."""

    sweep: SweepType
    started_at: datetime
    outcomes: dict[RowOutcome, int] = field(default_factory=dict)

    def record(self, outcome: RowOutcome) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1
        track_sweep_row(self.sweep.value, outcome.value)

    def count(self, outcome: RowOutcome) -> int:
        return self.outcomes.get(outcome, 0)

    @property
    def processed(self) -> int:
        return sum(self.outcomes.values())

    def as_dict(self) -> dict[str, int | str]:
        summary: dict[str, int | str] = {
            "sweep": self.sweep.value,
            "started_at": self.started_at.isoformat(),
            "processed": self.processed,
        }
        summary.update({outcome.value: n for outcome, n in self.outcomes.items()})
        return summary


class BillingScheduler(LoggerMixin):
    """Advances subscriptions through time without user interaction."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentProcessor,
        config: BillingConfig,
        notifier: RenewalNotifier,
        providers: ProviderDirectory,
        clock: Clock | None = None,
    ) -> None:
        """Initialize billing scheduler.

        Args:
            session_factory: Factory for database sessions
            payments: Shared payment path, same one lifecycle operations use
            config: Billing policy
            notifier: Renewal notice delivery
            providers: Provider display names for notices
            clock: Time source (defaults to the system clock)
        """
        self.session_factory = session_factory
        self.payments = payments
        self.config = config
        self.notifier = notifier
        self.providers = providers
        self.clock = clock or SystemClock()
        self._row_slots = asyncio.Semaphore(config.max_concurrent_charges)

    @property
    def billing_period(self) -> timedelta:
        return timedelta(days=self.config.billing_period_days)

    @property
    def retry_delay(self) -> timedelta:
        return timedelta(hours=self.config.payment_retry_delay_hours)

    async def run_renewal_sweep(self) -> SweepResult:
        """Renew or lapse every active subscription whose period has ended."""
        now = self.clock.now()
        predicate = (
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.current_period_end <= now,
        )
        return await self._sweep(SweepType.RENEWAL, now, predicate, self._renew_due_row)

    async def run_retry_sweep(self) -> SweepResult:
        """Retry suspended subscriptions whose backoff has elapsed."""
        now = self.clock.now()
        predicate = (
            Subscription.status == SubscriptionStatus.SUSPENDED,
            Subscription.next_retry_at.is_not(None),
            Subscription.next_retry_at <= now,
        )
        return await self._sweep(SweepType.RETRY, now, predicate, self._retry_row)

    async def run_notice_sweep(self) -> SweepResult:
        """Notify holders whose subscription renews within the notice window."""
        now = self.clock.now()
        result = SweepResult(sweep=SweepType.NOTICE, started_at=now)
        horizon = now + timedelta(days=self.config.renewal_notice_days)

        with track_sweep_time(SweepType.NOTICE.value):
            self._begin(SweepType.NOTICE, now)
            try:
                async with self.session_factory() as session:
                    rows = await session.execute(
                        select(Subscription).where(
                            Subscription.status == SubscriptionStatus.ACTIVE,
                            Subscription.auto_renew.is_(True),
                            Subscription.current_period_end > now,
                            Subscription.current_period_end <= horizon,
                        )
                    )
                    upcoming = list(rows.scalars().all())
            except SQLAlchemyError as e:
                self.logger.error("notice_sweep_query_failed", error=str(e))
                upcoming = []

            for subscription in upcoming:
                result.record(await self._send_notice(subscription))

            self._finish(result)
        return result

    async def _renew_due_row(
        self, session: AsyncSession, subscription: Subscription
    ) -> RowOutcome:
        if not subscription.auto_renew:
            return self._expire(subscription, reason="not_renewing")
        return await self._attempt_renewal(session, subscription)

    async def _retry_row(
        self, session: AsyncSession, subscription: Subscription
    ) -> RowOutcome:
        if subscription.payment_failure_count >= self.config.max_payment_retries:
            return self._expire(subscription, reason="retries_exhausted")
        if not subscription.auto_renew:
            return self._expire(subscription, reason="not_renewing")
        if not subscription.tier.active:
            return self._expire(subscription, reason="tier_inactive")
        return await self._attempt_renewal(session, subscription)

    async def _attempt_renewal(
        self, session: AsyncSession, subscription: Subscription
    ) -> RowOutcome:
        tier = subscription.tier
        settlement_ref: str | None = None

        if not tier.is_free:
            payment = await self.payments.charge(
                ChargeRequest(
                    payer_address=subscription.payer_address,
                    tier=tier,
                    amount=tier.price,
                    path="renewal",
                    memo=f"SUB:{subscription.id}",
                    extra={"subscription_id": str(subscription.id)},
                )
            )
            if not payment.success:
                return self._suspend(subscription, payment.error)
            settlement_ref = payment.settlement_ref

        now = self.clock.now()
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.current_period_start = now
        subscription.current_period_end = now + self.billing_period
        subscription.payment_failure_count = 0
        subscription.next_retry_at = None
        if settlement_ref is not None:
            subscription.last_payment_ref = settlement_ref
            subscription.last_payment_at = now

        track_transition(SubscriptionStatus.ACTIVE.value)
        self.logger.info(
            "subscription_renewed",
            subscription_id=str(subscription.id),
            user_id=subscription.user_id,
            amount=str(tier.price),
            period_end=subscription.current_period_end.isoformat(),
        )
        return RowOutcome.RENEWED

    def _suspend(self, subscription: Subscription, error: str | None) -> RowOutcome:
        now = self.clock.now()
        subscription.status = SubscriptionStatus.SUSPENDED
        subscription.payment_failure_count += 1
        subscription.next_retry_at = now + self.retry_delay

        track_transition(SubscriptionStatus.SUSPENDED.value)
        self.logger.warning(
            "subscription_payment_failure",
            subscription_id=str(subscription.id),
            user_id=subscription.user_id,
            failure_count=subscription.payment_failure_count,
            next_retry_at=subscription.next_retry_at.isoformat(),
            error=error,
        )
        return RowOutcome.SUSPENDED

    def _expire(self, subscription: Subscription, *, reason: str) -> RowOutcome:
        subscription.status = SubscriptionStatus.EXPIRED
        subscription.next_retry_at = None

        track_transition(SubscriptionStatus.EXPIRED.value)
        self.logger.warning(
            "subscription_expired",
            subscription_id=str(subscription.id),
            user_id=subscription.user_id,
            reason=reason,
            failure_count=subscription.payment_failure_count,
        )
        return RowOutcome.EXPIRED

    async def _send_notice(self, subscription: Subscription) -> RowOutcome:
        try:
            provider_name = await self.providers.display_name(subscription.tier.provider_id)
            await self.notifier.notify_renewal(
                RenewalNotice(
                    user_id=subscription.user_id,
                    tier_name=subscription.tier.name,
                    provider_name=provider_name,
                    renews_at=subscription.current_period_end,
                )
            )
        except Exception as e:
            self.logger.error(
                "renewal_notice_failed",
                subscription_id=str(subscription.id),
                error=str(e),
            )
            return RowOutcome.ERROR
        return RowOutcome.NOTIFIED

    async def _sweep(
        self,
        sweep: SweepType,
        now: datetime,
        predicate: tuple,
        handler: Callable[[AsyncSession, Subscription], Awaitable[RowOutcome]],
    ) -> SweepResult:
        result = SweepResult(sweep=sweep, started_at=now)

        with track_sweep_time(sweep.value):
            self._begin(sweep, now)
            async for batch in self._candidate_batches(predicate):
                outcomes = await asyncio.gather(
                    *(
                        self._process_row(sweep, subscription_id, predicate, handler)
                        for subscription_id in batch
                    )
                )
                for outcome in outcomes:
                    result.record(outcome)
            self._finish(result)
        return result

    async def _candidate_batches(self, predicate: tuple) -> AsyncIterator[list[UUID]]:
        """Yield candidate ids in keyset-paginated batches."""
        last_id: UUID | None = None
        while True:
            query = select(Subscription.id).where(*predicate)
            if last_id is not None:
                query = query.where(Subscription.id > last_id)
            query = query.order_by(Subscription.id).limit(self.config.sweep_batch_size)
            try:
                async with self.session_factory() as session:
                    rows = await session.execute(query)
                    batch = list(rows.scalars().all())
            except SQLAlchemyError as e:
                self.logger.error("sweep_candidate_query_failed", error=str(e))
                return
            if not batch:
                return
            yield batch
            if len(batch) < self.config.sweep_batch_size:
                return
            last_id = batch[-1]

    async def _process_row(
        self,
        sweep: SweepType,
        subscription_id: UUID,
        predicate: tuple,
        handler: Callable[[AsyncSession, Subscription], Awaitable[RowOutcome]],
    ) -> RowOutcome:
        settlement_ref: str | None = None
        async with self._row_slots:
            try:
                async with self.session_factory() as session, session.begin():
                    rows = await session.execute(
                        select(Subscription)
                        .where(Subscription.id == subscription_id, *predicate)
                        .with_for_update(of=Subscription, skip_locked=True)
                        .execution_options(populate_existing=True)
                    )
                    subscription = rows.scalars().first()
                    if subscription is None:
                        return RowOutcome.SKIPPED
                    prior_ref = subscription.last_payment_ref
                    outcome = await handler(session, subscription)
                    if subscription.last_payment_ref != prior_ref:
                        settlement_ref = subscription.last_payment_ref
                return outcome
            except StaleDataError:
                # Settled but not recorded on the row
                log = self.logger.error if settlement_ref else self.logger.warning
                log(
                    "sweep_row_conflict",
                    sweep=sweep.value,
                    subscription_id=str(subscription_id),
                    settlement_ref=settlement_ref,
                )
                return RowOutcome.SKIPPED
            except Exception as e:
                self.logger.error(
                    "sweep_row_failed",
                    sweep=sweep.value,
                    subscription_id=str(subscription_id),
                    error=str(e),
                    settlement_ref=settlement_ref,
                    exc_info=True,
                )
                return RowOutcome.ERROR

    def _begin(self, sweep: SweepType, now: datetime) -> None:
        set_correlation_id()
        bind_contextvars(sweep=sweep.value)
        self.logger.info("sweep_started", sweep=sweep.value, now=now.isoformat())

    def _finish(self, result: SweepResult) -> None:
        self.logger.info("sweep_finished", **result.as_dict())
        unbind_contextvars("sweep")


class SweepLock:
    """Cluster-wide mutual exclusion for one sweep type.

    Without a Redis client the lock is always granted, which is correct for
    a single scheduler process.
    """

    def __init__(self, redis_client: Redis | None, *, timeout: int = 3600) -> None:
        self.redis = redis_client
        self.timeout = timeout

    @asynccontextmanager
    async def hold(self, sweep: SweepType) -> AsyncIterator[bool]:
        """Try to take the lock without waiting; yields whether it was acquired."""
        if self.redis is None:
            yield True
            return

        lock = self.redis.lock(
            f"billing:sweep:{sweep.value}",
            timeout=self.timeout,
            blocking=False,
        )
        acquired = await lock.acquire()
        try:
            yield bool(acquired)
        finally:
            if acquired:
                try:
                    await lock.release()
                except LockError:
                    logger.warning("sweep_lock_lost", sweep=sweep.value)


@dataclass(frozen=True)
class SweepIntervals:
    """How often each sweep runs, in seconds."""

    renewal: float = 86400.0
    notice: float = 86400.0
    retry: float = 21600.0

    def for_sweep(self, sweep: SweepType) -> timedelta:
        return timedelta(seconds=getattr(self, sweep.value))


class SweepRunner(LoggerMixin):
    """Runs the three sweeps on their own intervals.

    ``run_pending`` executes whatever is due at the clock's current time and
    is the unit the loop in ``run_forever`` repeats. Every sweep is due on
    the first call.
    """

    def __init__(
        self,
        scheduler: BillingScheduler,
        intervals: SweepIntervals | None = None,
        *,
        lock: SweepLock | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.intervals = intervals or SweepIntervals()
        self.lock = lock or SweepLock(None)
        self.clock = clock or scheduler.clock
        self._next_due: dict[SweepType, datetime] = {}
        self._stopped = asyncio.Event()
        self._sweeps: dict[SweepType, Callable[[], Awaitable[SweepResult]]] = {
            SweepType.RENEWAL: scheduler.run_renewal_sweep,
            SweepType.NOTICE: scheduler.run_notice_sweep,
            SweepType.RETRY: scheduler.run_retry_sweep,
        }

    def next_due(self, sweep: SweepType) -> datetime | None:
        return self._next_due.get(sweep)

    async def run_pending(self) -> list[SweepResult]:
        """Run every sweep whose interval has elapsed."""
        now = self.clock.now()
        results: list[SweepResult] = []
        for sweep, run in self._sweeps.items():
            due = self._next_due.get(sweep)
            if due is not None and due > now:
                continue
            self._next_due[sweep] = now + self.intervals.for_sweep(sweep)
            async with self.lock.hold(sweep) as acquired:
                if not acquired:
                    self.logger.info("sweep_lock_busy", sweep=sweep.value)
                    continue
                results.append(await run())
        return results

    async def run_forever(self, poll_interval: float = 60.0) -> None:
        """Poll ``run_pending`` until ``stop`` is called."""
        self.logger.info("sweep_runner_started", poll_interval=poll_interval)
        while not self._stopped.is_set():
            try:
                await self.run_pending()
            except Exception as e:
                self.logger.error("sweep_runner_iteration_failed", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=poll_interval)
            except TimeoutError:
                continue
        self.logger.info("sweep_runner_stopped")

    def stop(self) -> None:
        self._stopped.set()
