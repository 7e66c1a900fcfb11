"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from uuid import UUID

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from signaltiers.billing.access import AccessControlGate
from signaltiers.billing.collaborators import RenewalNotice, StaticProviderDirectory
from signaltiers.billing.models import Subscription, SubscriptionTier
from signaltiers.billing.payments import PaymentProcessor, SandboxPaymentGateway
from signaltiers.billing.revenue import RevenueAggregator
from signaltiers.billing.scheduler import BillingScheduler
from signaltiers.billing.schemas import SubscriptionCreate, TierCreate
from signaltiers.billing.service import SubscriptionService
from signaltiers.billing.tiers import TierCatalog
from signaltiers.core.clock import FrozenClock
from signaltiers.core.config import BillingConfig
from signaltiers.core.database import create_session_factory
from signaltiers.models.base import Base

START = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

PROVIDER_ID = "provider-alpha"
OTHER_PROVIDER_ID = "provider-beta"
PROVIDER_PAYOUT = "ALPHA_PAYOUT"
PLATFORM_PAYOUT = "PLATFORM_TREASURY"


class RecordingNotifier:
    """Renewal notifier that keeps every notice it receives."""

    def __init__(self) -> None:
        self.notices: list[RenewalNotice] = []

    async def notify_renewal(self, notice: RenewalNotice) -> None:
        self.notices.append(notice)


class StubUsageCounter:
    """Daily usage counter with settable counts."""

    def __init__(self) -> None:
        self.counts: dict[tuple[str, str], int] = {}
        self.calls = 0

    async def count_accesses_today(self, user_id: str, provider_id: str) -> int:
        self.calls += 1
        return self.counts.get((user_id, provider_id), 0)


class StatefulRedisMock:
    """A stateful Redis mock that actually tracks values."""

    def __init__(self) -> None:
        self._data: dict[str, str | int] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        value = self._data.get(key)
        return None if value is None else str(value)

    async def setex(self, key: str, seconds: int, value: str) -> bool:
        self._data[key] = value
        self.ttls[key] = seconds
        return True

    async def incr(self, key: str) -> int:
        self._data[key] = int(self._data.get(key, 0)) + 1
        return int(self._data[key])

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return key in self._data


@pytest.fixture
def clock() -> FrozenClock:
    """Clock frozen at a fixed start time."""
    return FrozenClock(START)


@pytest.fixture
def config() -> BillingConfig:
    """Billing policy with charges serialized for SQLite."""
    return BillingConfig(
        platform_payout_address=PLATFORM_PAYOUT,
        gateway_timeout_seconds=5.0,
        max_concurrent_charges=1,
        sweep_batch_size=2,
    )


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a fresh file-backed SQLite database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def gateway() -> SandboxPaymentGateway:
    return SandboxPaymentGateway()


@pytest.fixture
def providers() -> StaticProviderDirectory:
    return StaticProviderDirectory(
        payout_addresses={PROVIDER_ID: PROVIDER_PAYOUT},
        display_names={PROVIDER_ID: "Alpha Signals"},
    )


@pytest.fixture
def payments(
    gateway: SandboxPaymentGateway,
    providers: StaticProviderDirectory,
    config: BillingConfig,
) -> PaymentProcessor:
    return PaymentProcessor(gateway, providers, config)


@pytest.fixture
def catalog(session_factory: async_sessionmaker[AsyncSession], config: BillingConfig) -> TierCatalog:
    return TierCatalog(session_factory, config)


@pytest.fixture
def service(
    session_factory: async_sessionmaker[AsyncSession],
    payments: PaymentProcessor,
    config: BillingConfig,
    clock: FrozenClock,
) -> SubscriptionService:
    return SubscriptionService(session_factory, payments, config, clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    payments: PaymentProcessor,
    config: BillingConfig,
    notifier: RecordingNotifier,
    providers: StaticProviderDirectory,
    clock: FrozenClock,
) -> BillingScheduler:
    return BillingScheduler(session_factory, payments, config, notifier, providers, clock)


@pytest.fixture
def usage_counter() -> StubUsageCounter:
    return StubUsageCounter()


@pytest.fixture
def gate(
    session_factory: async_sessionmaker[AsyncSession],
    usage_counter: StubUsageCounter,
    clock: FrozenClock,
) -> AccessControlGate:
    return AccessControlGate(session_factory, usage_counter, clock)


@pytest.fixture
def redis_client() -> StatefulRedisMock:
    return StatefulRedisMock()


@pytest.fixture
def revenue(
    session_factory: async_sessionmaker[AsyncSession],
    config: BillingConfig,
) -> RevenueAggregator:
    return RevenueAggregator(session_factory, config)


@pytest.fixture
async def basic_tier(catalog: TierCatalog) -> SubscriptionTier:
    """$10 tier capped at 5 signals a day."""
    return await catalog.create_tier(
        PROVIDER_ID,
        TierCreate(
            name="Basic",
            price=Decimal("10"),
            benefits=["daily signals"],
            signal_limit=5,
        ),
    )


@pytest.fixture
async def premium_tier(catalog: TierCatalog) -> SubscriptionTier:
    """$20 unlimited tier."""
    return await catalog.create_tier(
        PROVIDER_ID,
        TierCreate(
            name="Premium",
            price=Decimal("20"),
            benefits=["daily signals", "intraday alerts"],
        ),
    )


@pytest.fixture
async def free_tier(catalog: TierCatalog) -> SubscriptionTier:
    """$0 tier."""
    return await catalog.create_tier(
        PROVIDER_ID,
        TierCreate(name="Free", price=Decimal("0"), signal_limit=1),
    )


@pytest.fixture
async def foreign_tier(catalog: TierCatalog) -> SubscriptionTier:
    """Tier owned by a different provider."""
    return await catalog.create_tier(
        OTHER_PROVIDER_ID,
        TierCreate(name="Beta Pro", price=Decimal("50")),
    )


@pytest.fixture
def subscribe(
    service: SubscriptionService,
) -> Callable[..., Awaitable[Subscription]]:
    """Subscribe a user to a tier with a throwaway payer address."""

    async def _subscribe(
        user_id: str,
        tier: SubscriptionTier,
        *,
        payer_address: str | None = None,
        auto_renew: bool = True,
    ) -> Subscription:
        return await service.subscribe(
            user_id,
            SubscriptionCreate(
                tier_id=tier.id,
                payer_address=payer_address or f"WALLET_{user_id}",
                auto_renew=auto_renew,
            ),
        )

    return _subscribe


@pytest.fixture
def fetch(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[UUID], Awaitable[Subscription]]:
    """Read a subscription back from the database in a fresh session."""

    async def _fetch(subscription_id: UUID) -> Subscription:
        async with session_factory() as session:
            subscription = await session.get(Subscription, subscription_id)
            assert subscription is not None
            return subscription

    return _fetch
