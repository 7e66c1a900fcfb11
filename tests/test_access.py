"""Tests for the access control gate."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

from sqlalchemy.exc import OperationalError

from signaltiers.billing.access import (
    ACCESS_CHECK_UNAVAILABLE,
    DAILY_LIMIT_REACHED,
    NO_ACTIVE_SUBSCRIPTION,
    TIER_NOT_INCLUDED,
    AccessControlGate,
)
from signaltiers.billing.collaborators import RedisDailyUsageCounter

from .conftest import OTHER_PROVIDER_ID, PROVIDER_ID, START


class TestCanAccess:
    """Tests for AccessControlGate.can_access."""

    async def test_no_subscription_denied(self, gate):
        """A user with no rows for the provider is denied."""
        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.allowed is False
        assert decision.reason == NO_ACTIVE_SUBSCRIPTION

    async def test_active_subscription_allowed(self, gate, subscribe, premium_tier):
        subscription = await subscribe("user-1", premium_tier)

        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.allowed is True
        assert decision.reason is None
        assert decision.subscription_id == subscription.id
        assert decision.tier_id == premium_tier.id

    async def test_other_provider_subscription_denied(self, gate, subscribe, foreign_tier):
        await subscribe("user-1", foreign_tier)

        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.reason == NO_ACTIVE_SUBSCRIPTION

    async def test_immediate_cancel_revokes(self, gate, subscribe, service, premium_tier):
        subscription = await subscribe("user-1", premium_tier)
        await service.cancel_subscription("user-1", subscription.id, immediate=True)

        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.reason == NO_ACTIVE_SUBSCRIPTION

    async def test_deferred_cancel_keeps_access_until_period_end(
        self, gate, subscribe, service, premium_tier, clock
    ):
        subscription = await subscribe("user-1", premium_tier)
        await service.cancel_subscription("user-1", subscription.id)

        assert (await gate.can_access("user-1", PROVIDER_ID)).allowed is True

        clock.advance(days=30)
        assert (await gate.can_access("user-1", PROVIDER_ID)).allowed is False

    async def test_period_end_denies_before_sweep(self, gate, subscribe, premium_tier, clock):
        """An active row whose period has ended grants nothing."""
        await subscribe("user-1", premium_tier)
        clock.advance(days=30, seconds=1)

        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.reason == NO_ACTIVE_SUBSCRIPTION

    async def test_suspended_denied(self, gate, subscribe, scheduler, premium_tier, gateway, clock):
        await subscribe("user-1", premium_tier)
        gateway.declined_payers.add("WALLET_user-1")
        clock.advance(days=30)
        await scheduler.run_renewal_sweep()

        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.reason == NO_ACTIVE_SUBSCRIPTION


class TestRequiredTier:
    """Tests for tier requirements."""

    async def test_higher_tier_satisfies_lower_requirement(
        self, gate, subscribe, basic_tier, premium_tier
    ):
        await subscribe("user-1", premium_tier)

        decision = await gate.can_access("user-1", PROVIDER_ID, required_tier_id=basic_tier.id)

        assert decision.allowed is True

    async def test_lower_tier_denied(self, gate, subscribe, basic_tier, premium_tier):
        await subscribe("user-1", basic_tier)

        decision = await gate.can_access("user-1", PROVIDER_ID, required_tier_id=premium_tier.id)

        assert decision.allowed is False
        assert decision.reason == TIER_NOT_INCLUDED
        assert decision.tier_id == basic_tier.id

    async def test_highest_priced_subscription_is_used(
        self, gate, subscribe, basic_tier, premium_tier
    ):
        await subscribe("user-1", basic_tier)
        await subscribe("user-1", premium_tier)

        decision = await gate.can_access("user-1", PROVIDER_ID, required_tier_id=premium_tier.id)

        assert decision.allowed is True
        assert decision.tier_id == premium_tier.id

    async def test_unknown_required_tier_denied(self, gate, subscribe, premium_tier):
        await subscribe("user-1", premium_tier)

        decision = await gate.can_access("user-1", PROVIDER_ID, required_tier_id=uuid4())

        assert decision.reason == TIER_NOT_INCLUDED

    async def test_foreign_required_tier_denied(self, gate, subscribe, premium_tier, foreign_tier):
        await subscribe("user-1", premium_tier)

        decision = await gate.can_access(
            "user-1", PROVIDER_ID, required_tier_id=foreign_tier.id
        )

        assert decision.reason == TIER_NOT_INCLUDED


class TestDailyLimit:
    """Tests for daily signal limits."""

    async def test_under_limit_allowed(self, gate, subscribe, basic_tier, usage_counter):
        await subscribe("user-1", basic_tier)
        usage_counter.counts[("user-1", PROVIDER_ID)] = 4

        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.allowed is True

    async def test_limit_reached_denied(self, gate, subscribe, basic_tier, usage_counter):
        await subscribe("user-1", basic_tier)
        usage_counter.counts[("user-1", PROVIDER_ID)] = 5

        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.allowed is False
        assert decision.reason == DAILY_LIMIT_REACHED

    async def test_unlimited_tier_skips_counter(self, gate, subscribe, premium_tier, usage_counter):
        await subscribe("user-1", premium_tier)
        usage_counter.counts[("user-1", PROVIDER_ID)] = 10_000

        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.allowed is True
        assert usage_counter.calls == 0

    async def test_counter_failure_fails_closed(self, session_factory, clock, subscribe, basic_tier):
        counter = MagicMock()
        counter.count_accesses_today = AsyncMock(side_effect=ConnectionError("redis down"))
        gate = AccessControlGate(session_factory, counter, clock)
        await subscribe("user-1", basic_tier)

        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.allowed is False
        assert decision.reason == ACCESS_CHECK_UNAVAILABLE

    async def test_store_failure_fails_closed(self, usage_counter, clock):
        session = MagicMock()
        session.__aenter__ = AsyncMock(return_value=session)
        session.__aexit__ = AsyncMock(return_value=None)
        session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("gone")))
        gate = AccessControlGate(MagicMock(return_value=session), usage_counter, clock)

        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.allowed is False
        assert decision.reason == ACCESS_CHECK_UNAVAILABLE


class TestEntitlements:
    async def test_list_active_entitlements(
        self, gate, subscribe, service, basic_tier, premium_tier, foreign_tier
    ):
        await subscribe("user-1", basic_tier)
        await subscribe("user-1", foreign_tier)
        cancelled = await subscribe("user-1", premium_tier)
        await service.cancel_subscription("user-1", cancelled.id, immediate=True)

        entitlements = await gate.list_active_entitlements("user-1")

        assert {row.tier_id for row in entitlements} == {basic_tier.id, foreign_tier.id}
        assert {row.tier.provider_id for row in entitlements} == {PROVIDER_ID, OTHER_PROVIDER_ID}


class TestRedisDailyUsageCounter:
    """Tests for the Redis-backed usage counter."""

    async def test_counts_accesses_per_day(self, redis_client):
        counter = RedisDailyUsageCounter(redis_client)

        assert await counter.count_accesses_today("user-1", PROVIDER_ID, now=START) == 0
        await counter.record_access("user-1", PROVIDER_ID, now=START)
        await counter.record_access("user-1", PROVIDER_ID, now=START)

        assert await counter.count_accesses_today("user-1", PROVIDER_ID, now=START) == 2
        assert (
            await counter.count_accesses_today("user-1", PROVIDER_ID, now=START + timedelta(days=1))
            == 0
        )

    async def test_first_access_sets_expiry(self, redis_client):
        counter = RedisDailyUsageCounter(redis_client)

        await counter.record_access("user-1", PROVIDER_ID, now=START)

        key = f"signal_access:{PROVIDER_ID}:user-1:2026-01-01"
        assert redis_client.ttls[key] == 2 * 86400

    async def test_gate_reads_redis_counter(self, session_factory, clock, subscribe, basic_tier, redis_client):
        """The gate consults the counter for today's date."""
        counter = RedisDailyUsageCounter(redis_client)
        gate = AccessControlGate(session_factory, counter, clock)
        await subscribe("user-1", basic_tier)
        for _ in range(5):
            await counter.record_access("user-1", PROVIDER_ID)

        decision = await gate.can_access("user-1", PROVIDER_ID)

        assert decision.reason == DAILY_LIMIT_REACHED
