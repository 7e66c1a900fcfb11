"""Tests for the tier catalog."""

from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError

from signaltiers.billing.models import SubscriptionStatus
from signaltiers.billing.schemas import TierCreate, TierUpdate
from signaltiers.core.exceptions import NotOwnerError, TierNotFoundError

from .conftest import OTHER_PROVIDER_ID, PROVIDER_ID


class TestCreateTier:
    """Tests for TierCatalog.create_tier."""

    async def test_create_tier_defaults(self, catalog):
        """Commission falls back to the configured platform default."""
        tier = await catalog.create_tier(
            PROVIDER_ID,
            TierCreate(name="Starter", price=Decimal("4.99"), benefits=["weekly digest"]),
        )

        stored = await catalog.get_tier(tier.id)
        assert stored.provider_id == PROVIDER_ID
        assert stored.price == Decimal("4.99")
        assert stored.platform_commission == Decimal("20")
        assert stored.benefits == ["weekly digest"]
        assert stored.active is True
        assert stored.is_unlimited is True

    async def test_create_tier_custom_commission(self, catalog):
        tier = await catalog.create_tier(
            PROVIDER_ID,
            TierCreate(name="Whale", price=Decimal("500"), platform_commission=Decimal("12.5")),
        )

        stored = await catalog.get_tier(tier.id)
        assert stored.platform_commission == Decimal("12.5")

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError):
            TierCreate(name="Broken", price=Decimal("-1"))

    def test_commission_above_hundred_rejected(self):
        with pytest.raises(ValidationError):
            TierCreate(name="Broken", price=Decimal("1"), platform_commission=Decimal("101"))

    async def test_get_unknown_tier(self, catalog):
        with pytest.raises(TierNotFoundError):
            await catalog.get_tier(uuid4())


class TestUpdateTier:
    """Tests for TierCatalog.update_tier."""

    async def test_update_fields(self, catalog, basic_tier):
        """Only the fields present in the patch change."""
        await catalog.update_tier(
            PROVIDER_ID,
            basic_tier.id,
            TierUpdate(price=Decimal("12"), description="More signals"),
        )

        stored = await catalog.get_tier(basic_tier.id)
        assert stored.price == Decimal("12")
        assert stored.description == "More signals"
        assert stored.name == "Basic"
        assert stored.signal_limit == 5

    async def test_clear_signal_limit(self, catalog, basic_tier):
        """An explicit null limit makes the tier unlimited."""
        await catalog.update_tier(PROVIDER_ID, basic_tier.id, TierUpdate(signal_limit=None))

        stored = await catalog.get_tier(basic_tier.id)
        assert stored.is_unlimited is True

    async def test_update_not_owner(self, catalog, basic_tier):
        with pytest.raises(NotOwnerError) as exc_info:
            await catalog.update_tier(OTHER_PROVIDER_ID, basic_tier.id, TierUpdate(name="Mine"))

        assert exc_info.value.details["resource_type"] == "tier"
        stored = await catalog.get_tier(basic_tier.id)
        assert stored.name == "Basic"

    async def test_update_unknown_tier(self, catalog):
        with pytest.raises(TierNotFoundError):
            await catalog.update_tier(PROVIDER_ID, uuid4(), TierUpdate(name="Ghost"))

    async def test_price_change_keeps_paid_period(self, catalog, subscribe, basic_tier, fetch):
        """A price edit does not touch subscriptions already paid for."""
        subscription = await subscribe("user-1", basic_tier)

        await catalog.update_tier(PROVIDER_ID, basic_tier.id, TierUpdate(price=Decimal("15")))

        stored = await fetch(subscription.id)
        assert stored.current_period_end == subscription.current_period_end
        assert stored.last_payment_ref == subscription.last_payment_ref

    async def test_deactivation_stops_renewals(
        self, catalog, subscribe, service, basic_tier, premium_tier, fetch
    ):
        """Deactivating a tier with N active holders turns off N auto-renewals only."""
        holders = [await subscribe(f"user-{n}", basic_tier) for n in range(3)]
        other_tier = await subscribe("user-0", premium_tier)
        cancelled = await subscribe("user-9", basic_tier)
        await service.cancel_subscription("user-9", cancelled.id, immediate=True)

        await catalog.update_tier(PROVIDER_ID, basic_tier.id, TierUpdate(active=False))

        for holder in holders:
            stored = await fetch(holder.id)
            assert stored.auto_renew is False
            assert stored.status == SubscriptionStatus.ACTIVE
            assert stored.current_period_end == holder.current_period_end

        assert (await fetch(other_tier.id)).auto_renew is True
        assert (await fetch(cancelled.id)).status == SubscriptionStatus.CANCELLED
        assert (await catalog.get_tier(basic_tier.id)).active is False


class TestListTiers:
    """Tests for tier listings."""

    async def test_list_active_tiers(self, catalog, basic_tier, premium_tier, free_tier, foreign_tier):
        """Only the provider's active tiers are listed, cheapest first."""
        await catalog.update_tier(PROVIDER_ID, premium_tier.id, TierUpdate(active=False))

        tiers = await catalog.list_active_tiers(PROVIDER_ID)

        assert [tier.name for tier in tiers] == ["Free", "Basic"]

    async def test_list_provider_tiers_includes_inactive(self, catalog, basic_tier, premium_tier):
        await catalog.update_tier(PROVIDER_ID, premium_tier.id, TierUpdate(active=False))

        tiers = await catalog.list_provider_tiers(PROVIDER_ID)

        assert [tier.name for tier in tiers] == ["Basic", "Premium"]
