"""Tier catalog: provider-owned subscription plans."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from signaltiers.billing.models import Subscription, SubscriptionStatus, SubscriptionTier
from signaltiers.billing.schemas import TierCreate, TierUpdate
from signaltiers.core.config import BillingConfig
from signaltiers.core.exceptions import (
    ConcurrentModificationError,
    NotOwnerError,
    TierNotFoundError,
)
from signaltiers.core.logging import LoggerMixin


async def load_tier(session: AsyncSession, tier_id: UUID) -> SubscriptionTier:
    """Load a tier inside an open session or raise ``TierNotFoundError``."""
    tier = await session.get(SubscriptionTier, tier_id)
    if tier is None:
        raise TierNotFoundError(
            f"Subscription tier {tier_id} not found",
            resource_type="SubscriptionTier",
            resource_id=str(tier_id),
        )
    return tier


class TierCatalog(LoggerMixin):
    """Creates, edits and lists provider tiers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: BillingConfig,
    ) -> None:
        """Initialize tier catalog.

        Args:
            session_factory: Factory for database sessions
            config: Billing policy (default platform commission)
        """
        self.session_factory = session_factory
        self.config = config

    async def create_tier(self, provider_id: str, tier_data: TierCreate) -> SubscriptionTier:
        """Create a new tier owned by ``provider_id``.

        Args:
            provider_id: Owning provider
            tier_data: Tier definition

        Returns:
            Created tier
        """
        commission = tier_data.platform_commission
        if commission is None:
            commission = self.config.default_platform_commission

        tier = SubscriptionTier(
            provider_id=provider_id,
            name=tier_data.name,
            description=tier_data.description,
            price=tier_data.price,
            benefits=list(tier_data.benefits),
            signal_limit=tier_data.signal_limit,
            active=tier_data.active,
            platform_commission=commission,
        )

        async with self.session_factory() as session, session.begin():
            session.add(tier)

        self.logger.info(
            "tier_created",
            tier_id=str(tier.id),
            provider_id=provider_id,
            price=str(tier.price),
        )
        return tier

    async def get_tier(self, tier_id: UUID) -> SubscriptionTier:
        """Get a tier by ID.

        Raises:
            TierNotFoundError: If tier not found
        """
        async with self.session_factory() as session:
            return await load_tier(session, tier_id)

    async def update_tier(
        self,
        provider_id: str,
        tier_id: UUID,
        patch: TierUpdate,
    ) -> SubscriptionTier:
        """Apply a partial update to a tier.

        Price and benefit changes take effect at each subscriber's next
        renewal. Deactivating a tier keeps current holders entitled until
        their paid period ends but stops their auto-renewal.

        Args:
            provider_id: Caller, must own the tier
            tier_id: Tier to update
            patch: Fields to change

        Returns:
            Updated tier

        Raises:
            TierNotFoundError: If tier not found
            NotOwnerError: If the caller does not own the tier
            ConcurrentModificationError: If an affected subscription changed mid-update
        """
        changes = patch.model_dump(exclude_unset=True)

        try:
            async with self.session_factory() as session, session.begin():
                tier = await load_tier(session, tier_id)
                if tier.provider_id != provider_id:
                    raise NotOwnerError(
                        resource_type="tier",
                        resource_id=str(tier_id),
                    )

                if changes.get("active") is False and tier.active:
                    await self._stop_renewals(session, tier)

                for key, value in changes.items():
                    if value is None and key not in ("description", "signal_limit"):
                        continue
                    setattr(tier, key, value)
        except StaleDataError as e:
            raise ConcurrentModificationError(
                details={"tier_id": str(tier_id)},
            ) from e

        self.logger.info(
            "tier_updated",
            tier_id=str(tier_id),
            provider_id=provider_id,
            fields=sorted(changes),
        )
        return tier

    async def _stop_renewals(self, session: AsyncSession, tier: SubscriptionTier) -> int:
        result = await session.execute(
            select(Subscription)
            .where(
                Subscription.tier_id == tier.id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.auto_renew.is_(True),
            )
            .with_for_update(of=Subscription)
        )
        subscriptions = result.scalars().all()
        for subscription in subscriptions:
            subscription.auto_renew = False

        self.logger.warning(
            "tier_deactivated",
            tier_id=str(tier.id),
            provider_id=tier.provider_id,
            active_subscribers=len(subscriptions),
        )
        return len(subscriptions)

    async def list_active_tiers(self, provider_id: str) -> list[SubscriptionTier]:
        """List a provider's tiers that accept new subscribers, cheapest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SubscriptionTier)
                .where(
                    SubscriptionTier.provider_id == provider_id,
                    SubscriptionTier.active.is_(True),
                )
                .order_by(SubscriptionTier.price)
            )
            return list(result.scalars().all())

    async def list_provider_tiers(self, provider_id: str) -> list[SubscriptionTier]:
        """List all of a provider's tiers, including deactivated ones."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SubscriptionTier)
                .where(SubscriptionTier.provider_id == provider_id)
                .order_by(SubscriptionTier.price)
            )
            return list(result.scalars().all())
