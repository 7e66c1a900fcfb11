"""Access control gate consulted on every protected signal read."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from signaltiers.billing.collaborators import DailyUsageCounter
from signaltiers.billing.models import Subscription, SubscriptionStatus, SubscriptionTier
from signaltiers.billing.schemas import AccessDecision
from signaltiers.core.clock import Clock, SystemClock
from signaltiers.core.logging import LoggerMixin
from signaltiers.core.metrics import track_access_check

NO_ACTIVE_SUBSCRIPTION = "no active subscription"
TIER_NOT_INCLUDED = "tier does not include this resource"
DAILY_LIMIT_REACHED = "daily limit reached"
ACCESS_CHECK_UNAVAILABLE = "access check unavailable"


class AccessControlGate(LoggerMixin):
    """Answers whether a user may read a provider's signals right now.

    The gate is read-only and never raises: every outcome, including store
    or counter outages, comes back as an ``AccessDecision``. Outages deny.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        usage_counter: DailyUsageCounter,
        clock: Clock | None = None,
    ) -> None:
        """Initialize access control gate.

        Args:
            session_factory: Factory for database sessions
            usage_counter: Today's signal reads per user and provider
            clock: Time source (defaults to the system clock)
        """
        self.session_factory = session_factory
        self.usage_counter = usage_counter
        self.clock = clock or SystemClock()

    async def can_access(
        self,
        user_id: str,
        provider_id: str,
        required_tier_id: UUID | None = None,
    ) -> AccessDecision:
        """Check a user's entitlement to a provider.

        When the user holds several live subscriptions to the provider, the
        highest-priced tier is the one evaluated. Tiers are ranked by price,
        so a required tier is satisfied by any held tier that costs at least
        as much.

        Args:
            user_id: User requesting access
            provider_id: Provider whose signals are requested
            required_tier_id: Minimum tier the resource needs, if any

        Returns:
            Access decision with a denial reason when not allowed
        """
        try:
            decision = await self._evaluate(user_id, provider_id, required_tier_id)
        except Exception as e:
            self.logger.error(
                "access_check_failed",
                user_id=user_id,
                provider_id=provider_id,
                error=str(e),
            )
            decision = AccessDecision(allowed=False, reason=ACCESS_CHECK_UNAVAILABLE)

        track_access_check(decision.allowed)
        if not decision.allowed:
            self.logger.debug(
                "access_denied",
                user_id=user_id,
                provider_id=provider_id,
                reason=decision.reason,
            )
        return decision

    async def _evaluate(
        self,
        user_id: str,
        provider_id: str,
        required_tier_id: UUID | None,
    ) -> AccessDecision:
        now = self.clock.now()

        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription)
                .join(Subscription.tier)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.current_period_end > now,
                    SubscriptionTier.provider_id == provider_id,
                )
                .order_by(SubscriptionTier.price.desc())
                .limit(1)
            )
            subscription = result.scalars().first()
            if subscription is None:
                return AccessDecision(allowed=False, reason=NO_ACTIVE_SUBSCRIPTION)

            held = subscription.tier
            if required_tier_id is not None and required_tier_id != held.id:
                required = await session.get(SubscriptionTier, required_tier_id)
                if (
                    required is None
                    or required.provider_id != provider_id
                    or held.price < required.price
                ):
                    return self._deny(subscription, TIER_NOT_INCLUDED)

        if not held.is_unlimited:
            used = await self.usage_counter.count_accesses_today(user_id, provider_id)
            if used >= held.signal_limit:
                return self._deny(subscription, DAILY_LIMIT_REACHED)

        return AccessDecision(
            allowed=True,
            subscription_id=subscription.id,
            tier_id=held.id,
        )

    def _deny(self, subscription: Subscription, reason: str) -> AccessDecision:
        return AccessDecision(
            allowed=False,
            reason=reason,
            subscription_id=subscription.id,
            tier_id=subscription.tier_id,
        )

    async def list_active_entitlements(self, user_id: str) -> list[Subscription]:
        """List the user's subscriptions that currently grant access."""
        now = self.clock.now()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.current_period_end > now,
                )
                .order_by(Subscription.current_period_end)
            )
            return list(result.scalars().all())
