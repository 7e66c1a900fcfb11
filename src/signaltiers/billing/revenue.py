"""Provider revenue rollup over active subscriptions."""

from decimal import ROUND_HALF_UP, Decimal

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from signaltiers.billing.models import Subscription, SubscriptionStatus, SubscriptionTier
from signaltiers.billing.schemas import ProviderRevenue
from signaltiers.core.config import BillingConfig
from signaltiers.core.logging import LoggerMixin

CENTS = Decimal("0.01")


def _round(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


class RevenueAggregator(LoggerMixin):
    """Derives monthly revenue figures from the subscription table.

    Figures are computed on demand. With a Redis client the result is cached
    for ``revenue_cache_ttl_seconds``; cache failures fall through to the
    database.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: BillingConfig,
        redis_client: Redis | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.redis = redis_client

    def _cache_key(self, provider_id: str) -> str:
        return f"provider_revenue:{provider_id}"

    async def get_provider_revenue(self, provider_id: str) -> ProviderRevenue:
        """Sum price and platform commission across the provider's active subscriptions.

        Commission is taken per tier, at the tier's own percentage. Amounts
        are rounded to two decimals after summing.

        Args:
            provider_id: Provider to report on

        Returns:
            Revenue figures; all zeros if the store cannot be read
        """
        cached = await self._read_cache(provider_id)
        if cached is not None:
            return cached

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(
                        SubscriptionTier.price,
                        SubscriptionTier.platform_commission,
                        func.count(Subscription.id),
                    )
                    .join(Subscription, Subscription.tier_id == SubscriptionTier.id)
                    .where(
                        SubscriptionTier.provider_id == provider_id,
                        Subscription.status == SubscriptionStatus.ACTIVE,
                    )
                    .group_by(
                        SubscriptionTier.id,
                        SubscriptionTier.price,
                        SubscriptionTier.platform_commission,
                    )
                )
                rows = result.all()
        except SQLAlchemyError as e:
            self.logger.error(
                "provider_revenue_query_failed",
                provider_id=provider_id,
                error=str(e),
            )
            return ProviderRevenue(provider_id=provider_id)

        total = Decimal("0")
        commission = Decimal("0")
        subscribers = 0
        for price, commission_pct, count in rows:
            price = Decimal(price)
            total += price * count
            commission += price * Decimal(commission_pct) / Decimal(100) * count
            subscribers += count

        revenue = ProviderRevenue(
            provider_id=provider_id,
            total_revenue=_round(total),
            platform_commission=_round(commission),
            provider_earnings=_round(total - commission),
            active_subscribers=subscribers,
        )
        await self._write_cache(revenue)
        return revenue

    async def _read_cache(self, provider_id: str) -> ProviderRevenue | None:
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(self._cache_key(provider_id))
        except RedisError as e:
            self.logger.warning("revenue_cache_get_failed", provider_id=provider_id, error=str(e))
            return None
        if not cached:
            return None
        try:
            return ProviderRevenue.model_validate_json(cached)
        except ValidationError as e:
            self.logger.warning(
                "revenue_cache_decode_failed",
                provider_id=provider_id,
                error=str(e),
            )
            return None

    async def _write_cache(self, revenue: ProviderRevenue) -> None:
        if self.redis is None or self.config.revenue_cache_ttl_seconds <= 0:
            return
        try:
            await self.redis.setex(
                self._cache_key(revenue.provider_id),
                self.config.revenue_cache_ttl_seconds,
                revenue.model_dump_json(),
            )
        except RedisError as e:
            self.logger.warning(
                "revenue_cache_set_failed",
                provider_id=revenue.provider_id,
                error=str(e),
            )
