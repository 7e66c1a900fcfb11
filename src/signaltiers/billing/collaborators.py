"""Contracts for the services billing depends on but does not own.

- ``RenewalNotifier``: delivers "your subscription renews soon" notices
- ``DailyUsageCounter``: counts today's signal reads per user and provider
- ``ProviderDirectory``: resolves a provider's payout address and display name

Each contract ships with a minimal implementation suitable for a single
deployment; richer ones are injected by the application.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

import structlog
from redis.asyncio import Redis

from signaltiers.core.config import Settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RenewalNotice:
    """Upcoming renewal of one subscription."""

    user_id: str
    tier_name: str
    provider_name: str
    renews_at: datetime


class RenewalNotifier(Protocol):
    """Fire-and-forget delivery of renewal notices."""

    async def notify_renewal(self, notice: RenewalNotice) -> None: ...


class DailyUsageCounter(Protocol):
    """Read-only view of per-day signal consumption."""

    async def count_accesses_today(self, user_id: str, provider_id: str) -> int: ...


class ProviderDirectory(Protocol):
    """Provider profile lookups needed to route and describe payments."""

    async def payout_address(self, provider_id: str) -> str: ...

    async def display_name(self, provider_id: str) -> str: ...


class LoggingRenewalNotifier:
    """Notifier that only records the notice in the structured log."""

    async def notify_renewal(self, notice: RenewalNotice) -> None:
        logger.info(
            "renewal_notice",
            user_id=notice.user_id,
            tier_name=notice.tier_name,
            provider_name=notice.provider_name,
            renews_at=notice.renews_at.isoformat(),
        )


class StaticProviderDirectory:
    """Directory backed by in-memory mappings.

    Providers without a configured payout address fall back to a derived
    placeholder so that development setups can settle against the sandbox
    gateway. In strict mode an unmapped provider raises ``LookupError``
    instead, which fails the charge.
    """

    def __init__(
        self,
        payout_addresses: dict[str, str] | None = None,
        display_names: dict[str, str] | None = None,
        *,
        strict: bool = False,
    ) -> None:
        self._payout_addresses = dict(payout_addresses or {})
        self._display_names = dict(display_names or {})
        self.strict = strict

    @classmethod
    def from_settings(cls, settings: Settings) -> "StaticProviderDirectory":
        """Build the directory from configured mappings; strict in production."""
        return cls(
            settings.provider_payout_addresses,
            settings.provider_display_names,
            strict=settings.is_production,
        )

    async def payout_address(self, provider_id: str) -> str:
        address = self._payout_addresses.get(provider_id)
        if address is not None:
            return address
        if self.strict:
            raise LookupError(f"no payout address configured for provider {provider_id}")
        return f"PROVIDER_{provider_id}"

    async def display_name(self, provider_id: str) -> str:
        return self._display_names.get(provider_id, provider_id)


class RedisDailyUsageCounter:
    """Per-day signal access counter stored in Redis.

    One key per user, provider and UTC date; keys expire two days after
    creation so yesterday's counter is still inspectable.
    """

    KEY_TTL = timedelta(days=2)

    def __init__(self, redis_client: Redis) -> None:
        """
        Initialize the counter.

        Args:
            redis_client: Redis client instance
        """
        self.redis = redis_client

    def _get_key(self, user_id: str, provider_id: str, day: datetime) -> str:
        return f"signal_access:{provider_id}:{user_id}:{day.strftime('%Y-%m-%d')}"

    async def count_accesses_today(
        self,
        user_id: str,
        provider_id: str,
        now: datetime | None = None,
    ) -> int:
        """Get how many signals the user has read from the provider today."""
        now = now or datetime.now(UTC)
        value = await self.redis.get(self._get_key(user_id, provider_id, now))
        return int(value) if value else 0

    async def record_access(
        self,
        user_id: str,
        provider_id: str,
        now: datetime | None = None,
    ) -> int:
        """Count one signal read and return today's total."""
        now = now or datetime.now(UTC)
        key = self._get_key(user_id, provider_id, now)
        count = await self.redis.incr(key)
        if count == 1:
            await self.redis.expire(key, int(self.KEY_TTL.total_seconds()))
        return int(count)
