"""Subscription lifecycle: subscribe, change tier, cancel."""

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from signaltiers.billing.models import Subscription, SubscriptionStatus, SubscriptionTier
from signaltiers.billing.payments import ChargeRequest, PaymentProcessor, quantize_amount
from signaltiers.billing.schemas import SubscriptionCreate
from signaltiers.billing.tiers import load_tier
from signaltiers.core.clock import Clock, SystemClock
from signaltiers.core.config import BillingConfig
from signaltiers.core.exceptions import (
    AlreadyCancelledError,
    ConcurrentModificationError,
    DuplicateSubscriptionError,
    InvalidTierChangeError,
    NotOwnerError,
    PaymentFailedError,
    SubscriptionNotFoundError,
    TierInactiveError,
)
from signaltiers.core.logging import LoggerMixin
from signaltiers.core.metrics import track_transition


class SubscriptionService(LoggerMixin):
    """Owns every user-initiated subscription transition.

    Each operation runs in its own transaction and locks the subscription
    row it changes. Payment failures are surfaced to the caller as
    ``PaymentFailedError``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentProcessor,
        config: BillingConfig,
        clock: Clock | None = None,
    ) -> None:
        """Initialize subscription service.

        Args:
            session_factory: Factory for database sessions
            payments: Shared payment path
            config: Billing policy
            clock: Time source (defaults to the system clock)
        """
        self.session_factory = session_factory
        self.payments = payments
        self.config = config
        self.clock = clock or SystemClock()

    @property
    def billing_period(self) -> timedelta:
        return timedelta(days=self.config.billing_period_days)

    async def subscribe(
        self,
        user_id: str,
        subscription_data: SubscriptionCreate,
    ) -> Subscription:
        """Subscribe a user to a tier and take the first payment.

        The row is persisted as pending before the gateway is called, so an
        interrupted charge still leaves an audit trail.

        Args:
            user_id: Subscribing user
            subscription_data: Tier, payer address and auto-renew preference

        Returns:
            Active subscription

        Raises:
            TierNotFoundError: If tier not found
            TierInactiveError: If tier no longer accepts subscribers
            DuplicateSubscriptionError: If user already holds this tier
            PaymentFailedError: If the first payment fails
        """
        now = self.clock.now()

        try:
            async with self.session_factory() as session, session.begin():
                tier = await load_tier(session, subscription_data.tier_id)
                if not tier.active:
                    raise TierInactiveError(
                        field="tier_id",
                        value=subscription_data.tier_id,
                    )

                existing = await self._find_active(session, user_id, tier.id)
                if existing is not None:
                    raise DuplicateSubscriptionError(
                        details={
                            "tier_id": str(tier.id),
                            "subscription_id": str(existing.id),
                        },
                    )

                subscription = Subscription(
                    user_id=user_id,
                    tier_id=tier.id,
                    status=SubscriptionStatus.PENDING,
                    payer_address=subscription_data.payer_address,
                    auto_renew=subscription_data.auto_renew,
                    current_period_start=now,
                    current_period_end=now + self.billing_period,
                    payment_failure_count=0,
                )
                session.add(subscription)
        except IntegrityError as e:
            raise DuplicateSubscriptionError(
                details={"tier_id": str(subscription_data.tier_id)},
            ) from e

        self.logger.info(
            "subscription_pending",
            user_id=user_id,
            subscription_id=str(subscription.id),
            tier_id=str(tier.id),
        )

        payment = None
        if not tier.is_free:
            payment = await self.payments.charge(
                ChargeRequest(
                    payer_address=subscription.payer_address,
                    tier=tier,
                    amount=tier.price,
                    path="subscribe",
                    memo=f"SUB:{subscription.id}",
                    extra={"subscription_id": str(subscription.id)},
                )
            )

        try:
            async with self.session_factory() as session, session.begin():
                subscription = await self._lock(session, subscription.id)
                if payment is not None and not payment.success:
                    subscription.status = SubscriptionStatus.SUSPENDED
                else:
                    subscription.status = SubscriptionStatus.ACTIVE
                    if payment is not None:
                        subscription.last_payment_ref = payment.settlement_ref
                        subscription.last_payment_at = now
        except IntegrityError as e:
            # Lost a race with a concurrent subscribe to the same tier
            self.logger.error(
                "subscription_activation_conflict",
                subscription_id=str(subscription.id),
                settlement_ref=payment.settlement_ref if payment else None,
            )
            await self._mark_status(subscription.id, SubscriptionStatus.CANCELLED)
            raise DuplicateSubscriptionError(
                details={"tier_id": str(tier.id)},
            ) from e

        track_transition(subscription.status.value)

        if payment is not None and not payment.success:
            self.logger.warning(
                "subscription_payment_failed",
                user_id=user_id,
                subscription_id=str(subscription.id),
                error=payment.error,
            )
            raise PaymentFailedError(reason=payment.error, amount=tier.price)

        self.logger.info(
            "user_subscribed",
            user_id=user_id,
            subscription_id=str(subscription.id),
            tier_id=str(tier.id),
            provider_id=tier.provider_id,
            free=tier.is_free,
        )
        return subscription

    async def change_tier(
        self,
        user_id: str,
        subscription_id: UUID,
        new_tier_id: UUID,
    ) -> Subscription:
        """Move a subscription to another tier of the same provider.

        Upgrades are charged the price difference for the unused part of the
        current period, immediately. Downgrades are not refunded. The period
        window is left as is either way.

        Args:
            user_id: Owner of the subscription
            subscription_id: Subscription to change
            new_tier_id: Target tier

        Returns:
            Updated subscription

        Raises:
            SubscriptionNotFoundError: If subscription not found
            NotOwnerError: If the user does not own the subscription
            TierNotFoundError: If the target tier does not exist
            TierInactiveError: If the target tier is deactivated
            InvalidTierChangeError: If the change is cross-provider, a no-op,
                or the subscription is not active
            DuplicateSubscriptionError: If the user already holds the target tier
            PaymentFailedError: If the prorated charge fails
            ConcurrentModificationError: If the row changed during the charge
        """
        now = self.clock.now()

        async with self.session_factory() as session:
            subscription = await self._get_owned(session, user_id, subscription_id)
            old_tier = subscription.tier
            new_tier = await load_tier(session, new_tier_id)

            self._validate_tier_change(subscription, old_tier, new_tier)
            if await self._find_active(session, user_id, new_tier.id) is not None:
                raise DuplicateSubscriptionError(
                    details={"tier_id": str(new_tier.id)},
                )
            observed_version = subscription.version

        charged = Decimal("0")
        payment_ref: str | None = None
        if new_tier.price > old_tier.price:
            charged = self.prorated_charge(subscription, old_tier, new_tier, now)
            if charged > 0:
                payment = await self.payments.charge(
                    ChargeRequest(
                        payer_address=subscription.payer_address,
                        tier=new_tier,
                        amount=charged,
                        path="upgrade",
                        memo=f"UPG:{subscription.id}",
                        extra={"subscription_id": str(subscription.id)},
                    )
                )
                if not payment.success:
                    raise PaymentFailedError(
                        f"Pro-rated payment failed: {payment.error}",
                        reason=payment.error,
                        amount=charged,
                    )
                payment_ref = payment.settlement_ref

        try:
            async with self.session_factory() as session, session.begin():
                subscription = await self._lock(session, subscription_id)
                if subscription.version != observed_version:
                    raise StaleDataError("subscription changed during tier change")
                subscription.tier_id = new_tier.id
                subscription.tier = await load_tier(session, new_tier.id)
                if payment_ref is not None:
                    subscription.last_payment_ref = payment_ref
                    subscription.last_payment_at = now
        except (StaleDataError, IntegrityError) as e:
            self.logger.error(
                "tier_change_conflict",
                subscription_id=str(subscription_id),
                charged=str(charged),
                settlement_ref=payment_ref,
            )
            raise ConcurrentModificationError(
                details={
                    "subscription_id": str(subscription_id),
                    "settlement_ref": payment_ref,
                },
            ) from e

        self.logger.info(
            "subscription_tier_changed",
            user_id=user_id,
            subscription_id=str(subscription_id),
            old_tier_id=str(old_tier.id),
            new_tier_id=str(new_tier.id),
            charged=str(charged),
        )
        return subscription

    def prorated_charge(
        self,
        subscription: Subscription,
        old_tier: SubscriptionTier,
        new_tier: SubscriptionTier,
        now: datetime,
    ) -> Decimal:
        """Price difference for the unused part of the current period."""
        difference = new_tier.price - old_tier.price
        if difference <= 0:
            return Decimal("0")
        return quantize_amount(difference * subscription.period_remaining_fraction(now))

    def _validate_tier_change(
        self,
        subscription: Subscription,
        old_tier: SubscriptionTier,
        new_tier: SubscriptionTier,
    ) -> None:
        if new_tier.provider_id != old_tier.provider_id:
            raise InvalidTierChangeError(
                "Cannot change to a tier from a different provider",
                field="new_tier_id",
                value=new_tier.id,
            )
        if not new_tier.active:
            raise TierInactiveError(field="new_tier_id", value=new_tier.id)
        if new_tier.id == old_tier.id:
            raise InvalidTierChangeError(
                "Subscription is already on this tier",
                field="new_tier_id",
                value=new_tier.id,
            )
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise InvalidTierChangeError(
                f"Cannot change tier of a {subscription.status.value} subscription",
                field="status",
                value=subscription.status.value,
            )

    async def cancel_subscription(
        self,
        user_id: str,
        subscription_id: UUID,
        immediate: bool = False,
    ) -> Subscription:
        """Cancel a subscription.

        Args:
            user_id: Owner of the subscription
            subscription_id: Subscription to cancel
            immediate: If True, revoke access now; otherwise stop renewing and
                let the paid period run out

        Returns:
            Updated subscription

        Raises:
            SubscriptionNotFoundError: If subscription not found
            NotOwnerError: If the user does not own the subscription
            AlreadyCancelledError: If already cancelled, expired, or already
                set to lapse at period end
        """
        now = self.clock.now()

        try:
            async with self.session_factory() as session, session.begin():
                subscription = await self._get_owned(
                    session, user_id, subscription_id, lock=True
                )

                if subscription.status.is_terminal:
                    raise AlreadyCancelledError(
                        details={"status": subscription.status.value},
                    )
                deferred_pending = (
                    subscription.status == SubscriptionStatus.ACTIVE
                    and subscription.cancelled_at is not None
                )
                if deferred_pending and not immediate:
                    raise AlreadyCancelledError(
                        "Subscription is already set to end at period end",
                    )

                subscription.auto_renew = False
                subscription.cancelled_at = now
                # A suspended row has no paid period left to run out
                if immediate or subscription.status != SubscriptionStatus.ACTIVE:
                    subscription.status = SubscriptionStatus.CANCELLED
                    subscription.next_retry_at = None
        except StaleDataError as e:
            raise ConcurrentModificationError(
                details={"subscription_id": str(subscription_id)},
            ) from e

        if subscription.status == SubscriptionStatus.CANCELLED:
            track_transition(SubscriptionStatus.CANCELLED.value)

        self.logger.info(
            "subscription_cancelled",
            user_id=user_id,
            subscription_id=str(subscription_id),
            immediate=immediate,
            status=subscription.status.value,
        )
        return subscription

    async def get_subscription(self, user_id: str, subscription_id: UUID) -> Subscription:
        """Get one of the user's subscriptions.

        Raises:
            SubscriptionNotFoundError: If subscription not found
            NotOwnerError: If the user does not own the subscription
        """
        async with self.session_factory() as session:
            return await self._get_owned(session, user_id, subscription_id)

    async def list_user_subscriptions(self, user_id: str) -> list[Subscription]:
        """List every subscription row of a user, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .order_by(Subscription.created_at.desc())
            )
            return list(result.scalars().all())

    async def verify_last_payment(self, user_id: str, subscription_id: UUID) -> bool:
        """Check the subscription's last settlement with the payment gateway."""
        subscription = await self.get_subscription(user_id, subscription_id)
        if not subscription.last_payment_ref:
            return False
        return await self.payments.verify(subscription.last_payment_ref)

    async def _find_active(
        self,
        session: AsyncSession,
        user_id: str,
        tier_id: UUID,
    ) -> Subscription | None:
        result = await session.execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.tier_id == tier_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
        )
        return result.scalars().first()

    async def _lock(self, session: AsyncSession, subscription_id: UUID) -> Subscription:
        result = await session.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update(of=Subscription)
            .execution_options(populate_existing=True)
        )
        subscription = result.scalars().first()
        if subscription is None:
            raise SubscriptionNotFoundError(
                resource_type="Subscription",
                resource_id=str(subscription_id),
            )
        return subscription

    async def _get_owned(
        self,
        session: AsyncSession,
        user_id: str,
        subscription_id: UUID,
        *,
        lock: bool = False,
    ) -> Subscription:
        if lock:
            subscription = await self._lock(session, subscription_id)
        else:
            subscription = await session.get(Subscription, subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(
                    resource_type="Subscription",
                    resource_id=str(subscription_id),
                )
        if subscription.user_id != user_id:
            raise NotOwnerError(
                resource_type="subscription",
                resource_id=str(subscription_id),
            )
        return subscription

    async def _mark_status(self, subscription_id: UUID, status: SubscriptionStatus) -> None:
        async with self.session_factory() as session, session.begin():
            subscription = await self._lock(session, subscription_id)
            subscription.status = status
