"""Subscription tier and subscription models."""

import enum
from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from signaltiers.models.base import Base, TimestampMixin, UTCDateTime

# Money is kept at the precision of the settlement rail
MONEY = Numeric(18, 7)


class SubscriptionStatus(str, enum.Enum):
    """Subscription status enum."""

    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        """Terminal rows are kept for audit and never transition again."""
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class SubscriptionTier(Base, TimestampMixin):
    """Provider-defined subscription plan."""

    __tablename__ = "subscription_tiers"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    provider_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    price: Mapped[Decimal] = mapped_column(
        MONEY,
        nullable=False,
        default=Decimal("0"),
    )
    benefits: Mapped[list[str]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
        default=list,
    )
    signal_limit: Mapped[int | None] = mapped_column(
        nullable=True,
    )
    active: Mapped[bool] = mapped_column(
        default=True,
        nullable=False,
    )
    platform_commission: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        default=Decimal("20"),
    )

    subscriptions: Mapped[list["Subscription"]] = relationship(
        back_populates="tier",
    )

    @property
    def is_free(self) -> bool:
        return self.price <= 0

    @property
    def is_unlimited(self) -> bool:
        """Check if the tier puts no cap on daily signal reads."""
        return self.signal_limit is None


class Subscription(Base, TimestampMixin):
    """A user's entitlement to one provider tier.

    ``version`` is bumped on every update; a write based on a stale read
    raises ``StaleDataError`` instead of silently overwriting a concurrent
    transition.
    """

    __tablename__ = "user_subscriptions"
    __table_args__ = (
        Index(
            "uq_user_subscriptions_active_user_tier",
            "user_id",
            "tier_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_user_subscriptions_status_period_end", "status", "current_period_end"),
        Index("ix_user_subscriptions_status_next_retry", "status", "next_retry_at"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    tier_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("subscription_tiers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(
            SubscriptionStatus,
            name="subscriptionstatus",
            values_callable=lambda x: [e.value for e in x],
            native_enum=False,
            length=16,
        ),
        default=SubscriptionStatus.PENDING,
        nullable=False,
    )
    payer_address: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )
    current_period_start: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    current_period_end: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    auto_renew: Mapped[bool] = mapped_column(
        default=True,
        nullable=False,
    )
    last_payment_ref: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
    )
    last_payment_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    payment_failure_count: Mapped[int] = mapped_column(
        default=0,
        nullable=False,
    )
    next_retry_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    version: Mapped[int] = mapped_column(
        nullable=False,
        default=1,
    )

    tier: Mapped["SubscriptionTier"] = relationship(
        back_populates="subscriptions",
        lazy="joined",
        innerjoin=True,
    )

    __mapper_args__ = {"version_id_col": version}

    def is_entitled(self, now: datetime | None = None) -> bool:
        """Check if the subscription currently grants access."""
        now = now or datetime.now(UTC)
        return (
            self.status == SubscriptionStatus.ACTIVE
            and self.current_period_end > now
        )

    def period_remaining_fraction(self, now: datetime) -> Decimal:
        """Unused share of the current period, between 0 and 1."""
        total = self.current_period_end - self.current_period_start
        remaining = self.current_period_end - now
        if remaining.total_seconds() <= 0:
            return Decimal("0")
        if remaining >= total:
            return Decimal("1")
        total_ms = int(total.total_seconds() * 1000)
        remaining_ms = int(remaining.total_seconds() * 1000)
        return Decimal(remaining_ms) / Decimal(total_ms)
