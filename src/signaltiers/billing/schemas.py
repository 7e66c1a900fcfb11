"""Pydantic schemas for tiers, subscriptions and billing reports."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from signaltiers.billing.models import SubscriptionStatus


class TierBase(BaseModel):
    """Base schema for a subscription tier."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    price: Decimal = Field(..., ge=0, decimal_places=7)
    benefits: list[str] = Field(default_factory=list)
    signal_limit: int | None = Field(None, ge=0)
    active: bool = True
    platform_commission: Decimal | None = Field(None, ge=0, le=100)


class TierCreate(TierBase):
    """Schema for creating a tier. Commission falls back to the platform default."""


class TierUpdate(BaseModel):
    """Partial update of a tier; unset fields are left untouched."""

    name: str | None = Field(None, min_length=1, max_length=100)
    description: str | None = None
    price: Decimal | None = Field(None, ge=0, decimal_places=7)
    benefits: list[str] | None = None
    signal_limit: int | None = Field(None, ge=0)
    active: bool | None = None
    platform_commission: Decimal | None = Field(None, ge=0, le=100)


class TierResponse(BaseModel):
    """Schema for tier response."""

    id: UUID
    provider_id: str
    name: str
    description: str | None
    price: Decimal
    benefits: list[str]
    signal_limit: int | None
    active: bool
    platform_commission: Decimal
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SubscriptionCreate(BaseModel):
    """Schema for subscribing to a tier."""

    tier_id: UUID
    payer_address: str = Field(..., min_length=1, max_length=128)
    auto_renew: bool = True


class SubscriptionResponse(BaseModel):
    """Schema for subscription response."""

    id: UUID
    user_id: str
    tier_id: UUID
    status: SubscriptionStatus
    payer_address: str
    current_period_start: datetime
    current_period_end: datetime
    auto_renew: bool
    last_payment_ref: str | None
    last_payment_at: datetime | None
    payment_failure_count: int
    next_retry_at: datetime | None
    cancelled_at: datetime | None
    tier: TierResponse

    model_config = {"from_attributes": True}


class AccessDecision(BaseModel):
    """Outcome of an access check. ``reason`` is set on denials only."""

    allowed: bool
    reason: str | None = None
    subscription_id: UUID | None = None
    tier_id: UUID | None = None


class ProviderRevenue(BaseModel):
    """Monthly recurring revenue of a provider's active subscriptions."""

    provider_id: str
    total_revenue: Decimal = Decimal("0.00")
    platform_commission: Decimal = Decimal("0.00")
    provider_earnings: Decimal = Decimal("0.00")
    active_subscribers: int = 0
