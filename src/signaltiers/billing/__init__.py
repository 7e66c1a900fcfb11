"""Subscription billing: tiers, lifecycle, sweeps, access and revenue."""

from signaltiers.billing.access import AccessControlGate
from signaltiers.billing.collaborators import (
    LoggingRenewalNotifier,
    RedisDailyUsageCounter,
    RenewalNotice,
    StaticProviderDirectory,
)
from signaltiers.billing.models import Subscription, SubscriptionStatus, SubscriptionTier
from signaltiers.billing.payments import (
    PaymentGateway,
    PaymentProcessor,
    PaymentResult,
    SandboxPaymentGateway,
)
from signaltiers.billing.revenue import RevenueAggregator
from signaltiers.billing.scheduler import BillingScheduler, SweepLock, SweepResult, SweepRunner
from signaltiers.billing.service import SubscriptionService
from signaltiers.billing.tiers import TierCatalog

__all__ = [
    "AccessControlGate",
    "BillingScheduler",
    "LoggingRenewalNotifier",
    "PaymentGateway",
    "PaymentProcessor",
    "PaymentResult",
    "RedisDailyUsageCounter",
    "RenewalNotice",
    "RevenueAggregator",
    "SandboxPaymentGateway",
    "StaticProviderDirectory",
    "Subscription",
    "SubscriptionService",
    "SubscriptionStatus",
    "SubscriptionTier",
    "SweepLock",
    "SweepResult",
    "SweepRunner",
    "TierCatalog",
]
