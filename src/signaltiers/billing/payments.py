"""Payment gateway contract and the single charge path used by billing.

The gateway is an external collaborator: it moves value on the settlement
rail and reports what happened, nothing more. Billing policy lives in
``PaymentProcessor``, which decides the revenue split, bounds concurrency and
turns every kind of failure (decline, timeout, gateway exception) into a
failed ``PaymentResult`` so callers only ever deal with one shape.
"""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from time import monotonic

from signaltiers.billing.collaborators import ProviderDirectory
from signaltiers.billing.models import SubscriptionTier
from signaltiers.core.config import BillingConfig
from signaltiers.core.logging import LoggerMixin
from signaltiers.core.metrics import payments_in_flight, track_payment

SETTLEMENT_PRECISION = Decimal("0.0000001")


def quantize_amount(amount: Decimal) -> Decimal:
    """Round an amount to the precision of the settlement rail."""
    return amount.quantize(SETTLEMENT_PRECISION, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Transfer:
    """One leg of a settlement."""

    payee_address: str
    amount: Decimal


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of a charge as reported to billing code."""

    success: bool
    settlement_ref: str | None = None
    error: str | None = None
    amount: Decimal = Decimal("0")

    @classmethod
    def ok(cls, settlement_ref: str, amount: Decimal) -> PaymentResult:
        return cls(success=True, settlement_ref=settlement_ref, amount=amount)

    @classmethod
    def failed(cls, error: str, amount: Decimal = Decimal("0")) -> PaymentResult:
        return cls(success=False, error=error, amount=amount)


@dataclass(frozen=True)
class RevenueSplit:
    """Division of a charge between provider and platform."""

    provider_amount: Decimal
    platform_amount: Decimal


def calculate_revenue_split(amount: Decimal, commission_percentage: Decimal) -> RevenueSplit:
    """Split ``amount`` into provider and platform shares.

    The platform share is rounded to settlement precision and the provider
    receives the exact remainder, so the legs always add up to the amount.
    """
    platform_amount = quantize_amount(amount * commission_percentage / Decimal(100))
    return RevenueSplit(
        provider_amount=quantize_amount(amount - platform_amount),
        platform_amount=platform_amount,
    )


class PaymentGateway(ABC):
    """Settlement rail adapter.

    Implementations must commit all transfers of one ``charge`` call as a
    single unit: either every leg settles and a settlement reference is
    returned, or none does and the result is a failure.
    """

    @abstractmethod
    async def charge(
        self,
        payer_address: str,
        transfers: Sequence[Transfer],
        *,
        memo: str | None = None,
    ) -> PaymentResult:
        """Move ``transfers`` out of ``payer_address`` atomically."""

    @abstractmethod
    async def verify(self, settlement_ref: str) -> bool:
        """Check that a settlement reference exists on the rail."""


class SandboxPaymentGateway(PaymentGateway):
    """In-process ledger gateway for development and tests.

    Payers listed in ``balances`` can only spend what they hold; any other
    payer has unlimited funds. Legs are applied one by one and rolled back
    if a later leg fails, so a charge is all-or-nothing.
    """

    def __init__(
        self,
        balances: dict[str, Decimal] | None = None,
        *,
        latency: float = 0.0,
    ) -> None:
        self.balances: dict[str, Decimal] = dict(balances or {})
        self.received: dict[str, Decimal] = {}
        self.settlements: dict[str, tuple[str, tuple[Transfer, ...]]] = {}
        self.declined_payers: set[str] = set()
        self.rejecting_payees: set[str] = set()
        self.charges: list[tuple[str, tuple[Transfer, ...]]] = []
        self.latency = latency

    def fund(self, address: str, amount: Decimal) -> None:
        self.balances[address] = self.balances.get(address, Decimal("0")) + amount

    async def charge(
        self,
        payer_address: str,
        transfers: Sequence[Transfer],
        *,
        memo: str | None = None,
    ) -> PaymentResult:
        legs = tuple(transfers)
        self.charges.append((payer_address, legs))
        if self.latency:
            await asyncio.sleep(self.latency)

        total = sum((leg.amount for leg in legs), Decimal("0"))
        if payer_address in self.declined_payers:
            return PaymentResult.failed("payment declined", total)

        applied: list[Transfer] = []
        for leg in legs:
            if leg.payee_address in self.rejecting_payees:
                self._rollback(payer_address, applied)
                return PaymentResult.failed(
                    f"transfer to {leg.payee_address} rejected", total
                )
            if payer_address in self.balances:
                if self.balances[payer_address] < leg.amount:
                    self._rollback(payer_address, applied)
                    return PaymentResult.failed("insufficient funds", total)
                self.balances[payer_address] -= leg.amount
            self.received[leg.payee_address] = (
                self.received.get(leg.payee_address, Decimal("0")) + leg.amount
            )
            applied.append(leg)

        seed = f"{payer_address}:{memo}:{uuid.uuid4()}".encode()
        settlement_ref = hashlib.sha256(seed).hexdigest()
        self.settlements[settlement_ref] = (payer_address, legs)
        return PaymentResult.ok(settlement_ref, total)

    def _rollback(self, payer_address: str, applied: list[Transfer]) -> None:
        for leg in applied:
            if payer_address in self.balances:
                self.balances[payer_address] += leg.amount
            self.received[leg.payee_address] -= leg.amount

    async def verify(self, settlement_ref: str) -> bool:
        return len(settlement_ref) == 64 and settlement_ref in self.settlements


@dataclass
class ChargeRequest:
    """What billing wants charged, before the split is applied."""

    payer_address: str
    tier: SubscriptionTier
    amount: Decimal
    path: str
    memo: str | None = None
    extra: dict[str, str] = field(default_factory=dict)


class PaymentProcessor(LoggerMixin):
    """The one payment path shared by lifecycle operations and sweeps."""

    def __init__(
        self,
        gateway: PaymentGateway,
        providers: ProviderDirectory,
        config: BillingConfig,
    ) -> None:
        """Initialize payment processor.

        Args:
            gateway: Settlement rail adapter
            providers: Resolves provider payout addresses
            config: Billing policy (platform payee, timeout, concurrency cap)
        """
        self.gateway = gateway
        self.providers = providers
        self.config = config
        self._semaphore = asyncio.Semaphore(config.max_concurrent_charges)

    async def charge(self, request: ChargeRequest) -> PaymentResult:
        """Charge a subscriber for a tier, split between provider and platform.

        Never raises for payment problems: declines, timeouts and gateway
        errors all come back as a failed result.

        Args:
            request: Payer, tier and amount to charge

        Returns:
            Payment result with settlement reference on success
        """
        amount = quantize_amount(request.amount)
        try:
            split = calculate_revenue_split(amount, request.tier.platform_commission)
            provider_address = await self.providers.payout_address(request.tier.provider_id)
        except Exception as e:
            track_payment(request.path, "error", 0.0)
            self.logger.warning(
                "payment_failed",
                path=request.path,
                amount=str(amount),
                outcome="error",
                error=f"payee resolution failed: {e}",
                provider_id=request.tier.provider_id,
                **request.extra,
            )
            return PaymentResult.failed(f"payee resolution failed: {e}", amount)

        transfers = [
            leg
            for leg in (
                Transfer(provider_address, split.provider_amount),
                Transfer(self.config.platform_payout_address, split.platform_amount),
            )
            if leg.amount > 0
        ]

        self.logger.info(
            "payment_started",
            path=request.path,
            amount=str(amount),
            provider_amount=str(split.provider_amount),
            platform_amount=str(split.platform_amount),
            tier_id=str(request.tier.id),
            **request.extra,
        )

        start = monotonic()
        async with self._semaphore:
            payments_in_flight.inc()
            try:
                result = await asyncio.wait_for(
                    self.gateway.charge(
                        request.payer_address,
                        transfers,
                        memo=request.memo,
                    ),
                    timeout=self.config.gateway_timeout_seconds,
                )
                outcome = "success" if result.success else "declined"
            except TimeoutError:
                result = PaymentResult.failed("payment gateway timed out", amount)
                outcome = "timeout"
            except Exception as e:
                result = PaymentResult.failed(f"payment gateway error: {e}", amount)
                outcome = "error"
            finally:
                payments_in_flight.dec()

        if result.success and not result.settlement_ref:
            result = PaymentResult.failed("settlement reference missing", amount)
            outcome = "error"

        track_payment(request.path, outcome, monotonic() - start)

        if result.success:
            self.logger.info(
                "payment_succeeded",
                path=request.path,
                amount=str(amount),
                settlement_ref=result.settlement_ref,
                **request.extra,
            )
            return PaymentResult.ok(result.settlement_ref or "", amount)

        self.logger.warning(
            "payment_failed",
            path=request.path,
            amount=str(amount),
            outcome=outcome,
            error=result.error,
            **request.extra,
        )
        return PaymentResult.failed(result.error or "payment failed", amount)

    async def verify(self, settlement_ref: str) -> bool:
        """Check a settlement reference with the gateway; errors read as unverified."""
        try:
            return await asyncio.wait_for(
                self.gateway.verify(settlement_ref),
                timeout=self.config.gateway_timeout_seconds,
            )
        except Exception as e:
            self.logger.warning(
                "payment_verification_failed",
                settlement_ref=settlement_ref,
                error=str(e),
            )
            return False
