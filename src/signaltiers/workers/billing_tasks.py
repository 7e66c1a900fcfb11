"""Celery tasks for the billing sweeps.

Each task runs one sweep on a fresh event loop with its own engine and Redis
client, guarded by the sweep's distributed lock so that two workers never
run the same sweep at once.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

import redis.asyncio as redis
import structlog
from celery import shared_task
from kombu.utils.imports import symbol_by_name
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from signaltiers.billing.collaborators import LoggingRenewalNotifier, ProviderDirectory
from signaltiers.billing.payments import PaymentGateway, PaymentProcessor
from signaltiers.billing.scheduler import BillingScheduler, SweepLock, SweepType
from signaltiers.core.config import BillingConfig, Settings, get_settings
from signaltiers.core.database import create_session_factory

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run async function in sync context for Celery."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def build_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> BillingScheduler:
    """Wire a scheduler from settings.

    The gateway and provider directory classes are dotted paths in settings;
    the directory class must provide ``from_settings(settings)``.
    """
    config = BillingConfig.from_settings(settings)
    gateway_cls = symbol_by_name(settings.payment_gateway)
    gateway: PaymentGateway = gateway_cls()
    directory_cls = symbol_by_name(settings.provider_directory)
    providers: ProviderDirectory = directory_cls.from_settings(settings)
    return BillingScheduler(
        session_factory=session_factory,
        payments=PaymentProcessor(gateway, providers, config),
        config=config,
        notifier=LoggingRenewalNotifier(),
        providers=providers,
    )


async def _run_sweep_async(sweep: SweepType) -> dict[str, Any]:
    settings = get_settings()
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    redis_client = redis.from_url(  # type: ignore[no-untyped-call]
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    try:
        scheduler = build_scheduler(create_session_factory(engine), settings)
        lock = SweepLock(redis_client, timeout=settings.sweep_lock_timeout_seconds)
        async with lock.hold(sweep) as acquired:
            if not acquired:
                logger.info("sweep_lock_busy", sweep=sweep.value)
                return {"sweep": sweep.value, "skipped": True}

            if sweep is SweepType.RENEWAL:
                result = await scheduler.run_renewal_sweep()
            elif sweep is SweepType.NOTICE:
                result = await scheduler.run_notice_sweep()
            else:
                result = await scheduler.run_retry_sweep()
            return result.as_dict()
    finally:
        await redis_client.aclose()
        await engine.dispose()


def _run_sweep(sweep: SweepType) -> dict[str, Any]:
    logger.info("task_started", task=f"{sweep.value}_sweep")
    try:
        result = run_async(_run_sweep_async(sweep))
    except Exception as e:
        logger.error("task_failed", task=f"{sweep.value}_sweep", error=str(e))
        raise
    logger.info("task_completed", task=f"{sweep.value}_sweep", result=result)
    return result


@shared_task(bind=True, name="signaltiers.workers.billing_tasks.run_renewal_sweep")  # type: ignore[untyped-decorator]
def run_renewal_sweep(_self: Any) -> dict[str, Any]:  # noqa: ARG001
    """Renew or lapse subscriptions whose period has ended."""
    return _run_sweep(SweepType.RENEWAL)


@shared_task(bind=True, name="signaltiers.workers.billing_tasks.run_notice_sweep")  # type: ignore[untyped-decorator]
def run_notice_sweep(_self: Any) -> dict[str, Any]:  # noqa: ARG001
    """Send renewal notices for subscriptions renewing soon."""
    return _run_sweep(SweepType.NOTICE)


@shared_task(bind=True, name="signaltiers.workers.billing_tasks.run_retry_sweep")  # type: ignore[untyped-decorator]
def run_retry_sweep(_self: Any) -> dict[str, Any]:  # noqa: ARG001
    """Retry or expire suspended subscriptions."""
    return _run_sweep(SweepType.RETRY)
