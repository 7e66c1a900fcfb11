"""Celery application configuration."""

from celery import Celery

from signaltiers.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "signaltiers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "signaltiers.workers.billing_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.sweep_lock_timeout_seconds,
    task_soft_time_limit=settings.sweep_lock_timeout_seconds - 60,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.conf.beat_schedule = {
    "billing-renewal-sweep": {
        "task": "signaltiers.workers.billing_tasks.run_renewal_sweep",
        "schedule": settings.renewal_sweep_interval_seconds,
        "options": {"queue": "billing"},
    },
    "billing-notice-sweep": {
        "task": "signaltiers.workers.billing_tasks.run_notice_sweep",
        "schedule": settings.notice_sweep_interval_seconds,
        "options": {"queue": "billing"},
    },
    "billing-retry-sweep": {
        "task": "signaltiers.workers.billing_tasks.run_retry_sweep",
        "schedule": settings.retry_sweep_interval_seconds,
        "options": {"queue": "billing"},
    },
}
