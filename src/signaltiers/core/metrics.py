"""Prometheus metrics for monitoring the billing engine."""

from collections.abc import Iterator
from contextlib import contextmanager
from time import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_attempts_total = Counter(
    "signaltiers_payment_attempts_total",
    "Total number of gateway charges attempted",
    ["path", "outcome"],
)

payment_latency_seconds = Histogram(
    "signaltiers_payment_latency_seconds",
    "Latency of gateway charges in seconds",
    ["path"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

payments_in_flight = Gauge(
    "signaltiers_payments_in_flight",
    "Number of gateway charges currently in flight",
)

# Subscription lifecycle metrics
subscription_transitions_total = Counter(
    "signaltiers_subscription_transitions_total",
    "Subscription status transitions",
    ["to_status"],
)

# Scheduler metrics
sweep_rows_total = Counter(
    "signaltiers_sweep_rows_total",
    "Rows processed by billing sweeps",
    ["sweep", "outcome"],
)

sweep_duration_seconds = Histogram(
    "signaltiers_sweep_duration_seconds",
    "Duration of billing sweeps in seconds",
    ["sweep"],
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0),
)

# Access gate metrics
access_checks_total = Counter(
    "signaltiers_access_checks_total",
    "Access checks by decision",
    ["allowed"],
)


def track_payment(path: str, outcome: str, duration: float) -> None:
    """Record a gateway charge.

    Args:
        path: Billing path that issued the charge (subscribe, upgrade, renewal)
        outcome: success, declined, timeout or error
        duration: Charge duration in seconds
    """
    payment_attempts_total.labels(path=path, outcome=outcome).inc()
    payment_latency_seconds.labels(path=path).observe(duration)


def track_transition(to_status: str) -> None:
    """Record a subscription status transition."""
    subscription_transitions_total.labels(to_status=to_status).inc()


def track_sweep_row(sweep: str, outcome: str) -> None:
    """Record one row handled by a sweep."""
    sweep_rows_total.labels(sweep=sweep, outcome=outcome).inc()


def track_access_check(allowed: bool) -> None:
    """Record an access gate decision."""
    access_checks_total.labels(allowed=str(allowed).lower()).inc()


@contextmanager
def track_sweep_time(sweep: str) -> Iterator[None]:
    """Context manager to track the duration of a sweep.

    Example:
        with track_sweep_time("renewal"):
            await scheduler.run_renewal_sweep()
    """
    start = time()
    try:
        yield
    finally:
        sweep_duration_seconds.labels(sweep=sweep).observe(time() - start)
