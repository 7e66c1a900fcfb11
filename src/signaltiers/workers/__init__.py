"""Celery workers running the billing sweeps."""
