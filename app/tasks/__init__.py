"""
Celery configuration for outbound notifications.

Usage:
    celery -A app.tasks.celery_app worker --loglevel=INFO

Only used when NOTIFY_ASYNC=1; otherwise notifications are delivered inline.
"""
from __future__ import annotations

import os

from celery import Celery


def make_celery() -> Celery:
    """
    Create and configure Celery app with Redis broker.

    Environment variables:
        REDIS_URL: Redis connection URL (default: redis://localhost:6379/0)
        CELERY_RESULT_BACKEND: Optional separate result backend
    """
    redis_url = os.getenv("REDIS_URL", "") or "redis://localhost:6379/0"
    result_backend = os.getenv("CELERY_RESULT_BACKEND", redis_url)

    app = Celery(
        "onboarding",
        broker=redis_url,
        backend=result_backend,
        include=["app.tasks.notifications"],
    )

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone=os.getenv("APP_TIMEZONE", "Asia/Kolkata"),
        enable_utc=True,
        # Notification results are not read back.
        task_ignore_result=True,
        result_expires=3600,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=int(os.getenv("CELERY_CONCURRENCY", "4")),
        task_default_rate_limit="100/m",
        task_default_retry_delay=60,
        task_max_retries=3,
    )

    return app


celery_app = make_celery()
