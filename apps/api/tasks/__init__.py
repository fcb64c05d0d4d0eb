"""
Celery application for the session engine.

The engine enqueues outcome reports; the worker records them and runs the
periodic learning fold. Both sides import this module.
"""
from celery import Celery

from core.config import settings

celery_app = Celery(
    "session_engine",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Outcomes must survive a worker crash between receipt and queueing.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT_S,
    task_soft_time_limit=int(settings.CELERY_TASK_TIME_LIMIT_S * 0.8),
    result_expires=settings.CELERY_RESULT_EXPIRES_S,
)

from . import learning_tasks  # noqa: E402,F401

__all__ = ["celery_app"]
