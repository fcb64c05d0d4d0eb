"""
Celery worker entry point for the session engine.

Run with:
    celery -A main worker --beat --loglevel=info
"""
import os
import sys

sys.path.insert(0, os.getenv("API_PATH", "/api"))

from celerybeat_schedule import beat_schedule  # noqa: E402
from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging(fmt="json")
celery_app.conf.beat_schedule = beat_schedule
celery_app.conf.worker_hijack_root_logger = False
celery_app.autodiscover_tasks(["tasks"])

app = celery_app
