"""
Learning Tasks

Outcome intake and the periodic learning fold.
Runs via Celery Beat scheduler (see celerybeat_schedule.py).
"""

import logging
import threading
from typing import Dict, List, Optional

from celery import Task
from pydantic import ValidationError as SchemaValidationError

from core.cache import get_redis_client
from core.database import SessionLocal, init_db
from core.exceptions import NotFoundError, ValidationError
from core.logging import log_event
from services.session_generation.container import GenerationServices
from services.session_generation.learning import LearningAck
from services.session_generation.schemas import OptimizationFeedback, SessionPerformance
from services.session_generation.store import SqlSessionStore
from tasks import celery_app

logger = logging.getLogger(__name__)

_services: Optional[GenerationServices] = None
_services_lock = threading.Lock()


def get_worker_services() -> GenerationServices:
    """Process-wide services for the worker, built on first use."""
    global _services
    with _services_lock:
        if _services is None:
            init_db()
            _services = GenerationServices(
                store=SqlSessionStore(SessionLocal),
                redis=get_redis_client(),
            ).bootstrap()
            _services.acquire()
        return _services


@celery_app.task(name="tasks.record_session_outcome", bind=True)
def record_session_outcome_task(
    self: Task,
    session_id: str,
    performance: Dict,
    feedback: Dict,
    outcomes: Optional[List[str]] = None,
) -> Dict:
    """
    Queue one realized session outcome for the next fold.

    Duplicate reports are acknowledged without being queued twice.
    """
    try:
        performance_model = SessionPerformance.model_validate(performance)
        feedback_model = OptimizationFeedback.model_validate(feedback)
    except SchemaValidationError as e:
        logger.warning(f"Rejected outcome for session {session_id}: {e}")
        error = ValidationError(str(e), field="outcome")
        return {"status": "error", "error_code": error.error_code, "message": error.detail}

    recorder = get_worker_services().recorder
    try:
        log = recorder.lookup(session_id)
    except NotFoundError as e:
        logger.info(f"Outcome for unknown session {session_id} ignored")
        ack = LearningAck(session_id=session_id, accepted=False, reason="unknown_session")
        return {"status": "ignored", "error_code": e.error_code, **ack.to_dict()}

    ack = recorder.record_outcome(session_id, performance_model, feedback_model, outcomes or (), log=log)
    return {"status": "duplicate" if ack.duplicate else "queued", **ack.to_dict()}


@celery_app.task(name="tasks.fold_learning_outcomes", bind=True)
def fold_learning_outcomes_task(self: Task, force: bool = False) -> Dict:
    """
    Fold queued outcomes into the learning snapshot.

    Skips when the fold interval has not elapsed, unless force is set.
    """
    recorder = get_worker_services().recorder
    report = recorder.fold_pending() if force else recorder.run_due()
    if report is None:
        return {"status": "skipped", "pending": recorder.pending_count}

    if report.error:
        logger.error(f"Learning fold failed: {report.error}")
        return {"status": "error", **report.to_dict()}

    log_event(
        logger,
        "Learning fold complete",
        task_id=self.request.id,
        folded=report.folded,
        remaining=report.remaining,
        snapshot_version=report.snapshot_version,
    )
    return {"status": "success", **report.to_dict()}
