"""
Session Store

Persistent side of the engine: catalog template CRUD, the append-only
optimization record log, the generation log and the learning log.

Two implementations share one interface:
- InMemorySessionStore: process-local, used by tests and scripts
- SqlSessionStore: SQLAlchemy, tables in models.py

Learning entries are deduplicated by entry_id in both.
The learning state row is written compare-and-set on its revision, so two
processes folding at once cannot both win.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .constants import SessionType
from .schemas import GenerationLog, LearningEntry, LearningState, SessionTemplate

logger = logging.getLogger(__name__)


class SessionStore:
    """Contract of the persistent store collaborator."""

    # ========== Templates ==========

    def save_template(self, template: SessionTemplate) -> None:
        raise NotImplementedError

    def get_template(self, template_id: str) -> Optional[SessionTemplate]:
        raise NotImplementedError

    def list_templates(self, session_type: Optional[SessionType] = None) -> List[SessionTemplate]:
        raise NotImplementedError

    def delete_template(self, template_id: str) -> bool:
        raise NotImplementedError

    # ========== Optimization records ==========

    def append_optimization_records(self, session_id: str, template: SessionTemplate) -> int:
        raise NotImplementedError

    def list_optimization_records(self, session_id: str) -> List[dict]:
        raise NotImplementedError

    # ========== Generation log ==========

    def save_generation_log(self, log: GenerationLog) -> None:
        raise NotImplementedError

    def get_generation_log(self, session_id: str) -> Optional[GenerationLog]:
        raise NotImplementedError

    # ========== Learning log ==========

    def append_learning_entries(self, entries: Iterable[LearningEntry]) -> int:
        """Append entries not seen before. Returns how many were new."""
        raise NotImplementedError

    def list_learning_entries(
        self,
        user_id: Optional[str] = None,
        session_type: Optional[SessionType] = None,
    ) -> List[LearningEntry]:
        raise NotImplementedError

    # ========== Learning state ==========

    def get_learning_state(self) -> Optional[LearningState]:
        raise NotImplementedError

    def save_learning_state(self, state: LearningState) -> bool:
        """Store `state` if the stored revision is state.revision - 1. False on conflict."""
        raise NotImplementedError


def _record_rows(session_id: str, template: SessionTemplate) -> List[dict]:
    return [
        {
            "session_id": session_id,
            "template_id": template.id,
            "method": r.method.value,
            "improvement": r.improvement,
            "parameters": r.parameters,
            "feedback": r.feedback.model_dump(mode="json"),
            "recorded_at": r.timestamp,
        }
        for r in template.optimization_history
    ]


class InMemorySessionStore(SessionStore):
    """
    Usage:
        store = InMemorySessionStore()
        store.save_template(template)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._templates: Dict[str, SessionTemplate] = {}
        self._records: List[dict] = []
        self._generation_logs: Dict[str, GenerationLog] = {}
        self._learning: List[LearningEntry] = []
        self._learning_ids: set = set()
        self._learning_state: Optional[LearningState] = None

    def save_template(self, template):
        with self._lock:
            self._templates[template.id] = template

    def get_template(self, template_id):
        return self._templates.get(template_id)

    def list_templates(self, session_type=None):
        with self._lock:
            templates = sorted(self._templates.values(), key=lambda t: t.id)
        return [t for t in templates if session_type is None or t.type == session_type]

    def delete_template(self, template_id):
        with self._lock:
            return self._templates.pop(template_id, None) is not None

    def append_optimization_records(self, session_id, template):
        rows = _record_rows(session_id, template)
        with self._lock:
            self._records.extend(rows)
        return len(rows)

    def list_optimization_records(self, session_id):
        with self._lock:
            return [dict(r) for r in self._records if r["session_id"] == session_id]

    def save_generation_log(self, log):
        with self._lock:
            self._generation_logs[log.session_id] = log

    def get_generation_log(self, session_id):
        return self._generation_logs.get(session_id)

    def append_learning_entries(self, entries):
        added = 0
        with self._lock:
            for entry in entries:
                if entry.entry_id in self._learning_ids:
                    continue
                self._learning_ids.add(entry.entry_id)
                self._learning.append(entry)
                added += 1
        return added

    def list_learning_entries(self, user_id=None, session_type=None):
        with self._lock:
            entries = list(self._learning)
        return [
            e for e in entries
            if (user_id is None or e.user_id == user_id)
            and (session_type is None or e.session_type == session_type)
        ]

    def get_learning_state(self):
        return self._learning_state

    def save_learning_state(self, state):
        with self._lock:
            current = self._learning_state.revision if self._learning_state else 0
            if state.revision != current + 1:
                return False
            self._learning_state = state
            return True


class SqlSessionStore(SessionStore):
    """
    SQLAlchemy-backed store.

    Usage:
        store = SqlSessionStore(SessionLocal)
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def save_template(self, template):
        from models import SessionTemplateRecord

        db = self.session_factory()
        try:
            row = db.get(SessionTemplateRecord, template.id)
            payload = template.model_dump(mode="json")
            if row is None:
                row = SessionTemplateRecord(id=template.id)
                db.add(row)
            row.session_type = template.type.value
            row.name = template.name
            row.difficulty = template.difficulty.value
            row.estimated_duration = template.estimated_duration
            row.payload = payload
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_template(self, template_id):
        from models import SessionTemplateRecord

        db = self.session_factory()
        try:
            row = db.get(SessionTemplateRecord, template_id)
            return SessionTemplate.model_validate(row.payload) if row else None
        finally:
            db.close()

    def list_templates(self, session_type=None):
        from models import SessionTemplateRecord

        db = self.session_factory()
        try:
            query = db.query(SessionTemplateRecord)
            if session_type is not None:
                query = query.filter(SessionTemplateRecord.session_type == session_type.value)
            rows = query.order_by(SessionTemplateRecord.id).all()
            return [SessionTemplate.model_validate(r.payload) for r in rows]
        finally:
            db.close()

    def delete_template(self, template_id):
        from models import SessionTemplateRecord

        db = self.session_factory()
        try:
            deleted = db.query(SessionTemplateRecord).filter(SessionTemplateRecord.id == template_id).delete()
            db.commit()
            return deleted > 0
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def append_optimization_records(self, session_id, template):
        from models import OptimizationRecordLog

        rows = _record_rows(session_id, template)
        db = self.session_factory()
        try:
            db.add_all([OptimizationRecordLog(**row) for row in rows])
            db.commit()
            return len(rows)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_optimization_records(self, session_id):
        from models import OptimizationRecordLog

        db = self.session_factory()
        try:
            rows = (
                db.query(OptimizationRecordLog)
                .filter(OptimizationRecordLog.session_id == session_id)
                .order_by(OptimizationRecordLog.id)
                .all()
            )
            return [
                {
                    "session_id": r.session_id,
                    "template_id": r.template_id,
                    "method": r.method,
                    "improvement": r.improvement,
                    "parameters": r.parameters,
                    "feedback": r.feedback,
                    "recorded_at": r.recorded_at,
                }
                for r in rows
            ]
        finally:
            db.close()

    def save_generation_log(self, log):
        from models import GenerationLogRecord

        db = self.session_factory()
        try:
            db.merge(GenerationLogRecord(
                session_id=log.session_id,
                user_id=log.user_id,
                session_type=log.session_type.value,
                template_id=log.template_id,
                duration=log.duration,
                phase_count=log.phase_count,
                difficulty=log.difficulty.value,
                predicted_success=log.predicted_success,
                created_at=log.created_at,
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_generation_log(self, session_id):
        from models import GenerationLogRecord

        db = self.session_factory()
        try:
            row = db.get(GenerationLogRecord, session_id)
            if row is None:
                return None
            return GenerationLog(
                session_id=row.session_id,
                user_id=row.user_id,
                session_type=row.session_type,
                template_id=row.template_id,
                duration=row.duration,
                phase_count=row.phase_count,
                difficulty=row.difficulty,
                predicted_success=row.predicted_success,
                created_at=row.created_at,
            )
        finally:
            db.close()

    def append_learning_entries(self, entries):
        from models import LearningEntryRecord

        added = 0
        db = self.session_factory()
        try:
            for entry in entries:
                exists = (
                    db.query(LearningEntryRecord.id)
                    .filter(LearningEntryRecord.entry_id == entry.entry_id)
                    .first()
                )
                if exists:
                    continue
                db.add(LearningEntryRecord(
                    entry_id=entry.entry_id,
                    session_id=entry.session_id,
                    user_id=entry.user_id,
                    session_type=entry.session_type.value,
                    success_score=entry.performance.success_score,
                    payload=entry.model_dump(mode="json"),
                    recorded_at=entry.timestamp,
                ))
                db.flush()
                added += 1
            db.commit()
            return added
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_learning_entries(self, user_id=None, session_type=None):
        from models import LearningEntryRecord

        db = self.session_factory()
        try:
            query = db.query(LearningEntryRecord)
            if user_id is not None:
                query = query.filter(LearningEntryRecord.user_id == user_id)
            if session_type is not None:
                query = query.filter(LearningEntryRecord.session_type == session_type.value)
            rows = query.order_by(LearningEntryRecord.id).all()
            return [LearningEntry.model_validate(r.payload) for r in rows]
        finally:
            db.close()

    def get_learning_state(self):
        from models import LearningStateRecord

        db = self.session_factory()
        try:
            row = db.get(LearningStateRecord, LearningStateRecord.SINGLETON_ID)
            if row is None:
                return None
            return LearningState(
                revision=row.revision,
                folded_entries=row.folded_entries,
                model_weights=row.model_weights,
                model_bias=row.model_bias,
                fitness_weights=row.fitness_weights,
                updated_at=row.updated_at,
            )
        finally:
            db.close()

    def save_learning_state(self, state):
        from models import LearningStateRecord

        values = {
            "revision": state.revision,
            "folded_entries": state.folded_entries,
            "model_weights": dict(state.model_weights),
            "model_bias": state.model_bias,
            "fitness_weights": dict(state.fitness_weights),
            "updated_at": state.updated_at,
        }
        db = self.session_factory()
        try:
            if state.revision == 1:
                db.add(LearningStateRecord(id=LearningStateRecord.SINGLETON_ID, **values))
                db.commit()
                return True
            updated = (
                db.query(LearningStateRecord)
                .filter(
                    LearningStateRecord.id == LearningStateRecord.SINGLETON_ID,
                    LearningStateRecord.revision == state.revision - 1,
                )
                .update(values, synchronize_session=False)
            )
            db.commit()
            return updated == 1
        except IntegrityError:
            db.rollback()
            return False
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
