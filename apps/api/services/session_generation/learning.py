"""
Continuous Learning Recorder

Takes realized session outcomes and folds them back into generation.

record_outcome() only hashes and queues; it never touches the store. The
session an outcome belongs to is looked up in the recorder's index of
recently published generations, or in the store at fold time. Folding
happens on a schedule driven by the clock: run_due() folds when the
interval has elapsed, fold_pending() forces it.

A fold:
1. resolves queued outcomes to learning entries, dropping unknown sessions
2. appends them to the learning log (deduplicated by entry id)
3. folds every log entry not yet in the shared learning state into it:
   the success model bias moves by the mean prediction residual, and the
   success weight of the fitness function moves toward how well
   predictions have been calibrated, renormalizing the others
4. writes the state back compare-and-set on its revision, retrying on
   conflict, and adopts it locally

Every process on the same store converges on the same weights: a fold
anywhere picks up entries appended by any process, and a fold with nothing
queued still adopts a newer state.

The local view is one LearningSnapshot that is replaced in a single
assignment, so readers see either the old state or the new one.
"""

import hashlib
import json
import logging
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from core.clock import Clock, SystemClock
from core.config import settings
from core.exceptions import NotFoundError
from core.logging import log_event

from .feedback import FeedbackTable
from .fitness import FitnessWeights
from .schemas import GenerationLog, LearningEntry, LearningState, OptimizationFeedback, SessionPerformance
from .scoring_model import ModelWeights
from .store import SessionStore

logger = logging.getLogger(__name__)

SUCCESS_WEIGHT_FLOOR = 0.3
SUCCESS_WEIGHT_SPAN = 0.4
STATE_WRITE_ATTEMPTS = 3
LOG_INDEX_SIZE = 10_000


@dataclass(frozen=True)
class LearningSnapshot:
    """Everything generation reads from learning, swapped as one unit."""
    model_weights: ModelWeights = field(default_factory=ModelWeights)
    fitness_weights: FitnessWeights = field(default_factory=FitnessWeights)
    feedback_table: FeedbackTable = field(default_factory=FeedbackTable)
    version: int = 0
    # Revision of the stored LearningState these weights came from
    revision: int = 0
    entry_count: int = 0


class SnapshotStore:
    """
    Holder of the current LearningSnapshot.

    Usage:
        snapshots = SnapshotStore(LearningSnapshot())
        current = snapshots.current()
        snapshots.replace(lambda s: ...)
    """

    def __init__(self, initial: Optional[LearningSnapshot] = None):
        self._snapshot = initial or LearningSnapshot()
        self._lock = threading.Lock()

    def current(self) -> LearningSnapshot:
        return self._snapshot

    def replace(self, update: Callable[[LearningSnapshot], LearningSnapshot]) -> LearningSnapshot:
        with self._lock:
            new = update(self._snapshot)
            self._snapshot = new
            return new


class LearningStateConflict(RuntimeError):
    pass


@dataclass
class LearningAck:
    session_id: str
    accepted: bool
    entry_id: Optional[str] = None
    duplicate: bool = False
    reason: Optional[str] = None
    queued: int = 0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "accepted": self.accepted,
            "entry_id": self.entry_id,
            "duplicate": self.duplicate,
            "reason": self.reason,
            "queued": self.queued,
        }


@dataclass
class FoldReport:
    folded: int
    persisted: int
    remaining: int
    snapshot_version: int
    dropped: int = 0
    state_revision: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "folded": self.folded,
            "persisted": self.persisted,
            "remaining": self.remaining,
            "dropped": self.dropped,
            "snapshot_version": self.snapshot_version,
            "state_revision": self.state_revision,
            "error": self.error,
        }


@dataclass(frozen=True)
class _QueuedOutcome:
    entry_id: str
    session_id: str
    performance: SessionPerformance
    feedback: OptimizationFeedback
    outcomes: Tuple[str, ...]
    received_at: datetime
    log: Optional[GenerationLog] = None


def learning_entry_id(
    session_id: str,
    performance: SessionPerformance,
    feedback: OptimizationFeedback,
    outcomes: Iterable[str],
) -> str:
    """Content hash of an outcome report; identical reports share an id."""
    payload = json.dumps(
        {
            "session_id": session_id,
            "performance": performance.model_dump(mode="json"),
            "feedback": feedback.model_dump(mode="json"),
            "outcomes": sorted(outcomes),
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def recalibrate(
    model_weights: ModelWeights,
    fitness_weights: FitnessWeights,
    entries: List[LearningEntry],
    learning_rate: float,
) -> Tuple[ModelWeights, FitnessWeights]:
    """Model bias and fitness weights after learning from `entries`. Pure."""
    if not entries:
        return model_weights, fitness_weights

    residuals = [e.performance.success_score - e.predicted_success for e in entries]
    mean_residual = sum(residuals) / len(residuals)
    calibration = 1.0 - sum(abs(r) for r in residuals) / len(residuals)

    model_weights = model_weights.with_bias(round(model_weights.bias + learning_rate * mean_residual, 6))

    target = SUCCESS_WEIGHT_FLOOR + SUCCESS_WEIGHT_SPAN * calibration
    success = fitness_weights.success + learning_rate * (target - fitness_weights.success)
    rest = fitness_weights.constraints + fitness_weights.efficiency
    remaining = 1.0 - success
    fitness_weights = FitnessWeights(
        success=success,
        constraints=remaining * (fitness_weights.constraints / rest if rest else 0.5),
        efficiency=remaining * (fitness_weights.efficiency / rest if rest else 0.5),
    ).normalized()
    return model_weights, fitness_weights


class ContinuousLearningRecorder:
    """
    Usage:
        recorder = ContinuousLearningRecorder(store, snapshots, clock)
        recorder.remember(generation_log)
        ack = recorder.record_outcome(session_id, performance, feedback)
        recorder.run_due()
    """

    def __init__(
        self,
        store: SessionStore,
        snapshots: SnapshotStore,
        clock: Optional[Clock] = None,
        interval_s: Optional[float] = None,
        batch_size: Optional[int] = None,
        learning_rate: Optional[float] = None,
    ):
        self.store = store
        self.snapshots = snapshots
        self.clock = clock or SystemClock()
        self.interval_s = interval_s if interval_s is not None else settings.LEARNING_FOLD_INTERVAL_S
        self.batch_size = batch_size or settings.LEARNING_BATCH_SIZE
        self.learning_rate = learning_rate or settings.LEARNING_RATE

        # Weights to start from while the store holds no learning state
        baseline = snapshots.current()
        self._baseline = (baseline.model_weights, baseline.fitness_weights)

        self._lock = threading.Lock()
        self._fold_lock = threading.Lock()
        self._pending: deque = deque()
        self._seen: set = set()
        self._logs: "OrderedDict[str, GenerationLog]" = OrderedDict()
        self._last_fold = self.clock.monotonic()

    # ========== Intake ==========

    def remember(self, log: GenerationLog) -> None:
        """Index a published generation so its outcome resolves without the store."""
        with self._lock:
            self._logs[log.session_id] = log
            self._logs.move_to_end(log.session_id)
            while len(self._logs) > LOG_INDEX_SIZE:
                self._logs.popitem(last=False)

    def record_outcome(
        self,
        session_id: str,
        performance: SessionPerformance,
        feedback: OptimizationFeedback,
        outcomes: Iterable[str] = (),
        log: Optional[GenerationLog] = None,
    ) -> LearningAck:
        """
        Queue one outcome report. Never blocks on the store.

        Reports for sessions this recorder has not seen are resolved at fold
        time, and dropped there if the store does not know the session.
        """
        outcomes = tuple(outcomes)
        entry_id = learning_entry_id(session_id, performance, feedback, outcomes)
        with self._lock:
            if entry_id in self._seen:
                return LearningAck(
                    session_id=session_id,
                    accepted=True,
                    entry_id=entry_id,
                    duplicate=True,
                    queued=len(self._pending),
                )
            self._seen.add(entry_id)
            self._pending.append(_QueuedOutcome(
                entry_id=entry_id,
                session_id=session_id,
                performance=performance,
                feedback=feedback,
                outcomes=outcomes,
                received_at=self.clock.now(),
                log=log or self._logs.get(session_id),
            ))
            queued = len(self._pending)
        return LearningAck(session_id=session_id, accepted=True, entry_id=entry_id, queued=queued)

    def lookup(self, session_id: str) -> GenerationLog:
        """
        Generation log of a session, from the index or else the store.

        Blocks on the store; for worker threads, not the event loop.
        Raises NotFoundError for sessions nobody published.
        """
        with self._lock:
            log = self._logs.get(session_id)
        if log is None:
            log = self.store.get_generation_log(session_id)
        if log is None:
            raise NotFoundError("Generated session", session_id)
        return log

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ========== Scheduling ==========

    def is_due(self) -> bool:
        return self.clock.monotonic() - self._last_fold >= self.interval_s

    def run_due(self) -> Optional[FoldReport]:
        """Fold pending outcomes if the interval has elapsed since the last fold."""
        if not self.is_due():
            return None
        return self.fold_pending()

    def fold_pending(self) -> FoldReport:
        with self._fold_lock:
            with self._lock:
                batch = [self._pending.popleft() for _ in range(min(self.batch_size, len(self._pending)))]
            self._last_fold = self.clock.monotonic()

            try:
                entries, dropped = self._resolve(batch)
                persisted = self.store.append_learning_entries(entries) if entries else 0
            except Exception as e:
                logger.exception(f"Persisting {len(batch)} learning entries failed, requeued")
                with self._lock:
                    self._pending.extendleft(reversed(batch))
                return self._report(folded=0, persisted=0, error=str(e))

            try:
                snapshot, folded = self._fold_log()
            except Exception as e:
                # Entries are in the log already; the next fold picks them up.
                logger.exception("Folding the learning log failed")
                return self._report(folded=0, persisted=persisted, dropped=dropped, error=str(e))

            if folded:
                log_event(
                    logger,
                    f"Folded {folded} outcomes into learning state r{snapshot.revision}",
                    folded=folded,
                    persisted=persisted,
                    dropped=dropped,
                    state_revision=snapshot.revision,
                    bias=round(snapshot.model_weights.bias, 3),
                    w_success=round(snapshot.fitness_weights.success, 3),
                )
            return self._report(folded=folded, persisted=persisted, dropped=dropped)

    def sync(self) -> LearningSnapshot:
        """Adopt the stored learning state and log without folding anything."""
        return self._adopt(self.store.get_learning_state(), self.store.list_learning_entries())

    def load_history(self) -> int:
        """Rebuild weights, feedback table and dedup set from the store."""
        snapshot = self.sync()
        logger.info(f"Loaded {snapshot.entry_count} historical learning entries at state r{snapshot.revision}")
        return snapshot.entry_count

    # ========== Folding ==========

    def _resolve(self, batch: List[_QueuedOutcome]) -> Tuple[List[LearningEntry], int]:
        entries = []
        dropped = 0
        for item in batch:
            log = item.log or self.store.get_generation_log(item.session_id)
            if log is None:
                logger.info(f"Outcome for unknown session {item.session_id} dropped")
                dropped += 1
                continue
            entries.append(LearningEntry(
                entry_id=item.entry_id,
                session_id=item.session_id,
                user_id=log.user_id,
                session_type=log.session_type,
                timestamp=item.received_at,
                performance=item.performance,
                feedback=item.feedback,
                outcomes=item.outcomes,
                duration=log.duration,
                phase_count=log.phase_count,
                difficulty=log.difficulty,
                predicted_success=log.predicted_success,
            ))
        return entries, dropped

    def _fold_log(self) -> Tuple[LearningSnapshot, int]:
        for _ in range(STATE_WRITE_ATTEMPTS):
            state = self.store.get_learning_state()
            log = self.store.list_learning_entries()
            model_weights, fitness_weights, revision, cursor = self._weights_of(state)
            fresh = log[cursor:]
            if not fresh:
                return self._adopt(state, log), 0

            model_weights, fitness_weights = recalibrate(model_weights, fitness_weights, fresh, self.learning_rate)
            state = LearningState(
                revision=revision + 1,
                folded_entries=len(log),
                model_weights=dict(model_weights.weights),
                model_bias=model_weights.bias,
                fitness_weights=fitness_weights.to_dict(),
                updated_at=self.clock.now(),
            )
            if self.store.save_learning_state(state):
                return self._adopt(state, log), len(fresh)
            logger.info(f"Learning state r{revision + 1} written concurrently, refolding")
        raise LearningStateConflict(f"learning state changed {STATE_WRITE_ATTEMPTS} times during one fold")

    def _weights_of(self, state: Optional[LearningState]) -> Tuple[ModelWeights, FitnessWeights, int, int]:
        if state is None:
            model_weights, fitness_weights = self._baseline
            return model_weights, fitness_weights, 0, 0
        return (
            ModelWeights(weights=dict(state.model_weights), bias=state.model_bias, version=state.revision),
            FitnessWeights.from_mapping(state.fitness_weights),
            state.revision,
            state.folded_entries,
        )

    def _adopt(self, state: Optional[LearningState], log: List[LearningEntry]) -> LearningSnapshot:
        model_weights, fitness_weights, revision, _ = self._weights_of(state)
        with self._lock:
            self._seen.update(e.entry_id for e in log)

        def update(current: LearningSnapshot) -> LearningSnapshot:
            if current.revision == revision and current.entry_count == len(log):
                return current
            return LearningSnapshot(
                model_weights,
                fitness_weights,
                current.feedback_table.with_entries(log),
                current.version + 1,
                revision,
                len(log),
            )

        return self.snapshots.replace(update)

    def _report(self, folded: int, persisted: int, dropped: int = 0, error: Optional[str] = None) -> FoldReport:
        snapshot = self.snapshots.current()
        return FoldReport(
            folded=folded,
            persisted=persisted,
            remaining=len(self._pending),
            snapshot_version=snapshot.version,
            dropped=dropped,
            state_revision=snapshot.revision,
            error=error,
        )
