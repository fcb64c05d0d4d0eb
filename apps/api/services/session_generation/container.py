"""
Generation Services

The shared, read-mostly state of the engine in one explicitly passed object:
template catalog, store, learning snapshots, generated-session cache,
learning recorder, search configuration and the optional evaluation pool.

Created once per process and handed to every orchestrator. It is reference
counted: each holder acquires it, and the last release shuts the pool down.

Usage:
    services = GenerationServices(store=SqlSessionStore(SessionLocal)).bootstrap()
    with services:
        orchestrator = GenerationOrchestrator(services)
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from core.clock import Clock, SystemClock
from core.config import settings

from .cache import SessionCacheService
from .catalog import TemplateCatalog
from .config import ConfigService
from .constants import OptimizationLevel
from .context_analyzer import PatternSource
from .feedback import FeedbackTable
from .fitness import FitnessWeights
from .genetic import GeneticConfig
from .learning import ContinuousLearningRecorder, FoldReport, LearningSnapshot, SnapshotStore
from .scoring_model import ModelWeights, ScoringModel, WeightedScoringModel
from .store import InMemorySessionStore, SessionStore

logger = logging.getLogger(__name__)

_UNSET = object()


def initial_snapshot() -> LearningSnapshot:
    """Learning state before any outcome is folded, from the rules file."""
    success_model = ConfigService.get_success_model()
    return LearningSnapshot(
        model_weights=ModelWeights(
            weights=dict(success_model.get("weights") or ModelWeights().weights),
            bias=float(success_model.get("bias", ModelWeights().bias)),
        ),
        fitness_weights=FitnessWeights.from_mapping(ConfigService.get_fitness_weights()),
        feedback_table=FeedbackTable(threshold=settings.FEEDBACK_SUCCESS_THRESHOLD),
    )


class GenerationServices:
    def __init__(
        self,
        store: Optional[SessionStore] = None,
        pattern_source: Optional[PatternSource] = None,
        model: Optional[ScoringModel] = None,
        clock: Optional[Clock] = None,
        redis=None,
        genetic_config: Optional[GeneticConfig] = None,
        seed=_UNSET,
        eval_workers: Optional[int] = None,
    ):
        self.clock = clock or SystemClock()
        self.store = store or InMemorySessionStore()
        self.pattern_source = pattern_source
        self.external_model = model
        self.catalog = TemplateCatalog(store=self.store, clock=self.clock)
        self.snapshots = SnapshotStore(initial_snapshot())
        self.cache = SessionCacheService(redis, clock=self.clock)
        self.recorder = ContinuousLearningRecorder(self.store, self.snapshots, clock=self.clock)
        self.genetic_config = genetic_config or GeneticConfig.from_settings()
        self.seed = settings.GENERATION_SEED if seed is _UNSET else seed

        workers = settings.GENERATION_EVAL_WORKERS if eval_workers is None else eval_workers
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fitness") if workers > 0 else None

        self._lock = threading.Lock()
        self._refs = 0
        self._closed = False

    # ========== Lifecycle ==========

    def bootstrap(self) -> "GenerationServices":
        """Load the template library, stored templates and learning history."""
        self.catalog.load_library(ConfigService.get_template_library())
        self.catalog.load_from_store()
        self.recorder.load_history()
        return self

    def acquire(self) -> "GenerationServices":
        with self._lock:
            if self._closed:
                raise RuntimeError("GenerationServices already shut down")
            self._refs += 1
            return self

    def release(self) -> None:
        with self._lock:
            self._refs = max(0, self._refs - 1)
            last = self._refs == 0
        if last:
            self.shutdown()

    def shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self.executor is not None:
            self.executor.shutdown(wait=True)
        logger.info("Generation services shut down")

    @property
    def ref_count(self) -> int:
        return self._refs

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()

    # ========== Learning ==========

    def learning_due(self) -> bool:
        return self.recorder.is_due()

    def refresh_learning(self) -> Optional[FoldReport]:
        """
        Fold queued outcomes and catch up with learning stored by other
        processes, if the fold interval has elapsed on the clock.
        """
        return self.recorder.run_due()

    # ========== Snapshot views ==========

    def scoring_model(self) -> ScoringModel:
        """Injected model if any, else the local model on current weights."""
        if self.external_model is not None:
            return self.external_model
        return WeightedScoringModel(self.snapshots.current().model_weights)

    def fitness_weights(self) -> FitnessWeights:
        return self.snapshots.current().fitness_weights

    def feedback_table(self) -> FeedbackTable:
        return self.snapshots.current().feedback_table

    @staticmethod
    def budget_for(level: OptimizationLevel) -> float:
        """Total time budget in seconds. The level means nothing else."""
        return {
            OptimizationLevel.QUICK: settings.BUDGET_QUICK_S,
            OptimizationLevel.STANDARD: settings.BUDGET_STANDARD_S,
            OptimizationLevel.COMPREHENSIVE: settings.BUDGET_COMPREHENSIVE_S,
        }[level]
