"""
Generation Orchestrator

Runs one generation request through the pipeline:

    RECEIVED -> ANALYZING_CONTEXT -> SELECTING_BASELINE -> EVOLVING
    -> REFINING_SURROGATE -> REFINING_FEEDBACK -> PREDICTING
    -> GENERATING_ALTERNATIVES -> COMPLETED

CANCELLED and FAILED are reachable from any non-terminal stage.

Contract:
- Malformed requests raise ValidationError before anything runs.
- A stage that fails is logged and replaced by a degraded continuation.
- The optimization level only sets the time budget. When the budget runs
  out, the best candidate so far is returned with metadata.partial=True.
- One active generation per user: a new request cancels the previous one,
  whose caller gets GenerationCancelled.
- Nothing is published (cache, generation log, record log) before COMPLETED.
- Output is reproducible for a fixed seed only with an injected fixed clock
  such as ManualClock: timestamps, generation_time and stage_timings come
  from the clock, so SystemClock runs differ in those fields.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError as SchemaValidationError

from core.config import settings
from core.logging import log_event
from core.exceptions import (
    GenerationCancelled,
    GenerationTimeout,
    SessionEngineError,
    ValidationError,
)

from .alternatives import AlternativesGenerator
from .constants import ENGINE_VERSION, NEUTRAL_PREDICTION
from .container import GenerationServices
from .context_analyzer import ContextAnalysis, ContextAnalyzer
from .customizations import build_customizations, build_optimization_plan
from .feedback import FeedbackRefiner
from .fitness import FitnessEvaluator
from .genetic import GeneticOptimizer
from .learning import LearningAck
from .predictions import MODEL_UNAVAILABLE_RISK, PredictionModule
from .schemas import (
    GeneratedSession,
    GenerationLog,
    GenerationMetadata,
    GenerationRequest,
    OptimizationFeedback,
    SessionPerformance,
    SessionPredictions,
)
from .surrogate import SurrogateRefiner
from .templates import derive_template, make_rng, new_id

logger = logging.getLogger(__name__)

# Hard wall-clock ceiling, as a multiple of the level's budget
HARD_TIMEOUT_FACTOR = 3.0


class GenerationStage(str, Enum):
    RECEIVED = "received"
    ANALYZING_CONTEXT = "analyzing_context"
    SELECTING_BASELINE = "selecting_baseline"
    EVOLVING = "evolving"
    REFINING_SURROGATE = "refining_surrogate"
    REFINING_FEEDBACK = "refining_feedback"
    PREDICTING = "predicting"
    GENERATING_ALTERNATIVES = "generating_alternatives"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ResultStatus(str, Enum):
    COMPLETED = "completed"
    VALIDATION_ERROR = "validation_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class GenerationResult:
    """Per-item outcome of a batch."""
    index: int
    status: ResultStatus
    user_id: Optional[str] = None
    session: Optional[GeneratedSession] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "status": self.status.value,
            "user_id": self.user_id,
            "session": self.session.to_dict() if self.session else None,
            "error": self.error,
            "error_code": self.error_code,
        }


StageListener = Callable[[str, GenerationStage], None]


class _Run:
    """Bookkeeping for one pipeline run."""

    def __init__(self, request: GenerationRequest, clock, listener: Optional[StageListener]):
        self.request = request
        self.clock = clock
        self.listener = listener
        self.started = clock.monotonic()
        self.timings: Dict[str, float] = {}
        self.degraded: List[str] = []
        self.algorithms: List[str] = []
        self.partial = False
        self.stage = GenerationStage.RECEIVED
        self._stage_started = self.started

    def enter(self, stage: GenerationStage):
        now = self.clock.monotonic()
        if self.stage not in (GenerationStage.RECEIVED,):
            self.timings[self.stage.value] = round(now - self._stage_started, 6)
        self.stage = stage
        self._stage_started = now
        if self.listener is not None:
            self.listener(self.request.user_id, stage)

    def elapsed(self) -> float:
        return self.clock.monotonic() - self.started


class GenerationOrchestrator:
    """
    Usage:
        orchestrator = GenerationOrchestrator(services)
        session = await orchestrator.generate(request)
        results = await orchestrator.batch_generate([r1, r2, r3])
        orchestrator.record_outcome(session.id, performance, feedback)
        orchestrator.close()
    """

    def __init__(self, services: GenerationServices, stage_listener: Optional[StageListener] = None):
        self.services = services.acquire()
        self.stage_listener = stage_listener
        self.analyzer = ContextAnalyzer(services.pattern_source, services.clock)
        self._active: Dict[str, asyncio.Task] = {}
        self._cancel_reasons: Dict[asyncio.Task, str] = {}
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._closed = False

    def close(self):
        if not self._closed:
            self._closed = True
            self.services.release()

    # ========== Validation ==========

    @staticmethod
    def validate(raw: Union[GenerationRequest, Dict[str, Any]]) -> GenerationRequest:
        """Boundary check. Raises ValidationError, never lets a bad request in."""
        if isinstance(raw, GenerationRequest):
            return raw
        try:
            return GenerationRequest.model_validate(raw)
        except SchemaValidationError as e:
            first = e.errors()[0]
            field = "_".join(str(part) for part in first.get("loc", ())) or None
            raise ValidationError(first.get("msg", str(e)), field=field) from e
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e)) from e

    # ========== Single request ==========

    async def generate(self, raw: Union[GenerationRequest, Dict[str, Any]]) -> GeneratedSession:
        """
        Generate a session for one request.

        Raises ValidationError, GenerationTimeout or GenerationCancelled.
        """
        request = self.validate(raw)
        user_id = request.user_id

        previous = self._active.get(user_id)
        if previous is not None and not previous.done():
            self._cancel_reasons[previous] = "superseded"
            previous.cancel()
            logger.info(f"Generation for user {user_id} superseded by a newer request")

        task = asyncio.ensure_future(self._execute(request))
        self._active[user_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            reason = self._cancel_reasons.get(task)
            if reason is None:
                raise
            self._notify(user_id, GenerationStage.CANCELLED)
            raise GenerationCancelled(user_id, reason) from None
        finally:
            self._cancel_reasons.pop(task, None)
            if self._active.get(user_id) is task:
                del self._active[user_id]

    def cancel(self, user_id: str) -> bool:
        """Cancel the user's in-flight generation. True if one was running."""
        task = self._active.get(user_id)
        if task is None or task.done():
            return False
        self._cancel_reasons[task] = "cancelled"
        task.cancel()
        return True

    def is_active(self, user_id: str) -> bool:
        task = self._active.get(user_id)
        return task is not None and not task.done()

    # ========== Batch ==========

    async def batch_generate(
        self,
        requests: Sequence[Union[GenerationRequest, Dict[str, Any]]],
        max_concurrency: Optional[int] = None,
    ) -> List[GenerationResult]:
        """
        Run independent requests with bounded concurrency.

        Never raises for a single item: every request gets a GenerationResult
        in input order. Items for the same user run one after another.
        """
        limit = max_concurrency or settings.MAX_CONCURRENT_GENERATIONS or os.cpu_count() or 1
        semaphore = asyncio.Semaphore(limit)

        async def run_one(index: int, raw) -> GenerationResult:
            try:
                request = self.validate(raw)
            except ValidationError as e:
                user_id = raw.get("user_id") if isinstance(raw, dict) else None
                return GenerationResult(
                    index=index,
                    status=ResultStatus.VALIDATION_ERROR,
                    user_id=user_id,
                    error=e.detail,
                    error_code=e.error_code,
                )

            async with semaphore:
                lock = self._user_lock(request.user_id)
                try:
                    async with lock:
                        session = await self._execute(request)
                except GenerationTimeout as e:
                    return GenerationResult(index, ResultStatus.TIMEOUT, request.user_id,
                                            error=e.detail, error_code=e.error_code)
                except GenerationCancelled as e:
                    return GenerationResult(index, ResultStatus.CANCELLED, request.user_id,
                                            error=e.detail, error_code=e.error_code)
                except Exception as e:
                    logger.exception(f"Batch item {index} failed")
                    code = e.error_code if isinstance(e, SessionEngineError) else "GENERATION_FAILED"
                    return GenerationResult(index, ResultStatus.FAILED, request.user_id,
                                            error=str(e), error_code=code)
                finally:
                    self._release_user_lock(request.user_id, lock)
            return GenerationResult(index, ResultStatus.COMPLETED, request.user_id, session=session)

        results = await asyncio.gather(*(run_one(i, raw) for i, raw in enumerate(requests)))
        completed = sum(1 for r in results if r.ok)
        logger.info(f"Batch of {len(results)} finished: {completed} completed")
        return list(results)

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        return lock

    def _release_user_lock(self, user_id: str, lock: asyncio.Lock):
        """Drop the user's lock once no batch item holds or waits on it."""
        remaining = self._lock_users.get(user_id, 1) - 1
        if remaining > 0:
            self._lock_users[user_id] = remaining
            return
        self._lock_users.pop(user_id, None)
        if self._user_locks.get(user_id) is lock:
            del self._user_locks[user_id]

    # ========== Learning and lookup ==========

    def record_outcome(
        self,
        session_id: str,
        performance: Union[SessionPerformance, Dict[str, Any]],
        feedback: Union[OptimizationFeedback, Dict[str, Any]],
        outcomes: Sequence[str] = (),
    ) -> LearningAck:
        """Queue a realized outcome for learning. Returns immediately."""
        try:
            performance = SessionPerformance.model_validate(performance)
            feedback = OptimizationFeedback.model_validate(feedback)
        except SchemaValidationError as e:
            first = e.errors()[0]
            field = "_".join(str(part) for part in first.get("loc") or ()) or "outcome"
            raise ValidationError(first.get("msg", str(e)), field=field) from e
        return self.services.recorder.record_outcome(session_id, performance, feedback, outcomes)

    def get_generated_session(self, session_id: str) -> Optional[GeneratedSession]:
        return self.services.cache.get_generated_session(session_id)

    # ========== Pipeline ==========

    async def _execute(self, request: GenerationRequest) -> GeneratedSession:
        if self.services.learning_due():
            await asyncio.to_thread(self.services.refresh_learning)
        ceiling = self.services.budget_for(request.optimization_level) * HARD_TIMEOUT_FACTOR
        try:
            return await asyncio.wait_for(self._pipeline(request), timeout=ceiling)
        except asyncio.TimeoutError:
            self._notify(request.user_id, GenerationStage.FAILED)
            raise GenerationTimeout(
                f"Generation for user {request.user_id} exceeded {ceiling:.1f}s without a candidate"
            ) from None

    async def _pipeline(self, request: GenerationRequest) -> GeneratedSession:
        services = self.services
        clock = services.clock
        run = _Run(request, clock, self.stage_listener)
        if self.stage_listener is not None:
            self.stage_listener(request.user_id, GenerationStage.RECEIVED)

        deadline = run.started + services.budget_for(request.optimization_level)
        rng = make_rng(services.seed, request)
        model = services.scoring_model()
        evaluator = FitnessEvaluator(model, services.fitness_weights())
        predictor = PredictionModule(model)

        # ========== Context ==========
        await self._checkpoint(run, GenerationStage.ANALYZING_CONTEXT)
        analysis = self._guard(
            run, "context", lambda: self.analyzer.analyze(request, model),
            fallback=lambda: ContextAnalysis.neutral(request),
        )
        if analysis.degraded and "context" not in run.degraded:
            run.degraded.append("context")
        run.algorithms.append("context_analysis")

        # ========== Baseline ==========
        await self._checkpoint(run, GenerationStage.SELECTING_BASELINE)
        baseline = self._guard(
            run, "baseline", lambda: services.catalog.select_baseline(request, analysis, evaluator, rng),
            fallback=lambda: services.catalog.create_base_template(request, rng),
        )
        baseline = derive_template(baseline, rng, clock.now())
        template = baseline

        # ========== Genetic search ==========
        await self._checkpoint(run, GenerationStage.EVOLVING)
        optimizer = GeneticOptimizer(evaluator, services.genetic_config, clock, services.executor)
        generations_run = 0
        try:
            result = await optimizer.evolve(baseline, request, analysis, rng, deadline=deadline)
            template = result.best.template
            generations_run = result.generations_run
            run.partial = result.timed_out
            run.algorithms.append("genetic")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Genetic search failed for user {request.user_id}, keeping baseline")
            run.degraded.append("genetic")

        # ========== Refinement ==========
        await self._checkpoint(run, GenerationStage.REFINING_SURROGATE)
        if self._within(deadline, run):
            surrogate = SurrogateRefiner(model, evaluator, clock, settings.SURROGATE_MAX_SUGGESTIONS)
            outcome = self._guard(run, "surrogate", lambda: surrogate.refine(template, request, analysis))
            if outcome is not None:
                if outcome.skipped_reason == "model_unavailable":
                    run.degraded.append("surrogate")
                if outcome.accepted:
                    template = outcome.template
                    run.algorithms.append("surrogate")

        await self._checkpoint(run, GenerationStage.REFINING_FEEDBACK)
        if self._within(deadline, run):
            refiner = FeedbackRefiner(services.feedback_table, evaluator, clock, settings.FEEDBACK_MIN_ENTRIES)
            outcome = self._guard(run, "feedback", lambda: refiner.refine(template, request, analysis))
            if outcome is not None and outcome.accepted:
                template = outcome.template
                run.algorithms.append("feedback")

        # ========== Predictions ==========
        await self._checkpoint(run, GenerationStage.PREDICTING)
        customizations = self._guard(
            run, "customizations", lambda: build_customizations(template, baseline, request, analysis),
            fallback=tuple,
        )
        predictions = self._guard(
            run, "predictions", lambda: predictor.predict(template, request, analysis, customizations),
            fallback=lambda: self._neutral_predictions(template),
        )
        if any(r.factor == MODEL_UNAVAILABLE_RISK for r in predictions.risk_factors):
            run.degraded.append("model")
        plan = self._guard(run, "optimization_plan", lambda: build_optimization_plan(template, predictions, request))
        run.algorithms.append("prediction")

        template = template.model_copy(update={
            "success_prediction": predictions.success_probability,
            "confidence": predictions.metric_confidence.get("success_probability", 0.0),
            "updated_at": clock.now(),
        })

        # ========== Alternatives ==========
        await self._checkpoint(run, GenerationStage.GENERATING_ALTERNATIVES)
        alternatives = ()
        if self._within(deadline, run):
            alternatives = self._guard(
                run, "alternatives",
                lambda: AlternativesGenerator(predictor).generate(template, request, analysis, rng),
                fallback=tuple,
            )

        # ========== Completed ==========
        await self._checkpoint(run, GenerationStage.COMPLETED)
        confidences = list(predictions.metric_confidence.values()) or [0.0]
        session = GeneratedSession(
            id=new_id(rng, "gen"),
            user_id=request.user_id,
            template=template,
            customizations=customizations,
            predictions=predictions,
            alternatives=alternatives,
            optimization_plan=plan,
            metadata=GenerationMetadata(
                generation_time=round(run.elapsed(), 6),
                algorithms_used=tuple(run.algorithms),
                patterns_analyzed=analysis.patterns_analyzed,
                confidence_score=round(sum(confidences) / len(confidences), 6),
                optimization_level=request.optimization_level,
                partial=run.partial,
                generations_run=generations_run,
                stage_timings=dict(run.timings),
                degraded_stages=tuple(dict.fromkeys(run.degraded)),
                version=ENGINE_VERSION,
            ),
        )
        self._publish(session, request)
        log_event(
            logger,
            f"Generated session {session.id} for user {request.user_id}",
            session_id=session.id,
            user_id=request.user_id,
            duration=template.estimated_duration,
            success=round(predictions.success_probability, 3),
            partial=run.partial,
            degraded=",".join(session.metadata.degraded_stages) or None,
            generation_ms=round(run.elapsed() * 1000, 2),
        )
        return session

    async def _checkpoint(self, run: _Run, stage: GenerationStage):
        """Stage boundary: the only place cancellation can land."""
        await asyncio.sleep(0)
        run.enter(stage)

    @staticmethod
    def _within(deadline: float, run: _Run) -> bool:
        if run.clock.monotonic() >= deadline:
            if not run.partial:
                logger.info(f"Budget exhausted for user {run.request.user_id} at {run.stage.value}")
            run.partial = True
            return False
        return True

    @staticmethod
    def _guard(run: _Run, name: str, fn, fallback=None):
        try:
            return fn()
        except Exception as e:
            logger.warning(f"Stage {name} failed for user {run.request.user_id}, degrading: {e}", exc_info=True)
            run.degraded.append(name)
            return fallback() if fallback is not None else None

    @staticmethod
    def _neutral_predictions(template) -> SessionPredictions:
        return SessionPredictions(
            success_probability=NEUTRAL_PREDICTION,
            completion_time=float(template.estimated_duration),
            learning_effectiveness=NEUTRAL_PREDICTION,
            resource_utilization=NEUTRAL_PREDICTION,
            user_satisfaction=NEUTRAL_PREDICTION,
        )

    def _publish(self, session: GeneratedSession, request: GenerationRequest):
        services = self.services
        services.cache.set_generated_session(session)
        log = GenerationLog(
            session_id=session.id,
            user_id=request.user_id,
            session_type=request.session_type,
            template_id=session.template.id,
            duration=session.template.estimated_duration,
            phase_count=len(session.template.phases),
            difficulty=session.template.difficulty,
            predicted_success=session.predictions.success_probability,
            created_at=services.clock.now(),
        )
        services.recorder.remember(log)
        try:
            services.store.save_generation_log(log)
            services.store.append_optimization_records(session.id, session.template)
        except Exception as e:
            logger.error(f"Could not log generation {session.id}: {e}")

    def _notify(self, user_id: str, stage: GenerationStage):
        if self.stage_listener is not None:
            self.stage_listener(user_id, stage)
