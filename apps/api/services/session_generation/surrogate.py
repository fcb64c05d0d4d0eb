"""
Surrogate Refiner

Nudges the search winner with the scoring model's feature-level suggestions
instead of running another search.

Rules:
- at most K suggestions, highest confidence first, positive predicted delta only
- a suggestion that adds a hard-constraint violation is discarded
- if the refined template scores lower than the input, the input is returned
- model unreachable: stage skipped, input returned
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from core.clock import Clock, SystemClock
from core.exceptions import ModelUnavailable

from .constants import (
    ActivityMode,
    OptimizationMethod,
    PHASE_ACTIVITIES,
    PHASE_MEASUREMENT,
    PhaseType,
    ResourceType,
    SURROGATE_MAX_SUGGESTIONS,
)
from .context_analyzer import ContextAnalysis
from .fitness import FitnessEvaluator, constraint_violations, record_feedback
from .schemas import (
    Activity,
    GenerationRequest,
    OptimizationRecord,
    Resource,
    SessionPhase,
    SessionTemplate,
    SuccessCriteria,
)
from .scoring_model import ScoringModel, Suggestion, SuggestionKind, features_and_context
from .templates import scale_phase_durations, with_phases

logger = logging.getLogger(__name__)


@dataclass
class RefinementOutcome:
    """Result of a refinement stage. `template` is the input when not accepted."""
    template: SessionTemplate
    accepted: bool
    input_fitness: float
    output_fitness: float
    applied: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def improvement(self) -> float:
        return round(self.output_fitness - self.input_fitness, 9)


class SurrogateRefiner:
    """
    Usage:
        refiner = SurrogateRefiner(model, evaluator, clock)
        outcome = refiner.refine(template, request, analysis)
    """

    def __init__(
        self,
        model: Optional[ScoringModel],
        evaluator: FitnessEvaluator,
        clock: Optional[Clock] = None,
        max_suggestions: int = SURROGATE_MAX_SUGGESTIONS,
    ):
        self.model = model
        self.evaluator = evaluator
        self.clock = clock or SystemClock()
        self.max_suggestions = max_suggestions

    def refine(self, template: SessionTemplate, request: GenerationRequest, analysis: ContextAnalysis) -> RefinementOutcome:
        base = self.evaluator.evaluate(template, request, analysis)
        unchanged = RefinementOutcome(
            template=template,
            accepted=False,
            input_fitness=base.total,
            output_fitness=base.total,
        )
        if self.model is None:
            unchanged.skipped_reason = "no_model"
            return unchanged

        features, context = features_and_context(template, request, analysis.features, analysis.contextual_score)
        try:
            suggestions = self.model.recommend(features, context)
        except ModelUnavailable as e:
            logger.warning(f"Surrogate refinement skipped, model unavailable: {e}")
            unchanged.skipped_reason = "model_unavailable"
            return unchanged

        ranked = sorted(
            (s for s in suggestions if s.predicted_delta > 0),
            key=lambda s: -s.confidence,
        )[:self.max_suggestions]

        current = template
        allowed = set(base.violations)
        applied: List[str] = []
        for suggestion in ranked:
            candidate = self.apply(current, suggestion)
            if candidate is None:
                continue
            new_violations = set(constraint_violations(candidate, request)) - allowed
            if new_violations:
                logger.debug(f"Discarded {suggestion.kind.value}: introduces {sorted(new_violations)}")
                continue
            current = candidate
            allowed = set(constraint_violations(current, request))
            applied.append(suggestion.kind.value)

        if not applied:
            unchanged.skipped_reason = "no_applicable_suggestions"
            return unchanged

        refined = self.evaluator.evaluate(current, request, analysis)
        if refined.total < base.total:
            logger.info(f"Surrogate refinement rejected: {refined.total:.4f} < {base.total:.4f}")
            unchanged.skipped_reason = "fitness_decreased"
            return unchanged

        record = OptimizationRecord(
            timestamp=self.clock.now(),
            method=OptimizationMethod.SURROGATE,
            parameters={"applied": list(applied), "suggestions_considered": len(ranked)},
            improvement=round(refined.total - base.total, 9),
            feedback=record_feedback(refined),
        )
        return RefinementOutcome(
            template=current.with_record(record),
            accepted=True,
            input_fitness=base.total,
            output_fitness=refined.total,
            applied=applied,
        )

    # ========== Suggestion application ==========

    def apply(self, template: SessionTemplate, suggestion: Suggestion) -> Optional[SessionTemplate]:
        """Template with one suggestion applied, or None if it does not fit."""
        handler = {
            SuggestionKind.EXTEND_PHASE: self._resize_phase,
            SuggestionKind.SHORTEN_PHASE: self._resize_phase,
            SuggestionKind.INTERACTIVE_SWAP: self._interactive_swap,
            SuggestionKind.ADD_BREAK: self._add_break,
            SuggestionKind.ADD_RESOURCE: self._add_resource,
        }.get(suggestion.kind)
        if handler is None:
            return None
        return handler(template, suggestion)

    @staticmethod
    def _phase_index(template, suggestion) -> Optional[int]:
        idx = suggestion.phase_index
        if idx is None or not (0 <= idx < len(template.phases)):
            return None
        return idx

    def _resize_phase(self, template, suggestion):
        idx = self._phase_index(template, suggestion)
        if idx is None:
            return None
        phases = list(template.phases)
        phase = phases[idx]
        sign = 1 if suggestion.kind == SuggestionKind.EXTEND_PHASE else -1
        delta = max(1, int(round(phase.duration * suggestion.magnitude)))
        duration = phase.duration + sign * delta
        if duration < 1:
            return None
        phases[idx] = phase.model_copy(update={"duration": duration})
        return with_phases(template, phases)

    def _interactive_swap(self, template, suggestion):
        idx = self._phase_index(template, suggestion)
        if idx is None:
            return None
        phases = list(template.phases)
        phase = phases[idx]
        activities = list(phase.activities)
        for i, activity in enumerate(activities):
            if activity.mode == ActivityMode.PASSIVE:
                activities[i] = activity.model_copy(update={"mode": ActivityMode.INTERACTIVE})
                break
        else:
            return None
        phases[idx] = phase.model_copy(update={"activities": tuple(activities)})
        return with_phases(template, phases)

    def _add_break(self, template, suggestion):
        position = min(max(1, suggestion.phase_index or 1), len(template.phases))
        minutes = max(1, int(suggestion.magnitude or 5))
        rest = SessionPhase(
            id="phase-break",
            name="Break",
            type=PhaseType.BREAK,
            duration=minutes,
            objectives=("recover",),
            activities=tuple(
                Activity(id=f"act-break-{j + 1}", type=kind, mode=mode, estimated_time=minutes)
                for j, (kind, mode) in enumerate(PHASE_ACTIVITIES[PhaseType.BREAK])
            ),
            success_criteria=(SuccessCriteria(
                metric="break_taken",
                threshold=0.5,
                weight=0.1,
                measurement=PHASE_MEASUREMENT[PhaseType.BREAK],
            ),),
        )
        phases = list(template.phases)
        phases.insert(position, rest)
        phases = scale_phase_durations(phases, template.estimated_duration)
        return with_phases(template, phases, renumber=True)

    @staticmethod
    def _add_resource(template, suggestion):
        if not suggestion.resource or suggestion.resource in template.resource_names():
            return None
        phases = list(template.phases)
        idx = next((i for i, p in enumerate(phases) if p.type != PhaseType.BREAK), 0)
        resource = Resource(
            id=f"res-{suggestion.resource}",
            type=ResourceType.REFERENCE,
            name=suggestion.resource,
            is_required=True,
        )
        phases[idx] = phases[idx].model_copy(update={"resources": phases[idx].resources + (resource,)})
        return with_phases(template, phases)
