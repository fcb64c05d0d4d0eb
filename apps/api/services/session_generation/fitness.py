"""
Fitness Evaluator

Single source of truth for "better". Scores a candidate template against a
request as a weighted sum of:

- predicted success (scoring model; neutral 0.5 when the model is down)
- constraint satisfaction (1.0 when duration window, required resources and
  excluded activities are all respected; 0.25 off per violation)
- resource efficiency (objectives covered per activity)

An evaluator is built from one weights snapshot and one model snapshot and
holds no other state, so evaluating the same template twice gives the same
number. That is what makes seeded search reproducible.
"""

import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional

from core.exceptions import ModelUnavailable

from .constants import CONSTRAINT_VIOLATION_PENALTY, FITNESS_WEIGHTS, NEUTRAL_PREDICTION
from .context_analyzer import ContextAnalysis
from .schemas import GenerationRequest, OptimizationFeedback, SessionTemplate
from .scoring_model import ScoringModel, features_and_context
from .templates import duration_window

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FitnessWeights:
    success: float = FITNESS_WEIGHTS["success"]
    constraints: float = FITNESS_WEIGHTS["constraints"]
    efficiency: float = FITNESS_WEIGHTS["efficiency"]

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, float]]) -> "FitnessWeights":
        data = data or {}
        return cls(
            success=float(data.get("success", FITNESS_WEIGHTS["success"])),
            constraints=float(data.get("constraints", FITNESS_WEIGHTS["constraints"])),
            efficiency=float(data.get("efficiency", FITNESS_WEIGHTS["efficiency"])),
        ).normalized()

    def normalized(self) -> "FitnessWeights":
        total = self.success + self.constraints + self.efficiency
        if total <= 0:
            return FitnessWeights()
        return FitnessWeights(
            success=round(self.success / total, 6),
            constraints=round(self.constraints / total, 6),
            efficiency=round(self.efficiency / total, 6),
        )

    def to_dict(self) -> dict:
        return {"success": self.success, "constraints": self.constraints, "efficiency": self.efficiency}


@dataclass(frozen=True)
class FitnessBreakdown:
    total: float
    success: float
    success_confidence: float
    constraint_satisfaction: float
    efficiency: float
    violations: tuple
    objective_coverage: float
    duration_fit: float


def constraint_violations(template: SessionTemplate, request: GenerationRequest) -> List[str]:
    """Hard-constraint violations of `template` under `request`, one string each."""
    violations = []
    low, high = duration_window(request)
    if not (low <= template.estimated_duration <= high):
        violations.append("duration")

    present = set(template.resource_names())
    for name in request.constraints.required_resources:
        if name not in present:
            violations.append(f"missing_resource:{name}")

    excluded = {a.lower() for a in request.constraints.excluded_activities}
    for activity_type in template.activity_types():
        if activity_type.lower() in excluded:
            violations.append(f"excluded_activity:{activity_type}")
    return violations


def objective_coverage(template: SessionTemplate, request: GenerationRequest) -> int:
    """Number of requested objectives the template's phases address."""
    covered = template.objective_set()
    return sum(1 for o in request.objectives if o.lower() in covered)


class FitnessEvaluator:
    """
    Usage:
        evaluator = FitnessEvaluator(model, weights)
        score = evaluator.fitness(individual, request, analysis)
    """

    def __init__(self, model: Optional[ScoringModel], weights: Optional[FitnessWeights] = None):
        self.model = model
        self.weights = weights or FitnessWeights()

    def fitness(self, individual, request: GenerationRequest, context: ContextAnalysis) -> float:
        """Scalar fitness in [0, 1] for an Individual (or a bare template)."""
        template = getattr(individual, "template", individual)
        return self.evaluate(template, request, context).total

    def evaluate(self, template: SessionTemplate, request: GenerationRequest, context: ContextAnalysis) -> FitnessBreakdown:
        features, model_context = features_and_context(
            template, request, context.features, context.contextual_score
        )

        success, success_confidence = NEUTRAL_PREDICTION, 0.0
        if self.model is not None:
            try:
                output = self.model.predict_success(features, model_context)
                success = min(1.0, max(0.0, output.value))
                success_confidence = output.confidence
            except ModelUnavailable:
                pass

        violations = constraint_violations(template, request)
        satisfaction = max(0.0, 1.0 - CONSTRAINT_VIOLATION_PENALTY * len(violations))

        covered = objective_coverage(template, request)
        efficiency = min(1.0, covered / float(max(1, template.activity_count)))

        total = (
            self.weights.success * success
            + self.weights.constraints * satisfaction
            + self.weights.efficiency * efficiency
        )
        return FitnessBreakdown(
            total=round(min(1.0, max(0.0, total)), 9),
            success=success,
            success_confidence=success_confidence,
            constraint_satisfaction=satisfaction,
            efficiency=round(efficiency, 6),
            violations=tuple(violations),
            objective_coverage=covered / float(len(request.objectives)),
            duration_fit=features[0],
        )


def record_feedback(breakdown: FitnessBreakdown) -> OptimizationFeedback:
    """Expected-outcome block stored on an OptimizationRecord."""
    return OptimizationFeedback(
        user_satisfaction=round(breakdown.success, 6),
        objective_completion=round(min(1.0, breakdown.objective_coverage), 6),
        time_efficiency=round(max(0.0, breakdown.duration_fit), 6),
        resource_utilization=round(breakdown.efficiency, 6),
        learning_effectiveness=round((breakdown.success + breakdown.constraint_satisfaction) / 2.0, 6),
    )
