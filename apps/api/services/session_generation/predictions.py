"""
Prediction Module

Derives the outcome estimates shown with a generated session:
success probability, completion time, learning effectiveness, resource
utilization and user satisfaction, each with its own confidence, plus risk
factors and a confidence interval per metric.

Success and completion time come from the scoring model; the rest are
computed from template structure and request context. When the model is
down, success falls back to 0.5 and completion time to the template
estimate, both with low confidence.
"""

import logging
from typing import List, Optional, Sequence

from core.exceptions import ModelUnavailable

from .constants import (
    ActivityMode,
    CONFIDENCE_LEVEL,
    CollaborationPreference,
    DIFFICULTY_ORDER,
    NEUTRAL_PREDICTION,
    RISK_NEAR_LIMIT_FRACTION,
)
from .context_analyzer import ContextAnalysis
from .fitness import objective_coverage
from .schemas import (
    ConfidenceInterval,
    GenerationRequest,
    RiskFactor,
    SessionCustomization,
    SessionPredictions,
    SessionTemplate,
)
from .scoring_model import ScoringModel, features_and_context

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.3
MODEL_UNAVAILABLE_RISK = "model_unavailable"


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class PredictionModule:
    """
    Usage:
        predictor = PredictionModule(model)
        predictions = predictor.predict(template, request, analysis)
    """

    def __init__(self, model: Optional[ScoringModel]):
        self.model = model

    def predict(
        self,
        template: SessionTemplate,
        request: GenerationRequest,
        analysis: ContextAnalysis,
        customizations: Sequence[SessionCustomization] = (),
    ) -> SessionPredictions:
        features, context = features_and_context(template, request, analysis.features, analysis.contextual_score)
        model_down = False

        success, success_conf = NEUTRAL_PREDICTION, FALLBACK_CONFIDENCE
        completion, completion_conf = float(template.estimated_duration), FALLBACK_CONFIDENCE
        if self.model is not None:
            try:
                output = self.model.predict_success(features, context)
                success, success_conf = _clamp(output.value), output.confidence
                output = self.model.predict_duration(features, context)
                completion, completion_conf = max(1.0, output.value), output.confidence
            except ModelUnavailable as e:
                logger.warning(f"Prediction model unavailable, using fallbacks: {e}")
                model_down = True
        else:
            model_down = True

        activities = [a for p in template.phases for a in p.activities]
        engaged = sum(1 for a in activities if a.mode != ActivityMode.PASSIVE)
        engaged_share = engaged / float(len(activities)) if activities else 0.0
        coverage = objective_coverage(template, request) / float(len(request.objectives))
        readiness = (request.context.energy_level + request.context.focus_level) / 2.0
        learning = _clamp(0.4 * engaged_share + 0.3 * coverage + 0.3 * readiness)

        present = set(template.resource_names())
        required = request.constraints.required_resources
        required_ratio = sum(1 for r in required if r in present) / float(len(required)) if required else 1.0
        equipped = sum(1 for p in template.phases if p.resources) / float(len(template.phases))
        utilization = _clamp(0.6 * required_ratio + 0.4 * equipped)

        satisfaction = _clamp(
            0.5 * success
            + 0.3 * features[0]
            + 0.2 * self._preference_match(template, request)
            + min(0.1, 0.02 * len(customizations))
        )
        satisfaction_conf = round((success_conf + 0.5) / 2.0, 6)

        metric_confidence = {
            "success_probability": round(success_conf, 6),
            "completion_time": round(completion_conf, 6),
            "learning_effectiveness": 0.6,
            "resource_utilization": 0.55,
            "user_satisfaction": satisfaction_conf,
        }
        values = {
            "success_probability": round(success, 6),
            "completion_time": round(completion, 2),
            "learning_effectiveness": round(learning, 6),
            "resource_utilization": round(utilization, 6),
            "user_satisfaction": round(satisfaction, 6),
        }

        risks = self.risk_factors(template, request)
        if model_down:
            risks.append(RiskFactor(
                factor=MODEL_UNAVAILABLE_RISK,
                probability=0.5,
                impact=0.3,
                mitigation=("Treat predictions as rough estimates",),
            ))

        return SessionPredictions(
            **values,
            metric_confidence=metric_confidence,
            risk_factors=tuple(risks),
            confidence_intervals=tuple(
                self._interval(metric, values[metric], metric_confidence[metric]) for metric in values
            ),
        )

    @staticmethod
    def _preference_match(template: SessionTemplate, request: GenerationRequest) -> float:
        collaborative = any(a.mode == ActivityMode.COLLABORATIVE for p in template.phases for a in p.activities)
        wants_company = request.preferences.collaboration_preference != CollaborationPreference.SOLO
        return 1.0 if collaborative == wants_company else 0.5

    @staticmethod
    def _interval(metric: str, value: float, confidence: float) -> ConfidenceInterval:
        if metric == "completion_time":
            half = value * (1.0 - confidence) * 0.5 + 1.0
            lower, upper = max(1.0, value - half), value + half
        else:
            half = (1.0 - confidence) * 0.5 + 0.05
            lower, upper = _clamp(value - half), _clamp(value + half)
        return ConfidenceInterval(
            metric=metric,
            lower=round(lower, 4),
            upper=round(upper, 4),
            confidence=CONFIDENCE_LEVEL,
        )

    @staticmethod
    def risk_factors(template: SessionTemplate, request: GenerationRequest) -> List[RiskFactor]:
        risks: List[RiskFactor] = []
        duration = template.estimated_duration
        c = request.constraints

        if duration >= c.max_duration * (1.0 - RISK_NEAR_LIMIT_FRACTION):
            risks.append(RiskFactor(
                factor="duration_near_max",
                probability=0.4,
                impact=0.5,
                mitigation=("Plan an early stopping point", "Keep the last phase optional"),
            ))
        if duration <= c.min_duration * (1.0 + RISK_NEAR_LIMIT_FRACTION):
            risks.append(RiskFactor(
                factor="duration_near_min",
                probability=0.3,
                impact=0.3,
                mitigation=("Prepare an extension activity",),
            ))

        available = request.context.available_time
        if available and duration > available:
            risks.append(RiskFactor(
                factor="exceeds_available_time",
                probability=round(_clamp((duration - available) / float(duration) + 0.3), 4),
                impact=0.7,
                mitigation=("Choose the shorter alternative", "Split the session across two slots"),
            ))

        if request.context.energy_level < 0.4 and duration > 60:
            risks.append(RiskFactor(
                factor="low_energy_long_session",
                probability=0.6,
                impact=0.6,
                mitigation=("Add a break", "Front-load the focus phase"),
            ))

        present = set(template.resource_names())
        missing = [r for r in c.required_resources if r not in present]
        if missing:
            risks.append(RiskFactor(
                factor="missing_required_resources",
                probability=0.9,
                impact=0.8,
                mitigation=tuple(f"Provide {name}" for name in missing),
            ))

        collaborative = any(a.mode == ActivityMode.COLLABORATIVE for p in template.phases for a in p.activities)
        if collaborative and request.context.collaborators == 0:
            risks.append(RiskFactor(
                factor="collaboration_without_collaborators",
                probability=0.7,
                impact=0.5,
                mitigation=("Invite a collaborator", "Run collaborative steps solo"),
            ))

        if DIFFICULTY_ORDER.index(template.difficulty) > DIFFICULTY_ORDER.index(request.difficulty):
            risks.append(RiskFactor(
                factor="difficulty_above_request",
                probability=0.5,
                impact=0.5,
                mitigation=("Review prerequisites first",),
            ))
        return risks
