"""
Scoring / Recommendation Model

Contract for the learned model the pipeline consults, plus the default
in-process implementation (a weighted logistic success model with heuristic
recommendations). A remote model service can be plugged in by implementing
ScoringModel; any call may raise ModelUnavailable and callers degrade to
neutral defaults.

Feature order (template_features):
    0 duration_fit           how close the template is to the wanted duration
    1 time_of_day            encoded time of day
    2 day_of_week            encoded day of week
    3 experience_match       template difficulty vs requested difficulty
    4 phase_balance          share of active (focus/practice/assessment) time
    5 collaboration_level    normalized collaborator count
    6 task_complexity        template difficulty index / 3
    7 previous_success_rate  contextual score from behavioral patterns
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .constants import (
    DIFFICULTY_ORDER,
    PhaseType,
    ActivityMode,
    SUCCESS_MODEL_BIAS,
    SUCCESS_MODEL_WEIGHTS,
)
from .schemas import GenerationRequest, SessionTemplate
from .templates import duration_window, preferred_duration

FEATURE_NAMES = list(SUCCESS_MODEL_WEIGHTS.keys())

ACTIVE_PHASES = {PhaseType.FOCUS, PhaseType.PRACTICE, PhaseType.ASSESSMENT}
TARGET_ACTIVE_SHARE = 0.7


@dataclass(frozen=True)
class ModelOutput:
    value: float
    confidence: float


class SuggestionKind(str, Enum):
    EXTEND_PHASE = "extend_phase"
    SHORTEN_PHASE = "shorten_phase"
    INTERACTIVE_SWAP = "interactive_swap"
    ADD_BREAK = "add_break"
    ADD_RESOURCE = "add_resource"


@dataclass(frozen=True)
class Suggestion:
    """A feature-level adjustment, e.g. "increase phase 2 duration by 10%"."""
    kind: SuggestionKind
    confidence: float
    predicted_delta: float
    phase_index: Optional[int] = None
    magnitude: float = 0.0
    resource: Optional[str] = None
    reason: str = ""


@dataclass(frozen=True)
class ModelWeights:
    """Immutable snapshot of the success model parameters."""
    weights: Mapping[str, float] = field(default_factory=lambda: dict(SUCCESS_MODEL_WEIGHTS))
    bias: float = SUCCESS_MODEL_BIAS
    version: int = 1

    def with_bias(self, bias: float) -> "ModelWeights":
        return ModelWeights(weights=dict(self.weights), bias=bias, version=self.version + 1)


class ScoringModel:
    """Contract of the scoring/recommendation collaborator."""

    def predict_success(self, features: List[float], context: Dict[str, Any]) -> ModelOutput:
        raise NotImplementedError

    def predict_duration(self, features: List[float], context: Dict[str, Any]) -> ModelOutput:
        raise NotImplementedError

    def recommend(self, features: List[float], context: Dict[str, Any]) -> List[Suggestion]:
        raise NotImplementedError


def _difficulty_index(difficulty) -> int:
    return DIFFICULTY_ORDER.index(difficulty)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def template_features(
    template: SessionTemplate,
    request: GenerationRequest,
    context_features: List[float],
    contextual_score: float,
) -> List[float]:
    """Fixed-length feature vector describing `template` under `request`."""
    wanted = preferred_duration(request)
    duration_fit = 1.0 - min(1.0, abs(template.estimated_duration - wanted) / float(wanted))

    experience_match = 1.0 - abs(
        _difficulty_index(template.difficulty) - _difficulty_index(request.difficulty)
    ) / 3.0

    total = sum(p.duration for p in template.phases) or 1
    active = sum(p.duration for p in template.phases if p.type in ACTIVE_PHASES)
    phase_balance = 1.0 - min(1.0, abs(active / total - TARGET_ACTIVE_SHARE) / TARGET_ACTIVE_SHARE)

    return [
        round(duration_fit, 6),
        context_features[0],
        context_features[1],
        round(experience_match, 6),
        round(phase_balance, 6),
        context_features[5],
        round(_difficulty_index(template.difficulty) / 3.0, 6),
        contextual_score,
    ]


def template_context(
    template: SessionTemplate,
    request: GenerationRequest,
    context_features: List[float],
) -> Dict[str, Any]:
    """Side information the model needs to phrase phase-level suggestions."""
    present = set(template.resource_names())
    low, high = duration_window(request)
    return {
        "estimated_duration": template.estimated_duration,
        "preferred_duration": preferred_duration(request),
        "window": (low, high),
        "energy_level": context_features[3],
        "environment_score": context_features[6],
        "missing_resources": [r for r in request.constraints.required_resources if r not in present],
        "phases": [
            {
                "index": i,
                "type": p.type,
                "duration": p.duration,
                "weight": p.criteria_weight,
                "passive_activities": sum(1 for a in p.activities if a.mode == ActivityMode.PASSIVE),
            }
            for i, p in enumerate(template.phases)
        ],
    }


class WeightedScoringModel(ScoringModel):
    """
    Default local model.

    Success is a logistic over the weighted feature vector; duration scales
    the template estimate by energy and environment; recommendations are
    rule-based and deterministic for a given input.
    """

    def __init__(self, weights: Optional[ModelWeights] = None):
        self.weights = weights or ModelWeights()

    def predict_success(self, features: List[float], context: Dict[str, Any]) -> ModelOutput:
        score = self.weights.bias
        for name, value in zip(FEATURE_NAMES, features):
            score += self.weights.weights.get(name, 0.0) * value
        probability = 1.0 / (1.0 + math.exp(-score))
        confidence = min(0.99, max(0.51, abs(probability - 0.5) * 2))
        return ModelOutput(value=round(probability, 6), confidence=round(confidence, 6))

    def predict_duration(self, features: List[float], context: Dict[str, Any]) -> ModelOutput:
        estimated = float(context.get("estimated_duration") or 60)
        energy = float(context.get("energy_level", 0.7))
        environment = float(context.get("environment_score", 0.7))
        factor = 1.0 + 0.2 * (0.7 - energy) + 0.1 * (0.7 - environment)
        value = max(1.0, estimated * factor)
        confidence = 0.6 + 0.3 * (features[0] if features else 0.0)
        return ModelOutput(value=round(value, 2), confidence=round(_clamp(confidence), 6))

    def recommend(self, features: List[float], context: Dict[str, Any]) -> List[Suggestion]:
        suggestions: List[Suggestion] = []
        phases = context.get("phases") or []
        estimated = int(context.get("estimated_duration") or 0)
        wanted = int(context.get("preferred_duration") or estimated)

        for name in context.get("missing_resources") or []:
            suggestions.append(Suggestion(
                kind=SuggestionKind.ADD_RESOURCE,
                confidence=0.9,
                predicted_delta=0.05,
                resource=name,
                reason=f"required resource '{name}' is missing",
            ))

        work = [p for p in phases if p["type"] != PhaseType.BREAK]
        if work and estimated and wanted != estimated:
            gap = wanted - estimated
            if gap > 0:
                target = max(work, key=lambda p: (p["weight"], -p["index"]))
                magnitude = min(0.1, gap / float(target["duration"]))
                kind = SuggestionKind.EXTEND_PHASE
            else:
                target = min(work, key=lambda p: (p["weight"], p["index"]))
                magnitude = min(0.1, -gap / float(target["duration"]))
                kind = SuggestionKind.SHORTEN_PHASE
            if magnitude > 0:
                suggestions.append(Suggestion(
                    kind=kind,
                    confidence=0.7,
                    predicted_delta=round(0.04 * (1.0 - features[0]) + 0.005, 6),
                    phase_index=target["index"],
                    magnitude=round(magnitude, 6),
                    reason=f"move duration toward {wanted} minutes",
                ))

        for p in phases:
            if p["passive_activities"] and p["type"] in (PhaseType.FOCUS, PhaseType.PRACTICE):
                suggestions.append(Suggestion(
                    kind=SuggestionKind.INTERACTIVE_SWAP,
                    confidence=0.6,
                    predicted_delta=0.02,
                    phase_index=p["index"],
                    reason="swap passive activity for interactive one",
                ))

        has_break = any(p["type"] == PhaseType.BREAK for p in phases)
        if estimated > 60 and not has_break and len(phases) >= 2:
            suggestions.append(Suggestion(
                kind=SuggestionKind.ADD_BREAK,
                confidence=0.55,
                predicted_delta=0.02,
                phase_index=len(phases) // 2,
                magnitude=5,
                reason="long session without a break",
            ))

        return suggestions


def features_and_context(
    template: SessionTemplate,
    request: GenerationRequest,
    context_features: List[float],
    contextual_score: float,
) -> Tuple[List[float], Dict[str, Any]]:
    return (
        template_features(template, request, context_features, contextual_score),
        template_context(template, request, context_features),
    )
