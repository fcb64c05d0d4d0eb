"""
Context Analyzer

Turns the request context and the user's recent behavioral patterns into a
fixed-length feature vector and a contextual-fit score.

Fails softly: no patterns (or an unreachable pattern service) means a
neutral contextual score of 0.5, never an error.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from core.clock import Clock, SystemClock
from core.exceptions import ModelUnavailable

from .constants import (
    AVAILABLE_TIME_NORMALIZER,
    COLLABORATOR_NORMALIZER,
    DAY_OF_WEEK_INDEX,
    ENVIRONMENT_ENCODING,
    Environment,
    NEUTRAL_CONTEXTUAL_SCORE,
    PATTERN_LOOKBACK_DAYS,
    PATTERN_MAX_RESULTS,
    PATTERN_MIN_CONFIDENCE,
    PATTERN_SYSTEMS,
    TIME_OF_DAY_ENCODING,
    TimeOfDay,
)
from .schemas import GenerationContext, GenerationRequest
from .scoring_model import ScoringModel
from .templates import preferred_duration

logger = logging.getLogger(__name__)

RELEVANT_PATTERN_TYPES = {"user_behavior", "session"}


@dataclass(frozen=True)
class Pattern:
    """A behavioral pattern reported by the pattern service."""
    type: str
    confidence: float
    frequency: int
    success_rate: float
    description: str = ""


class PatternSource:
    """Contract of the pattern/behavior collaborator."""

    def get_patterns(
        self,
        user_id: str,
        systems: Sequence[str],
        time_range: Tuple[datetime, datetime],
        min_confidence: float,
    ) -> List[Pattern]:
        raise NotImplementedError


class StaticPatternSource(PatternSource):
    """Patterns held in memory, keyed by user. Used by tests and scripts."""

    def __init__(self, patterns_by_user: Optional[dict] = None):
        self._patterns = dict(patterns_by_user or {})

    def get_patterns(self, user_id, systems, time_range, min_confidence) -> List[Pattern]:
        return [p for p in self._patterns.get(user_id, []) if p.confidence >= min_confidence]


@dataclass
class ContextAnalysis:
    """Output of the context analyzer for one request."""
    features: List[float]
    contextual_score: float
    patterns_analyzed: int
    optimal_duration: float
    environmental_factors: List[str] = field(default_factory=list)
    time_optimization: List[str] = field(default_factory=list)
    degraded: bool = False

    @classmethod
    def neutral(cls, request: GenerationRequest) -> "ContextAnalysis":
        """Fallback when analysis itself fails."""
        return cls(
            features=encode_context(request.context),
            contextual_score=NEUTRAL_CONTEXTUAL_SCORE,
            patterns_analyzed=0,
            optimal_duration=float(preferred_duration(request)),
            degraded=True,
        )


def encode_context(context: GenerationContext) -> List[float]:
    """
    Seven features, each in [0, 1]:
    time of day, day of week, available time, energy, focus,
    collaborators, environment.
    """
    return [
        TIME_OF_DAY_ENCODING.get(context.time_of_day, 0.5),
        DAY_OF_WEEK_INDEX.get(context.day_of_week, 1) / 7.0,
        min(1.0, context.available_time / AVAILABLE_TIME_NORMALIZER),
        context.energy_level,
        context.focus_level,
        min(1.0, context.collaborators / COLLABORATOR_NORMALIZER),
        ENVIRONMENT_ENCODING.get(context.environment, 0.7),
    ]


class ContextAnalyzer:
    """
    Builds the ContextAnalysis consumed by every later stage.

    Usage:
        analyzer = ContextAnalyzer(pattern_source, clock)
        analysis = analyzer.analyze(request, model)
    """

    def __init__(self, pattern_source: Optional[PatternSource] = None, clock: Optional[Clock] = None):
        self.pattern_source = pattern_source
        self.clock = clock or SystemClock()

    def analyze(self, request: GenerationRequest, model: Optional[ScoringModel] = None) -> ContextAnalysis:
        features = encode_context(request.context)
        patterns = self.fetch_patterns(request.user_id)
        score = self.contextual_score(patterns, request.context)

        return ContextAnalysis(
            features=features,
            contextual_score=score,
            patterns_analyzed=len(patterns),
            optimal_duration=self._optimal_duration(request, features, model),
            environmental_factors=self._environmental_factors(request.context),
            time_optimization=self._time_optimization(request.context),
        )

    def fetch_patterns(self, user_id: str) -> List[Pattern]:
        if self.pattern_source is None:
            return []
        end = self.clock.now()
        start = end - timedelta(days=PATTERN_LOOKBACK_DAYS)
        try:
            patterns = self.pattern_source.get_patterns(
                user_id, PATTERN_SYSTEMS, (start, end), PATTERN_MIN_CONFIDENCE
            )
        except Exception as e:
            logger.warning(f"Pattern lookup failed for user {user_id}: {e}")
            return []
        relevant = [p for p in patterns if p.type in RELEVANT_PATTERN_TYPES and p.confidence >= 0]
        return relevant[:PATTERN_MAX_RESULTS]

    @staticmethod
    def contextual_score(patterns: Sequence[Pattern], context: GenerationContext) -> float:
        total_weight = sum(p.confidence * max(p.frequency, 1) for p in patterns)
        if not patterns or total_weight <= 0:
            return NEUTRAL_CONTEXTUAL_SCORE

        pattern_score = sum(
            p.confidence * max(p.frequency, 1) * min(1.0, max(0.0, p.success_rate))
            for p in patterns
        ) / total_weight
        readiness = (context.energy_level + context.focus_level) / 2.0
        return round(min(1.0, max(0.0, 0.7 * pattern_score + 0.3 * readiness)), 6)

    def _optimal_duration(self, request, features, model) -> float:
        wanted = float(preferred_duration(request))
        if model is None:
            return wanted
        try:
            output = model.predict_duration(
                [1.0],
                {
                    "estimated_duration": wanted,
                    "energy_level": features[3],
                    "environment_score": features[6],
                },
            )
            return output.value
        except ModelUnavailable as e:
            logger.info(f"Duration model unavailable, using preferred duration: {e}")
            return wanted

    @staticmethod
    def _environmental_factors(context: GenerationContext) -> List[str]:
        factors = []
        if context.environment == Environment.NOISY:
            factors.append("noisy_environment")
        if context.energy_level < 0.4:
            factors.append("low_energy")
        if context.focus_level < 0.4:
            factors.append("low_focus")
        if context.collaborators > 0:
            factors.append("collaborators_available")
        return factors

    @staticmethod
    def _time_optimization(context: GenerationContext) -> List[str]:
        notes = []
        if context.time_of_day in (TimeOfDay.EVENING, TimeOfDay.NIGHT):
            notes.append("late_session_prefer_lighter_load")
        if context.available_time and context.available_time < 45:
            notes.append("short_window_prefer_single_focus")
        return notes
