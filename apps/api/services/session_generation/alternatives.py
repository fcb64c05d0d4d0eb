"""
Alternatives Generator

Up to three structurally different variants of the final template:

- shorter: compresses low-weight phases, keeps phases whose success-criteria
  weight exceeds the threshold untouched
- collaborative: adds pair/group activities; only offered when the user has
  collaborators or prefers pair/team work
- intensive: extends practice and assessment phases

Each variant gets its own predictions and a suitability score.
"""

import logging
import random
from typing import List, Optional, Tuple

from .constants import (
    ActivityMode,
    CollaborationPreference,
    DIFFICULTY_ORDER,
    Difficulty,
    INTENSIVE_EXTENSION,
    MAX_SESSION_MINUTES,
    MIN_PHASE_MINUTES,
    MIN_SESSION_MINUTES,
    PhaseType,
    SHORTER_COMPRESSION,
    SHORTER_KEEP_WEIGHT_THRESHOLD,
)
from .context_analyzer import ContextAnalysis
from .predictions import PredictionModule
from .schemas import Activity, AlternativeSession, GenerationRequest, SessionTemplate
from .templates import fit_to_window, new_id, with_phases

logger = logging.getLogger(__name__)

COLLABORATIVE_ACTIVITY = "pair_session"
EXTENDED_PHASES = {PhaseType.PRACTICE, PhaseType.ASSESSMENT}


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class AlternativesGenerator:
    """
    Usage:
        generator = AlternativesGenerator(predictor)
        alternatives = generator.generate(template, request, analysis, rng)
    """

    def __init__(self, predictor: PredictionModule):
        self.predictor = predictor

    def generate(
        self,
        template: SessionTemplate,
        request: GenerationRequest,
        analysis: ContextAnalysis,
        rng: random.Random,
    ) -> Tuple[AlternativeSession, ...]:
        alternatives: List[AlternativeSession] = []

        shorter = self.shorter_variant(template)
        if shorter is not None:
            alternatives.append(self._package(
                shorter, request, analysis, rng,
                name="Focused Session",
                description="Condensed version that keeps the high-weight phases intact",
                tradeoffs=("Reduced depth", "Less practice time"),
                advantages=("Time efficient", "High impact activities"),
                fit=self._shorter_fit(template, request),
            ))

        collaborative = self.collaborative_variant(template, request)
        if collaborative is not None:
            alternatives.append(self._package(
                collaborative, request, analysis, rng,
                name="Collaborative Session",
                description="Team-based version with peer interaction",
                tradeoffs=("Coordination overhead", "Schedule alignment"),
                advantages=("Peer learning", "Shared knowledge", "Social motivation"),
                fit=self._collaborative_fit(request),
            ))

        intensive = self.intensive_variant(template)
        if intensive is not None:
            alternatives.append(self._package(
                intensive, request, analysis, rng,
                name="Intensive Session",
                description="Extended practice and assessment",
                tradeoffs=("Longer duration", "Higher cognitive load"),
                advantages=("Thorough coverage", "Mastery focus"),
                fit=self._intensive_fit(request),
            ))

        return tuple(alternatives)

    # ========== Variants ==========

    @staticmethod
    def shorter_variant(template: SessionTemplate) -> Optional[SessionTemplate]:
        phases = []
        for phase in template.phases:
            if phase.criteria_weight > SHORTER_KEEP_WEIGHT_THRESHOLD:
                phases.append(phase)
            else:
                duration = max(MIN_PHASE_MINUTES, int(phase.duration * SHORTER_COMPRESSION))
                phases.append(phase.model_copy(update={"duration": duration}))

        variant = fit_to_window(with_phases(template, phases), MIN_SESSION_MINUTES, MAX_SESSION_MINUTES)
        if variant.estimated_duration >= template.estimated_duration:
            return None
        return variant

    @staticmethod
    def collaborative_variant(template: SessionTemplate, request: GenerationRequest) -> Optional[SessionTemplate]:
        allowed = (
            request.context.collaborators > 0
            or request.preferences.collaboration_preference != CollaborationPreference.SOLO
        )
        excluded = {a.lower() for a in request.constraints.excluded_activities}
        if not allowed or COLLABORATIVE_ACTIVITY in excluded:
            return None

        phases = []
        changed = False
        for phase in template.phases:
            if phase.type in (PhaseType.FOCUS, PhaseType.PRACTICE):
                activity = Activity(
                    id=f"act-collab-{len(phases) + 1}",
                    type=COLLABORATIVE_ACTIVITY,
                    mode=ActivityMode.COLLABORATIVE,
                    description=f"Work through {phase.name.lower()} together",
                    estimated_time=phase.duration,
                    outcomes=("shared understanding",),
                )
                phase = phase.model_copy(update={"activities": phase.activities + (activity,)})
                changed = True
            phases.append(phase)
        if not changed:
            return None

        variant = with_phases(template, phases)
        return variant.model_copy(update={"tags": tuple(dict.fromkeys(variant.tags + ("collaborative",)))})

    @staticmethod
    def intensive_variant(template: SessionTemplate) -> Optional[SessionTemplate]:
        targets = EXTENDED_PHASES if any(p.type in EXTENDED_PHASES for p in template.phases) else {PhaseType.FOCUS}
        phases = [
            p.model_copy(update={"duration": max(p.duration + 1, int(round(p.duration * INTENSIVE_EXTENSION)))})
            if p.type in targets else p
            for p in template.phases
        ]
        variant = fit_to_window(with_phases(template, phases), MIN_SESSION_MINUTES, MAX_SESSION_MINUTES)
        if variant.estimated_duration <= template.estimated_duration:
            return None
        return variant

    # ========== Scoring ==========

    @staticmethod
    def _shorter_fit(template, request) -> float:
        fit = 0.5 + 0.2 * (1.0 - request.context.energy_level)
        if request.context.available_time and request.context.available_time < template.estimated_duration:
            fit += 0.3
        return _clamp(fit)

    @staticmethod
    def _collaborative_fit(request) -> float:
        fit = 0.5 + 0.1 * min(request.context.collaborators, 3)
        if request.preferences.collaboration_preference != CollaborationPreference.SOLO:
            fit += 0.2
        return _clamp(fit)

    @staticmethod
    def _intensive_fit(request) -> float:
        fit = 0.3 + 0.4 * request.context.energy_level * request.context.focus_level
        if DIFFICULTY_ORDER.index(request.difficulty) >= DIFFICULTY_ORDER.index(Difficulty.ADVANCED):
            fit += 0.2
        return _clamp(fit)

    def _package(self, template, request, analysis, rng, name, description, tradeoffs, advantages, fit):
        variant = template.model_copy(update={"id": new_id(rng, "tpl"), "name": f"{template.name} ({name})"})
        predictions = self.predictor.predict(variant, request, analysis)
        return AlternativeSession(
            name=name,
            description=description,
            template=variant,
            predictions=predictions,
            tradeoffs=tradeoffs,
            advantages=advantages,
            suitability=round(_clamp(0.5 * fit + 0.5 * predictions.success_probability), 6),
        )
