"""
Customizations and execution plan.

Customizations explain how the final template differs from the baseline it
was grown from and which context signals shaped it. The optimization plan
turns the final template into timed steps with checkpoints and fallbacks.
"""

from typing import List, Tuple

from .constants import (
    CustomizationType,
    FeedbackFrequency,
    PhaseType,
)
from .context_analyzer import ContextAnalysis
from .schemas import (
    GenerationRequest,
    MonitoringPlan,
    OptimizationPlan,
    OptimizationStep,
    SessionCustomization,
    SessionPredictions,
    SessionTemplate,
)

CONTEXT_CUSTOMIZATIONS = {
    "noisy_environment": (
        CustomizationType.STRUCTURE,
        "Shorter focus blocks to cope with a noisy environment",
        0.4, 0.6,
    ),
    "low_energy": (
        CustomizationType.ACTIVITIES,
        "Lighter activities up front while energy is low",
        0.5, 0.6,
    ),
    "low_focus": (
        CustomizationType.STRUCTURE,
        "More frequent checkpoints to hold focus",
        0.4, 0.55,
    ),
    "collaborators_available": (
        CustomizationType.ACTIVITIES,
        "Collaborative variant available for the people around you",
        0.3, 0.6,
    ),
}

CHECKPOINTS_BY_FREQUENCY = {
    FeedbackFrequency.REAL_TIME: 10,
    FeedbackFrequency.PERIODIC: 20,
    FeedbackFrequency.END_OF_SESSION: None,
}


def build_customizations(
    template: SessionTemplate,
    baseline: SessionTemplate,
    request: GenerationRequest,
    analysis: ContextAnalysis,
) -> Tuple[SessionCustomization, ...]:
    customizations: List[SessionCustomization] = []

    if template.estimated_duration != baseline.estimated_duration:
        customizations.append(SessionCustomization(
            type=CustomizationType.DURATION,
            description=(
                f"Adjusted session duration from {baseline.estimated_duration} "
                f"to {template.estimated_duration} minutes"
            ),
            impact=0.8,
            confidence=0.9,
            reasoning=("User preference alignment", "Optimal time utilization"),
        ))

    if template.difficulty != baseline.difficulty:
        customizations.append(SessionCustomization(
            type=CustomizationType.DIFFICULTY,
            description=f"Adjusted difficulty from {baseline.difficulty.value} to {template.difficulty.value}",
            impact=0.7,
            confidence=0.85,
            reasoning=("Skill level matching", "Past successful sessions"),
        ))

    if len(template.phases) != len(baseline.phases) or [p.type for p in template.phases] != [p.type for p in baseline.phases]:
        customizations.append(SessionCustomization(
            type=CustomizationType.STRUCTURE,
            description=f"Reworked phase structure into {len(template.phases)} phases",
            impact=0.6,
            confidence=0.7,
            reasoning=("Search found a better phase order",),
        ))

    required = [r for r in request.constraints.required_resources if r in template.resource_names()]
    if required:
        customizations.append(SessionCustomization(
            type=CustomizationType.RESOURCES,
            description=f"Included required resources: {', '.join(required)}",
            impact=0.5,
            confidence=0.95,
            reasoning=("Hard constraint",),
        ))

    break_every = request.preferences.break_frequency
    has_break = any(p.type == PhaseType.BREAK for p in template.phases)
    if break_every and not has_break and template.estimated_duration > break_every:
        customizations.append(SessionCustomization(
            type=CustomizationType.STRUCTURE,
            description=f"Take a short break every {break_every} minutes",
            impact=0.3,
            confidence=0.6,
            reasoning=("Break preference",),
        ))

    for factor in analysis.environmental_factors:
        if factor in CONTEXT_CUSTOMIZATIONS:
            kind, description, impact, confidence = CONTEXT_CUSTOMIZATIONS[factor]
            customizations.append(SessionCustomization(
                type=kind,
                description=description,
                impact=impact,
                confidence=confidence,
                reasoning=(f"Context: {factor.replace('_', ' ')}",),
            ))

    return tuple(customizations)


def build_optimization_plan(
    template: SessionTemplate,
    predictions: SessionPredictions,
    request: GenerationRequest,
) -> OptimizationPlan:
    steps = []
    boundaries = []
    elapsed = 0
    for i, phase in enumerate(template.phases):
        steps.append(OptimizationStep(
            step=i + 1,
            action=f"start_{phase.type.value}",
            parameters={"phase_id": phase.id, "duration": phase.duration},
            expected_outcome=phase.objectives[0] if phase.objectives else phase.name,
            duration=elapsed,
        ))
        elapsed += phase.duration
        boundaries.append(elapsed)

    interval = CHECKPOINTS_BY_FREQUENCY.get(request.preferences.feedback_frequency)
    if interval:
        checkpoints = sorted(set(boundaries) | set(range(interval, elapsed, interval)))
    else:
        checkpoints = [elapsed]

    risks = predictions.risk_factors
    fallbacks = []
    for risk in risks:
        for mitigation in risk.mitigation:
            if mitigation not in fallbacks:
                fallbacks.append(mitigation)

    return OptimizationPlan(
        strategy="adaptive_pacing" if risks else "steady_execution",
        parameters={
            "checkpoint_interval": interval,
            "feedback_frequency": request.preferences.feedback_frequency.value,
        },
        expected_improvement=round((1.0 - predictions.success_probability) * 0.2, 4),
        implementation_steps=tuple(steps),
        monitoring_plan=MonitoringPlan(
            metrics=("objective_completion", "time_efficiency", "engagement"),
            checkpoints=tuple(checkpoints),
            adaptation_triggers=tuple(r.factor for r in risks),
            fallback_strategies=tuple(fallbacks),
        ),
    )
