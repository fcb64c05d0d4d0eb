"""
Domain records for session generation.

Every record is a frozen pydantic model with tuple collections, so a
template handed to the optimizer can never be changed in place: edits go
through model_copy(update=...) and produce a new object. Requests are
validated here, at the boundary, before anything enters the pipeline.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import (
    ActivityMode,
    CollaborationPreference,
    CustomizationType,
    DayOfWeek,
    Difficulty,
    Environment,
    FeedbackFrequency,
    LearningStyle,
    MAX_SESSION_MINUTES,
    MIN_SESSION_MINUTES,
    MeasurementKind,
    OptimizationLevel,
    OptimizationMethod,
    PhaseType,
    ResourceType,
    SessionType,
    TimeOfDay,
)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", use_enum_values=False)


# =============================================================================
# REQUEST
# =============================================================================

class GenerationContext(_Frozen):
    time_of_day: TimeOfDay = TimeOfDay.MORNING
    day_of_week: DayOfWeek = DayOfWeek.MONDAY
    available_time: float = Field(default=120, ge=0)  # minutes
    energy_level: float = Field(default=0.7, ge=0.0, le=1.0)
    focus_level: float = Field(default=0.7, ge=0.0, le=1.0)
    collaborators: int = Field(default=0, ge=0)
    environment: Environment = Environment.NORMAL
    tools: Tuple[str, ...] = ()
    previous_sessions: Tuple[str, ...] = ()


class UserPreferences(_Frozen):
    preferred_duration: Optional[int] = Field(default=None, ge=MIN_SESSION_MINUTES, le=MAX_SESSION_MINUTES)
    learning_style: LearningStyle = LearningStyle.MIXED
    break_frequency: Optional[int] = Field(default=None, ge=0)  # minutes between breaks
    difficulty_preference: Optional[Difficulty] = None
    collaboration_preference: CollaborationPreference = CollaborationPreference.SOLO
    feedback_frequency: FeedbackFrequency = FeedbackFrequency.PERIODIC


class SessionConstraints(_Frozen):
    min_duration: int = Field(default=MIN_SESSION_MINUTES, ge=MIN_SESSION_MINUTES, le=MAX_SESSION_MINUTES)
    max_duration: int = Field(default=MAX_SESSION_MINUTES, ge=MIN_SESSION_MINUTES, le=MAX_SESSION_MINUTES)
    required_resources: Tuple[str, ...] = ()
    excluded_activities: Tuple[str, ...] = ()
    time_budget: Optional[float] = Field(default=None, ge=0)
    resource_budget: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.max_duration < self.min_duration:
            raise ValueError("max_duration must be >= min_duration")
        return self


class GenerationRequest(_Frozen):
    user_id: str = Field(min_length=1)
    session_type: SessionType
    target_duration: Optional[int] = Field(default=None, ge=MIN_SESSION_MINUTES, le=MAX_SESSION_MINUTES)
    difficulty: Difficulty = Difficulty.INTERMEDIATE
    objectives: Tuple[str, ...]
    context: GenerationContext = Field(default_factory=GenerationContext)
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    constraints: SessionConstraints = Field(default_factory=SessionConstraints)
    optimization_level: OptimizationLevel = OptimizationLevel.STANDARD

    @field_validator("objectives")
    @classmethod
    def _objectives_not_empty(cls, value):
        cleaned = tuple(o.strip() for o in value if o and o.strip())
        if not cleaned:
            raise ValueError("objectives must not be empty")
        return cleaned

    @model_validator(mode="after")
    def _target_within_constraints(self):
        if self.target_duration is not None:
            c = self.constraints
            if not (c.min_duration <= self.target_duration <= c.max_duration):
                raise ValueError(
                    f"target_duration {self.target_duration} outside constraints "
                    f"[{c.min_duration}, {c.max_duration}]"
                )
        return self


# =============================================================================
# TEMPLATE
# =============================================================================

class Activity(_Frozen):
    id: str
    type: str
    mode: ActivityMode = ActivityMode.INTERACTIVE
    description: str = ""
    estimated_time: int = Field(default=0, ge=0)
    difficulty: float = Field(default=0.5, ge=0.0, le=1.0)
    prerequisites: Tuple[str, ...] = ()
    outcomes: Tuple[str, ...] = ()


class Resource(_Frozen):
    id: str
    type: ResourceType
    name: str
    url: Optional[str] = None
    description: str = ""
    is_required: bool = False


class SuccessCriteria(_Frozen):
    metric: str
    threshold: float = Field(ge=0.0, le=1.0)
    weight: float = Field(ge=0.0, le=1.0)
    measurement: MeasurementKind


class SessionPhase(_Frozen):
    id: str
    name: str
    type: PhaseType
    duration: int = Field(gt=0)
    objectives: Tuple[str, ...] = ()
    activities: Tuple[Activity, ...] = ()
    resources: Tuple[Resource, ...] = ()
    success_criteria: Tuple[SuccessCriteria, ...] = ()

    @property
    def criteria_weight(self) -> float:
        """Heaviest success-criteria weight in this phase (0 when none)."""
        return max((c.weight for c in self.success_criteria), default=0.0)


class PhaseTransition(_Frozen):
    from_phase: str
    to_phase: str
    conditions: Tuple[str, ...] = ()


class AdaptationRule(_Frozen):
    id: str
    trigger: str
    condition: str
    action: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0


class SessionStructure(_Frozen):
    phases: Tuple[SessionPhase, ...]
    transitions: Tuple[PhaseTransition, ...] = ()
    adaptation_rules: Tuple[AdaptationRule, ...] = ()


class OptimizationFeedback(_Frozen):
    user_satisfaction: float = Field(ge=0.0, le=1.0)
    objective_completion: float = Field(ge=0.0, le=1.0)
    time_efficiency: float = Field(ge=0.0, le=1.0)
    resource_utilization: float = Field(ge=0.0, le=1.0)
    learning_effectiveness: float = Field(ge=0.0, le=1.0)


class OptimizationRecord(_Frozen):
    timestamp: datetime
    method: OptimizationMethod
    parameters: Dict[str, Any] = Field(default_factory=dict)
    improvement: float
    feedback: OptimizationFeedback


class SessionTemplate(_Frozen):
    id: str
    name: str
    description: str = ""
    type: SessionType
    estimated_duration: int = Field(gt=0)
    difficulty: Difficulty
    required_resources: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    structure: SessionStructure
    success_prediction: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    optimization_history: Tuple[OptimizationRecord, ...] = ()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def phases(self) -> Tuple[SessionPhase, ...]:
        return self.structure.phases

    @property
    def activity_count(self) -> int:
        return sum(len(p.activities) for p in self.structure.phases)

    def resource_names(self) -> List[str]:
        names = list(self.required_resources)
        for phase in self.structure.phases:
            names.extend(r.name for r in phase.resources)
        return names

    def objective_set(self) -> set:
        found = set()
        for phase in self.structure.phases:
            found.update(o.lower() for o in phase.objectives)
        return found

    def activity_types(self) -> List[str]:
        return [a.type for p in self.structure.phases for a in p.activities]

    def with_record(self, record: OptimizationRecord) -> "SessionTemplate":
        """Return a copy with one more optimization record appended."""
        return self.model_copy(update={"optimization_history": self.optimization_history + (record,)})


# =============================================================================
# RESULT
# =============================================================================

class SessionCustomization(_Frozen):
    type: CustomizationType
    description: str
    impact: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: Tuple[str, ...] = ()


class RiskFactor(_Frozen):
    factor: str
    probability: float = Field(ge=0.0, le=1.0)
    impact: float = Field(ge=0.0, le=1.0)
    mitigation: Tuple[str, ...] = ()


class ConfidenceInterval(_Frozen):
    metric: str
    lower: float
    upper: float
    confidence: float = Field(ge=0.0, le=1.0)


class SessionPredictions(_Frozen):
    success_probability: float = Field(ge=0.0, le=1.0)
    completion_time: float = Field(gt=0)
    learning_effectiveness: float = Field(ge=0.0, le=1.0)
    resource_utilization: float = Field(ge=0.0, le=1.0)
    user_satisfaction: float = Field(ge=0.0, le=1.0)
    # Confidence of each metric above, keyed by field name
    metric_confidence: Dict[str, float] = Field(default_factory=dict)
    risk_factors: Tuple[RiskFactor, ...] = ()
    confidence_intervals: Tuple[ConfidenceInterval, ...] = ()


class AlternativeSession(_Frozen):
    name: str
    description: str
    template: SessionTemplate
    predictions: SessionPredictions
    tradeoffs: Tuple[str, ...] = ()
    advantages: Tuple[str, ...] = ()
    suitability: float = Field(ge=0.0, le=1.0)


class OptimizationStep(_Frozen):
    step: int
    action: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    expected_outcome: str
    duration: int  # minutes into the session


class MonitoringPlan(_Frozen):
    metrics: Tuple[str, ...]
    checkpoints: Tuple[int, ...]
    adaptation_triggers: Tuple[str, ...] = ()
    fallback_strategies: Tuple[str, ...] = ()


class OptimizationPlan(_Frozen):
    strategy: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    expected_improvement: float
    implementation_steps: Tuple[OptimizationStep, ...] = ()
    monitoring_plan: MonitoringPlan


class GenerationMetadata(_Frozen):
    generation_time: float  # seconds
    algorithms_used: Tuple[str, ...]
    patterns_analyzed: int
    confidence_score: float = Field(ge=0.0, le=1.0)
    optimization_level: OptimizationLevel
    partial: bool = False
    generations_run: int = 0
    stage_timings: Dict[str, float] = Field(default_factory=dict)
    degraded_stages: Tuple[str, ...] = ()
    version: str


class GeneratedSession(_Frozen):
    id: str
    user_id: str
    template: SessionTemplate
    customizations: Tuple[SessionCustomization, ...] = ()
    predictions: SessionPredictions
    alternatives: Tuple[AlternativeSession, ...] = ()
    optimization_plan: Optional[OptimizationPlan] = None
    metadata: GenerationMetadata

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")


# =============================================================================
# LEARNING
# =============================================================================

class SessionPerformance(_Frozen):
    success_score: float = Field(ge=0.0, le=1.0)
    actual_duration: Optional[int] = Field(default=None, gt=0)
    completed_phases: Optional[int] = Field(default=None, ge=0)
    objective_completion: float = Field(default=0.0, ge=0.0, le=1.0)


class GenerationLog(_Frozen):
    """What a completed generation looked like, kept to resolve later outcomes."""
    session_id: str
    user_id: str
    session_type: SessionType
    template_id: str
    duration: int
    phase_count: int
    difficulty: Difficulty
    predicted_success: float
    created_at: datetime


class LearningEntry(_Frozen):
    entry_id: str
    session_id: str
    user_id: str
    session_type: SessionType
    timestamp: datetime
    performance: SessionPerformance
    feedback: OptimizationFeedback
    outcomes: Tuple[str, ...] = ()
    # Structural dimensions of the executed template
    duration: int
    phase_count: int
    difficulty: Difficulty
    predicted_success: float = 0.5


class LearningState(_Frozen):
    """
    Learned weights shared by every process on one store.

    revision increases by one per fold; folded_entries is how many learning
    log entries, in log order, the weights already include.
    """
    revision: int = Field(ge=1)
    folded_entries: int = Field(ge=0)
    model_weights: Dict[str, float]
    model_bias: float
    fitness_weights: Dict[str, float]
    updated_at: datetime
