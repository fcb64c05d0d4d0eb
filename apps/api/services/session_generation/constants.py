"""
Constants for session generation.

These are DEFAULTS that can be overridden by config (generation_rules.yaml).
They exist here for type safety and documentation.
"""

from enum import Enum
from typing import Dict, Tuple


class SessionType(str, Enum):
    DEVELOPMENT = "development"
    LEARNING = "learning"
    COLLABORATION = "collaboration"
    REVIEW = "review"
    OPTIMIZATION = "optimization"


class Difficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"


DIFFICULTY_ORDER = [
    Difficulty.BEGINNER,
    Difficulty.INTERMEDIATE,
    Difficulty.ADVANCED,
    Difficulty.EXPERT,
]


class PhaseType(str, Enum):
    WARMUP = "warmup"
    FOCUS = "focus"
    PRACTICE = "practice"
    REVIEW = "review"
    BREAK = "break"
    ASSESSMENT = "assessment"


class ActivityMode(str, Enum):
    """How the participant engages with an activity."""
    PASSIVE = "passive"            # reading, watching
    INTERACTIVE = "interactive"    # hands-on, exercises
    COLLABORATIVE = "collaborative"  # pairing, group work


class ResourceType(str, Enum):
    FILE = "file"
    TOOL = "tool"
    DOCUMENTATION = "documentation"
    REFERENCE = "reference"
    TEMPLATE = "template"


class MeasurementKind(str, Enum):
    COMPLETION = "completion"
    ACCURACY = "accuracy"
    TIME = "time"
    QUALITY = "quality"
    ENGAGEMENT = "engagement"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


class DayOfWeek(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"


class Environment(str, Enum):
    QUIET = "quiet"
    NORMAL = "normal"
    NOISY = "noisy"


class OptimizationLevel(str, Enum):
    """Maps to a total time budget only (see BUDGET_* settings)."""
    QUICK = "quick"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class OptimizationMethod(str, Enum):
    GENETIC = "genetic"
    SURROGATE = "surrogate"
    FEEDBACK = "feedback"


class CustomizationType(str, Enum):
    DURATION = "duration"
    DIFFICULTY = "difficulty"
    ACTIVITIES = "activities"
    RESOURCES = "resources"
    STRUCTURE = "structure"


class CollaborationPreference(str, Enum):
    SOLO = "solo"
    PAIR = "pair"
    TEAM = "team"


class LearningStyle(str, Enum):
    VISUAL = "visual"
    AUDITORY = "auditory"
    KINESTHETIC = "kinesthetic"
    MIXED = "mixed"


class FeedbackFrequency(str, Enum):
    REAL_TIME = "real-time"
    PERIODIC = "periodic"
    END_OF_SESSION = "end-of-session"


# Absolute duration bounds for any session (minutes)
MIN_SESSION_MINUTES = 15
MAX_SESSION_MINUTES = 480

# Allowed drift from target_duration before the duration constraint is violated
TARGET_DURATION_TOLERANCE = 15

# Feature encodings used by the context analyzer
TIME_OF_DAY_ENCODING = {
    TimeOfDay.MORNING: 0.25,
    TimeOfDay.AFTERNOON: 0.5,
    TimeOfDay.EVENING: 0.75,
    TimeOfDay.NIGHT: 1.0,
}

DAY_OF_WEEK_INDEX = {
    DayOfWeek.MONDAY: 1,
    DayOfWeek.TUESDAY: 2,
    DayOfWeek.WEDNESDAY: 3,
    DayOfWeek.THURSDAY: 4,
    DayOfWeek.FRIDAY: 5,
    DayOfWeek.SATURDAY: 6,
    DayOfWeek.SUNDAY: 7,
}

ENVIRONMENT_ENCODING = {
    Environment.QUIET: 1.0,
    Environment.NORMAL: 0.7,
    Environment.NOISY: 0.3,
}

AVAILABLE_TIME_NORMALIZER = 240.0  # 4 hours
COLLABORATOR_NORMALIZER = 10.0

# Pattern lookup window for the context analyzer
PATTERN_LOOKBACK_DAYS = 30
PATTERN_MIN_CONFIDENCE = 0.7
PATTERN_MAX_RESULTS = 100
PATTERN_SYSTEMS = ("learning", "sessions", "analytics")
NEUTRAL_CONTEXTUAL_SCORE = 0.5

# Fitness weights: predicted success, constraint satisfaction, resource efficiency
FITNESS_WEIGHTS = {
    "success": 0.5,
    "constraints": 0.3,
    "efficiency": 0.2,
}
CONSTRAINT_VIOLATION_PENALTY = 0.25
NEUTRAL_PREDICTION = 0.5

# Default scoring model weights, in template feature order
SUCCESS_MODEL_WEIGHTS = {
    "duration_fit": 1.2,
    "time_of_day": 0.15,
    "day_of_week": 0.10,
    "experience_match": 0.9,
    "phase_balance": 0.6,
    "collaboration_level": 0.10,
    "task_complexity": -0.4,
    "previous_success_rate": 0.8,
}
SUCCESS_MODEL_BIAS = -1.4

# Genetic search defaults
GENETIC_DEFAULTS = {
    "population_size": 20,
    "generations": 10,
    "crossover_rate": 0.8,
    "mutation_rate": 0.1,
    "elitism": 1,
    "convergence_epsilon": 0.001,
    "convergence_patience": 3,
}
MUTATION_DURATION_RANGE: Tuple[float, float] = (0.8, 1.2)
MIN_PHASE_MINUTES = 1
MAX_PHASES = 12  # crossover children above this are replaced by a parent clone

# Surrogate refinement
SURROGATE_MAX_SUGGESTIONS = 5

# Feedback refinement
FEEDBACK_SUCCESS_THRESHOLD = 0.7
FEEDBACK_MIN_ENTRIES = 3
FEEDBACK_STEP = 0.5  # halfway toward the historical mean

# Prediction module
RISK_NEAR_LIMIT_FRACTION = 0.10
CONFIDENCE_LEVEL = 0.9

# Alternatives
SHORTER_KEEP_WEIGHT_THRESHOLD = 0.5
SHORTER_COMPRESSION = 0.6   # compressed phases keep 60% of their time
INTENSIVE_EXTENSION = 1.3   # practice/assessment phases grow by 30%

# Phase blueprints per session type: (phase type, share of total duration, criteria weight)
PHASE_BLUEPRINTS: Dict[SessionType, list] = {
    SessionType.DEVELOPMENT: [
        (PhaseType.WARMUP, 0.10, 0.2),
        (PhaseType.FOCUS, 0.45, 0.8),
        (PhaseType.BREAK, 0.05, 0.1),
        (PhaseType.PRACTICE, 0.25, 0.6),
        (PhaseType.REVIEW, 0.15, 0.4),
    ],
    SessionType.LEARNING: [
        (PhaseType.WARMUP, 0.10, 0.2),
        (PhaseType.FOCUS, 0.35, 0.7),
        (PhaseType.PRACTICE, 0.30, 0.8),
        (PhaseType.BREAK, 0.05, 0.1),
        (PhaseType.ASSESSMENT, 0.20, 0.6),
    ],
    SessionType.COLLABORATION: [
        (PhaseType.WARMUP, 0.15, 0.3),
        (PhaseType.FOCUS, 0.40, 0.7),
        (PhaseType.PRACTICE, 0.25, 0.6),
        (PhaseType.REVIEW, 0.20, 0.5),
    ],
    SessionType.REVIEW: [
        (PhaseType.WARMUP, 0.10, 0.2),
        (PhaseType.REVIEW, 0.50, 0.8),
        (PhaseType.ASSESSMENT, 0.25, 0.6),
        (PhaseType.BREAK, 0.15, 0.1),
    ],
    SessionType.OPTIMIZATION: [
        (PhaseType.WARMUP, 0.10, 0.2),
        (PhaseType.ASSESSMENT, 0.20, 0.5),
        (PhaseType.FOCUS, 0.40, 0.8),
        (PhaseType.REVIEW, 0.30, 0.6),
    ],
}

DEFAULT_DURATION_BY_TYPE = {
    SessionType.DEVELOPMENT: 90,
    SessionType.LEARNING: 60,
    SessionType.COLLABORATION: 60,
    SessionType.REVIEW: 45,
    SessionType.OPTIMIZATION: 75,
}

# Activities per phase type: (activity type, mode)
PHASE_ACTIVITIES = {
    PhaseType.WARMUP: [("context_review", ActivityMode.PASSIVE), ("goal_setting", ActivityMode.INTERACTIVE)],
    PhaseType.FOCUS: [("deep_work", ActivityMode.INTERACTIVE)],
    PhaseType.PRACTICE: [("guided_exercise", ActivityMode.INTERACTIVE), ("worked_example", ActivityMode.PASSIVE)],
    PhaseType.REVIEW: [("self_review", ActivityMode.PASSIVE)],
    PhaseType.BREAK: [("rest", ActivityMode.PASSIVE)],
    PhaseType.ASSESSMENT: [("checkpoint_quiz", ActivityMode.INTERACTIVE)],
}

PHASE_MEASUREMENT = {
    PhaseType.WARMUP: MeasurementKind.ENGAGEMENT,
    PhaseType.FOCUS: MeasurementKind.COMPLETION,
    PhaseType.PRACTICE: MeasurementKind.ACCURACY,
    PhaseType.REVIEW: MeasurementKind.QUALITY,
    PhaseType.BREAK: MeasurementKind.TIME,
    PhaseType.ASSESSMENT: MeasurementKind.ACCURACY,
}

DEFAULT_RESOURCES_BY_TYPE = {
    SessionType.DEVELOPMENT: [("editor", "tool"), ("project_docs", "documentation")],
    SessionType.LEARNING: [("course_notes", "reference"), ("exercise_sheet", "file")],
    SessionType.COLLABORATION: [("shared_workspace", "tool"), ("meeting_notes", "template")],
    SessionType.REVIEW: [("review_checklist", "template"), ("diff_viewer", "tool")],
    SessionType.OPTIMIZATION: [("profiler", "tool"), ("benchmark_suite", "file")],
}

ENGINE_VERSION = "1.0.0"
