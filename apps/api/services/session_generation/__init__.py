# Session Generation Engine
#
# Builds a personalized, time-boxed session (phases, activities, resources,
# success criteria) for one user and request, then learns from outcomes.
#
# Architecture:
# - Context analysis turns the request context and behavioral patterns into features
# - Baseline selection from the template catalog or phase blueprints
# - Budgeted genetic search, then surrogate and feedback refinement
# - Predictions, customizations, alternatives and an optimization plan
# - Continuous learning folds realized outcomes into versioned snapshots
# - Config-driven rules, cached results, pluggable store and scoring model

from .config import ConfigService
from .cache import SessionCacheService
from .catalog import TemplateCatalog
from .container import GenerationServices
from .context_analyzer import ContextAnalysis, ContextAnalyzer, Pattern, PatternSource, StaticPatternSource
from .fitness import FitnessBreakdown, FitnessEvaluator, FitnessWeights
from .genetic import GeneticConfig, GeneticOptimizer, GeneticResult, SearchState
from .surrogate import RefinementOutcome, SurrogateRefiner
from .feedback import FeedbackRefiner, FeedbackTable
from .predictions import PredictionModule
from .alternatives import AlternativesGenerator
from .learning import ContinuousLearningRecorder, LearningSnapshot, SnapshotStore
from .orchestrator import GenerationOrchestrator, GenerationResult, GenerationStage, ResultStatus
from .scoring_model import ModelWeights, ScoringModel, WeightedScoringModel
from .store import InMemorySessionStore, SessionStore, SqlSessionStore
from .schemas import GeneratedSession, GenerationRequest, SessionTemplate
from .constants import Difficulty, OptimizationLevel, SessionType

__all__ = [
    # Core services
    'ConfigService',
    'SessionCacheService',
    'TemplateCatalog',
    'GenerationServices',
    'SessionStore',
    'InMemorySessionStore',
    'SqlSessionStore',

    # Pipeline stages
    'ContextAnalysis',
    'ContextAnalyzer',
    'Pattern',
    'PatternSource',
    'StaticPatternSource',
    'FitnessBreakdown',
    'FitnessEvaluator',
    'FitnessWeights',
    'GeneticConfig',
    'GeneticOptimizer',
    'GeneticResult',
    'SearchState',
    'RefinementOutcome',
    'SurrogateRefiner',
    'FeedbackRefiner',
    'FeedbackTable',
    'PredictionModule',
    'AlternativesGenerator',

    # Learning
    'ContinuousLearningRecorder',
    'LearningSnapshot',
    'SnapshotStore',
    'ModelWeights',
    'ScoringModel',
    'WeightedScoringModel',

    # Main orchestrator
    'GenerationOrchestrator',
    'GenerationResult',
    'GenerationStage',
    'ResultStatus',

    # Schemas and constants
    'GeneratedSession',
    'GenerationRequest',
    'SessionTemplate',
    'Difficulty',
    'OptimizationLevel',
    'SessionType',
]
