"""
Environment-driven settings for the session engine.

Values come from the process environment or a local .env file. Search
defaults, time budgets and learning cadence live next to the database,
redis and Celery settings so the worker and the CLI read the same knobs.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Validated engine settings; field names match the environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    DATABASE_URL: str = Field(default="sqlite:///./session_engine.db")

    # Database Pool Configuration (ignored for SQLite)
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=5)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration (unset = local in-process cache)
    REDIS_URL: Optional[str] = Field(default=None)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="text")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")
    CELERY_TASK_TIME_LIMIT_S: int = Field(default=120, ge=1)
    CELERY_RESULT_EXPIRES_S: int = Field(default=86400)  # 1 day

    # Genetic search defaults
    GENERATION_POPULATION_SIZE: int = Field(default=20, ge=2)
    GENERATION_GENERATIONS: int = Field(default=10, ge=1)
    GENERATION_CROSSOVER_RATE: float = Field(default=0.8, ge=0.0, le=1.0)
    GENERATION_MUTATION_RATE: float = Field(default=0.1, ge=0.0, le=1.0)
    GENERATION_CONVERGENCE_EPSILON: float = Field(default=0.001, ge=0.0)
    GENERATION_CONVERGENCE_PATIENCE: int = Field(default=3, ge=1)
    # Fixed seed makes generation reproducible; None draws from the OS.
    GENERATION_SEED: Optional[int] = Field(default=None)
    # Thread pool for population fitness evaluation (0 = evaluate inline)
    GENERATION_EVAL_WORKERS: int = Field(default=0, ge=0)

    # Total time budget per optimization level (seconds)
    BUDGET_QUICK_S: float = Field(default=5.0, gt=0)
    BUDGET_STANDARD_S: float = Field(default=10.0, gt=0)
    BUDGET_COMPREHENSIVE_S: float = Field(default=20.0, gt=0)

    # Surrogate refinement
    SURROGATE_MAX_SUGGESTIONS: int = Field(default=5, ge=0)

    # Feedback refinement
    FEEDBACK_SUCCESS_THRESHOLD: float = Field(default=0.7, ge=0.0, le=1.0)
    FEEDBACK_MIN_ENTRIES: int = Field(default=3, ge=1)

    # Batch generation ceiling (None = available CPU count)
    MAX_CONCURRENT_GENERATIONS: Optional[int] = Field(default=None, ge=1)

    # Cache Configuration
    CACHE_TTL_GENERATED_SESSION: int = Field(default=3600)  # 1 hour
    # In-process fallback only; redis enforces its own memory policy
    CACHE_MAX_LOCAL_SESSIONS: int = Field(default=10000, ge=1)

    # Continuous learning
    LEARNING_FOLD_INTERVAL_S: int = Field(default=300)  # 5 minutes
    LEARNING_BATCH_SIZE: int = Field(default=100, ge=1)
    LEARNING_RATE: float = Field(default=0.1, gt=0.0, le=1.0)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)


# Global settings instance
settings = Settings()
