"""
Custom exception classes and error handling.

Provides a consistent error taxonomy across the generation pipeline.
Only ValidationError, GenerationTimeout and GenerationCancelled ever reach a
caller of the orchestrator; everything else is recovered locally.
"""
from typing import Optional


class SessionEngineError(Exception):
    """Base engine exception with consistent structure."""

    def __init__(self, detail: str, error_code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.error_code = error_code or "ENGINE_ERROR"


class ValidationError(SessionEngineError):
    """Malformed generation request. Never enters the pipeline."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(detail, error_code=error_code)
        self.field = field


class ModelUnavailable(SessionEngineError):
    """Scoring or recommendation model could not be reached."""

    def __init__(self, detail: str = "Scoring model unavailable"):
        super().__init__(detail, error_code="MODEL_UNAVAILABLE")


class GenerationTimeout(SessionEngineError):
    """Hard wall-clock limit reached before any candidate could be returned."""

    def __init__(self, detail: str):
        super().__init__(detail, error_code="TIMEOUT")


class GenerationCancelled(SessionEngineError):
    """Generation was cancelled or superseded. Not a failure."""

    def __init__(self, user_id: str, reason: str = "superseded"):
        super().__init__(f"Generation for user {user_id} cancelled: {reason}", error_code="CANCELLED")
        self.user_id = user_id
        self.reason = reason


class NotFoundError(SessionEngineError):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}", error_code="NOT_FOUND")
