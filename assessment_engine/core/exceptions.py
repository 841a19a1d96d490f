"""
Exception hierarchy for the assessment engine.

Configuration and validation errors fail fast and are surfaced to the caller.
Transient errors are retried by the scoring orchestrator. Data-insufficiency
conditions are not errors and never raise.
"""

from typing import Any, Dict, List, Optional


class AssessmentEngineError(Exception):
    """Base exception for engine errors.

    Attributes:
        message: Human-readable error description
        original_error: The underlying exception that caused this error
        context: Additional context about where the error occurred
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        context: Optional[str] = None,
    ):
        self.message = message
        self.original_error = original_error
        self.context = context
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message with context and original error details."""
        parts = [self.message]
        if self.context:
            parts.append(f"Context: {self.context}")
        if self.original_error:
            parts.append(
                f"Original error: {type(self.original_error).__name__}: {self.original_error}"
            )
        return " | ".join(parts)


class AssemblyConfigurationError(AssessmentEngineError):
    """Blueprint or catalogue configuration prevents assembly.

    Carries the inventory warnings collected before the failure so the caller
    can explain the gap.
    """

    def __init__(
        self,
        message: str,
        warnings: Optional[List[Any]] = None,
        original_error: Optional[Exception] = None,
        context: Optional[str] = None,
    ):
        self.warnings = list(warnings or [])
        super().__init__(message, original_error=original_error, context=context)


class AnalysisValidationError(AssessmentEngineError):
    """Input to a psychometric analysis failed validation."""


class InvalidStatusTransitionError(AssessmentEngineError):
    """Requested item validity status change is not allowed."""


class ScoringError(AssessmentEngineError):
    """Scoring failed for a reason that retrying will not fix."""


class TransientScoringError(AssessmentEngineError):
    """Scoring dependency failed transiently (timeout, dropped connection)."""


class ScoringUnavailableError(AssessmentEngineError):
    """Scoring fallback was taken: retries exhausted or circuit open."""

    def __init__(
        self,
        message: str,
        session_id: int,
        reason: str,
        pending_result_id: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        self.session_id = session_id
        self.reason = reason
        self.pending_result_id = pending_result_id
        super().__init__(
            message,
            original_error=original_error,
            context=f"session_id={session_id}, reason={reason}",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "reason": self.reason,
            "pending_result_id": self.pending_result_id,
            "message": self.message,
        }
