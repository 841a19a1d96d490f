"""Error classification for scoring failures.

Maps raised exceptions onto a category and severity so the retry policy can
decide whether an attempt is worth repeating, and so fallback events carry a
stable error type for alerting.
"""

from enum import Enum

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from assessment_engine.core.exceptions import (
    AnalysisValidationError,
    AssemblyConfigurationError,
    InvalidStatusTransitionError,
    ScoringError,
    TransientScoringError,
)


class ErrorCategory(Enum):
    """Categories of engine errors."""

    TRANSIENT = "transient"  # Timeouts, dropped connections, pool exhaustion
    DATABASE = "database"  # Non-transient database errors
    VALIDATION = "validation"  # Bad input, never retried
    CONFIGURATION = "configuration"  # Blueprint/catalogue problems
    SCORING = "scoring"  # Deterministic scoring failures
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ClassifiedError:
    """A classified error with category and severity."""

    def __init__(
        self,
        category: ErrorCategory,
        severity: ErrorSeverity,
        error_type: str,
        message: str,
        is_retryable: bool = False,
    ):
        self.category = category
        self.severity = severity
        self.error_type = error_type
        self.message = message
        self.is_retryable = is_retryable

    def __str__(self) -> str:
        return (
            f"[{self.severity.value.upper()}] {self.error_type}: "
            f"{self.category.value} - {self.message}"
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/serialization."""
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "error_type": self.error_type,
            "message": self.message,
            "is_retryable": self.is_retryable,
        }


def classify_error(exc: BaseException) -> ClassifiedError:
    """Classify an exception raised during assembly or scoring.

    Args:
        exc: The exception to classify

    Returns:
        ClassifiedError describing the failure
    """
    error_type = type(exc).__name__
    message = str(exc)

    if isinstance(exc, (TransientScoringError, TimeoutError, ConnectionError)):
        return ClassifiedError(
            ErrorCategory.TRANSIENT, ErrorSeverity.LOW, error_type, message, True
        )
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return ClassifiedError(
            ErrorCategory.TRANSIENT, ErrorSeverity.MEDIUM, error_type, message, True
        )
    if isinstance(exc, DBAPIError):
        return ClassifiedError(
            ErrorCategory.TRANSIENT if exc.connection_invalidated else ErrorCategory.DATABASE,
            ErrorSeverity.HIGH,
            error_type,
            message,
            bool(exc.connection_invalidated),
        )
    if isinstance(exc, (AnalysisValidationError, InvalidStatusTransitionError, ValueError)):
        return ClassifiedError(
            ErrorCategory.VALIDATION, ErrorSeverity.MEDIUM, error_type, message
        )
    if isinstance(exc, AssemblyConfigurationError):
        return ClassifiedError(
            ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH, error_type, message
        )
    if isinstance(exc, ScoringError):
        return ClassifiedError(
            ErrorCategory.SCORING, ErrorSeverity.HIGH, error_type, message
        )
    return ClassifiedError(
        ErrorCategory.UNKNOWN, ErrorSeverity.HIGH, error_type, message
    )
