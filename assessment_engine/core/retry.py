"""Bounded retry with exponential backoff for transient failures.

Only errors classified as retryable (see error_classifier) are retried; any
other exception propagates on the first attempt. Delays grow exponentially
with +/-25% jitter, capped at max_delay and never below MIN_RETRY_DELAY.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, TypeVar

from assessment_engine.core.config import settings
from assessment_engine.core.error_classifier import ClassifiedError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Floor for computed delays; zero base delays (tests) stay at zero
MIN_RETRY_DELAY = 0.0
JITTER_RATIO = 0.25

RetryCallback = Callable[[int, int, ClassifiedError, float], None]


@dataclass
class RetryConfig:
    """Retry policy."""

    max_attempts: int = field(
        default_factory=lambda: settings.SCORING_RETRY_MAX_ATTEMPTS
    )
    """Total attempts, including the first call."""

    base_delay: float = field(default_factory=lambda: settings.SCORING_RETRY_BASE_DELAY)
    max_delay: float = field(default_factory=lambda: settings.SCORING_RETRY_MAX_DELAY)
    exponential_base: float = field(
        default_factory=lambda: settings.SCORING_RETRY_EXPONENTIAL_BASE
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.exponential_base < 1.0:
            raise ValueError("exponential_base must be at least 1.0")


class RetryMetrics:
    """In-process retry counters, summarised for diagnostics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.total_retries = 0
        self.successful_retries = 0
        self.exhausted_retries = 0
        self.retries_by_operation: Dict[str, int] = {}

    def record_retry(self, operation: str, success: bool) -> None:
        """Record the outcome of a retried (non-first) attempt."""
        with self._lock:
            self.total_retries += 1
            if success:
                self.successful_retries += 1
            self.retries_by_operation[operation] = (
                self.retries_by_operation.get(operation, 0) + 1
            )

    def record_exhausted(self, operation: str) -> None:
        with self._lock:
            self.exhausted_retries += 1
            self.retries_by_operation.setdefault(operation, 0)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            success_rate = (
                self.successful_retries / self.total_retries
                if self.total_retries
                else 0.0
            )
            return {
                "total_retries": self.total_retries,
                "successful_retries": self.successful_retries,
                "exhausted_retries": self.exhausted_retries,
                "success_rate": success_rate,
                "retries_by_operation": dict(self.retries_by_operation),
            }


_retry_metrics = RetryMetrics()


def get_retry_metrics() -> RetryMetrics:
    return _retry_metrics


def reset_retry_metrics() -> None:
    global _retry_metrics
    _retry_metrics = RetryMetrics()


def calculate_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float,
) -> float:
    """Delay before the next attempt.

    Args:
        attempt: Zero-based index of the attempt that just failed
        base_delay: Delay after the first failure
        max_delay: Cap applied before jitter
        exponential_base: Growth factor per attempt

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base**attempt), max_delay)
    jitter = delay * JITTER_RATIO * (2 * random.random() - 1)
    return max(MIN_RETRY_DELAY, delay + jitter)


def with_retry(
    func: Callable[[], T],
    operation: str,
    config: Optional[RetryConfig] = None,
    on_retry: Optional[RetryCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call func, retrying retryable failures with backoff.

    Args:
        func: Zero-argument callable performing one attempt
        operation: Operation name for logs and metrics
        config: Retry policy (defaults from settings)
        on_retry: Called before each re-attempt with
            (next_attempt_number, max_attempts, classified_error, delay)
        sleep: Sleep function, injectable for tests

    Returns:
        Result of the first successful attempt

    Raises:
        Exception: The last error when it is not retryable or attempts run out
    """
    config = config or RetryConfig()
    metrics = get_retry_metrics()

    for attempt in range(config.max_attempts):
        try:
            result = func()
        except Exception as exc:
            if attempt > 0:
                metrics.record_retry(operation, success=False)

            classified = classify_error(exc)
            if not classified.is_retryable:
                logger.debug(f"{operation}: non-retryable error {classified}")
                raise

            if attempt + 1 >= config.max_attempts:
                metrics.record_exhausted(operation)
                logger.warning(
                    f"{operation}: all {config.max_attempts} attempts failed "
                    f"(last error: {classified.error_type})"
                )
                raise

            delay = calculate_backoff_delay(
                attempt,
                config.base_delay,
                config.max_delay,
                config.exponential_base,
            )
            logger.info(
                f"{operation}: attempt {attempt + 1}/{config.max_attempts} failed "
                f"with {classified.error_type}, retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt + 2, config.max_attempts, classified, delay)
            sleep(delay)
            continue

        if attempt > 0:
            metrics.record_retry(operation, success=True)
        return result

    # max_attempts >= 1 guarantees the loop returns or raises
    raise AssertionError("unreachable")
