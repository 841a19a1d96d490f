"""
Resilient scoring entry point.

ResilientScoringOrchestrator wraps ScoringEngine with a retry policy and a
circuit breaker:

- Each attempt runs in its own database session, so a failed attempt's
  rollback never leaks into the next one.
- Retryable failures (timeouts, dropped connections, TransientScoringError)
  are retried with exponential backoff; each re-attempt publishes
  RetryAttempted.
- Non-retryable failures (unknown or unfinished session, invalid blueprint)
  propagate unchanged and do not count against the breaker.
- When retries are exhausted or the breaker is open the fallback publishes
  FallbackInvoked, reports to Sentry, leaves a PENDING TestResult shell for
  later rescoring and raises ScoringUnavailableError. No partial scores are
  ever returned.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from assessment_engine.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpen,
    get_circuit_breaker_registry,
)
from assessment_engine.core.collaborators import BenchmarkLookup
from assessment_engine.core.error_classifier import ClassifiedError, classify_error
from assessment_engine.core.events import (
    EngineEvent,
    EventPublisher,
    FallbackInvoked,
    RetryAttempted,
    ScoringFailed,
    ScoringStarted,
)
from assessment_engine.core.exceptions import ScoringUnavailableError
from assessment_engine.core.graceful_failure import graceful_failure
from assessment_engine.core.logging_config import OperationContext
from assessment_engine.core.retry import RetryConfig, with_retry
from assessment_engine.core.scoring.engine import ScoringEngine
from assessment_engine.models.models import (
    AssessmentStrategy,
    ResultStatus,
    TestResult,
    TestSession,
)
from assessment_engine.observability import capture_error

logger = logging.getLogger(__name__)

SCORING_OPERATION = "score_session"
SCORING_BREAKER_NAME = "scoring"

REASON_RETRIES_EXHAUSTED = "retries_exhausted"
REASON_CIRCUIT_OPEN = "circuit_open"

EngineFactory = Callable[[Session], ScoringEngine]


def _is_retryable(exc: Exception) -> bool:
    return classify_error(exc).is_retryable


@dataclass(frozen=True)
class ScoringOutcome:
    """Snapshot of a scored result, safe to use after its DB session closed."""

    result_id: int
    session_id: int
    template_id: int
    status: ResultStatus
    overall_percentage: Optional[float]
    passed: Optional[bool]
    percentile: Optional[int]
    attempts: int = 1

    @classmethod
    def from_result(cls, result: TestResult, attempts: int = 1) -> "ScoringOutcome":
        return cls(
            result_id=result.id,
            session_id=result.session_id,
            template_id=result.template_id,
            status=result.status,
            overall_percentage=result.overall_percentage,
            passed=result.passed,
            percentile=result.percentile,
            attempts=attempts,
        )


class ResilientScoringOrchestrator:
    """Scores sessions through retry, circuit breaker and fallback."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        publisher: Optional[EventPublisher] = None,
        benchmark_lookup: Optional[BenchmarkLookup] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_config: Optional[RetryConfig] = None,
        engine_factory: Optional[EngineFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.publisher = publisher
        self.benchmark_lookup = benchmark_lookup
        self.breaker = breaker or get_circuit_breaker_registry().get_or_create(
            SCORING_BREAKER_NAME, counts_as_failure=_is_retryable
        )
        self.retry_config = retry_config or RetryConfig()
        self.engine_factory = engine_factory or self._default_engine
        self._sleep = sleep

    def _default_engine(self, db: Session) -> ScoringEngine:
        return ScoringEngine(
            db, benchmark_lookup=self.benchmark_lookup, publisher=self.publisher
        )

    def _publish(self, event: EngineEvent) -> None:
        if self.publisher is not None:
            self.publisher.publish(event)

    def _lookup_strategy(self, session_id: int) -> Optional[AssessmentStrategy]:
        """Strategy of the session's template, for tagging events."""
        with graceful_failure(
            "look up scoring strategy",
            logger,
            context=OperationContext(operation=SCORING_OPERATION, session_id=session_id),
        ):
            db = self.session_factory()
            try:
                session = db.get(TestSession, session_id)
                return session.template.goal if session is not None else None
            finally:
                db.close()
        return None

    def score_session(
        self, session_id: int, context: Optional[OperationContext] = None
    ) -> ScoringOutcome:
        """
        Score a completed session.

        Raises:
            ScoringUnavailableError: Retries exhausted or circuit open; a
                PENDING result was left for later rescoring
            ScoringError: Non-retryable failure reported by the engine
        """
        started = time.perf_counter()
        context = (context or OperationContext(operation=SCORING_OPERATION)).with_values(
            session_id=session_id
        )
        strategy = self._lookup_strategy(session_id) or (
            AssessmentStrategy(context.strategy)
            if context.strategy
            else AssessmentStrategy.OVERVIEW
        )
        context = context.with_values(strategy=strategy.value)
        attempts = 0

        def attempt() -> ScoringOutcome:
            nonlocal attempts
            attempts += 1
            db = self.session_factory()
            try:
                result = self.engine_factory(db).score_session(
                    session_id, context=context, strategy_hint=strategy
                )
                return ScoringOutcome.from_result(result, attempts=attempts)
            finally:
                db.close()

        def on_retry(
            attempt_number: int, max_attempts: int, classified: ClassifiedError, delay: float
        ) -> None:
            self._publish(
                RetryAttempted(
                    strategy=strategy,
                    operation=SCORING_OPERATION,
                    attempt_number=attempt_number,
                    max_attempts=max_attempts,
                    error_type=classified.error_type,
                    session_id=session_id,
                )
            )

        try:
            return with_retry(
                lambda: self.breaker.execute(attempt),
                operation=SCORING_OPERATION,
                config=self.retry_config,
                on_retry=on_retry,
                sleep=self._sleep,
            )
        except CircuitBreakerOpen as e:
            if attempts == 0:
                # The engine never ran, so it published nothing for this call
                self._publish(
                    ScoringStarted(strategy=strategy, session_id=session_id, answer_count=0)
                )
                self._publish(
                    ScoringFailed(
                        strategy=strategy,
                        session_id=session_id,
                        error_type=type(e).__name__,
                        duration_seconds=time.perf_counter() - started,
                    )
                )
            self._fallback(session_id, strategy, REASON_CIRCUIT_OPEN, e, context)
        except Exception as e:
            if not _is_retryable(e):
                raise
            self._fallback(session_id, strategy, REASON_RETRIES_EXHAUSTED, e, context)
        raise AssertionError("unreachable")

    def _fallback(
        self,
        session_id: int,
        strategy: AssessmentStrategy,
        reason: str,
        error: Exception,
        context: OperationContext,
    ) -> None:
        self._publish(
            FallbackInvoked(
                strategy=strategy,
                operation=SCORING_OPERATION,
                reason=reason,
                error_type=type(error).__name__,
                session_id=session_id,
            )
        )
        capture_error(
            error,
            operation=SCORING_OPERATION,
            reason=reason,
            strategy=strategy.value,
        )
        pending_id = self._write_pending_result(session_id, context)
        logger.error(
            f"Scoring unavailable for session {session_id} ({reason}): {error}",
            extra=context.log_extra(),
        )
        raise ScoringUnavailableError(
            f"Scoring is temporarily unavailable for session {session_id}",
            session_id=session_id,
            reason=reason,
            pending_result_id=pending_id,
            original_error=error,
        ) from error

    def _write_pending_result(
        self, session_id: int, context: OperationContext
    ) -> Optional[int]:
        """Leave a PENDING result shell (no scores) for later rescoring."""
        with graceful_failure(
            "write pending result",
            logger,
            context=context,
            log_level=logging.ERROR,
            report=True,
        ):
            db = self.session_factory()
            try:
                session = db.get(TestSession, session_id)
                if session is None:
                    return None
                if session.result is not None:
                    return session.result.id
                pending = TestResult(
                    session_id=session.id,
                    template_id=session.template_id,
                    user_id=session.user_id,
                    status=ResultStatus.PENDING,
                )
                db.add(pending)
                db.commit()
                return pending.id
            finally:
                db.close()
        return None
