"""
Engine metrics and error tracking.

Prometheus collectors live on a dedicated CollectorRegistry so the engine can
be embedded next to other instrumented code without name clashes. Every
record_* method is safe to call from listener threads and never raises.

Usage:
    from assessment_engine.observability import metrics

    metrics.record_assembly("overview", "completed", 0.12, question_count=18)
    metrics.record_error(error_type="OperationalError")

    text = metrics.export_text()  # Prometheus exposition format
"""
import logging
from typing import Optional

import sentry_sdk
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from assessment_engine.core.config import settings

logger = logging.getLogger(__name__)

# Buckets tuned for sub-second assembly/scoring with a long tail for retries
DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class ApplicationMetrics:
    """
    Engine-level Prometheus metrics.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.assemblies = Counter(
            "assessment_assemblies_total",
            "Assembly attempts by strategy and outcome",
            ["strategy", "outcome"],
            registry=self.registry,
        )
        self.assembly_duration = Histogram(
            "assessment_assembly_duration_seconds",
            "Assembly duration",
            ["strategy"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.assembled_questions = Histogram(
            "assessment_assembled_questions",
            "Questions per assembled session",
            ["strategy"],
            buckets=(5, 10, 20, 30, 50, 75, 100),
            registry=self.registry,
        )
        self.scorings = Counter(
            "assessment_scorings_total",
            "Scoring attempts by strategy and outcome",
            ["strategy", "outcome"],
            registry=self.registry,
        )
        self.scoring_duration = Histogram(
            "assessment_scoring_duration_seconds",
            "Scoring duration",
            ["strategy"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.retries = Counter(
            "assessment_retries_total",
            "Retry attempts by operation and error type",
            ["operation", "error_type"],
            registry=self.registry,
        )
        self.fallbacks = Counter(
            "assessment_fallbacks_total",
            "Fallback invocations by operation and reason",
            ["operation", "reason"],
            registry=self.registry,
        )
        self.percentile_updates = Counter(
            "assessment_percentile_updates_total",
            "Test results whose percentile was rewritten",
            registry=self.registry,
        )
        self.item_flags = Counter(
            "assessment_item_flags_total",
            "Items auto-flagged for review by discrimination flag",
            ["flag"],
            registry=self.registry,
        )
        self.errors = Counter(
            "assessment_errors_total",
            "Errors swallowed at non-critical boundaries",
            ["error_type"],
            registry=self.registry,
        )

    def record_assembly(
        self,
        strategy: str,
        outcome: str,
        duration: float,
        question_count: Optional[int] = None,
    ) -> None:
        """
        Record an assembly attempt.

        Args:
            strategy: Assessment strategy value (overview, job_fit, team_fit)
            outcome: "completed" or "failed"
            duration: Assembly duration in seconds
            question_count: Number of questions assembled (completed only)
        """
        try:
            self.assemblies.labels(strategy=strategy, outcome=outcome).inc()
            self.assembly_duration.labels(strategy=strategy).observe(duration)
            if question_count is not None:
                self.assembled_questions.labels(strategy=strategy).observe(
                    question_count
                )
        except Exception as e:
            logger.debug(f"Failed to record assembly metric: {e}")

    def record_scoring(self, strategy: str, outcome: str, duration: float) -> None:
        """
        Record a scoring attempt.

        Args:
            strategy: Assessment strategy value
            outcome: "passed", "not_passed" or "failed"
            duration: Scoring duration in seconds
        """
        try:
            self.scorings.labels(strategy=strategy, outcome=outcome).inc()
            self.scoring_duration.labels(strategy=strategy).observe(duration)
        except Exception as e:
            logger.debug(f"Failed to record scoring metric: {e}")

    def record_retry(self, operation: str, error_type: str) -> None:
        try:
            self.retries.labels(operation=operation, error_type=error_type).inc()
        except Exception as e:
            logger.debug(f"Failed to record retry metric: {e}")

    def record_fallback(self, operation: str, reason: str) -> None:
        try:
            self.fallbacks.labels(operation=operation, reason=reason).inc()
        except Exception as e:
            logger.debug(f"Failed to record fallback metric: {e}")

    def record_percentile_updates(self, count: int) -> None:
        if count <= 0:
            return
        try:
            self.percentile_updates.inc(count)
        except Exception as e:
            logger.debug(f"Failed to record percentile metric: {e}")

    def record_item_flagged(self, flag: str) -> None:
        try:
            self.item_flags.labels(flag=flag).inc()
        except Exception as e:
            logger.debug(f"Failed to record item flag metric: {e}")

    def record_error(self, error_type: str) -> None:
        """
        Record an error swallowed by a graceful-failure boundary.

        Args:
            error_type: Short error category label
        """
        try:
            self.errors.labels(error_type=error_type).inc()
        except Exception as e:
            logger.debug(f"Failed to record error metric: {e}")

    def get_count(self, name: str, labels: Optional[dict] = None) -> float:
        """Read a sample value from the registry (0.0 when absent)."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0

    def export_text(self) -> str:
        """Metrics in Prometheus exposition format."""
        return generate_latest(self.registry).decode("utf-8")


def init_error_tracking() -> bool:
    """
    Initialize Sentry error tracking when SENTRY_DSN is configured.

    Returns:
        True if Sentry was initialized
    """
    if not settings.SENTRY_DSN:
        logger.info("Sentry error tracking disabled (SENTRY_DSN not set)")
        return False

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT or settings.ENV,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )
    logger.info("Sentry error tracking initialized")
    return True


def capture_error(error: BaseException, **tags: str) -> None:
    """Report an exception to Sentry (no-op when Sentry is not initialized)."""
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in tags.items():
                scope.set_tag(key, value)
            sentry_sdk.capture_exception(error)
    except Exception as e:
        logger.debug(f"Failed to report error to Sentry: {e}")


metrics = ApplicationMetrics()
