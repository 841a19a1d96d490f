"""
Event listeners for the side effects of scoring.

Each listener runs on its own EventDispatcher worker and opens its own
database session per event, so its transaction is independent of the scoring
transaction that already committed. Exceptions propagate to the dispatcher,
which logs and counts them without affecting other listeners.
"""

import logging
from typing import Optional

from assessment_engine.core.events import (
    AssemblyCompleted,
    AssemblyFailed,
    EngineEvent,
    EventDispatcher,
    FallbackInvoked,
    RetryAttempted,
    ScoringCompleted,
    ScoringFailed,
)
from assessment_engine.core.passport import PassportService, passport_score
from assessment_engine.core.percentile import recalculate_recent
from assessment_engine.models.base import SessionFactory
from assessment_engine.models.models import (
    AssessmentStrategy,
    ResultStatus,
    ScoringAuditLog,
    TestResult,
)
from assessment_engine.observability import ApplicationMetrics, metrics as default_metrics

logger = logging.getLogger(__name__)


class PercentileRecalculationListener:
    """Reconciles percentiles of recent results on the scored template."""

    def __init__(
        self,
        session_factory: SessionFactory,
        app_metrics: Optional[ApplicationMetrics] = None,
    ):
        self.session_factory = session_factory
        self.metrics = app_metrics or default_metrics

    def handle(self, event: EngineEvent) -> None:
        if not isinstance(event, ScoringCompleted):
            return
        db = self.session_factory()
        try:
            updated, _ = recalculate_recent(db, event.template_id)
        finally:
            db.close()
        self.metrics.record_percentile_updates(updated)


class PassportUpdateListener:
    """Refreshes the candidate's competency passport from OVERVIEW results."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def handle(self, event: EngineEvent) -> None:
        if not isinstance(event, ScoringCompleted):
            return
        if event.strategy != AssessmentStrategy.OVERVIEW:
            return
        if not event.user_id:
            logger.debug(f"Skipping passport update for anonymous session {event.session_id}")
            return

        db = self.session_factory()
        try:
            result = db.get(TestResult, event.result_id)
            if result is None or result.status != ResultStatus.COMPLETED:
                logger.warning(
                    f"Skipping passport update: result {event.result_id} is not completed"
                )
                return
            scores = {
                entry["competency_id"]: passport_score(entry["percentage"])
                for entry in result.competency_scores or []
            }
            if not scores:
                logger.info(f"No competency scores to store for result {result.id}")
                return
            PassportService(db).save_passport(
                event.user_id,
                scores,
                big_five_profile=result.big_five_profile,
                source_result_id=result.id,
            )
            db.commit()
        finally:
            db.close()


class ScoringAuditListener:
    """Persists one ScoringAuditLog row per completed or failed scoring."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def handle(self, event: EngineEvent) -> None:
        if isinstance(event, ScoringCompleted):
            entry = ScoringAuditLog(
                session_id=event.session_id,
                result_id=event.result_id,
                strategy=event.strategy,
                overall_score=event.score,
                passed=event.passed,
                duration_ms=round(event.duration_seconds * 1000, 3),
            )
        elif isinstance(event, ScoringFailed):
            entry = ScoringAuditLog(
                session_id=event.session_id,
                strategy=event.strategy,
                duration_ms=round(event.duration_seconds * 1000, 3),
            )
        else:
            return

        db = self.session_factory()
        try:
            db.add(entry)
            db.commit()
        finally:
            db.close()


class MetricsListener:
    """Translates engine events into Prometheus metrics."""

    def __init__(self, app_metrics: Optional[ApplicationMetrics] = None):
        self.metrics = app_metrics or default_metrics

    def handle(self, event: EngineEvent) -> None:
        strategy = event.strategy.value
        if isinstance(event, AssemblyCompleted):
            self.metrics.record_assembly(
                strategy, "completed", event.duration_seconds, event.question_count
            )
        elif isinstance(event, AssemblyFailed):
            self.metrics.record_assembly(strategy, "failed", event.duration_seconds)
        elif isinstance(event, ScoringCompleted):
            outcome = "passed" if event.passed else "not_passed"
            self.metrics.record_scoring(strategy, outcome, event.duration_seconds)
        elif isinstance(event, ScoringFailed):
            self.metrics.record_scoring(strategy, "failed", event.duration_seconds)
        elif isinstance(event, RetryAttempted):
            self.metrics.record_retry(event.operation, event.error_type)
        elif isinstance(event, FallbackInvoked):
            self.metrics.record_fallback(event.operation, event.reason)


def register_default_listeners(
    dispatcher: EventDispatcher,
    session_factory: SessionFactory,
    app_metrics: Optional[ApplicationMetrics] = None,
) -> None:
    """Subscribe the standard side-effect listeners to a dispatcher."""
    dispatcher.subscribe(
        "percentiles",
        PercentileRecalculationListener(session_factory, app_metrics).handle,
        ScoringCompleted,
    )
    dispatcher.subscribe(
        "passport", PassportUpdateListener(session_factory).handle, ScoringCompleted
    )
    dispatcher.subscribe(
        "audit",
        ScoringAuditListener(session_factory).handle,
        ScoringCompleted,
        ScoringFailed,
    )
    dispatcher.subscribe("metrics", MetricsListener(app_metrics).handle)
