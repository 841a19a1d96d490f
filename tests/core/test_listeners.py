"""
Tests for the scoring side-effect listeners.
"""
import pytest
from prometheus_client import CollectorRegistry

from assessment_engine.core.events import (
    AssemblyCompleted,
    EventDispatcher,
    FallbackInvoked,
    RetryAttempted,
    ScoringCompleted,
    ScoringFailed,
)
from assessment_engine.core.listeners import (
    MetricsListener,
    PassportUpdateListener,
    PercentileRecalculationListener,
    ScoringAuditListener,
    register_default_listeners,
)
from assessment_engine.core.passport import PassportService
from assessment_engine.core.scoring.engine import ScoringEngine
from assessment_engine.models import AssessmentStrategy, ScoringAuditLog, TestResult
from assessment_engine.observability import ApplicationMetrics


@pytest.fixture
def app_metrics():
    return ApplicationMetrics(CollectorRegistry())


@pytest.fixture
def scored_result(db_session, catalog, make_overview_blueprint):
    """A COMPLETED OVERVIEW result for user-1 (competency at 75%)."""
    competency = catalog.competency()
    q1, q2 = catalog.questions(catalog.indicator(competency), 2)
    template = catalog.template(make_overview_blueprint([competency.id]))
    session = catalog.scored_session(template, [(q1, 1.0), (q2, 0.5)], user_id="user-1")
    result = ScoringEngine(db_session).score_session(session.id)
    return result, competency


def completed_event(result, strategy=AssessmentStrategy.OVERVIEW, user_id="user-1"):
    return ScoringCompleted(
        strategy=strategy,
        session_id=result.session_id,
        result_id=result.id,
        template_id=result.template_id,
        score=result.overall_percentage,
        passed=result.passed,
        duration_seconds=0.25,
        user_id=user_id,
    )


class TestPassportUpdateListener:
    """OVERVIEW results refresh the candidate's passport."""

    def test_writes_passport(self, db_session, testing_session_local, scored_result):
        result, competency = scored_result

        PassportUpdateListener(testing_session_local).handle(completed_event(result))

        db_session.expire_all()
        passport = PassportService(db_session).get_valid_passport("user-1")
        assert passport is not None
        assert passport.competency_scores == {competency.id: pytest.approx(3.75)}
        assert passport.source_result_id == result.id

    @pytest.mark.parametrize(
        "strategy,user_id",
        [(AssessmentStrategy.JOB_FIT, "user-1"), (AssessmentStrategy.OVERVIEW, None)],
    )
    def test_skips_other_strategies_and_anonymous(
        self, db_session, testing_session_local, scored_result, strategy, user_id
    ):
        result, _ = scored_result

        PassportUpdateListener(testing_session_local).handle(
            completed_event(result, strategy=strategy, user_id=user_id)
        )

        db_session.expire_all()
        assert PassportService(db_session).get_valid_passport("user-1") is None


class TestScoringAuditListener:
    """One audit row per completed or failed scoring."""

    def test_completed_and_failed(self, db_session, testing_session_local, scored_result):
        result, _ = scored_result
        listener = ScoringAuditListener(testing_session_local)

        listener.handle(completed_event(result))
        listener.handle(
            ScoringFailed(
                strategy=AssessmentStrategy.OVERVIEW,
                session_id=result.session_id,
                error_type="ScoringError",
                duration_seconds=0.5,
            )
        )

        db_session.expire_all()
        rows = db_session.query(ScoringAuditLog).order_by(ScoringAuditLog.id).all()
        assert len(rows) == 2
        assert rows[0].result_id == result.id
        assert rows[0].overall_score == pytest.approx(75.0)
        assert rows[0].duration_ms == pytest.approx(250.0)
        assert rows[1].result_id is None
        assert rows[1].passed is None

    def test_ignores_other_events(self, db_session, testing_session_local):
        ScoringAuditListener(testing_session_local).handle(
            AssemblyCompleted(
                strategy=AssessmentStrategy.OVERVIEW, duration_seconds=0.1, question_count=4
            )
        )
        assert db_session.query(ScoringAuditLog).count() == 0


class TestPercentileRecalculationListener:
    def test_updates_recent_percentiles(
        self, db_session, testing_session_local, catalog, scored_result, app_metrics
    ):
        result, _ = scored_result
        catalog.result(result.session.template, 95.0, percentile=0)

        PercentileRecalculationListener(testing_session_local, app_metrics).handle(
            completed_event(result)
        )

        db_session.expire_all()
        assert db_session.get(TestResult, result.id).percentile == 0
        assert app_metrics.get_count("assessment_percentile_updates_total") == 2.0


class TestMetricsListener:
    """Engine events become Prometheus samples."""

    def test_records_events(self, app_metrics, scored_result):
        result, _ = scored_result
        listener = MetricsListener(app_metrics)

        listener.handle(completed_event(result))
        listener.handle(
            RetryAttempted(
                strategy=AssessmentStrategy.JOB_FIT,
                operation="score_session",
                attempt_number=2,
                max_attempts=3,
                error_type="TimeoutError",
            )
        )
        listener.handle(
            FallbackInvoked(
                strategy=AssessmentStrategy.JOB_FIT,
                operation="score_session",
                reason="circuit_open",
                error_type="CircuitBreakerOpen",
            )
        )
        listener.handle(
            AssemblyCompleted(
                strategy=AssessmentStrategy.TEAM_FIT, duration_seconds=0.2, question_count=12
            )
        )

        assert app_metrics.get_count(
            "assessment_scorings_total", {"strategy": "overview", "outcome": "passed"}
        ) == 1.0
        assert app_metrics.get_count(
            "assessment_retries_total",
            {"operation": "score_session", "error_type": "TimeoutError"},
        ) == 1.0
        assert app_metrics.get_count(
            "assessment_fallbacks_total",
            {"operation": "score_session", "reason": "circuit_open"},
        ) == 1.0
        assert app_metrics.get_count(
            "assessment_assemblies_total", {"strategy": "team_fit", "outcome": "completed"}
        ) == 1.0


class TestRegisterDefaultListeners:
    """End to end through the asynchronous dispatcher."""

    def test_scoring_side_effects(
        self, db_session, testing_session_local, catalog, make_overview_blueprint, app_metrics
    ):
        competency = catalog.competency()
        question = catalog.question(catalog.indicator(competency))
        template = catalog.template(make_overview_blueprint([competency.id]))
        session = catalog.scored_session(template, [(question, 1.0)], user_id="user-9")
        dispatcher = EventDispatcher()
        register_default_listeners(dispatcher, testing_session_local, app_metrics)
        dispatcher.start()
        try:
            ScoringEngine(db_session, publisher=dispatcher).score_session(session.id)
            dispatcher.drain()
        finally:
            dispatcher.shutdown()

        stats = dispatcher.get_stats()
        assert set(stats) == {"percentiles", "passport", "audit", "metrics"}
        assert all(s["failed"] == 0 for s in stats.values())
        db_session.expire_all()
        assert db_session.query(ScoringAuditLog).count() == 1
        assert PassportService(db_session).get_valid_passport("user-9") is not None
        assert app_metrics.get_count(
            "assessment_scorings_total", {"strategy": "overview", "outcome": "passed"}
        ) == 1.0
