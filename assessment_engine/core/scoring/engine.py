"""
Scoring of completed test sessions.

ScoringEngine turns the answers of a COMPLETED session into exactly one
TestResult: competency and indicator percentages, the overall percentage of
the template's strategy, the pass decision against the template passing score
and an initial percentile. Every call publishes ScoringStarted followed by
ScoringCompleted or ScoringFailed; listener work (percentile reconciliation,
passport update, audit) happens after the scoring transaction has committed.
"""

import logging
import time
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from assessment_engine.core.collaborators import BenchmarkLookup
from assessment_engine.core.datetime_utils import elapsed_seconds, utc_now
from assessment_engine.core.events import (
    EngineEvent,
    EventPublisher,
    ScoringCompleted,
    ScoringFailed,
    ScoringStarted,
)
from assessment_engine.core.exceptions import ScoringError
from assessment_engine.core.logging_config import OperationContext
from assessment_engine.core.percentile import calculate_percentile
from assessment_engine.core.scoring.normalizer import ScoreNormalizer, is_answered
from assessment_engine.core.scoring.strategies import (
    AnyBlueprint,
    StrategyScore,
    score_answers,
    score_overview,
)
from assessment_engine.models.models import (
    AssessmentStrategy,
    ResultStatus,
    SessionStatus,
    TestAnswer,
    TestResult,
    TestSession,
)
from assessment_engine.schemas.blueprints import blueprint_strategy, parse_blueprint

logger = logging.getLogger(__name__)


class ScoringEngine:
    """Scores one completed session per call within the given DB session."""

    def __init__(
        self,
        db: Session,
        benchmark_lookup: Optional[BenchmarkLookup] = None,
        publisher: Optional[EventPublisher] = None,
        normalizer: Optional[ScoreNormalizer] = None,
    ):
        self.db = db
        self.benchmark_lookup = benchmark_lookup
        self.publisher = publisher
        self.normalizer = normalizer or ScoreNormalizer()

    def _publish(self, event: EngineEvent) -> None:
        if self.publisher is not None:
            self.publisher.publish(event)

    def _load_session(self, session_id: int) -> TestSession:
        session = self.db.get(TestSession, session_id)
        if session is None:
            raise ScoringError(f"Test session {session_id} not found")
        return session

    def _resolve_blueprint(self, session: TestSession) -> Optional[AnyBlueprint]:
        """Blueprint captured by the session, else the template's current one."""
        data = session.blueprint_snapshot or session.template.blueprint
        strategy = session.template.goal
        if not data:
            if strategy == AssessmentStrategy.OVERVIEW:
                return None
            raise ScoringError(
                f"Session {session.id} has no blueprint for {strategy.value} scoring"
            )
        try:
            blueprint = parse_blueprint(data)
        except ValidationError as e:
            raise ScoringError(
                f"Session {session.id} has an invalid blueprint", original_error=e
            ) from e
        if blueprint_strategy(blueprint) != strategy:
            raise ScoringError(
                f"Blueprint strategy {blueprint.strategy} does not match template "
                f"goal {strategy.value}"
            )
        return blueprint

    def _score(self, answers: list[TestAnswer], blueprint: Optional[AnyBlueprint]) -> StrategyScore:
        if blueprint is None:
            return score_overview(answers, None, self.normalizer)
        return score_answers(answers, blueprint, self.benchmark_lookup, self.normalizer)

    @staticmethod
    def _total_time_seconds(session: TestSession, answers: list[TestAnswer]) -> int:
        spent = sum(a.time_spent_seconds or 0 for a in answers)
        if spent:
            return int(spent)
        return elapsed_seconds(session.started_at, session.completed_at)

    def score_session(
        self,
        session_id: int,
        context: Optional[OperationContext] = None,
        strategy_hint: Optional[AssessmentStrategy] = None,
    ) -> TestResult:
        """Score a completed session and persist its TestResult.

        An existing COMPLETED result is returned unchanged, still announced
        with ScoringStarted and ScoringCompleted. A PENDING result (left by a
        failed earlier attempt) is filled in place.

        Args:
            session_id: Session to score
            context: Correlation values for logging
            strategy_hint: Strategy used to tag events when the session
                cannot be loaded

        Raises:
            ScoringError: Unknown session, session not COMPLETED, or an
                invalid blueprint
        """
        started = time.perf_counter()
        context = (context or OperationContext(operation="scoring")).with_values(
            session_id=session_id
        )
        strategy = strategy_hint or AssessmentStrategy.OVERVIEW
        announced = False

        try:
            session = self._load_session(session_id)
            strategy = session.template.goal
            context = context.with_values(
                template_id=session.template_id,
                user_id=session.user_id,
                strategy=strategy.value,
            )

            existing = session.result
            answers = list(session.answers)
            self._publish(
                ScoringStarted(
                    strategy=strategy, session_id=session_id, answer_count=len(answers)
                )
            )
            announced = True

            if existing is not None and existing.status == ResultStatus.COMPLETED:
                logger.info(
                    f"Session {session_id} already scored (result {existing.id})",
                    extra=context.log_extra(),
                )
                result = existing
            else:
                if session.status != SessionStatus.COMPLETED:
                    raise ScoringError(
                        f"Session {session_id} is {session.status.value}, not completed"
                    )

                blueprint = self._resolve_blueprint(session)
                outcome = self._score(answers, blueprint)
                result = self._write_result(session, answers, outcome, existing)
                self.db.commit()
        except Exception as e:
            self.db.rollback()
            duration = time.perf_counter() - started
            if not announced:
                self._publish(
                    ScoringStarted(strategy=strategy, session_id=session_id, answer_count=0)
                )
            self._publish(
                ScoringFailed(
                    strategy=strategy,
                    session_id=session_id,
                    error_type=type(e).__name__,
                    duration_seconds=duration,
                )
            )
            logger.warning(
                f"Scoring failed for session {session_id}: {e}", extra=context.log_extra()
            )
            raise

        duration = time.perf_counter() - started
        self._publish(
            ScoringCompleted(
                strategy=strategy,
                session_id=session_id,
                result_id=result.id,
                template_id=result.template_id,
                score=result.overall_percentage,
                passed=result.passed,
                duration_seconds=duration,
                user_id=result.user_id,
            )
        )
        logger.info(
            f"Scored session {session_id}: {result.overall_percentage:.2f}% "
            f"({'passed' if result.passed else 'failed'}), percentile {result.percentile}, "
            f"{duration * 1000:.1f}ms",
            extra=context.log_extra(),
        )
        return result

    def _write_result(
        self,
        session: TestSession,
        answers: list[TestAnswer],
        outcome: StrategyScore,
        existing: Optional[TestResult],
    ) -> TestResult:
        template = session.template
        answered = sum(1 for a in answers if is_answered(a))
        overall_percentage = round(outcome.overall_percentage, 4)

        result = existing or TestResult(session_id=session.id)
        result.template_id = template.id
        result.user_id = session.user_id
        result.status = ResultStatus.COMPLETED
        result.overall_score = round(outcome.overall_score, 4)
        result.overall_percentage = overall_percentage
        result.passed = overall_percentage >= template.passing_score
        result.competency_scores = [c.to_dict() for c in outcome.competency_scores]
        result.big_five_profile = outcome.big_five_profile
        result.extended_metrics = outcome.extended_metrics
        result.questions_answered = answered
        result.questions_skipped = len(answers) - answered
        result.total_time_seconds = self._total_time_seconds(session, answers)
        result.completed_at = utc_now()

        self.db.add(result)
        self.db.flush()
        result.percentile = calculate_percentile(self.db, template.id, overall_percentage)
        return result
