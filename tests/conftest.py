"""
Pytest configuration and shared fixtures for testing.
"""
import sys
from pathlib import Path

# Add project root to path so assessment_engine is importable without installation
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from datetime import timedelta  # noqa: E402
from typing import Any, Dict, Iterable, List, Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from assessment_engine.core.circuit_breaker import reset_circuit_breaker_registry  # noqa: E402
from assessment_engine.core.datetime_utils import utc_now  # noqa: E402
from assessment_engine.core.retry import reset_retry_metrics  # noqa: E402
from assessment_engine.models import (  # noqa: E402
    AssessmentStrategy,
    BehavioralIndicator,
    BigFiveTrait,
    Base,
    Competency,
    DifficultyLevel,
    ItemStatistics,
    ItemValidityStatus,
    Question,
    QuestionType,
    ResultStatus,
    SessionStatus,
    TestAnswer,
    TestResult,
    TestSession,
    TestTemplate,
)

# Use SQLite for tests; the path is relative to this file so the .db
# lands inside tests/ regardless of the working directory.
_TEST_DB = Path(__file__).parent / "test.db"
SQLALCHEMY_DATABASE_URL = f"sqlite:///{_TEST_DB}"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database session for each test.
    """
    # Create all tables
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def testing_session_local(db_session):
    """Expose TestingSessionLocal for code that opens its own sessions.

    Depends on db_session so the tables exist for the duration of the test.
    """
    return TestingSessionLocal


@pytest.fixture(autouse=True)
def reset_resilience_state():
    """Global breaker registry and retry counters are process-wide."""
    reset_circuit_breaker_registry()
    reset_retry_metrics()
    yield
    reset_circuit_breaker_registry()
    reset_retry_metrics()


class CatalogBuilder:
    """Creates catalogue, session and result rows, committing each one.

    Committing keeps the SQLite file unlocked for code under test that opens
    its own sessions.
    """

    def __init__(self, db: Session):
        self.db = db
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def _save(self, entity: Any) -> Any:
        self.db.add(entity)
        self.db.commit()
        self.db.refresh(entity)
        return entity

    def competency(
        self,
        name: Optional[str] = None,
        onet_code: Optional[str] = None,
        esco_uri: Optional[str] = None,
        category: Optional[str] = None,
        is_active: bool = True,
    ) -> Competency:
        return self._save(
            Competency(
                name=name or f"Competency {self._next()}",
                onet_code=onet_code,
                esco_uri=esco_uri,
                category=category,
                is_active=is_active,
            )
        )

    def indicator(
        self,
        competency: Competency,
        weight: float = 1.0,
        title: Optional[str] = None,
        is_active: bool = True,
    ) -> BehavioralIndicator:
        return self._save(
            BehavioralIndicator(
                competency_id=competency.id,
                title=title or f"Indicator {self._next()}",
                weight=weight,
                is_active=is_active,
            )
        )

    def question(
        self,
        indicator: BehavioralIndicator,
        difficulty: DifficultyLevel = DifficultyLevel.INTERMEDIATE,
        question_type: QuestionType = QuestionType.MCQ,
        big_five_trait: Optional[BigFiveTrait] = None,
        answer_options: Optional[Dict[str, float]] = None,
        is_active: bool = True,
    ) -> Question:
        return self._save(
            Question(
                indicator_id=indicator.id,
                question_text=f"Question {self._next()}",
                question_type=question_type,
                difficulty_level=difficulty,
                big_five_trait=big_five_trait,
                answer_options=answer_options,
                is_active=is_active,
            )
        )

    def questions(
        self,
        indicator: BehavioralIndicator,
        count: int,
        difficulty: DifficultyLevel = DifficultyLevel.INTERMEDIATE,
        **kwargs: Any,
    ) -> List[Question]:
        return [self.question(indicator, difficulty, **kwargs) for _ in range(count)]

    def item_statistics(
        self,
        question: Question,
        status: ItemValidityStatus = ItemValidityStatus.ACTIVE,
        discrimination: Optional[float] = None,
        response_count: int = 0,
    ) -> ItemStatistics:
        return self._save(
            ItemStatistics(
                question_id=question.id,
                validity_status=status,
                discrimination_index=discrimination,
                response_count=response_count,
                status_history=[],
            )
        )

    def template(
        self,
        blueprint: Dict[str, Any],
        goal: Optional[AssessmentStrategy] = None,
        passing_score: float = 70.0,
    ) -> TestTemplate:
        goal = goal or AssessmentStrategy(blueprint.get("strategy", "overview"))
        return self._save(
            TestTemplate(
                name=f"Template {self._next()}",
                goal=goal,
                blueprint=blueprint,
                passing_score=passing_score,
            )
        )

    def session(
        self,
        template: TestTemplate,
        user_id: Optional[str] = None,
        status: SessionStatus = SessionStatus.COMPLETED,
        blueprint_snapshot: Optional[Dict[str, Any]] = None,
    ) -> TestSession:
        now = utc_now()
        return self._save(
            TestSession(
                template_id=template.id,
                user_id=user_id,
                status=status,
                blueprint_snapshot=blueprint_snapshot,
                started_at=now - timedelta(minutes=10),
                completed_at=now if status == SessionStatus.COMPLETED else None,
            )
        )

    def answer(
        self,
        session: TestSession,
        question: Question,
        score: Optional[float] = None,
        max_score: Optional[float] = 1.0,
        likert_value: Optional[int] = None,
        selected_option: Optional[str] = None,
        is_skipped: bool = False,
        time_spent_seconds: Optional[int] = None,
    ) -> TestAnswer:
        return self._save(
            TestAnswer(
                session_id=session.id,
                question_id=question.id,
                score=score,
                max_score=max_score if score is not None else None,
                likert_value=likert_value,
                selected_option=selected_option,
                is_skipped=is_skipped,
                answered_at=None if is_skipped else utc_now(),
                time_spent_seconds=time_spent_seconds,
            )
        )

    def scored_session(
        self,
        template: TestTemplate,
        question_scores: Iterable[tuple],
        user_id: Optional[str] = None,
    ) -> TestSession:
        """A COMPLETED session with one answer per (question, score) pair."""
        session = self.session(template, user_id=user_id)
        for question, score in question_scores:
            self.answer(session, question, score=score)
        return session

    def result(
        self,
        template: TestTemplate,
        overall_percentage: Optional[float],
        session: Optional[TestSession] = None,
        status: ResultStatus = ResultStatus.COMPLETED,
        percentile: Optional[int] = None,
        completed_at=None,
    ) -> TestResult:
        session = session or self.session(template)
        return self._save(
            TestResult(
                session_id=session.id,
                template_id=template.id,
                user_id=session.user_id,
                status=status,
                overall_percentage=overall_percentage,
                percentile=percentile,
                completed_at=completed_at or utc_now(),
            )
        )


@pytest.fixture
def catalog(db_session):
    """Row builder bound to the test session."""
    return CatalogBuilder(db_session)


def overview_blueprint(competency_ids: List[int], **overrides: Any) -> Dict[str, Any]:
    blueprint: Dict[str, Any] = {
        "strategy": "overview",
        "competency_ids": competency_ids,
        "questions_per_indicator": 2,
        "include_big_five": False,
        "shuffle": False,
    }
    blueprint.update(overrides)
    return blueprint


@pytest.fixture
def make_overview_blueprint():
    """Factory for OVERVIEW blueprint dicts with deterministic ordering."""
    return overview_blueprint
