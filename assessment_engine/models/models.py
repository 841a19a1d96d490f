"""
Database models for the assessment engine.

Catalogue (Competency -> BehavioralIndicator -> Question), templates and
sessions, answers and results, per-item psychometric statistics, competency
passports and the scoring audit trail.
"""
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
import enum

from assessment_engine.core.datetime_utils import utc_now

from .base import Base


class AssessmentStrategy(str, enum.Enum):
    """Assessment goal a template is assembled and scored for."""

    OVERVIEW = "overview"
    JOB_FIT = "job_fit"
    TEAM_FIT = "team_fit"


class DifficultyLevel(str, enum.Enum):
    """Difficulty ladder, ordered from easiest to hardest."""

    FOUNDATIONAL = "foundational"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"


class QuestionType(str, enum.Enum):
    """Answer structure of a question."""

    LIKERT = "likert"
    SJT = "sjt"
    MCQ = "mcq"
    OPEN_TEXT = "open_text"


class BigFiveTrait(str, enum.Enum):
    """Personality traits measured by Big Five items."""

    OPENNESS = "openness"
    CONSCIENTIOUSNESS = "conscientiousness"
    EXTRAVERSION = "extraversion"
    AGREEABLENESS = "agreeableness"
    EMOTIONAL_STABILITY = "emotional_stability"


class SessionStatus(str, enum.Enum):
    """Test session lifecycle."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    TIMED_OUT = "timed_out"


class ResultStatus(str, enum.Enum):
    """Scoring status of a test result."""

    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class ItemValidityStatus(str, enum.Enum):
    """Psychometric validity status of a question."""

    ACTIVE = "active"
    FLAGGED_FOR_REVIEW = "flagged_for_review"
    RETIRED = "retired"


class DifficultyFlag(str, enum.Enum):
    """Difficulty index flag."""

    NONE = "none"
    TOO_HARD = "too_hard"
    TOO_EASY = "too_easy"


class DiscriminationFlag(str, enum.Enum):
    """Discrimination index flag."""

    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    NEGATIVE = "negative"


class Competency(Base):
    """Competency in the assessment catalogue."""

    __tablename__ = "competencies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text)
    category = Column(String(100))
    onet_code = Column(String(50))  # O*NET element id, boosts JOB_FIT weighting
    esco_uri = Column(String(500))  # ESCO skill URI, boosts TEAM_FIT weighting
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    indicators = relationship(
        "BehavioralIndicator",
        back_populates="competency",
        cascade="all, delete-orphan",
    )


class BehavioralIndicator(Base):
    """Observable behaviour that evidences a competency."""

    __tablename__ = "behavioral_indicators"

    id = Column(Integer, primary_key=True, index=True)
    competency_id = Column(
        Integer, ForeignKey("competencies.id", ondelete="CASCADE"), nullable=False
    )
    title = Column(String(255), nullable=False)
    weight = Column(Float, default=1.0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    competency = relationship("Competency", back_populates="indicators")
    questions = relationship(
        "Question", back_populates="indicator", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "weight >= 0.0 AND weight <= 1.0", name="ck_indicator_weight_range"
        ),
        Index("ix_indicators_competency_active", "competency_id", "is_active"),
    )


class Question(Base):
    """Assessment item belonging to a behavioral indicator."""

    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, index=True)
    indicator_id = Column(
        Integer,
        ForeignKey("behavioral_indicators.id", ondelete="CASCADE"),
        nullable=False,
    )
    question_text = Column(Text, nullable=False)
    question_type = Column(Enum(QuestionType), nullable=False)
    difficulty_level = Column(Enum(DifficultyLevel), nullable=False)
    answer_options = Column(JSON)  # Options with per-option scores for SJT/MCQ
    big_five_trait = Column(Enum(BigFiveTrait), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    indicator = relationship("BehavioralIndicator", back_populates="questions")
    statistics = relationship(
        "ItemStatistics",
        back_populates="question",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_questions_indicator_difficulty", "indicator_id", "difficulty_level"),
    )


class TestTemplate(Base):
    """Assessment template owning a blueprint."""

    __tablename__ = "test_templates"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    goal = Column(Enum(AssessmentStrategy), nullable=False)
    blueprint = Column(JSON, nullable=False)
    passing_score = Column(Float, default=70.0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    sessions = relationship("TestSession", back_populates="template")


class TestSession(Base):
    """One assessment attempt."""

    __tablename__ = "test_sessions"

    id = Column(Integer, primary_key=True, index=True)
    template_id = Column(Integer, ForeignKey("test_templates.id"), nullable=False)
    user_id = Column(String(255), nullable=True, index=True)  # None for anonymous
    status = Column(
        Enum(SessionStatus), default=SessionStatus.NOT_STARTED, nullable=False
    )
    question_order = Column(JSON)  # Ordered question ids from assembly
    blueprint_snapshot = Column(JSON)  # Resolved blueprint captured at start
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    template = relationship("TestTemplate", back_populates="sessions")
    answers = relationship(
        "TestAnswer", back_populates="session", cascade="all, delete-orphan"
    )
    result = relationship("TestResult", back_populates="session", uselist=False)


class TestAnswer(Base):
    """Response to one question within a session."""

    __tablename__ = "test_answers"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(
        Integer, ForeignKey("test_sessions.id", ondelete="CASCADE"), nullable=False
    )
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False)
    likert_value = Column(Integer)
    selected_option = Column(String(100))
    score = Column(Float)
    max_score = Column(Float)
    is_skipped = Column(Boolean, default=False, nullable=False)
    answered_at = Column(DateTime(timezone=True))
    time_spent_seconds = Column(Integer)

    session = relationship("TestSession", back_populates="answers")
    question = relationship("Question")

    __table_args__ = (
        UniqueConstraint("session_id", "question_id", name="uq_answer_session_question"),
        Index("ix_answers_question", "question_id"),
    )


class TestResult(Base):
    """Scored outcome of a completed session."""

    __tablename__ = "test_results"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(
        Integer, ForeignKey("test_sessions.id"), nullable=False, unique=True
    )
    template_id = Column(Integer, ForeignKey("test_templates.id"), nullable=False)
    user_id = Column(String(255), nullable=True)
    status = Column(Enum(ResultStatus), default=ResultStatus.COMPLETED, nullable=False)
    overall_score = Column(Float)
    overall_percentage = Column(Float)
    passed = Column(Boolean)
    percentile = Column(Integer)
    competency_scores = Column(JSON)
    big_five_profile = Column(JSON)
    extended_metrics = Column(JSON)
    questions_answered = Column(Integer, default=0, nullable=False)
    questions_skipped = Column(Integer, default=0, nullable=False)
    total_time_seconds = Column(Integer, default=0, nullable=False)
    completed_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    session = relationship("TestSession", back_populates="result")

    __table_args__ = (
        CheckConstraint(
            "percentile IS NULL OR (percentile >= 0 AND percentile <= 100)",
            name="ck_result_percentile_range",
        ),
        Index("ix_results_template_completed", "template_id", "completed_at"),
    )


class ItemStatistics(Base):
    """Psychometric aggregate for one question."""

    __tablename__ = "item_statistics"

    id = Column(Integer, primary_key=True, index=True)
    question_id = Column(
        Integer,
        ForeignKey("questions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    difficulty_index = Column(Float)  # p-value, 0.0-1.0
    discrimination_index = Column(Float)  # point-biserial, -1.0-1.0
    previous_discrimination_index = Column(Float)
    response_count = Column(Integer, default=0, nullable=False)
    validity_status = Column(
        Enum(ItemValidityStatus), default=ItemValidityStatus.ACTIVE, nullable=False
    )
    difficulty_flag = Column(
        Enum(DifficultyFlag), default=DifficultyFlag.NONE, nullable=False
    )
    discrimination_flag = Column(
        Enum(DiscriminationFlag), default=DiscriminationFlag.NONE, nullable=False
    )
    status_reason = Column(Text)
    status_history = Column(JSON)  # List of {from, to, timestamp, reason}
    last_calculated_at = Column(DateTime(timezone=True))

    question = relationship("Question", back_populates="statistics")


class CompetencyPassport(Base):
    """Reusable, time-limited record of a candidate's competency scores."""

    __tablename__ = "competency_passports"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, unique=True)
    competency_scores = Column(JSON, nullable=False)  # {competency_id: 1.0-5.0}
    big_five_profile = Column(JSON)
    source_result_id = Column(Integer, ForeignKey("test_results.id"), nullable=True)
    last_assessed = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class ScoringAuditLog(Base):
    """Audit trail entry written after each completed scoring."""

    __tablename__ = "scoring_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("test_sessions.id"), nullable=False)
    result_id = Column(Integer, ForeignKey("test_results.id"), nullable=True)
    strategy = Column(Enum(AssessmentStrategy), nullable=False)
    overall_score = Column(Float)
    passed = Column(Boolean)
    duration_ms = Column(Float)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
