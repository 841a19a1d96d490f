"""
Database models and session utilities.
"""
from .base import Base, SessionFactory, create_session_factory
from .models import (
    AssessmentStrategy,
    BehavioralIndicator,
    BigFiveTrait,
    Competency,
    CompetencyPassport,
    DifficultyFlag,
    DifficultyLevel,
    DiscriminationFlag,
    ItemStatistics,
    ItemValidityStatus,
    Question,
    QuestionType,
    ResultStatus,
    ScoringAuditLog,
    SessionStatus,
    TestAnswer,
    TestResult,
    TestSession,
    TestTemplate,
)

__all__ = [
    "Base",
    "SessionFactory",
    "create_session_factory",
    "AssessmentStrategy",
    "BehavioralIndicator",
    "BigFiveTrait",
    "Competency",
    "CompetencyPassport",
    "DifficultyFlag",
    "DifficultyLevel",
    "DiscriminationFlag",
    "ItemStatistics",
    "ItemValidityStatus",
    "Question",
    "QuestionType",
    "ResultStatus",
    "ScoringAuditLog",
    "SessionStatus",
    "TestAnswer",
    "TestResult",
    "TestSession",
    "TestTemplate",
]
