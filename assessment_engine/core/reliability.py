r"""
Reliability and item-bank health for psychometric validation.

This module covers:
- Cronbach's alpha per competency (internal consistency of its items)
- Alpha-if-item-deleted, to spot items that weaken their competency
- Cronbach's alpha per Big Five trait over the personality items of that trait
- Distractor analysis of option-based questions
- A health report summarising item validity, reliability and flagged items

Formula:
    alpha = (k / (k-1)) * (1 - sum(var_i) / var_total)

Where k is the number of items, var_i the sample variance (ddof=1) of item i
and var_total the sample variance of the session totals. Scores are the
normalized 0.0-1.0 answer scores of non-skipped answers in COMPLETED sessions.

Sessions answering fewer than 90% of the items are left out; within the
remaining sessions an unanswered item counts as 0.0. Alpha is reported only
with at least two items and RELIABILITY_MIN_SESSIONS complete sessions.

Reliability status:
    alpha >= 0.70 -> RELIABLE, >= 0.60 -> ACCEPTABLE, else UNRELIABLE;
    INSUFFICIENT_DATA when alpha could not be calculated.

Results are computed on request and not persisted.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np
from sqlalchemy import func
from sqlalchemy.orm import Session

from assessment_engine.core.config import settings
from assessment_engine.core.datetime_utils import utc_now, window_start
from assessment_engine.core.exceptions import AnalysisValidationError
from assessment_engine.core.scoring.normalizer import ScoreNormalizer, is_answered
from assessment_engine.models.models import (
    BehavioralIndicator,
    BigFiveTrait,
    Competency,
    DifficultyFlag,
    DiscriminationFlag,
    ItemStatistics,
    ItemValidityStatus,
    Question,
    SessionStatus,
    TestAnswer,
    TestSession,
)

logger = logging.getLogger(__name__)


# =============================================================================
# THRESHOLDS
# =============================================================================

ALPHA_THRESHOLDS = {
    "excellent": 0.90,
    "good": 0.80,
    "acceptable": 0.70,
    "questionable": 0.60,
    "poor": 0.50,
    # below 0.50: unacceptable
}

ALPHA_RELIABLE = 0.70
ALPHA_ACCEPTABLE = 0.60

# Share of a unit's items a session must answer to enter the alpha matrix
RESPONSE_COMPLETENESS_THRESHOLD = 0.9

# Alpha of the remaining items needs at least two of them
MIN_ITEMS_FOR_ALPHA_IF_DELETED = 3

# Distractors chosen by fewer respondents than this share do not distract
NONFUNCTIONING_DISTRACTOR_SHARE = 0.05

TOP_FLAGGED_LIMIT = 10
QUESTION_TEXT_PREVIEW = 100
RECENT_ANALYSIS_DAYS = 1
DECIMALS = 4


class ReliabilityStatus(str, Enum):
    RELIABLE = "reliable"
    ACCEPTABLE = "acceptable"
    UNRELIABLE = "unreliable"
    INSUFFICIENT_DATA = "insufficient_data"


def get_interpretation(alpha: float) -> str:
    """
    Get interpretation string for a Cronbach's alpha value.

    Returns:
        "excellent", "good", "acceptable", "questionable", "poor" or
        "unacceptable"
    """
    for label, threshold in ALPHA_THRESHOLDS.items():
        if alpha >= threshold:
            return label
    return "unacceptable"


def reliability_status(alpha: Optional[float]) -> ReliabilityStatus:
    if alpha is None:
        return ReliabilityStatus.INSUFFICIENT_DATA
    if alpha >= ALPHA_RELIABLE:
        return ReliabilityStatus.RELIABLE
    if alpha >= ALPHA_ACCEPTABLE:
        return ReliabilityStatus.ACCEPTABLE
    return ReliabilityStatus.UNRELIABLE


# =============================================================================
# PURE COMPUTATION
# =============================================================================


def complete_sessions(scores: np.ndarray) -> np.ndarray:
    """
    Rows answering at least 90% of the items, with gaps scored 0.0.

    Args:
        scores: Shape (sessions, items); NaN marks an unanswered item
    """
    scores = np.asarray(scores, dtype=float)
    if scores.ndim != 2:
        raise AnalysisValidationError("Score matrix must be two-dimensional")
    items = scores.shape[1]
    if scores.shape[0] == 0 or items == 0:
        return np.zeros((0, items))
    answered = np.sum(~np.isnan(scores), axis=1)
    kept = scores[answered >= items * RESPONSE_COMPLETENESS_THRESHOLD]
    return np.nan_to_num(kept, nan=0.0)


def _alpha(complete: np.ndarray) -> Optional[float]:
    sessions, items = complete.shape
    if items < 2 or sessions < 2:
        return None
    total_variance = float(np.var(complete.sum(axis=1), ddof=1))
    if total_variance == 0:
        return None
    item_variances = float(np.var(complete, axis=0, ddof=1).sum())
    alpha = (items / (items - 1)) * (1 - item_variances / total_variance)
    # Can be negative in pathological cases
    return round(max(-1.0, min(1.0, alpha)), DECIMALS)


def cronbachs_alpha(scores: np.ndarray, min_sessions: Optional[int] = None) -> Optional[float]:
    """
    Cronbach's alpha of a session x item score matrix.

    Returns None with fewer than two items, fewer than ``min_sessions``
    complete sessions (default: settings.RELIABILITY_MIN_SESSIONS) or zero
    variance in the session totals.
    """
    min_sessions = min_sessions if min_sessions is not None else settings.RELIABILITY_MIN_SESSIONS
    complete = complete_sessions(scores)
    if complete.shape[0] < min_sessions:
        return None
    return _alpha(complete)


def alpha_if_item_deleted(
    scores: np.ndarray,
    question_ids: List[int],
    min_sessions: Optional[int] = None,
) -> Dict[int, float]:
    """
    Alpha of the remaining items with each item left out in turn.

    Completeness is judged against all items once, so every entry is computed
    from the same sessions. Items whose removal leaves zero total variance are
    omitted; the result is empty with fewer than three items.
    """
    min_sessions = min_sessions if min_sessions is not None else settings.RELIABILITY_MIN_SESSIONS
    complete = complete_sessions(scores)
    if len(question_ids) != complete.shape[1]:
        raise AnalysisValidationError("One question id is required per matrix column")
    if complete.shape[1] < MIN_ITEMS_FOR_ALPHA_IF_DELETED or complete.shape[0] < min_sessions:
        return {}

    result: Dict[int, float] = {}
    for column, question_id in enumerate(question_ids):
        alpha = _alpha(np.delete(complete, column, axis=1))
        if alpha is not None:
            result[question_id] = alpha
    return result


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass
class CompetencyReliability:
    competency_id: int
    cronbachs_alpha: Optional[float]
    sample_size: int
    item_count: int
    alpha_if_deleted: Dict[int, float] = field(default_factory=dict)

    @property
    def status(self) -> ReliabilityStatus:
        return reliability_status(self.cronbachs_alpha)

    @property
    def weakening_items(self) -> List[int]:
        """Items whose removal would raise alpha, largest gain first."""
        if self.cronbachs_alpha is None:
            return []
        gains = [
            (alpha - self.cronbachs_alpha, question_id)
            for question_id, alpha in self.alpha_if_deleted.items()
            if alpha > self.cronbachs_alpha
        ]
        return [question_id for _, question_id in sorted(gains, key=lambda g: (-g[0], g[1]))]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "competency_id": self.competency_id,
            "cronbachs_alpha": self.cronbachs_alpha,
            "interpretation": (
                get_interpretation(self.cronbachs_alpha)
                if self.cronbachs_alpha is not None
                else None
            ),
            "status": self.status.value,
            "sample_size": self.sample_size,
            "item_count": self.item_count,
            "alpha_if_deleted": dict(self.alpha_if_deleted),
            "weakening_items": self.weakening_items,
        }


@dataclass
class TraitReliability:
    trait: BigFiveTrait
    cronbachs_alpha: Optional[float]
    sample_size: int
    item_count: int

    @property
    def status(self) -> ReliabilityStatus:
        return reliability_status(self.cronbachs_alpha)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trait": self.trait.value,
            "cronbachs_alpha": self.cronbachs_alpha,
            "status": self.status.value,
            "sample_size": self.sample_size,
            "item_count": self.item_count,
        }


@dataclass
class DistractorAnalysis:
    """Share of respondents selecting each option of one question."""

    question_id: int
    total_selections: int
    shares: Dict[str, float]
    keyed_option: Optional[str] = None

    @property
    def nonfunctioning_distractors(self) -> List[str]:
        return sorted(
            option
            for option, share in self.shares.items()
            if option != self.keyed_option and share < NONFUNCTIONING_DISTRACTOR_SHARE
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "total_selections": self.total_selections,
            "shares": dict(self.shares),
            "keyed_option": self.keyed_option,
            "nonfunctioning_distractors": self.nonfunctioning_distractors,
        }


def flag_severity(
    difficulty_flag: DifficultyFlag, discrimination_flag: DiscriminationFlag
) -> int:
    """3 for toxic items, 2 for critical discrimination or extreme difficulty,
    1 for marginal discrimination, else 0."""
    if discrimination_flag == DiscriminationFlag.NEGATIVE:
        return 3
    if discrimination_flag == DiscriminationFlag.CRITICAL:
        return 2
    if difficulty_flag in (DifficultyFlag.TOO_HARD, DifficultyFlag.TOO_EASY):
        return 2
    if discrimination_flag == DiscriminationFlag.WARNING:
        return 1
    return 0


@dataclass
class FlaggedItem:
    question_id: int
    question_text: str
    competency_name: str
    indicator_title: str
    difficulty_index: Optional[float]
    discrimination_index: Optional[float]
    response_count: int
    validity_status: ItemValidityStatus
    difficulty_flag: DifficultyFlag
    discrimination_flag: DiscriminationFlag

    @property
    def severity(self) -> int:
        return flag_severity(self.difficulty_flag, self.discrimination_flag)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "question_text": self.question_text,
            "competency_name": self.competency_name,
            "indicator_title": self.indicator_title,
            "difficulty_index": self.difficulty_index,
            "discrimination_index": self.discrimination_index,
            "response_count": self.response_count,
            "validity_status": self.validity_status.value,
            "difficulty_flag": self.difficulty_flag.value,
            "discrimination_flag": self.discrimination_flag.value,
            "severity": self.severity,
        }


def _average(values: List[float]) -> Optional[float]:
    return round(float(np.mean(values)), DECIMALS) if values else None


@dataclass
class PsychometricHealthReport:
    items_by_status: Dict[str, int]
    average_discrimination: Optional[float]
    competencies: List[CompetencyReliability]
    traits: List[TraitReliability]
    top_flagged_items: List[FlaggedItem]
    items_analyzed_recently: int
    generated_at: datetime

    @property
    def total_items(self) -> int:
        return sum(self.items_by_status.values())

    @property
    def average_alpha(self) -> Optional[float]:
        return _average(
            [c.cronbachs_alpha for c in self.competencies if c.cronbachs_alpha is not None]
        )

    @property
    def lowest_alpha_trait(self) -> Optional[TraitReliability]:
        scored = [t for t in self.traits if t.cronbachs_alpha is not None]
        return min(scored, key=lambda t: t.cronbachs_alpha) if scored else None

    def _count(self, units: List[Any]) -> Dict[str, int]:
        counts = {status.value: 0 for status in ReliabilityStatus}
        for unit in units:
            counts[unit.status.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        lowest = self.lowest_alpha_trait
        return {
            "generated_at": self.generated_at.isoformat(),
            "total_items": self.total_items,
            "items_by_status": dict(self.items_by_status),
            "average_discrimination": self.average_discrimination,
            "items_analyzed_recently": self.items_analyzed_recently,
            "competency_reliability": {
                "total": len(self.competencies),
                "by_status": self._count(self.competencies),
                "average_alpha": self.average_alpha,
            },
            "big_five_reliability": {
                "total": len(self.traits),
                "by_status": self._count(self.traits),
                "average_alpha": _average(
                    [t.cronbachs_alpha for t in self.traits if t.cronbachs_alpha is not None]
                ),
                "lowest_alpha_trait": lowest.trait.value if lowest else None,
                "lowest_alpha": lowest.cronbachs_alpha if lowest else None,
            },
            "top_flagged_items": [item.to_dict() for item in self.top_flagged_items],
        }


# =============================================================================
# DATABASE ENTRY POINTS
# =============================================================================


def _load_scores(db: Session, *criteria: Any) -> tuple[np.ndarray, List[int]]:
    """Session x item matrix of normalized scores for the matching questions."""
    answers = (
        db.query(TestAnswer)
        .join(Question, Question.id == TestAnswer.question_id)
        .join(BehavioralIndicator, BehavioralIndicator.id == Question.indicator_id)
        .join(TestSession, TestSession.id == TestAnswer.session_id)
        .filter(
            TestSession.status == SessionStatus.COMPLETED,
            TestAnswer.is_skipped.is_(False),
            *criteria,
        )
        .order_by(TestAnswer.session_id, TestAnswer.question_id)
        .all()
    )

    normalizer = ScoreNormalizer()
    by_session: Dict[int, Dict[int, float]] = {}
    for answer in answers:
        if is_answered(answer):
            by_session.setdefault(answer.session_id, {})[answer.question_id] = (
                normalizer.normalize(answer)
            )

    question_ids = sorted({qid for row in by_session.values() for qid in row})
    column = {qid: i for i, qid in enumerate(question_ids)}
    scores = np.full((len(by_session), len(question_ids)), np.nan)
    for row, session_id in enumerate(sorted(by_session)):
        for qid, value in by_session[session_id].items():
            scores[row, column[qid]] = value
    return scores, question_ids


def calculate_competency_reliability(db: Session, competency_id: int) -> CompetencyReliability:
    """Cronbach's alpha and alpha-if-item-deleted for one competency.

    Personality items are left out.

    Raises:
        AnalysisValidationError: Unknown competency
    """
    if db.get(Competency, competency_id) is None:
        raise AnalysisValidationError(f"Competency {competency_id} not found")

    scores, question_ids = _load_scores(
        db,
        BehavioralIndicator.competency_id == competency_id,
        Question.big_five_trait.is_(None),
    )
    result = CompetencyReliability(
        competency_id=competency_id,
        cronbachs_alpha=cronbachs_alpha(scores),
        sample_size=complete_sessions(scores).shape[0],
        item_count=len(question_ids),
        alpha_if_deleted=alpha_if_item_deleted(scores, question_ids),
    )
    logger.info(
        f"Competency {competency_id} reliability: alpha={result.cronbachs_alpha}, "
        f"status={result.status.value}, n={result.sample_size}, k={result.item_count}"
    )
    return result


def calculate_big_five_reliability(db: Session, trait: BigFiveTrait) -> TraitReliability:
    """Cronbach's alpha over every personality item keyed to ``trait``."""
    scores, question_ids = _load_scores(db, Question.big_five_trait == trait)
    result = TraitReliability(
        trait=trait,
        cronbachs_alpha=cronbachs_alpha(scores),
        sample_size=complete_sessions(scores).shape[0],
        item_count=len(question_ids),
    )
    logger.info(
        f"Big Five reliability for {trait.value}: alpha={result.cronbachs_alpha}, "
        f"status={result.status.value}, items={result.item_count}"
    )
    return result


def analyze_distractors(db: Session, question_id: int) -> DistractorAnalysis:
    """
    Selection share of every option of a question.

    Options defined on the question but never chosen are reported with a
    share of 0.0. The keyed option is the highest-scoring one.

    Raises:
        AnalysisValidationError: Unknown question
    """
    question = db.get(Question, question_id)
    if question is None:
        raise AnalysisValidationError(f"Question {question_id} not found")

    rows = (
        db.query(TestAnswer.selected_option, func.count(TestAnswer.id))
        .filter(
            TestAnswer.question_id == question_id,
            TestAnswer.is_skipped.is_(False),
            TestAnswer.selected_option.isnot(None),
        )
        .group_by(TestAnswer.selected_option)
        .all()
    )
    counts = {option: count for option, count in rows}
    options = question.answer_options if isinstance(question.answer_options, dict) else {}
    for option in options:
        counts.setdefault(str(option), 0)

    total = sum(counts.values())
    shares = {
        option: round(count / total, DECIMALS) if total else 0.0
        for option, count in sorted(counts.items())
    }
    keyed = max(options, key=lambda option: options[option]) if options else None
    return DistractorAnalysis(
        question_id=question_id,
        total_selections=total,
        shares=shares,
        keyed_option=str(keyed) if keyed is not None else None,
    )


def _flagged_items(db: Session) -> List[FlaggedItem]:
    stats = (
        db.query(ItemStatistics)
        .filter(
            (ItemStatistics.validity_status == ItemValidityStatus.FLAGGED_FOR_REVIEW)
            | (ItemStatistics.discrimination_flag != DiscriminationFlag.NONE)
            | (ItemStatistics.difficulty_flag != DifficultyFlag.NONE)
        )
        .all()
    )
    items = []
    for entry in stats:
        question = entry.question
        indicator = question.indicator if question is not None else None
        competency = indicator.competency if indicator is not None else None
        items.append(
            FlaggedItem(
                question_id=entry.question_id,
                question_text=(question.question_text if question else "")[:QUESTION_TEXT_PREVIEW],
                competency_name=competency.name if competency else "Unknown",
                indicator_title=indicator.title if indicator else "Unknown",
                difficulty_index=entry.difficulty_index,
                discrimination_index=entry.discrimination_index,
                response_count=entry.response_count,
                validity_status=entry.validity_status,
                difficulty_flag=entry.difficulty_flag,
                discrimination_flag=entry.discrimination_flag,
            )
        )
    items.sort(key=lambda item: (-item.severity, item.question_id))
    return items[:TOP_FLAGGED_LIMIT]


def generate_health_report(db: Session, now: Optional[datetime] = None) -> PsychometricHealthReport:
    """Item-bank health: validity counts, reliability per unit and top flagged items."""
    now = now or utc_now()

    items_by_status = {status.value: 0 for status in ItemValidityStatus}
    for status, count in (
        db.query(ItemStatistics.validity_status, func.count(ItemStatistics.id))
        .group_by(ItemStatistics.validity_status)
        .all()
    ):
        items_by_status[status.value] = count

    discriminations = [
        value
        for (value,) in db.query(ItemStatistics.discrimination_index).filter(
            ItemStatistics.discrimination_index.isnot(None)
        )
    ]
    recent = (
        db.query(func.count(ItemStatistics.id))
        .filter(
            ItemStatistics.last_calculated_at >= window_start(now, days=RECENT_ANALYSIS_DAYS)
        )
        .scalar()
        or 0
    )

    competency_ids = [
        row.id
        for row in db.query(Competency.id)
        .filter(Competency.is_active.is_(True))
        .order_by(Competency.id)
    ]
    report = PsychometricHealthReport(
        items_by_status=items_by_status,
        average_discrimination=_average(discriminations),
        competencies=[calculate_competency_reliability(db, cid) for cid in competency_ids],
        traits=[calculate_big_five_reliability(db, trait) for trait in BigFiveTrait],
        top_flagged_items=_flagged_items(db),
        items_analyzed_recently=recent,
        generated_at=now,
    )
    logger.info(
        f"Psychometric health report: {report.total_items} items, "
        f"{items_by_status[ItemValidityStatus.FLAGGED_FOR_REVIEW.value]} flagged, "
        f"average alpha {report.average_alpha}"
    )
    return report
