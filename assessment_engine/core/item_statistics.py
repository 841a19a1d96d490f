"""
Item statistics and validity status (Classical Test Theory).

Metrics calculated per question from the non-skipped answers of completed,
scored sessions:
1. Difficulty index (p-value): mean normalized item score, which for
   dichotomous items is the proportion answering correctly
2. Discrimination index: point-biserial (Pearson) correlation between the item
   score and the overall percentage (as 0.0-1.0) of the session's result
3. Response count

Flags:
    Difficulty:      p < 0.20 -> TOO_HARD, p > 0.90 -> TOO_EASY, else NONE
    Discrimination:  rpb < 0 -> NEGATIVE (toxic), < 0.10 -> CRITICAL,
                     < 0.25 -> WARNING (marginal), else NONE

Validity status:
    ACTIVE items with NEGATIVE or CRITICAL discrimination are auto-flagged
    FLAGGED_FOR_REVIEW once the item has at least ITEM_MIN_RESPONSES responses.
    Below that the metrics are stored but marked provisional and no status
    changes are made. A reviewer moves a flagged item to RETIRED or back to
    ACTIVE with an audit reason of at least 10 characters.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy.orm import Session

from assessment_engine.core.config import settings
from assessment_engine.core.datetime_utils import utc_now
from assessment_engine.core.exceptions import (
    AnalysisValidationError,
    InvalidStatusTransitionError,
)
from assessment_engine.core.scoring.normalizer import ScoreNormalizer, is_answered
from assessment_engine.models.models import (
    DifficultyFlag,
    DiscriminationFlag,
    ItemStatistics,
    ItemValidityStatus,
    Question,
    ResultStatus,
    SessionStatus,
    TestAnswer,
    TestResult,
    TestSession,
)
from assessment_engine.observability import metrics

logger = logging.getLogger(__name__)

# =============================================================================
# THRESHOLDS
# =============================================================================

DIFFICULTY_TOO_HARD_BELOW = 0.20
DIFFICULTY_TOO_EASY_ABOVE = 0.90

DISCRIMINATION_CRITICAL_BELOW = 0.10
DISCRIMINATION_WARNING_BELOW = 0.25
DISCRIMINATION_EXCELLENT = 0.30

MIN_REVIEW_REASON_LENGTH = 10

AUTO_FLAG_DISCRIMINATION = (DiscriminationFlag.NEGATIVE, DiscriminationFlag.CRITICAL)

# Manual review transitions; automatic flagging only goes ACTIVE -> FLAGGED
REVIEW_TRANSITIONS: Dict[ItemValidityStatus, tuple] = {
    ItemValidityStatus.FLAGGED_FOR_REVIEW: (ItemValidityStatus.RETIRED, ItemValidityStatus.ACTIVE),
}


def classify_difficulty(p_value: Optional[float]) -> DifficultyFlag:
    if p_value is None:
        return DifficultyFlag.NONE
    if p_value < DIFFICULTY_TOO_HARD_BELOW:
        return DifficultyFlag.TOO_HARD
    if p_value > DIFFICULTY_TOO_EASY_ABOVE:
        return DifficultyFlag.TOO_EASY
    return DifficultyFlag.NONE


def classify_discrimination(rpb: Optional[float]) -> DiscriminationFlag:
    if rpb is None:
        return DiscriminationFlag.NONE
    if rpb < 0:
        return DiscriminationFlag.NEGATIVE
    if rpb < DISCRIMINATION_CRITICAL_BELOW:
        return DiscriminationFlag.CRITICAL
    if rpb < DISCRIMINATION_WARNING_BELOW:
        return DiscriminationFlag.WARNING
    return DiscriminationFlag.NONE


def _discrimination_label(rpb: float) -> str:
    if rpb < 0:
        return "toxic"
    if rpb >= DISCRIMINATION_EXCELLENT:
        return "excellent"
    if rpb >= DISCRIMINATION_WARNING_BELOW:
        return "good"
    if rpb >= DISCRIMINATION_CRITICAL_BELOW:
        return "marginal"
    return "poor"


def _difficulty_label(p_value: float) -> str:
    flag = classify_difficulty(p_value)
    if flag == DifficultyFlag.TOO_HARD:
        return "too hard"
    if flag == DifficultyFlag.TOO_EASY:
        return "too easy"
    return "acceptable"


def describe_metrics(
    difficulty: Optional[float],
    discrimination: Optional[float],
    response_count: Optional[int] = None,
    min_responses: Optional[int] = None,
) -> str:
    """Human-readable summary, e.g. ``rpb=0.123 (marginal), p=0.456 (acceptable)``."""
    parts = []
    if discrimination is not None:
        parts.append(f"rpb={discrimination:.3f} ({_discrimination_label(discrimination)})")
    if difficulty is not None:
        parts.append(f"p={difficulty:.3f} ({_difficulty_label(difficulty)})")
    text = ", ".join(parts) or "no metrics"
    if (
        response_count is not None
        and min_responses is not None
        and response_count < min_responses
    ):
        text += f"; provisional (n={response_count} < {min_responses})"
    return text


# =============================================================================
# PURE COMPUTATION
# =============================================================================


@dataclass
class ItemMetrics:
    """Difficulty/discrimination for one item with derived flags."""

    response_count: int
    difficulty_index: Optional[float]
    discrimination_index: Optional[float]
    difficulty_flag: DifficultyFlag
    discrimination_flag: DiscriminationFlag
    is_provisional: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response_count": self.response_count,
            "difficulty_index": self.difficulty_index,
            "discrimination_index": self.discrimination_index,
            "difficulty_flag": self.difficulty_flag.value,
            "discrimination_flag": self.discrimination_flag.value,
            "is_provisional": self.is_provisional,
        }


def point_biserial(item_scores: Sequence[float], total_scores: Sequence[float]) -> Optional[float]:
    """
    Pearson correlation between item scores and total scores.

    With 0/1 item scores this is the point-biserial coefficient. Returns None
    when fewer than two pairs exist or either series has no variance.
    """
    if len(item_scores) != len(total_scores):
        raise AnalysisValidationError(
            "Item scores and total scores must have the same length",
            context=f"items={len(item_scores)}, totals={len(total_scores)}",
        )
    if len(item_scores) < 2:
        return None

    items = np.asarray(item_scores, dtype=float)
    totals = np.asarray(total_scores, dtype=float)
    if np.std(items) == 0 or np.std(totals) == 0:
        return None

    r = float(np.corrcoef(items, totals)[0, 1])
    if np.isnan(r):
        return None
    return max(-1.0, min(1.0, r))


def compute_item_statistics(
    item_scores: Sequence[float],
    total_scores: Sequence[float],
    min_responses: Optional[int] = None,
) -> ItemMetrics:
    """
    Compute item metrics from paired item and total scores.

    Args:
        item_scores: Normalized 0.0-1.0 score of this item per respondent
        total_scores: Matching overall score per respondent
        min_responses: Responses needed for non-provisional metrics
            (default: settings.ITEM_MIN_RESPONSES)
    """
    min_responses = min_responses if min_responses is not None else settings.ITEM_MIN_RESPONSES
    count = len(item_scores)

    difficulty = round(float(np.mean(item_scores)), 4) if count else None
    discrimination = point_biserial(item_scores, total_scores)
    if discrimination is not None:
        discrimination = round(discrimination, 4)

    return ItemMetrics(
        response_count=count,
        difficulty_index=difficulty,
        discrimination_index=discrimination,
        difficulty_flag=classify_difficulty(difficulty),
        discrimination_flag=classify_discrimination(discrimination),
        is_provisional=count < min_responses,
    )


# =============================================================================
# PERSISTENCE
# =============================================================================


def _record_status_change(
    stats: ItemStatistics,
    new_status: ItemValidityStatus,
    reason: str,
    now: datetime,
    reviewer: Optional[str] = None,
) -> None:
    old_status = stats.validity_status or ItemValidityStatus.ACTIVE
    if old_status == new_status:
        return
    entry = {
        "from": old_status.value,
        "to": new_status.value,
        "timestamp": now.isoformat(),
        "reason": reason,
    }
    if reviewer:
        entry["reviewer"] = reviewer
    # Reassign so the JSON column is marked dirty
    stats.status_history = [*(stats.status_history or []), entry]
    stats.validity_status = new_status
    stats.status_reason = reason


def _load_score_pairs(
    db: Session, question_id: int, normalizer: ScoreNormalizer
) -> tuple[List[float], List[float]]:
    """Item score and overall score (0.0-1.0) for every scored session answering the item.

    Skipped answers and sessions without a completed, scored result are left out.
    """
    rows = (
        db.query(TestAnswer, TestResult.overall_percentage)
        .join(TestSession, TestSession.id == TestAnswer.session_id)
        .join(TestResult, TestResult.session_id == TestAnswer.session_id)
        .filter(
            TestAnswer.question_id == question_id,
            TestAnswer.is_skipped.is_(False),
            TestSession.status == SessionStatus.COMPLETED,
            TestResult.status == ResultStatus.COMPLETED,
            TestResult.overall_percentage.isnot(None),
        )
        .order_by(TestAnswer.session_id)
        .all()
    )

    item_scores: List[float] = []
    total_scores: List[float] = []
    for answer, overall_percentage in rows:
        if not is_answered(answer):
            continue
        item_scores.append(normalizer.normalize(answer))
        total_scores.append(overall_percentage / 100.0)
    return item_scores, total_scores


def update_item_statistics(
    db: Session,
    question_id: int,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> ItemStatistics:
    """
    Recompute and store statistics for one question.

    The previous discrimination index is kept for trend comparison. ACTIVE
    items with NEGATIVE or CRITICAL discrimination and enough responses are
    moved to FLAGGED_FOR_REVIEW with a status history entry.

    Raises:
        AnalysisValidationError: Unknown question, or a personality item
            (no correct answer to analyze)
    """
    question = db.get(Question, question_id)
    if question is None:
        raise AnalysisValidationError(f"Question {question_id} not found")
    if question.big_five_trait is not None:
        raise AnalysisValidationError(
            f"Question {question_id} is a personality item and has no item statistics"
        )

    now = now or utc_now()
    item_scores, total_scores = _load_score_pairs(db, question_id, ScoreNormalizer())
    result = compute_item_statistics(item_scores, total_scores)

    stats = question.statistics
    if stats is None:
        stats = ItemStatistics(
            question_id=question_id,
            validity_status=ItemValidityStatus.ACTIVE,
            status_history=[],
        )
        db.add(stats)

    if stats.discrimination_index is not None:
        stats.previous_discrimination_index = stats.discrimination_index
    stats.difficulty_index = result.difficulty_index
    stats.discrimination_index = result.discrimination_index
    stats.response_count = result.response_count
    stats.difficulty_flag = result.difficulty_flag
    stats.discrimination_flag = result.discrimination_flag
    stats.last_calculated_at = now

    reason = describe_metrics(
        result.difficulty_index,
        result.discrimination_index,
        result.response_count,
        settings.ITEM_MIN_RESPONSES,
    )
    if (
        not result.is_provisional
        and stats.validity_status == ItemValidityStatus.ACTIVE
        and result.discrimination_flag in AUTO_FLAG_DISCRIMINATION
    ):
        _record_status_change(stats, ItemValidityStatus.FLAGGED_FOR_REVIEW, reason, now)
        metrics.record_item_flagged(result.discrimination_flag.value)
        logger.warning(f"Question {question_id} flagged for review: {reason}")
    else:
        stats.status_reason = reason

    if commit:
        db.commit()
    else:
        db.flush()

    logger.info(
        f"Updated question {question_id} statistics: {reason}, "
        f"responses={result.response_count}, status={stats.validity_status.value}"
    )
    return stats


def review_item(
    db: Session,
    question_id: int,
    new_status: ItemValidityStatus,
    reason: str,
    reviewer: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ItemStatistics:
    """
    Apply a manual review decision to an item.

    Raises:
        InvalidStatusTransitionError: Reason shorter than 10 characters, no
            statistics for the item, or a transition that is not allowed
    """
    reason = (reason or "").strip()
    if len(reason) < MIN_REVIEW_REASON_LENGTH:
        raise InvalidStatusTransitionError(
            f"Review reason must be at least {MIN_REVIEW_REASON_LENGTH} characters",
            context=f"question_id={question_id}",
        )

    stats = db.query(ItemStatistics).filter(ItemStatistics.question_id == question_id).first()
    if stats is None:
        raise InvalidStatusTransitionError(
            f"Question {question_id} has no item statistics to review"
        )

    current = stats.validity_status
    if new_status not in REVIEW_TRANSITIONS.get(current, ()):
        raise InvalidStatusTransitionError(
            f"Cannot move question {question_id} from {current.value} to {new_status.value}"
        )

    _record_status_change(stats, new_status, reason, now or utc_now(), reviewer=reviewer)
    db.commit()
    logger.info(
        f"Question {question_id} reviewed by {reviewer or 'unknown'}: "
        f"{current.value} -> {new_status.value}"
    )
    return stats


@dataclass
class AuditSummary:
    questions_analyzed: int
    newly_flagged: List[int]
    provisional: int
    by_status: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "questions_analyzed": self.questions_analyzed,
            "newly_flagged": list(self.newly_flagged),
            "provisional": self.provisional,
            "by_status": dict(self.by_status),
        }


def run_psychometric_audit(db: Session, now: Optional[datetime] = None) -> AuditSummary:
    """Recompute statistics for every non-personality question with answers."""
    now = now or utc_now()
    question_ids = [
        row.question_id
        for row in (
            db.query(TestAnswer.question_id)
            .join(Question, Question.id == TestAnswer.question_id)
            .filter(Question.big_five_trait.is_(None))
            .distinct()
            .order_by(TestAnswer.question_id)
            .all()
        )
    ]

    newly_flagged: List[int] = []
    provisional = 0
    by_status: Dict[str, int] = defaultdict(int)
    for question_id in question_ids:
        before = (
            db.query(ItemStatistics.validity_status)
            .filter(ItemStatistics.question_id == question_id)
            .scalar()
        )
        stats = update_item_statistics(db, question_id, now=now, commit=False)
        if (
            stats.validity_status == ItemValidityStatus.FLAGGED_FOR_REVIEW
            and before != ItemValidityStatus.FLAGGED_FOR_REVIEW
        ):
            newly_flagged.append(question_id)
        if stats.response_count < settings.ITEM_MIN_RESPONSES:
            provisional += 1
        by_status[stats.validity_status.value] += 1

    db.commit()
    summary = AuditSummary(
        questions_analyzed=len(question_ids),
        newly_flagged=newly_flagged,
        provisional=provisional,
        by_status=dict(by_status),
    )
    logger.info(
        f"Psychometric audit analyzed {summary.questions_analyzed} questions, "
        f"flagged {len(newly_flagged)}, provisional {provisional}"
    )
    return summary
