"""
Answer normalization onto a common 0.0-1.0 scale.

LIKERT:       (value - 1) / 4 with value clamped to 1-5
SJT / MCQ:    recorded score / max_score, or the selected option's score
              relative to the best option when no score was recorded
OPEN_TEXT:    recorded score / max_score (0.0 until graded)
Skipped or unanswered answers normalize to 0.0.
"""

import logging
from typing import Any, Mapping, Optional

from assessment_engine.models.models import Question, QuestionType, TestAnswer

logger = logging.getLogger(__name__)

LIKERT_MIN = 1
LIKERT_MAX = 5


def is_answered(answer: TestAnswer) -> bool:
    return not answer.is_skipped and answer.answered_at is not None


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


def normalize_likert(value: int) -> float:
    clamped = max(LIKERT_MIN, min(LIKERT_MAX, value))
    return (clamped - LIKERT_MIN) / (LIKERT_MAX - LIKERT_MIN)


def _ratio(score: Optional[float], max_score: Optional[float]) -> Optional[float]:
    if score is None:
        return None
    if max_score is None:
        return _clamp_unit(score)
    if max_score <= 0:
        return 0.0
    return _clamp_unit(score / max_score)


def _option_score(options: Any, selected: Optional[str]) -> Optional[float]:
    """Score of the selected option relative to the best option."""
    if not selected or not isinstance(options, Mapping) or not options:
        return None
    try:
        scores = {str(key): float(value) for key, value in options.items()}
    except (TypeError, ValueError):
        return None
    if selected not in scores:
        return None
    best = max(scores.values())
    if best <= 0:
        return 0.0
    return _clamp_unit(scores[selected] / best)


class ScoreNormalizer:
    """Normalizes one answer against its question type."""

    def normalize(self, answer: TestAnswer, question: Optional[Question] = None) -> float:
        if not is_answered(answer):
            return 0.0

        question = question or answer.question
        question_type = question.question_type if question is not None else None

        if question_type == QuestionType.LIKERT:
            if answer.likert_value is not None:
                return normalize_likert(answer.likert_value)
            ratio = _ratio(answer.score, answer.max_score)
            return ratio if ratio is not None else 0.0

        ratio = _ratio(answer.score, answer.max_score)
        if ratio is not None:
            return ratio

        if question_type in (QuestionType.SJT, QuestionType.MCQ) and question is not None:
            option_score = _option_score(question.answer_options, answer.selected_option)
            if option_score is not None:
                return option_score

        logger.debug(
            f"Answer {answer.id} for question {answer.question_id} has no scoreable "
            "value; treating as 0.0"
        )
        return 0.0
