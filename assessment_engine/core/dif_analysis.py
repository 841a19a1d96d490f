"""
Differential Item Functioning (DIF) analysis with the Mantel-Haenszel method.

Respondents from a focal and a reference group are matched on ability by
splitting them into strata of total test score (equal-frequency groups that
never split tied totals). Per item and stratum a 2x2 table is built:

                 correct   incorrect
    focal           A          B
    reference       C          D

    alpha_MH = sum(A*D/N) / sum(B*C/N)          (common odds ratio)
    delta    = -2.35 * ln(alpha_MH)             (ETS delta scale)
    chi2_MH  = (|sum A - sum E(A)| - 0.5)^2 / sum Var(A)

Classification (ETS): |delta| < 1.0 A_NEGLIGIBLE, < 1.5 B_MODERATE, else
C_LARGE. A positive delta means the focal group does worse than reference
respondents of the same ability, i.e. the item favors the reference group.

Results are computed on request and not persisted.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Collection, Dict, List, Optional, Sequence

import numpy as np
from scipy.stats import chi2
from sqlalchemy.orm import Session

from assessment_engine.core.config import settings
from assessment_engine.core.exceptions import AnalysisValidationError
from assessment_engine.core.scoring.normalizer import ScoreNormalizer
from assessment_engine.models.models import (
    BehavioralIndicator,
    Competency,
    Question,
    TestAnswer,
)

logger = logging.getLogger(__name__)

CORRECT_THRESHOLD = 0.5
ETS_DELTA_CONSTANT = -2.35
ETS_A_B_BOUNDARY = 1.0
ETS_B_C_BOUNDARY = 1.5
CONTINUITY_CORRECTION = 0.5
MIN_STRATUM_SIZE = 2
DECIMALS = 4

FAVORS_FOCAL = "favors focal"
FAVORS_REFERENCE = "favors reference"


class DifClassification(str, Enum):
    A_NEGLIGIBLE = "A_NEGLIGIBLE"
    B_MODERATE = "B_MODERATE"
    C_LARGE = "C_LARGE"


def classify_delta(delta: float) -> DifClassification:
    magnitude = abs(delta)
    if magnitude < ETS_A_B_BOUNDARY:
        return DifClassification.A_NEGLIGIBLE
    if magnitude < ETS_B_C_BOUNDARY:
        return DifClassification.B_MODERATE
    return DifClassification.C_LARGE


@dataclass
class ItemDifResult:
    question_id: Optional[int]
    odds_ratio: float
    ets_delta: float
    chi_square: float
    p_value: float
    classification: DifClassification
    direction: str
    strata_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "odds_ratio": self.odds_ratio,
            "ets_delta": self.ets_delta,
            "chi_square": self.chi_square,
            "p_value": self.p_value,
            "classification": self.classification.value,
            "direction": self.direction,
            "strata_used": self.strata_used,
        }


@dataclass
class DifReport:
    """DIF results for a set of items plus per-class counts."""

    focal_label: str
    reference_label: str
    focal_count: int
    reference_count: int
    items: List[ItemDifResult] = field(default_factory=list)
    competency_id: Optional[int] = None

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def moderate_count(self) -> int:
        return sum(1 for i in self.items if i.classification == DifClassification.B_MODERATE)

    @property
    def large_count(self) -> int:
        return sum(1 for i in self.items if i.classification == DifClassification.C_LARGE)

    def items_with(self, classification: DifClassification) -> List[ItemDifResult]:
        return [i for i in self.items if i.classification == classification]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "competency_id": self.competency_id,
            "focal_label": self.focal_label,
            "reference_label": self.reference_label,
            "focal_count": self.focal_count,
            "reference_count": self.reference_count,
            "item_count": self.item_count,
            "moderate_count": self.moderate_count,
            "large_count": self.large_count,
            "items": [i.to_dict() for i in self.items],
        }


# =============================================================================
# CORE COMPUTATION
# =============================================================================


def assign_strata(totals: np.ndarray, num_strata: Optional[int] = None) -> List[np.ndarray]:
    """
    Split respondents into roughly equal-frequency ability strata.

    Respondents with the same total always share a stratum, so fewer than
    ``num_strata`` strata are returned when there are few distinct totals.

    Returns:
        List of index arrays, lowest ability first
    """
    num_strata = num_strata or settings.DIF_NUM_STRATA
    n = len(totals)
    if n == 0:
        return []

    order = np.argsort(totals, kind="stable")
    distinct, starts = np.unique(totals[order], return_index=True)
    tie_groups = np.split(order, starts[1:])

    target_strata = min(num_strata, len(distinct))
    target_size = n // target_strata

    strata: List[np.ndarray] = []
    current: List[int] = []
    for group in tie_groups:
        current.extend(group.tolist())
        if len(current) >= target_size and len(strata) < target_strata - 1:
            strata.append(np.asarray(current, dtype=int))
            current = []
    if current:
        strata.append(np.asarray(current, dtype=int))
    return strata


def _item_dif(
    item_scores: np.ndarray,
    is_focal: np.ndarray,
    strata: Sequence[np.ndarray],
    question_id: Optional[int],
) -> ItemDifResult:
    sum_ad_n = 0.0
    sum_bc_n = 0.0
    sum_a = 0.0
    sum_expected_a = 0.0
    sum_var_a = 0.0
    strata_used = 0

    for stratum in strata:
        scores = item_scores[stratum]
        focal = is_focal[stratum]
        answered = ~np.isnan(scores)
        scores, focal = scores[answered], focal[answered]

        correct = scores >= CORRECT_THRESHOLD
        a = float(np.sum(focal & correct))
        b = float(np.sum(focal & ~correct))
        c = float(np.sum(~focal & correct))
        d = float(np.sum(~focal & ~correct))
        n = a + b + c + d
        focal_total, reference_total = a + b, c + d
        if n < MIN_STRATUM_SIZE or focal_total == 0 or reference_total == 0:
            continue
        strata_used += 1

        sum_ad_n += a * d / n
        sum_bc_n += b * c / n

        correct_total, incorrect_total = a + c, b + d
        sum_a += a
        sum_expected_a += focal_total * correct_total / n
        sum_var_a += (focal_total * reference_total * correct_total * incorrect_total) / (
            n * n * (n - 1)
        )

    if sum_ad_n == 0.0 and sum_bc_n == 0.0:
        # No discordant pairs anywhere: nothing to detect
        odds_ratio = 1.0
    else:
        # Haldane-style continuity correction for an empty cross-product sum
        numerator = sum_ad_n if sum_ad_n > 0 else CONTINUITY_CORRECTION
        denominator = sum_bc_n if sum_bc_n > 0 else CONTINUITY_CORRECTION
        odds_ratio = numerator / denominator

    delta = ETS_DELTA_CONSTANT * math.log(odds_ratio)

    chi_square = 0.0
    p_value = 1.0
    if sum_var_a > 0:
        diff = max(0.0, abs(sum_a - sum_expected_a) - 0.5)
        chi_square = diff * diff / sum_var_a
        p_value = float(chi2.sf(chi_square, df=1))

    classification = classify_delta(delta)
    direction = FAVORS_REFERENCE if delta > 0 else FAVORS_FOCAL
    if classification != DifClassification.A_NEGLIGIBLE:
        logger.info(
            f"Item {question_id} classified as {classification.value} DIF "
            f"(delta={delta:.3f}, {direction})"
        )

    return ItemDifResult(
        question_id=question_id,
        odds_ratio=round(odds_ratio, DECIMALS),
        ets_delta=round(delta, DECIMALS),
        chi_square=round(chi_square, DECIMALS),
        p_value=round(p_value, DECIMALS),
        classification=classification,
        direction=direction,
        strata_used=strata_used,
    )


def mantel_haenszel_dif(
    item_matrix: np.ndarray,
    totals: np.ndarray,
    is_focal: np.ndarray,
    question_ids: Optional[Sequence[int]] = None,
    num_strata: Optional[int] = None,
) -> List[ItemDifResult]:
    """
    Mantel-Haenszel DIF for every column of a respondent x item score matrix.

    Args:
        item_matrix: Shape (respondents, items) of 0.0-1.0 scores; NaN marks an
            unanswered item
        totals: Total test score per respondent (stratification variable)
        is_focal: Boolean per respondent, True for the focal group
        question_ids: Optional id per column for labelling results
        num_strata: Ability strata (default: settings.DIF_NUM_STRATA)
    """
    item_matrix = np.asarray(item_matrix, dtype=float)
    totals = np.asarray(totals, dtype=float)
    is_focal = np.asarray(is_focal, dtype=bool)

    if item_matrix.ndim != 2:
        raise AnalysisValidationError("Item matrix must be two-dimensional")
    respondents, items = item_matrix.shape
    if len(totals) != respondents or len(is_focal) != respondents:
        raise AnalysisValidationError(
            "Totals and group membership must have one entry per respondent",
            context=f"respondents={respondents}, totals={len(totals)}, groups={len(is_focal)}",
        )
    if question_ids is not None and len(question_ids) != items:
        raise AnalysisValidationError("One question id is required per matrix column")

    strata = assign_strata(totals, num_strata)
    return [
        _item_dif(
            item_matrix[:, column],
            is_focal,
            strata,
            question_ids[column] if question_ids is not None else None,
        )
        for column in range(items)
    ]


# =============================================================================
# VALIDATION
# =============================================================================


def validate_groups(focal_ids: Collection[int], reference_ids: Collection[int]) -> None:
    if not focal_ids:
        raise AnalysisValidationError("Focal group session ids must not be empty")
    if not reference_ids:
        raise AnalysisValidationError("Reference group session ids must not be empty")
    overlap = set(focal_ids) & set(reference_ids)
    if overlap:
        raise AnalysisValidationError(
            f"Focal and reference groups must not overlap; found {len(overlap)} "
            "shared session ids"
        )


def validate_sample(focal_count: int, reference_count: int, item_count: int) -> None:
    total = focal_count + reference_count
    if total < settings.DIF_MIN_TOTAL:
        raise AnalysisValidationError(
            f"Insufficient total respondents for DIF analysis: {total} "
            f"(minimum {settings.DIF_MIN_TOTAL} required)"
        )
    if focal_count < settings.DIF_MIN_GROUP:
        raise AnalysisValidationError(
            f"Insufficient focal group size for DIF analysis: {focal_count} "
            f"(minimum {settings.DIF_MIN_GROUP} required)"
        )
    if reference_count < settings.DIF_MIN_GROUP:
        raise AnalysisValidationError(
            f"Insufficient reference group size for DIF analysis: {reference_count} "
            f"(minimum {settings.DIF_MIN_GROUP} required)"
        )
    if item_count == 0:
        raise AnalysisValidationError("No items found for DIF analysis")


# =============================================================================
# DATABASE ENTRY POINTS
# =============================================================================


def _load_report(
    db: Session,
    question_ids: Optional[Collection[int]],
    focal_ids: Collection[int],
    reference_ids: Collection[int],
    focal_label: str,
    reference_label: str,
    competency_id: Optional[int] = None,
) -> DifReport:
    validate_groups(focal_ids, reference_ids)
    focal_set, reference_set = set(focal_ids), set(reference_ids)

    query = (
        db.query(TestAnswer)
        .join(Question, Question.id == TestAnswer.question_id)
        .filter(
            TestAnswer.session_id.in_(focal_set | reference_set),
            Question.big_five_trait.is_(None),
        )
    )
    if question_ids is not None:
        query = query.filter(TestAnswer.question_id.in_(set(question_ids)))
    else:
        query = query.join(
            BehavioralIndicator, BehavioralIndicator.id == Question.indicator_id
        ).filter(BehavioralIndicator.competency_id == competency_id)
    answers = query.order_by(TestAnswer.session_id, TestAnswer.question_id).all()

    normalizer = ScoreNormalizer()
    scores: Dict[int, Dict[int, float]] = {}
    for answer in answers:
        scores.setdefault(answer.session_id, {})[answer.question_id] = normalizer.normalize(answer)

    sessions = sorted(scores)
    columns = sorted({qid for row in scores.values() for qid in row})
    focal_count = sum(1 for s in sessions if s in focal_set)
    reference_count = len(sessions) - focal_count
    validate_sample(focal_count, reference_count, len(columns))

    column_index = {qid: i for i, qid in enumerate(columns)}
    matrix = np.full((len(sessions), len(columns)), np.nan)
    for row, session_id in enumerate(sessions):
        for qid, value in scores[session_id].items():
            matrix[row, column_index[qid]] = value

    totals = np.nansum(matrix, axis=1)
    is_focal = np.array([s in focal_set for s in sessions], dtype=bool)
    items = mantel_haenszel_dif(matrix, totals, is_focal, question_ids=columns)

    report = DifReport(
        focal_label=focal_label,
        reference_label=reference_label,
        focal_count=focal_count,
        reference_count=reference_count,
        items=items,
        competency_id=competency_id,
    )
    counts = Counter(i.classification.value for i in items)
    logger.info(
        f"DIF analysis of {report.item_count} items "
        f"({focal_label}={focal_count}, {reference_label}={reference_count}): {dict(counts)}"
    )
    if report.large_count:
        logger.warning(
            f"DIF analysis found {report.large_count} item(s) with large DIF between "
            f"'{focal_label}' and '{reference_label}'"
        )
    return report


def analyze_items(
    db: Session,
    focal_ids: Collection[int],
    reference_ids: Collection[int],
    question_ids: Collection[int],
    focal_label: str = "focal",
    reference_label: str = "reference",
) -> DifReport:
    """DIF for an explicit set of questions, independent of competency.

    Raises:
        AnalysisValidationError: Empty question set or group, overlapping
            groups, or too few respondents
    """
    if not question_ids:
        raise AnalysisValidationError("Question ids must not be empty")
    return _load_report(
        db, question_ids, focal_ids, reference_ids, focal_label, reference_label
    )


def analyze_competency(
    db: Session,
    competency_id: int,
    focal_ids: Collection[int],
    reference_ids: Collection[int],
    focal_label: str = "focal",
    reference_label: str = "reference",
) -> DifReport:
    """DIF for every question of one competency."""
    if db.get(Competency, competency_id) is None:
        raise AnalysisValidationError(f"Competency {competency_id} not found")
    return _load_report(
        db,
        None,
        focal_ids,
        reference_ids,
        focal_label,
        reference_label,
        competency_id=competency_id,
    )
