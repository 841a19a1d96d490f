"""
Rank-based percentiles for results sharing a template.

percentile(score) = round(100 * below / (total - 1)), clamped to [0, 100],
where ``below`` counts completed results on the template with a strictly lower
overall percentage and ``total`` counts all completed, scored results on the
template, the ranked result included. Leaving the ranked result out of the
denominator lets the top score of a cohort reach 100. With at most one result
there is no population to rank against and the percentile is 50.

Results scored concurrently each see a slightly different population, so a
trailing-window recalculation (run after the scoring transaction commits)
converges them. Recalculation only writes rows whose value changes, which makes
a second pass with no new results a no-op.
"""

import logging
import math
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from assessment_engine.core.config import settings
from assessment_engine.core.datetime_utils import utc_now, window_start
from assessment_engine.models.models import ResultStatus, TestResult

logger = logging.getLogger(__name__)

DEFAULT_PERCENTILE = 50


def _scored_results(db: Session, template_id: int):
    return db.query(func.count(TestResult.id)).filter(
        TestResult.template_id == template_id,
        TestResult.status == ResultStatus.COMPLETED,
        TestResult.overall_percentage.isnot(None),
    )


def percentile_rank(below_count: int, total_count: int) -> int:
    """Percentile from counts; DEFAULT_PERCENTILE when total_count <= 1.

    ``total_count`` includes the result being ranked, which is excluded from
    the denominator. Halves round up.
    """
    if total_count <= 1:
        return DEFAULT_PERCENTILE
    percentile = below_count / (total_count - 1) * 100.0
    return int(math.floor(max(0.0, min(100.0, percentile)) + 0.5))


def calculate_percentile(db: Session, template_id: int, score: Optional[float]) -> int:
    """Percentile of ``score`` among the completed results of a template.

    Pending (unscored) results are not part of the population. The caller's
    own result is counted when it has already been flushed.
    """
    if score is None:
        return DEFAULT_PERCENTILE

    total_count = _scored_results(db, template_id).scalar() or 0
    below_count = (
        _scored_results(db, template_id)
        .filter(TestResult.overall_percentage < score)
        .scalar()
        or 0
    )
    return percentile_rank(below_count, total_count)


def recalculate_recent(
    db: Session,
    template_id: int,
    now: Optional[datetime] = None,
    window_minutes: Optional[int] = None,
) -> Tuple[int, int]:
    """Recompute percentiles of results completed within the trailing window.

    Commits only when at least one percentile changed.

    Returns:
        Tuple of (updated count, examined count)
    """
    now = now or utc_now()
    window = window_minutes if window_minutes is not None else settings.PERCENTILE_WINDOW_MINUTES
    cutoff = window_start(now, minutes=window)

    recent = (
        db.query(TestResult)
        .filter(
            TestResult.template_id == template_id,
            TestResult.status == ResultStatus.COMPLETED,
            TestResult.completed_at >= cutoff,
        )
        .order_by(TestResult.id)
        .all()
    )
    if not recent:
        logger.debug(f"No recent results to recalculate for template {template_id}")
        return 0, 0

    updated = 0
    for result in recent:
        if result.overall_percentage is None:
            continue
        percentile = calculate_percentile(db, template_id, result.overall_percentage)
        if result.percentile != percentile:
            result.percentile = percentile
            updated += 1

    if updated:
        db.commit()

    logger.info(
        f"Recalculated percentiles for {updated} of {len(recent)} recent results "
        f"on template {template_id}"
    )
    return updated, len(recent)
