"""
Tests for rank-based percentiles and trailing-window recalculation.
"""
from datetime import timedelta

import pytest

from assessment_engine.core.datetime_utils import utc_now
from assessment_engine.core.percentile import (
    DEFAULT_PERCENTILE,
    calculate_percentile,
    percentile_rank,
    recalculate_recent,
)
from assessment_engine.models import ResultStatus


@pytest.fixture
def template(catalog, make_overview_blueprint):
    return catalog.template(make_overview_blueprint([1]))


class TestPercentileRank:
    """round(100 * below / (total - 1)), 50 without a population."""

    @pytest.mark.parametrize(
        "below,total,expected",
        [
            (0, 0, 50),
            (0, 1, 50),
            (0, 4, 0),
            (1, 4, 33),
            (1, 3, 50),
            (3, 4, 100),
            (1, 8, 14),
            (1, 9, 13),
        ],
    )
    def test_rank(self, below, total, expected):
        assert percentile_rank(below, total) == expected


class TestCalculatePercentile:
    """Population is the completed, scored results of one template."""

    def test_none_score_is_default(self, db_session, template):
        assert calculate_percentile(db_session, template.id, None) == DEFAULT_PERCENTILE

    def test_single_result_is_default(self, db_session, catalog, template):
        catalog.result(template, 80.0)
        assert calculate_percentile(db_session, template.id, 80.0) == DEFAULT_PERCENTILE

    def test_strictly_lower_scores_count(self, db_session, catalog, template):
        for score in (20.0, 40.0, 40.0, 90.0):
            catalog.result(template, score)

        assert calculate_percentile(db_session, template.id, 40.0) == 33
        assert calculate_percentile(db_session, template.id, 90.0) == 100
        assert calculate_percentile(db_session, template.id, 10.0) == 0

    def test_top_of_cohort_reaches_100(self, db_session, catalog, template):
        """The ranked result is left out of the denominator."""
        for score in (10.0, 20.0, 30.0, 40.0, 90.0):
            catalog.result(template, score)

        assert calculate_percentile(db_session, template.id, 90.0) == 100
        assert calculate_percentile(db_session, template.id, 30.0) == 50
        assert calculate_percentile(db_session, template.id, 10.0) == 0

    def test_ignores_pending_and_other_templates(
        self, db_session, catalog, template, make_overview_blueprint
    ):
        other = catalog.template(make_overview_blueprint([2]))
        catalog.result(template, 50.0)
        catalog.result(template, 70.0)
        catalog.result(template, None, status=ResultStatus.PENDING)
        catalog.result(other, 10.0)

        assert calculate_percentile(db_session, template.id, 50.0) == 0
        assert calculate_percentile(db_session, template.id, 70.0) == 100
        assert calculate_percentile(db_session, template.id, 100.0) == 100


class TestRecalculateRecent:
    """Trailing-window reconciliation."""

    def test_updates_recent_results(self, db_session, catalog, template):
        low = catalog.result(template, 30.0, percentile=50)
        high = catalog.result(template, 90.0, percentile=10)

        updated, examined = recalculate_recent(db_session, template.id)

        assert (updated, examined) == (2, 2)
        db_session.refresh(low)
        db_session.refresh(high)
        assert low.percentile == 0
        assert high.percentile == 100

    def test_second_pass_is_a_no_op(self, db_session, catalog, template):
        for score in (30.0, 60.0, 90.0):
            catalog.result(template, score)

        recalculate_recent(db_session, template.id)
        updated, examined = recalculate_recent(db_session, template.id)

        assert updated == 0
        assert examined == 3

    def test_outside_window_untouched(self, db_session, catalog, template):
        old = catalog.result(
            template, 10.0, percentile=99, completed_at=utc_now() - timedelta(hours=2)
        )
        catalog.result(template, 80.0)

        updated, examined = recalculate_recent(db_session, template.id, window_minutes=5)

        assert examined == 1
        db_session.refresh(old)
        assert old.percentile == 99

    def test_no_recent_results(self, db_session, template):
        assert recalculate_recent(db_session, template.id) == (0, 0)
