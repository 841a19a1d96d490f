"""
Tests for item statistics, automatic flagging and manual review.
"""
from unittest.mock import patch

import pytest

from assessment_engine.core.config import settings
from assessment_engine.core.datetime_utils import utc_now
from assessment_engine.core.exceptions import (
    AnalysisValidationError,
    InvalidStatusTransitionError,
)
from assessment_engine.core.item_statistics import (
    classify_difficulty,
    classify_discrimination,
    compute_item_statistics,
    describe_metrics,
    point_biserial,
    review_item,
    run_psychometric_audit,
    update_item_statistics,
)
from assessment_engine.models import (
    BigFiveTrait,
    DifficultyFlag,
    DiscriminationFlag,
    ItemValidityStatus,
    QuestionType,
    ResultStatus,
    SessionStatus,
    TestAnswer,
    TestResult,
    TestSession,
)


def add_sessions(db_session, template, rows, status=SessionStatus.COMPLETED):
    """Bulk-create sessions; each row is a list of (question, score).

    Completed sessions get a scored result whose overall percentage is the
    mean item score of the row.
    """
    for row in rows:
        session = TestSession(template_id=template.id, status=status)
        db_session.add(session)
        db_session.flush()
        for question, score in row:
            db_session.add(
                TestAnswer(
                    session_id=session.id,
                    question_id=question.id,
                    score=score,
                    max_score=1.0,
                    answered_at=utc_now(),
                )
            )
        if status == SessionStatus.COMPLETED:
            db_session.add(
                TestResult(
                    session_id=session.id,
                    template_id=template.id,
                    status=ResultStatus.COMPLETED,
                    overall_percentage=100.0 * sum(score for _, score in row) / len(row),
                    completed_at=utc_now(),
                )
            )
    db_session.commit()


@pytest.fixture
def low_min_responses(monkeypatch):
    monkeypatch.setattr(settings, "ITEM_MIN_RESPONSES", 10)
    return 10


@pytest.fixture
def toxic_item(db_session, catalog, make_overview_blueprint):
    """Target item answered correctly only by respondents who miss everything else."""
    competency = catalog.competency()
    target, other_a, other_b = catalog.questions(catalog.indicator(competency), 3)
    template = catalog.template(make_overview_blueprint([competency.id]))
    rows = []
    for i in range(12):
        strong = i % 2 == 1
        rows.append(
            [
                (target, 0.0 if strong else 1.0),
                (other_a, 1.0 if strong else 0.0),
                (other_b, 1.0 if strong else 0.0),
            ]
        )
    add_sessions(db_session, template, rows)
    return target, other_a, other_b


class TestClassification:
    """Flag thresholds."""

    @pytest.mark.parametrize(
        "p_value,expected",
        [
            (0.15, DifficultyFlag.TOO_HARD),
            (0.20, DifficultyFlag.NONE),
            (0.5, DifficultyFlag.NONE),
            (0.90, DifficultyFlag.NONE),
            (0.95, DifficultyFlag.TOO_EASY),
            (None, DifficultyFlag.NONE),
        ],
    )
    def test_difficulty(self, p_value, expected):
        assert classify_difficulty(p_value) == expected

    @pytest.mark.parametrize(
        "rpb,expected",
        [
            (-0.05, DiscriminationFlag.NEGATIVE),
            (0.0, DiscriminationFlag.CRITICAL),
            (0.09, DiscriminationFlag.CRITICAL),
            (0.10, DiscriminationFlag.WARNING),
            (0.24, DiscriminationFlag.WARNING),
            (0.25, DiscriminationFlag.NONE),
            (None, DiscriminationFlag.NONE),
        ],
    )
    def test_discrimination(self, rpb, expected):
        assert classify_discrimination(rpb) == expected

    def test_describe_metrics(self):
        assert describe_metrics(0.456, 0.123, 30, 50) == (
            "rpb=0.123 (marginal), p=0.456 (acceptable); provisional (n=30 < 50)"
        )
        assert describe_metrics(0.95, 0.35) == "rpb=0.350 (excellent), p=0.950 (too easy)"
        assert describe_metrics(None, -0.2) == "rpb=-0.200 (toxic)"
        assert describe_metrics(None, None) == "no metrics"


class TestPointBiserial:
    """Pearson correlation of item and total scores."""

    def test_positive_correlation(self):
        r = point_biserial([0, 0, 1, 1], [1, 2, 3, 4])
        assert r == pytest.approx(0.8944, abs=1e-4)

    def test_perfect_negative(self):
        assert point_biserial([1, 0, 1, 0], [0, 2, 0, 2]) == pytest.approx(-1.0)

    def test_no_variance(self):
        assert point_biserial([1, 1, 1], [1, 2, 3]) is None
        assert point_biserial([0, 1, 0], [2, 2, 2]) is None

    def test_too_few_pairs(self):
        assert point_biserial([1], [3]) is None

    def test_length_mismatch(self):
        with pytest.raises(AnalysisValidationError, match="same length"):
            point_biserial([1, 0], [1, 2, 3])


class TestComputeItemStatistics:
    """Pure metric computation."""

    def test_metrics_and_provisional(self):
        metrics = compute_item_statistics([1, 0, 1, 1], [4, 1, 3, 5], min_responses=50)

        assert metrics.response_count == 4
        assert metrics.difficulty_index == 0.75
        assert metrics.discrimination_index > 0.25
        assert metrics.discrimination_flag == DiscriminationFlag.NONE
        assert metrics.is_provisional is True

    def test_empty(self):
        metrics = compute_item_statistics([], [], min_responses=1)
        assert metrics.difficulty_index is None
        assert metrics.discrimination_index is None
        assert metrics.to_dict()["response_count"] == 0


class TestUpdateItemStatistics:
    """Persisted statistics and automatic flagging."""

    def test_flags_toxic_item(self, db_session, toxic_item, low_min_responses):
        target, _, _ = toxic_item

        with patch("assessment_engine.core.item_statistics.metrics") as mock_metrics:
            stats = update_item_statistics(db_session, target.id)

        assert stats.response_count == 12
        assert stats.difficulty_index == 0.5
        assert stats.discrimination_index == pytest.approx(-1.0)
        assert stats.discrimination_flag == DiscriminationFlag.NEGATIVE
        assert stats.validity_status == ItemValidityStatus.FLAGGED_FOR_REVIEW
        [entry] = stats.status_history
        assert entry["from"] == "active"
        assert entry["to"] == "flagged_for_review"
        assert "toxic" in entry["reason"]
        mock_metrics.record_item_flagged.assert_called_once_with("negative")

    def test_provisional_items_keep_status(self, db_session, toxic_item):
        target, _, _ = toxic_item

        stats = update_item_statistics(db_session, target.id)

        assert stats.discrimination_flag == DiscriminationFlag.NEGATIVE
        assert stats.validity_status == ItemValidityStatus.ACTIVE
        assert "provisional (n=12 < 50)" in stats.status_reason
        assert stats.status_history == []

    def test_previous_discrimination_kept(self, db_session, toxic_item):
        target, _, _ = toxic_item

        update_item_statistics(db_session, target.id)
        stats = update_item_statistics(db_session, target.id)

        assert stats.previous_discrimination_index == pytest.approx(-1.0)

    def test_flagged_item_not_flagged_again(self, db_session, toxic_item, low_min_responses):
        target, _, _ = toxic_item

        update_item_statistics(db_session, target.id)
        stats = update_item_statistics(db_session, target.id)

        assert len(stats.status_history) == 1

    def test_discrimination_correlates_with_overall_percentage(
        self, db_session, catalog, make_overview_blueprint
    ):
        """Overall percentages are deliberately unrelated to the answer rows."""
        competency = catalog.competency()
        target, other = catalog.questions(catalog.indicator(competency), 2)
        template = catalog.template(make_overview_blueprint([competency.id]))
        for item_score, overall in ((1.0, 80.0), (0.0, 40.0), (1.0, 60.0), (1.0, 90.0), (0.0, 50.0)):
            session = catalog.scored_session(template, [(target, item_score), (other, 1.0)])
            catalog.result(template, overall, session=session)
        skipped = catalog.session(template)
        catalog.answer(skipped, target, is_skipped=True)
        catalog.result(template, 100.0, session=skipped)
        catalog.scored_session(template, [(target, 1.0)])
        unscored = catalog.scored_session(template, [(target, 0.0)])
        catalog.result(template, None, session=unscored, status=ResultStatus.PENDING)

        stats = update_item_statistics(db_session, target.id)

        # x = [1, 0, 1, 1, 0], y = [.8, .4, .6, .9, .5]
        # r = 0.38 / sqrt(1.2 * 0.172)
        assert stats.response_count == 5
        assert stats.difficulty_index == 0.6
        assert stats.discrimination_index == pytest.approx(0.8364, abs=1e-4)

    def test_ignores_unfinished_sessions(self, db_session, catalog, toxic_item, make_overview_blueprint):
        target, other_a, _ = toxic_item
        template = catalog.template(make_overview_blueprint([1]))
        add_sessions(
            db_session, template, [[(target, 1.0), (other_a, 1.0)]], status=SessionStatus.ABANDONED
        )

        stats = update_item_statistics(db_session, target.id)

        assert stats.response_count == 12

    def test_personality_item_rejected(self, db_session, catalog):
        question = catalog.question(
            catalog.indicator(catalog.competency()),
            question_type=QuestionType.LIKERT,
            big_five_trait=BigFiveTrait.AGREEABLENESS,
        )
        with pytest.raises(AnalysisValidationError, match="personality item"):
            update_item_statistics(db_session, question.id)

    def test_unknown_question(self, db_session):
        with pytest.raises(AnalysisValidationError, match="not found"):
            update_item_statistics(db_session, 12345)


class TestReviewItem:
    """Manual review transitions."""

    @pytest.fixture
    def flagged(self, catalog):
        question = catalog.question(catalog.indicator(catalog.competency()))
        catalog.item_statistics(question, status=ItemValidityStatus.FLAGGED_FOR_REVIEW)
        return question

    def test_retire_flagged_item(self, db_session, flagged):
        stats = review_item(
            db_session,
            flagged.id,
            ItemValidityStatus.RETIRED,
            "Ambiguous wording confirmed",
            reviewer="psychometrician-1",
        )

        assert stats.validity_status == ItemValidityStatus.RETIRED
        assert stats.status_reason == "Ambiguous wording confirmed"
        [entry] = stats.status_history
        assert entry["reviewer"] == "psychometrician-1"
        assert entry["from"] == "flagged_for_review"

    def test_reactivate_flagged_item(self, db_session, flagged):
        stats = review_item(
            db_session, flagged.id, ItemValidityStatus.ACTIVE, "Reviewed, item is fine"
        )
        assert stats.validity_status == ItemValidityStatus.ACTIVE

    def test_short_reason_rejected(self, db_session, flagged):
        with pytest.raises(InvalidStatusTransitionError, match="at least 10"):
            review_item(db_session, flagged.id, ItemValidityStatus.RETIRED, "  too bad  ")

    def test_retired_cannot_return_to_active(self, db_session, flagged):
        review_item(db_session, flagged.id, ItemValidityStatus.RETIRED, "Retiring this item")

        with pytest.raises(InvalidStatusTransitionError, match="Cannot move"):
            review_item(db_session, flagged.id, ItemValidityStatus.ACTIVE, "Bring it back now")

    def test_retired_is_terminal(self, db_session, flagged):
        review_item(db_session, flagged.id, ItemValidityStatus.RETIRED, "Retiring this item")

        with pytest.raises(InvalidStatusTransitionError, match="from retired"):
            review_item(
                db_session, flagged.id, ItemValidityStatus.FLAGGED_FOR_REVIEW, "New evidence arrived"
            )

    def test_active_item_cannot_be_retired_directly(self, db_session, catalog):
        question = catalog.question(catalog.indicator(catalog.competency()))
        catalog.item_statistics(question, status=ItemValidityStatus.ACTIVE)

        with pytest.raises(InvalidStatusTransitionError, match="from active to retired"):
            review_item(db_session, question.id, ItemValidityStatus.RETIRED, "Retire without a flag")

    def test_same_status_rejected(self, db_session, flagged):
        with pytest.raises(InvalidStatusTransitionError):
            review_item(
                db_session, flagged.id, ItemValidityStatus.FLAGGED_FOR_REVIEW, "Still flagged"
            )

    def test_missing_statistics(self, db_session, catalog):
        question = catalog.question(catalog.indicator(catalog.competency()))
        with pytest.raises(InvalidStatusTransitionError, match="no item statistics"):
            review_item(db_session, question.id, ItemValidityStatus.RETIRED, "Retire without data")


class TestPsychometricAudit:
    """Batch recomputation across the item bank."""

    def test_audit_summary(self, db_session, toxic_item, low_min_responses):
        target, _, _ = toxic_item

        summary = run_psychometric_audit(db_session)

        assert summary.questions_analyzed == 3
        assert summary.newly_flagged == [target.id]
        assert summary.provisional == 0
        assert summary.by_status == {"flagged_for_review": 1, "active": 2}
        assert summary.to_dict()["newly_flagged"] == [target.id]
