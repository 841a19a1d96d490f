"""
Tests for Cronbach's alpha, distractor analysis and the item-bank health report.
"""
from datetime import timedelta

import numpy as np
import pytest

from assessment_engine.core.config import settings
from assessment_engine.core.datetime_utils import utc_now
from assessment_engine.core.exceptions import AnalysisValidationError
from assessment_engine.core.reliability import (
    ReliabilityStatus,
    alpha_if_item_deleted,
    analyze_distractors,
    calculate_big_five_reliability,
    calculate_competency_reliability,
    complete_sessions,
    cronbachs_alpha,
    flag_severity,
    generate_health_report,
    get_interpretation,
    reliability_status,
)
from assessment_engine.models import (
    BigFiveTrait,
    DifficultyFlag,
    DiscriminationFlag,
    ItemValidityStatus,
    QuestionType,
    SessionStatus,
)

# alpha = 1.5 * (1 - (1/3 + 1/4 + 1/4) / (5/3)) = 0.75
CONSISTENT = [
    [1, 1, 1],
    [1, 1, 0],
    [0, 1, 0],
    [0, 0, 0],
]

# Items 0 and 1 agree; item 2 does not. alpha = 0.6, 1.0 without item 2
WEAK_THIRD_ITEM = [
    [1, 1, 0],
    [1, 1, 1],
    [0, 0, 1],
    [0, 0, 0],
]


@pytest.fixture
def low_min_sessions(monkeypatch):
    monkeypatch.setattr(settings, "RELIABILITY_MIN_SESSIONS", 4)
    return 4


class TestInterpretation:
    """Alpha bands and reliability status."""

    @pytest.mark.parametrize(
        "alpha,expected",
        [
            (0.95, "excellent"),
            (0.85, "good"),
            (0.70, "acceptable"),
            (0.65, "questionable"),
            (0.55, "poor"),
            (0.20, "unacceptable"),
        ],
    )
    def test_interpretation(self, alpha, expected):
        assert get_interpretation(alpha) == expected

    def test_status_thresholds(self):
        assert reliability_status(0.70) == ReliabilityStatus.RELIABLE
        assert reliability_status(0.60) == ReliabilityStatus.ACCEPTABLE
        assert reliability_status(0.59) == ReliabilityStatus.UNRELIABLE
        assert reliability_status(None) == ReliabilityStatus.INSUFFICIENT_DATA


class TestCronbachsAlpha:
    """Pure alpha computation on a session x item matrix."""

    def test_hand_computed_alpha(self):
        assert cronbachs_alpha(np.array(CONSISTENT), min_sessions=2) == pytest.approx(0.75)

    def test_incomplete_sessions_are_dropped(self):
        scores = np.array(CONSISTENT + [[1, np.nan, 1]], dtype=float)

        assert complete_sessions(scores).shape == (4, 3)
        assert cronbachs_alpha(scores, min_sessions=2) == pytest.approx(0.75)

    def test_nearly_complete_session_scores_gap_as_zero(self):
        row = [1.0] * 9 + [np.nan]

        complete = complete_sessions(np.array([row]))

        assert complete.shape == (1, 10)
        assert complete[0, 9] == 0.0

    def test_too_few_sessions(self):
        assert cronbachs_alpha(np.array(CONSISTENT), min_sessions=5) is None

    def test_default_minimum_from_settings(self):
        assert settings.RELIABILITY_MIN_SESSIONS == 50
        assert cronbachs_alpha(np.array(CONSISTENT)) is None

    def test_single_item(self):
        assert cronbachs_alpha(np.array([[1], [0], [1]]), min_sessions=2) is None

    def test_zero_total_variance(self):
        assert cronbachs_alpha(np.array([[1, 0], [0, 1], [1, 0]]), min_sessions=2) is None

    def test_rejects_flat_input(self):
        with pytest.raises(AnalysisValidationError):
            cronbachs_alpha(np.array([1, 0, 1]), min_sessions=2)


class TestAlphaIfItemDeleted:
    """Alpha of the remaining items with each one left out."""

    def test_hand_computed_values(self):
        result = alpha_if_item_deleted(np.array(CONSISTENT), [10, 20, 30], min_sessions=2)

        assert result[10] == pytest.approx(0.5)
        assert result[20] == pytest.approx(0.7273)
        assert result[30] == pytest.approx(0.7273)

    def test_weak_item_raises_alpha_when_removed(self):
        result = alpha_if_item_deleted(np.array(WEAK_THIRD_ITEM), [1, 2, 3], min_sessions=2)

        assert result == {1: pytest.approx(0.0), 2: pytest.approx(0.0), 3: pytest.approx(1.0)}

    def test_needs_three_items(self):
        assert alpha_if_item_deleted(np.array([[1, 1], [0, 1], [0, 0]]), [1, 2], min_sessions=2) == {}

    def test_column_count_must_match_ids(self):
        with pytest.raises(AnalysisValidationError, match="question id"):
            alpha_if_item_deleted(np.array(CONSISTENT), [1, 2], min_sessions=2)


def answer_rows(catalog, template, questions, rows):
    sessions = []
    for row in rows:
        session = catalog.session(template)
        for question, score in zip(questions, row):
            catalog.answer(session, question, score=float(score))
        sessions.append(session)
    return sessions


class TestCompetencyReliability:
    """Alpha per competency from stored answers."""

    def test_weak_item_is_reported(self, catalog, make_overview_blueprint, low_min_sessions):
        competency = catalog.competency()
        indicator = catalog.indicator(competency)
        questions = catalog.questions(indicator, 3)
        personality = catalog.question(
            indicator, question_type=QuestionType.LIKERT, big_five_trait=BigFiveTrait.OPENNESS
        )
        template = catalog.template(make_overview_blueprint([competency.id]))
        for session in answer_rows(catalog, template, questions, WEAK_THIRD_ITEM):
            catalog.answer(session, personality, likert_value=5)
        unfinished = catalog.session(template, status=SessionStatus.IN_PROGRESS)
        for question in questions:
            catalog.answer(unfinished, question, score=1.0)

        result = calculate_competency_reliability(catalog.db, competency.id)

        assert result.item_count == 3
        assert result.sample_size == 4
        assert result.cronbachs_alpha == pytest.approx(0.6)
        assert result.status == ReliabilityStatus.ACCEPTABLE
        assert result.weakening_items == [questions[2].id]
        data = result.to_dict()
        assert data["interpretation"] == "questionable"
        assert data["status"] == "acceptable"
        assert data["alpha_if_deleted"][questions[2].id] == pytest.approx(1.0)

    def test_skipped_answers_leave_session_incomplete(
        self, catalog, make_overview_blueprint, low_min_sessions
    ):
        competency = catalog.competency()
        questions = catalog.questions(catalog.indicator(competency), 3)
        template = catalog.template(make_overview_blueprint([competency.id]))
        answer_rows(catalog, template, questions, CONSISTENT)
        session = catalog.session(template)
        catalog.answer(session, questions[0], score=1.0)
        catalog.answer(session, questions[1], is_skipped=True)
        catalog.answer(session, questions[2], score=1.0)

        result = calculate_competency_reliability(catalog.db, competency.id)

        assert result.sample_size == 4
        assert result.cronbachs_alpha == pytest.approx(0.75)

    def test_insufficient_data(self, catalog, make_overview_blueprint):
        competency = catalog.competency()
        questions = catalog.questions(catalog.indicator(competency), 3)
        template = catalog.template(make_overview_blueprint([competency.id]))
        answer_rows(catalog, template, questions, CONSISTENT)

        result = calculate_competency_reliability(catalog.db, competency.id)

        assert result.cronbachs_alpha is None
        assert result.status == ReliabilityStatus.INSUFFICIENT_DATA
        assert result.alpha_if_deleted == {}
        assert result.to_dict()["interpretation"] is None

    def test_unknown_competency(self, db_session):
        with pytest.raises(AnalysisValidationError, match="not found"):
            calculate_competency_reliability(db_session, 9999)


class TestBigFiveReliability:
    """Alpha per trait over Likert items."""

    def test_likert_items_of_trait(self, catalog, make_overview_blueprint, low_min_sessions):
        competency = catalog.competency()
        indicator = catalog.indicator(competency)
        first, second = catalog.questions(
            indicator, 2, question_type=QuestionType.LIKERT, big_five_trait=BigFiveTrait.OPENNESS
        )
        other_trait = catalog.question(
            indicator, question_type=QuestionType.LIKERT, big_five_trait=BigFiveTrait.EXTRAVERSION
        )
        template = catalog.template(make_overview_blueprint([competency.id]))
        for a, b in [(5, 5), (4, 3), (2, 2), (1, 2)]:
            session = catalog.session(template)
            catalog.answer(session, first, likert_value=a)
            catalog.answer(session, second, likert_value=b)
            catalog.answer(session, other_trait, likert_value=3)

        result = calculate_big_five_reliability(catalog.db, BigFiveTrait.OPENNESS)

        assert result.item_count == 2
        assert result.sample_size == 4
        # item variances 0.2083 + 0.125, total variance 0.625
        assert result.cronbachs_alpha == pytest.approx(0.9333)
        assert result.status == ReliabilityStatus.RELIABLE
        assert result.to_dict()["trait"] == "openness"

    def test_trait_without_items(self, db_session):
        result = calculate_big_five_reliability(db_session, BigFiveTrait.AGREEABLENESS)

        assert result.item_count == 0
        assert result.cronbachs_alpha is None
        assert result.status == ReliabilityStatus.INSUFFICIENT_DATA


class TestDistractorAnalysis:
    """Selection shares of answer options."""

    def test_shares_and_nonfunctioning_distractors(self, catalog, make_overview_blueprint):
        competency = catalog.competency()
        question = catalog.question(
            catalog.indicator(competency),
            answer_options={"a": 1.0, "b": 0.5, "c": 0.0, "d": 0.0},
        )
        template = catalog.template(make_overview_blueprint([competency.id]))
        for option, count in [("a", 12), ("b", 7), ("c", 1)]:
            for _ in range(count):
                catalog.answer(catalog.session(template), question, selected_option=option)
        catalog.answer(catalog.session(template), question, selected_option="b", is_skipped=True)

        result = analyze_distractors(catalog.db, question.id)

        assert result.total_selections == 20
        assert result.shares == {"a": 0.6, "b": 0.35, "c": 0.05, "d": 0.0}
        assert result.keyed_option == "a"
        assert result.nonfunctioning_distractors == ["d"]
        assert result.to_dict()["nonfunctioning_distractors"] == ["d"]

    def test_unanswered_question(self, catalog):
        question = catalog.question(
            catalog.indicator(catalog.competency()), answer_options={"a": 1.0, "b": 0.0}
        )

        result = analyze_distractors(catalog.db, question.id)

        assert result.total_selections == 0
        assert result.shares == {"a": 0.0, "b": 0.0}

    def test_unknown_question(self, db_session):
        with pytest.raises(AnalysisValidationError, match="not found"):
            analyze_distractors(db_session, 9999)


class TestHealthReport:
    """Item-bank health summary."""

    @pytest.mark.parametrize(
        "difficulty,discrimination,expected",
        [
            (DifficultyFlag.NONE, DiscriminationFlag.NEGATIVE, 3),
            (DifficultyFlag.TOO_EASY, DiscriminationFlag.CRITICAL, 2),
            (DifficultyFlag.TOO_HARD, DiscriminationFlag.NONE, 2),
            (DifficultyFlag.NONE, DiscriminationFlag.WARNING, 1),
            (DifficultyFlag.NONE, DiscriminationFlag.NONE, 0),
        ],
    )
    def test_severity(self, difficulty, discrimination, expected):
        assert flag_severity(difficulty, discrimination) == expected

    def test_report(self, catalog, make_overview_blueprint, low_min_sessions):
        now = utc_now()
        competency = catalog.competency(name="Communication")
        indicator = catalog.indicator(competency, title="Listens actively")
        questions = catalog.questions(indicator, 3)
        template = catalog.template(make_overview_blueprint([competency.id]))
        answer_rows(catalog, template, questions, CONSISTENT)

        healthy = catalog.item_statistics(questions[0], discrimination=0.4, response_count=60)
        warning = catalog.item_statistics(questions[1], discrimination=0.2, response_count=60)
        toxic = catalog.item_statistics(
            questions[2],
            status=ItemValidityStatus.FLAGGED_FOR_REVIEW,
            discrimination=-0.3,
            response_count=60,
        )
        warning.discrimination_flag = DiscriminationFlag.WARNING
        toxic.discrimination_flag = DiscriminationFlag.NEGATIVE
        healthy.last_calculated_at = now - timedelta(hours=2)
        warning.last_calculated_at = now - timedelta(hours=3)
        toxic.last_calculated_at = now - timedelta(days=3)
        retired = catalog.item_statistics(
            catalog.question(indicator), status=ItemValidityStatus.RETIRED
        )
        catalog.db.commit()

        report = generate_health_report(catalog.db, now=now)

        assert report.items_by_status == {"active": 2, "flagged_for_review": 1, "retired": 1}
        assert report.total_items == 4
        assert report.average_discrimination == pytest.approx(0.1)
        assert report.items_analyzed_recently == 2
        assert [c.competency_id for c in report.competencies] == [competency.id]
        assert report.average_alpha == pytest.approx(0.75)
        assert len(report.traits) == len(BigFiveTrait)
        assert report.lowest_alpha_trait is None
        assert [i.question_id for i in report.top_flagged_items] == [toxic.question_id, warning.question_id]
        assert retired.question_id not in [i.question_id for i in report.top_flagged_items]

        top = report.top_flagged_items[0]
        assert top.severity == 3
        assert top.competency_name == "Communication"
        assert top.indicator_title == "Listens actively"

        data = report.to_dict()
        assert data["competency_reliability"]["by_status"]["reliable"] == 1
        assert data["big_five_reliability"]["by_status"]["insufficient_data"] == 5
        assert data["big_five_reliability"]["lowest_alpha_trait"] is None
        assert data["top_flagged_items"][0]["discrimination_flag"] == "negative"

    def test_flagged_list_is_capped(self, catalog):
        indicator = catalog.indicator(catalog.competency())
        for question in catalog.questions(indicator, 12):
            catalog.item_statistics(question, status=ItemValidityStatus.FLAGGED_FOR_REVIEW)

        report = generate_health_report(catalog.db)

        assert len(report.top_flagged_items) == 10

    def test_empty_bank(self, db_session):
        report = generate_health_report(db_session)

        assert report.total_items == 0
        assert report.average_discrimination is None
        assert report.average_alpha is None
        assert report.top_flagged_items == []
