"""
Tests for per-strategy assembly planning (OVERVIEW, JOB_FIT, TEAM_FIT).
"""
import pytest

from assessment_engine.core.assembly.inventory import WarningCode
from assessment_engine.core.assembly.strategies import (
    compute_team_saturation,
    difficulty_distance_for_strictness,
    plan_job_fit,
    plan_overview,
    plan_team_fit,
    questions_for_saturation,
    significant_gap_threshold,
)
from assessment_engine.core.collaborators import (
    BenchmarkProfile,
    StaticBenchmarkLookup,
    StaticTeamProfileLookup,
    TeamMemberProfile,
    TeamProfile,
)
from assessment_engine.core.exceptions import AssemblyConfigurationError
from assessment_engine.core.passport import PassportService
from assessment_engine.models import DifficultyLevel
from assessment_engine.schemas.blueprints import (
    JobFitBlueprint,
    OverviewBlueprint,
    TeamFitBlueprint,
)

SOC_CODE = "15-1252.00"


def quota_by_competency(plan):
    totals = {}
    for slot, count in plan.quotas:
        totals[slot.competency_id] = totals.get(slot.competency_id, 0) + count
    return totals


def difficulty_by_competency(plan):
    return {slot.competency_id: slot.target_difficulty for slot, _ in plan.quotas}


def benchmarks(**levels):
    return StaticBenchmarkLookup(
        {SOC_CODE: BenchmarkProfile(SOC_CODE, "Software Developers", dict(levels))}
    )


class TestOverviewPlan:
    """Fixed competency set, weighted questions per indicator."""

    def test_questions_per_indicator_for_every_indicator(self, db_session, catalog):
        competency = catalog.competency()
        heavy = catalog.indicator(competency, weight=0.8)
        light = catalog.indicator(competency, weight=0.2)

        plan = plan_overview(
            db_session,
            OverviewBlueprint(competency_ids=[competency.id], questions_per_indicator=3),
        )

        assert [(slot.indicator_id, count) for slot, count in plan.quotas] == [
            (heavy.id, 3),
            (light.id, 3),
        ]

    def test_competency_weight_scales_and_orders(self, db_session, catalog):
        normal = catalog.competency()
        boosted = catalog.competency()
        catalog.indicator(normal)
        catalog.indicator(boosted)

        plan = plan_overview(
            db_session,
            OverviewBlueprint(
                competency_ids=[normal.id, boosted.id],
                questions_per_indicator=2,
                competency_weights={boosted.id: 2.0},
            ),
        )

        assert plan.competency_ids == [boosted.id, normal.id]
        assert quota_by_competency(plan) == {boosted.id: 4, normal.id: 2}

    def test_minimum_one_question(self, db_session, catalog):
        competency = catalog.competency()
        catalog.indicator(competency)

        plan = plan_overview(
            db_session,
            OverviewBlueprint(
                competency_ids=[competency.id],
                questions_per_indicator=1,
                competency_weights={competency.id: 0.5},
            ),
        )
        assert quota_by_competency(plan) == {competency.id: 1}

    def test_unknown_competency_warns(self, db_session, catalog):
        competency = catalog.competency()
        catalog.indicator(competency)

        plan = plan_overview(db_session, OverviewBlueprint(competency_ids=[competency.id, 999]))

        assert plan.competency_ids == [competency.id]
        [warning] = plan.warnings
        assert warning.code == WarningCode.COMPETENCY_NOT_FOUND
        assert warning.competency_id == 999

    def test_preferred_difficulty_targets_slots(self, db_session, catalog):
        competency = catalog.competency()
        catalog.indicator(competency)

        plan = plan_overview(
            db_session,
            OverviewBlueprint(
                competency_ids=[competency.id],
                preferred_difficulty=DifficultyLevel.ADVANCED,
            ),
        )
        assert difficulty_by_competency(plan) == {competency.id: DifficultyLevel.ADVANCED}


class TestJobFitHelpers:
    """Strictness-derived thresholds."""

    @pytest.mark.parametrize("strictness,expected", [(0, 0.2), (50, 0.1), (100, 0.0)])
    def test_significant_gap_threshold(self, strictness, expected):
        assert significant_gap_threshold(strictness) == pytest.approx(expected)

    @pytest.mark.parametrize("strictness,expected", [(90, 1), (67, 1), (50, 2), (34, 2), (10, 3)])
    def test_difficulty_distance(self, strictness, expected):
        assert difficulty_distance_for_strictness(strictness) == expected


class TestJobFitPlan:
    """Benchmark vs. passport delta testing."""

    @pytest.fixture
    def competencies(self, catalog):
        created = {}
        for name in ("Programming", "Systems Design", "Communication"):
            competency = catalog.competency(name)
            catalog.indicator(competency)
            created[name] = competency
        return created

    def test_no_passport_assesses_every_benchmark_competency(self, db_session, competencies):
        lookup = benchmarks(**{"Programming": 4.0, "Systems Design": 3.5})

        plan = plan_job_fit(
            db_session, JobFitBlueprint(onet_soc_code=SOC_CODE), lookup, PassportService(db_session)
        )

        assert set(plan.competency_ids) == {
            competencies["Programming"].id,
            competencies["Systems Design"].id,
        }
        assert set(quota_by_competency(plan).values()) == {5}
        assert set(difficulty_by_competency(plan).values()) == {DifficultyLevel.ADVANCED}
        assert plan.details["delta_testing"] is False

    def test_passport_skips_met_benchmarks_and_scales_gaps(self, db_session, competencies):
        programming = competencies["Programming"]
        design = competencies["Systems Design"]
        communication = competencies["Communication"]
        PassportService(db_session).save_passport(
            "cand-1", {programming.id: 4.0, design.id: 2.0, communication.id: 2.6}
        )
        db_session.commit()
        lookup = benchmarks(
            **{"Programming": 4.0, "Systems Design": 4.0, "Communication": 3.0}
        )

        plan = plan_job_fit(
            db_session,
            JobFitBlueprint(onet_soc_code=SOC_CODE, strictness_level=0, candidate_id="cand-1"),
            lookup,
            PassportService(db_session),
        )

        assert plan.competency_ids == [design.id, communication.id]
        assert quota_by_competency(plan) == {design.id: 5, communication.id: 1}
        assert difficulty_by_competency(plan) == {
            design.id: DifficultyLevel.ADVANCED,
            communication.id: DifficultyLevel.INTERMEDIATE,
        }
        skipped = [w for w in plan.warnings if w.code == WarningCode.COMPETENCY_SKIPPED_PASSPORT]
        assert [w.competency_id for w in skipped] == [programming.id]
        assert plan.details["delta_testing"] is True

    def test_all_gaps_closed_runs_verification_pass(self, db_session, competencies):
        programming = competencies["Programming"]
        PassportService(db_session).save_passport("cand-1", {programming.id: 5.0})
        db_session.commit()

        plan = plan_job_fit(
            db_session,
            JobFitBlueprint(onet_soc_code=SOC_CODE, candidate_id="cand-1"),
            benchmarks(Programming=4.0),
            PassportService(db_session),
        )

        assert quota_by_competency(plan) == {programming.id: 1}
        assert difficulty_by_competency(plan) == {programming.id: DifficultyLevel.INTERMEDIATE}
        assert WarningCode.ALL_GAPS_CLOSED in [w.code for w in plan.warnings]

    def test_missing_benchmark_without_scope_fails(self, db_session, competencies):
        with pytest.raises(AssemblyConfigurationError) as exc_info:
            plan_job_fit(
                db_session,
                JobFitBlueprint(onet_soc_code="99-9999.00"),
                benchmarks(Programming=4.0),
                None,
            )
        assert [w.code for w in exc_info.value.warnings] == [WarningCode.BENCHMARK_NOT_FOUND]

    def test_missing_benchmark_with_scope_runs_full_assessment(self, db_session, competencies):
        programming = competencies["Programming"]

        plan = plan_job_fit(
            db_session,
            JobFitBlueprint(onet_soc_code="99-9999.00", competency_ids=[programming.id]),
            None,
            None,
        )

        assert plan.competency_ids == [programming.id]
        assert [w.code for w in plan.warnings] == [WarningCode.BENCHMARK_NOT_FOUND]

    def test_strictness_limits_difficulty_distance(self, db_session, competencies):
        plan = plan_job_fit(
            db_session,
            JobFitBlueprint(onet_soc_code=SOC_CODE, strictness_level=90),
            benchmarks(Programming=4.0),
            None,
        )
        assert plan.max_difficulty_distance == 1


class TestTeamSaturation:
    """Share of members covering each competency."""

    def test_mixed_scales(self):
        members = [{1: 0.8, 2: 0.2}, {1: 4.0, 2: 1.5}]
        assert compute_team_saturation(members, [1, 2]) == {1: 1.0, 2: 0.0}

    def test_missing_scores_count_as_uncovered(self):
        members = [{1: 0.9}, {}]
        assert compute_team_saturation(members, [1]) == {1: 0.5}

    def test_empty_team(self):
        assert compute_team_saturation([], [1, 2]) == {1: 0.0, 2: 0.0}

    @pytest.mark.parametrize(
        "saturation,expected", [(0.0, 6), (0.09, 6), (0.1, 4), (0.29, 4), (0.3, 3), (0.5, 2), (0.9, 2)]
    )
    def test_questions_for_saturation(self, saturation, expected):
        assert questions_for_saturation(saturation) == expected


class TestTeamFitPlan:
    """Under-saturated competencies first, with more questions."""

    @pytest.fixture
    def competencies(self, catalog):
        created = []
        for _ in range(3):
            competency = catalog.competency()
            catalog.indicator(competency)
            created.append(competency)
        return created

    def lookup(self, *members):
        return StaticTeamProfileLookup(
            {"platform": TeamProfile("platform", [TeamMemberProfile(f"m{i}", m) for i, m in enumerate(members)])}
        )

    def test_unknown_team_fails(self, db_session, competencies):
        with pytest.raises(AssemblyConfigurationError, match="not found"):
            plan_team_fit(db_session, TeamFitBlueprint(team_id="ghost"), self.lookup())

    def test_orders_under_saturated_ascending(self, db_session, competencies):
        covered, partial, missing = competencies
        lookup = self.lookup(
            {covered.id: 0.9, partial.id: 0.9},
            {covered.id: 0.9},
            {covered.id: 0.9},
            {covered.id: 0.9},
        )

        plan = plan_team_fit(db_session, TeamFitBlueprint(team_id="platform"), lookup)

        assert plan.competency_ids == [missing.id, partial.id]
        assert quota_by_competency(plan) == {missing.id: 6, partial.id: 4}
        assert plan.details["saturation"][covered.id] == 1.0

    def test_role_weight_scales_questions(self, db_session, competencies):
        target = competencies[0]
        lookup = self.lookup({})

        plan = plan_team_fit(
            db_session,
            TeamFitBlueprint(
                team_id="platform",
                competency_ids=[target.id],
                role_competency_weights={target.id: 1.5},
            ),
            lookup,
        )
        assert quota_by_competency(plan) == {target.id: 9}

    def test_empty_team_warns(self, db_session, competencies):
        plan = plan_team_fit(db_session, TeamFitBlueprint(team_id="platform"), self.lookup())

        assert WarningCode.TEAM_EMPTY in [w.code for w in plan.warnings]
        assert len(plan.competency_ids) == 3

    def test_fully_saturated_assesses_everything(self, db_session, competencies):
        everything = {c.id: 0.95 for c in competencies}
        plan = plan_team_fit(
            db_session, TeamFitBlueprint(team_id="platform"), self.lookup(everything)
        )

        assert WarningCode.TEAM_FULLY_SATURATED in [w.code for w in plan.warnings]
        assert quota_by_competency(plan) == {c.id: 2 for c in competencies}
