"""Per-strategy assembly planning.

Each blueprint variant has one planning function that resolves the competency
scope and turns it into ordered indicator slots with question quotas. The
assembler then executes the plan through a QuestionSelector.

OVERVIEW:  fixed competency set, questions_per_indicator scaled by an optional
           0.5-2.0 competency weight, preferred difficulty.
JOB_FIT:   occupational benchmark vs. competency passport ("delta testing");
           larger gaps receive more questions, strictness narrows how far
           difficulty borrowing may stray from the target.
TEAM_FIT:  team saturation per competency; under-saturated competencies first
           and with more questions.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from assessment_engine.core.assembly.inventory import (
    InventoryWarning,
    WarningCode,
    WarningSeverity,
)
from assessment_engine.core.assembly.selection import IndicatorSlot
from assessment_engine.core.collaborators import BenchmarkLookup, TeamProfileLookup
from assessment_engine.core.config import settings
from assessment_engine.core.exceptions import AssemblyConfigurationError
from assessment_engine.core.passport import PassportService
from assessment_engine.models.models import (
    BehavioralIndicator,
    Competency,
    DifficultyLevel,
)
from assessment_engine.schemas.blueprints import (
    JobFitBlueprint,
    OverviewBlueprint,
    TeamFitBlueprint,
)

logger = logging.getLogger(__name__)

# Passport and benchmark levels share the 1.0-5.0 scale
PASSPORT_SCALE_RANGE = 4.0
SIGNIFICANT_GAP_BASE = 0.2
# A member "covers" a competency at or above this normalised score
TEAM_COVERAGE_SCORE = 0.6
TEAM_DEFAULT_QUESTIONS = 2
# (upper saturation bound, questions) evaluated in order
TEAM_SATURATION_QUESTIONS: Tuple[Tuple[float, int], ...] = ((0.1, 6), (0.3, 4), (0.5, 3))


@dataclass
class AssemblyPlan:
    """Resolved scope and quotas for one assembly call."""

    competency_ids: List[int]
    quotas: List[Tuple[IndicatorSlot, int]] = field(default_factory=list)
    warnings: List[InventoryWarning] = field(default_factory=list)
    include_big_five: bool = False
    max_difficulty_distance: Optional[int] = None
    details: Dict[str, object] = field(default_factory=dict)


def _load_competencies(db: Session, competency_ids: Iterable[int]) -> List[Competency]:
    ids = list(competency_ids)
    if not ids:
        return []
    return (
        db.query(Competency)
        .filter(Competency.id.in_(ids), Competency.is_active == True)  # noqa: E712
        .all()
    )


def _active_indicators(db: Session, competency_id: int) -> List[BehavioralIndicator]:
    """Active indicators ordered by weight descending, then id."""
    return (
        db.query(BehavioralIndicator)
        .filter(
            BehavioralIndicator.competency_id == competency_id,
            BehavioralIndicator.is_active == True,  # noqa: E712
        )
        .order_by(BehavioralIndicator.weight.desc(), BehavioralIndicator.id.asc())
        .all()
    )


def _missing_competency_warnings(
    requested: Sequence[int], found: Sequence[Competency]
) -> List[InventoryWarning]:
    found_ids = {c.id for c in found}
    return [
        InventoryWarning(
            severity=WarningSeverity.WARNING,
            code=WarningCode.COMPETENCY_NOT_FOUND,
            message=f"Competency {competency_id} is unknown or inactive",
            competency_id=competency_id,
        )
        for competency_id in requested
        if competency_id not in found_ids
    ]


def _spread(total: int, buckets: int) -> List[int]:
    """Split total across buckets, earlier buckets taking the remainder."""
    base, remainder = divmod(total, buckets)
    return [base + (1 if index < remainder else 0) for index in range(buckets)]


def _slots_for_competency(
    db: Session,
    competency: Competency,
    question_count: int,
    difficulty: DifficultyLevel,
    per_indicator: bool = False,
) -> List[Tuple[IndicatorSlot, int]]:
    """Quota per active indicator of a competency.

    per_indicator=True gives every indicator ``question_count`` questions;
    otherwise ``question_count`` is spread over the indicators.
    """
    indicators = _active_indicators(db, competency.id)
    if not indicators:
        return []
    counts = (
        [question_count] * len(indicators)
        if per_indicator
        else _spread(question_count, len(indicators))
    )
    return [
        (
            IndicatorSlot(
                indicator_id=indicator.id,
                competency_id=competency.id,
                weight=indicator.weight,
                target_difficulty=difficulty,
            ),
            count,
        )
        for indicator, count in zip(indicators, counts)
        if count > 0
    ]


# =============================================================================
# OVERVIEW
# =============================================================================


def plan_overview(db: Session, blueprint: OverviewBlueprint) -> AssemblyPlan:
    competencies = _load_competencies(db, blueprint.competency_ids)
    warnings = _missing_competency_warnings(blueprint.competency_ids, competencies)

    weights = blueprint.competency_weights
    ordered = sorted(competencies, key=lambda c: (-weights.get(c.id, 1.0), c.id))

    quotas: List[Tuple[IndicatorSlot, int]] = []
    for competency in ordered:
        per_indicator = max(
            1, round(blueprint.questions_per_indicator * weights.get(competency.id, 1.0))
        )
        quotas.extend(
            _slots_for_competency(
                db,
                competency,
                per_indicator,
                blueprint.preferred_difficulty,
                per_indicator=True,
            )
        )

    return AssemblyPlan(
        competency_ids=[c.id for c in ordered],
        quotas=quotas,
        warnings=warnings,
        include_big_five=blueprint.include_big_five,
    )


# =============================================================================
# JOB_FIT
# =============================================================================


def significant_gap_threshold(strictness_level: int) -> float:
    """Normalised gap above which a competency is probed at ADVANCED difficulty.

    Stricter benchmarks treat smaller gaps as significant.
    """
    return SIGNIFICANT_GAP_BASE * (100 - strictness_level) / 100


def difficulty_distance_for_strictness(strictness_level: int) -> int:
    """How many ladder steps difficulty borrowing may move at this strictness."""
    if strictness_level >= 67:
        return 1
    if strictness_level >= 34:
        return 2
    return len(DifficultyLevel) - 1


def plan_job_fit(
    db: Session,
    blueprint: JobFitBlueprint,
    benchmark_lookup: Optional[BenchmarkLookup],
    passport_service: Optional[PassportService],
) -> AssemblyPlan:
    warnings: List[InventoryWarning] = []

    profile = (
        benchmark_lookup.get_profile(blueprint.onet_soc_code)
        if benchmark_lookup is not None
        else None
    )
    if profile is None:
        warnings.append(
            InventoryWarning(
                severity=WarningSeverity.WARNING,
                code=WarningCode.BENCHMARK_NOT_FOUND,
                message=(
                    f"No benchmark profile for occupation {blueprint.onet_soc_code}; "
                    "running a full assessment"
                ),
                details={"onet_soc_code": blueprint.onet_soc_code},
            )
        )
    benchmarks = profile.benchmarks if profile is not None else {}

    if blueprint.competency_ids:
        competencies = _load_competencies(db, blueprint.competency_ids)
        warnings.extend(
            _missing_competency_warnings(blueprint.competency_ids, competencies)
        )
    elif benchmarks:
        competencies = (
            db.query(Competency)
            .filter(
                Competency.name.in_(list(benchmarks)),
                Competency.is_active == True,  # noqa: E712
            )
            .all()
        )
    else:
        raise AssemblyConfigurationError(
            "JOB_FIT blueprint has no competency scope: benchmark not found and "
            "no competency_ids configured",
            warnings=warnings,
            context=f"onet_soc_code={blueprint.onet_soc_code}",
        )

    passport = None
    if passport_service is not None and blueprint.candidate_id:
        passport = passport_service.get_valid_passport(
            blueprint.candidate_id, max_age_days=blueprint.passport_max_age_days
        )

    # Normalised gap 0..1; no passport or no benchmark means a maximal gap
    gaps: Dict[int, float] = {}
    for competency in competencies:
        benchmark = benchmarks.get(competency.name)
        held = passport.competency_scores.get(competency.id) if passport else None
        if benchmark is None or held is None:
            gaps[competency.id] = 1.0
        else:
            gaps[competency.id] = max(0.0, benchmark - held) / PASSPORT_SCALE_RANGE

    for competency in competencies:
        if gaps[competency.id] == 0.0:
            warnings.append(
                InventoryWarning(
                    severity=WarningSeverity.INFO,
                    code=WarningCode.COMPETENCY_SKIPPED_PASSPORT,
                    message=(
                        f"Competency '{competency.name}' already meets the benchmark "
                        "according to the candidate's passport"
                    ),
                    competency_id=competency.id,
                )
            )

    open_gaps = {cid: gap for cid, gap in gaps.items() if gap > 0.0}
    if competencies and not open_gaps:
        # Verification pass: one question per competency at INTERMEDIATE
        warnings.append(
            InventoryWarning(
                severity=WarningSeverity.INFO,
                code=WarningCode.ALL_GAPS_CLOSED,
                message="Passport meets every benchmark; assembling a verification pass",
            )
        )
        open_gaps = {cid: 0.0 for cid in gaps}

    threshold = significant_gap_threshold(blueprint.strictness_level)
    max_gap = max(open_gaps.values(), default=0.0)

    ordered = sorted(
        (c for c in competencies if c.id in open_gaps),
        key=lambda c: (-open_gaps[c.id], c.id),
    )
    quotas: List[Tuple[IndicatorSlot, int]] = []
    allocation: Dict[int, int] = {}
    for competency in ordered:
        gap = open_gaps[competency.id]
        if max_gap > 0:
            count = max(1, round(settings.ASSEMBLY_QUESTIONS_PER_GAP * gap / max_gap))
        else:
            count = 1
        difficulty = (
            DifficultyLevel.ADVANCED
            if gap > 0 and gap >= threshold
            else DifficultyLevel.INTERMEDIATE
        )
        allocation[competency.id] = count
        quotas.extend(_slots_for_competency(db, competency, count, difficulty))

    logger.info(
        f"JOB_FIT plan for {blueprint.onet_soc_code}: "
        f"passport={'yes' if passport else 'no'}, allocation={allocation}"
    )

    return AssemblyPlan(
        competency_ids=[c.id for c in ordered],
        quotas=quotas,
        warnings=warnings,
        max_difficulty_distance=difficulty_distance_for_strictness(
            blueprint.strictness_level
        ),
        details={"gaps": gaps, "allocation": allocation, "delta_testing": passport is not None},
    )


# =============================================================================
# TEAM_FIT
# =============================================================================


def _normalise_member_score(value: float) -> float:
    """Member scores arrive either as 0-1 fractions or on the 1-5 passport scale."""
    return value / 5.0 if value > 1.0 else value


def compute_team_saturation(
    member_scores: Sequence[Dict[int, float]], competency_ids: Iterable[int]
) -> Dict[int, float]:
    """Share of members covering each competency (0.0 for an empty team)."""
    saturation = {}
    for competency_id in competency_ids:
        if not member_scores:
            saturation[competency_id] = 0.0
            continue
        covered = sum(
            1
            for scores in member_scores
            if _normalise_member_score(scores.get(competency_id, 0.0))
            >= TEAM_COVERAGE_SCORE
        )
        saturation[competency_id] = covered / len(member_scores)
    return saturation


def questions_for_saturation(saturation: float) -> int:
    for upper_bound, questions in TEAM_SATURATION_QUESTIONS:
        if saturation < upper_bound:
            return questions
    return TEAM_DEFAULT_QUESTIONS


def plan_team_fit(
    db: Session,
    blueprint: TeamFitBlueprint,
    team_lookup: Optional[TeamProfileLookup],
) -> AssemblyPlan:
    team = team_lookup.get_team(blueprint.team_id) if team_lookup is not None else None
    if team is None:
        raise AssemblyConfigurationError(
            f"Team '{blueprint.team_id}' not found",
            context="team_fit",
        )

    warnings: List[InventoryWarning] = []
    if blueprint.competency_ids:
        competencies = _load_competencies(db, blueprint.competency_ids)
        warnings.extend(
            _missing_competency_warnings(blueprint.competency_ids, competencies)
        )
    else:
        competencies = (
            db.query(Competency)
            .filter(Competency.is_active == True)  # noqa: E712
            .order_by(Competency.id)
            .all()
        )

    if not team.members:
        warnings.append(
            InventoryWarning(
                severity=WarningSeverity.WARNING,
                code=WarningCode.TEAM_EMPTY,
                message=f"Team '{team.team_id}' has no members; every competency is unsaturated",
            )
        )

    saturation = compute_team_saturation(
        [member.competency_scores for member in team.members],
        [c.id for c in competencies],
    )
    under_saturated = [
        c for c in competencies if saturation[c.id] < blueprint.saturation_threshold
    ]

    if under_saturated:
        ordered = sorted(under_saturated, key=lambda c: (saturation[c.id], c.id))
        counts = {c.id: questions_for_saturation(saturation[c.id]) for c in ordered}
    else:
        warnings.append(
            InventoryWarning(
                severity=WarningSeverity.INFO,
                code=WarningCode.TEAM_FULLY_SATURATED,
                message=(
                    f"Every competency is saturated at threshold "
                    f"{blueprint.saturation_threshold}; assessing all competencies"
                ),
            )
        )
        ordered = sorted(competencies, key=lambda c: (saturation[c.id], c.id))
        counts = {c.id: TEAM_DEFAULT_QUESTIONS for c in ordered}

    quotas: List[Tuple[IndicatorSlot, int]] = []
    for competency in ordered:
        role_weight = blueprint.role_competency_weights.get(competency.id, 1.0)
        count = max(1, round(counts[competency.id] * role_weight))
        counts[competency.id] = count
        quotas.extend(
            _slots_for_competency(db, competency, count, DifficultyLevel.INTERMEDIATE)
        )

    logger.info(
        f"TEAM_FIT plan for team {team.team_id}: {len(team.members)} member(s), "
        f"{len(under_saturated)} under-saturated competency(ies)"
    )

    return AssemblyPlan(
        competency_ids=[c.id for c in ordered],
        quotas=quotas,
        warnings=warnings,
        details={"saturation": saturation, "allocation": counts},
    )
