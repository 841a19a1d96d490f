"""
Strategy-specific scoring over aggregated competency scores.

All strategies share the answer -> indicator -> competency roll-up from
aggregation.py and differ in how competencies combine into the overall
percentage and which diagnostics they attach:

OVERVIEW:  plain mean of competency percentages, evidence sufficiency,
           profile pattern and Big Five personality profile.
JOB_FIT:   O*NET-aligned competencies weigh more; O*NET benchmarks are
           attached per competency and the strictness-adjusted job threshold
           is reported.
TEAM_FIT:  ESCO / Big Five boosts plus a team-complementarity multiplier
           (diversity bonus or saturation penalty).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from assessment_engine.core.collaborators import BenchmarkLookup
from assessment_engine.core.config import settings
from assessment_engine.core.scoring.aggregation import (
    CompetencyScore,
    aggregate_big_five,
    aggregate_competencies,
    clamp_percentage,
)
from assessment_engine.core.scoring.normalizer import ScoreNormalizer
from assessment_engine.models.models import AssessmentStrategy, TestAnswer
from assessment_engine.schemas.blueprints import (
    JobFitBlueprint,
    OverviewBlueprint,
    TeamFitBlueprint,
)

logger = logging.getLogger(__name__)

# Profile pattern bands (percentage of a competency)
SIGNATURE_STRENGTH_THRESHOLD = 85.0
STRENGTH_THRESHOLD = 70.0
DEVELOPING_THRESHOLD = 50.0
CRITICAL_GAP_THRESHOLD = 30.0

BIG_FIVE_CATEGORY = "big_five"


@dataclass
class StrategyScore:
    """Outcome of one strategy, before it is written to a TestResult."""

    strategy: AssessmentStrategy
    overall_percentage: float
    competency_scores: List[CompetencyScore]
    big_five_profile: Optional[Dict[str, float]] = None
    extended_metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def overall_score(self) -> float:
        return sum(c.score for c in self.competency_scores)


def profile_pattern(percentage: float) -> str:
    if percentage >= SIGNATURE_STRENGTH_THRESHOLD:
        return "SIGNATURE_STRENGTH"
    if percentage >= STRENGTH_THRESHOLD:
        return "STRENGTH"
    if percentage < CRITICAL_GAP_THRESHOLD:
        return "CRITICAL_GAP"
    if percentage >= DEVELOPING_THRESHOLD:
        return "DEVELOPING"
    return "AVERAGE"


def _mark_evidence(scores: Sequence[CompetencyScore], minimum: int) -> int:
    """Flag competencies with fewer answered questions than ``minimum``."""
    flagged = 0
    for score in scores:
        if score.questions_answered < minimum:
            score.insufficient_evidence = True
            score.evidence_note = (
                f"Score based on {score.questions_answered} question(s); "
                f"minimum {minimum} required"
            )
            flagged += 1
    return flagged


def _weighted_mean(scores: Sequence[CompetencyScore]) -> float:
    total_weight = sum(s.weight_applied or 1.0 for s in scores)
    if not scores or total_weight <= 0:
        return 0.0
    weighted = sum(s.percentage * (s.weight_applied or 1.0) for s in scores)
    return clamp_percentage(weighted / total_weight)


# =============================================================================
# OVERVIEW
# =============================================================================


def score_overview(
    answers: Sequence[TestAnswer],
    blueprint: Optional[OverviewBlueprint] = None,
    normalizer: Optional[ScoreNormalizer] = None,
) -> StrategyScore:
    normalizer = normalizer or ScoreNormalizer()
    scores = aggregate_competencies(answers, normalizer)
    insufficient = _mark_evidence(scores, settings.OVERVIEW_MIN_QUESTIONS_PER_COMPETENCY)

    overall = (
        clamp_percentage(sum(s.percentage for s in scores) / len(scores)) if scores else 0.0
    )

    pattern: Dict[str, List[str]] = {}
    for score in scores:
        score.pattern = profile_pattern(score.percentage)
        pattern.setdefault(score.pattern, []).append(score.competency_name)

    big_five = aggregate_big_five(answers, normalizer)
    return StrategyScore(
        strategy=AssessmentStrategy.OVERVIEW,
        overall_percentage=overall,
        competency_scores=scores,
        big_five_profile=big_five or None,
        extended_metrics={
            "profile_pattern": pattern,
            "insufficient_evidence_count": insufficient,
        },
    )


# =============================================================================
# JOB_FIT
# =============================================================================


def job_fit_threshold(strictness_level: int) -> float:
    """Strictness-adjusted pass threshold on a 0-1 scale."""
    adjustment = (strictness_level / 100.0) * settings.JOB_FIT_STRICTNESS_MAX_ADJUSTMENT
    return settings.JOB_FIT_BASE_THRESHOLD + adjustment


def score_job_fit(
    answers: Sequence[TestAnswer],
    blueprint: JobFitBlueprint,
    benchmark_lookup: Optional[BenchmarkLookup] = None,
    normalizer: Optional[ScoreNormalizer] = None,
) -> StrategyScore:
    scores = aggregate_competencies(answers, normalizer)
    _mark_evidence(scores, settings.JOB_FIT_MIN_QUESTIONS_PER_COMPETENCY)

    benchmarks: Dict[str, float] = {}
    if benchmark_lookup is not None:
        profile = benchmark_lookup.get_profile(blueprint.onet_soc_code)
        if profile is None:
            logger.warning(
                f"No benchmark profile for SOC code {blueprint.onet_soc_code}; "
                "scoring without benchmarks"
            )
        else:
            benchmarks = profile.benchmarks

    for score in scores:
        score.weight_applied = settings.SCORING_ONET_BOOST if score.onet_code else 1.0
        benchmark = benchmarks.get(score.competency_name)
        if benchmark is not None:
            # 1-5 benchmark level on the 0-100 scale
            score.benchmark_score = round(benchmark * 20.0, 4)

    overall = _weighted_mean(scores)
    threshold = job_fit_threshold(blueprint.strictness_level)
    below_benchmark = [
        s.competency_name
        for s in scores
        if s.benchmark_score is not None and s.percentage < s.benchmark_score
    ]

    return StrategyScore(
        strategy=AssessmentStrategy.JOB_FIT,
        overall_percentage=overall,
        competency_scores=scores,
        extended_metrics={
            "onet_soc_code": blueprint.onet_soc_code,
            "strictness_level": blueprint.strictness_level,
            "job_fit_threshold": round(threshold * 100.0, 4),
            "meets_job_requirements": overall / 100.0 >= threshold,
            "benchmark_found": bool(benchmarks),
            "below_benchmark": below_benchmark,
        },
    )


# =============================================================================
# TEAM_FIT
# =============================================================================


def team_fit_multiplier(diversity_ratio: float, saturation_ratio: float) -> float:
    bonus_threshold = settings.TEAM_FIT_DIVERSITY_BONUS_THRESHOLD
    if diversity_ratio > bonus_threshold and saturation_ratio < (1.0 - bonus_threshold):
        return settings.TEAM_FIT_DIVERSITY_BONUS
    if saturation_ratio > settings.TEAM_FIT_SATURATION_PENALTY_THRESHOLD:
        return settings.TEAM_FIT_SATURATION_PENALTY
    return 1.0


def score_team_fit(
    answers: Sequence[TestAnswer],
    blueprint: TeamFitBlueprint,
    normalizer: Optional[ScoreNormalizer] = None,
) -> StrategyScore:
    normalizer = normalizer or ScoreNormalizer()
    scores = aggregate_competencies(answers, normalizer)

    saturation_count = 0
    diversity_count = 0
    for score in scores:
        weight = settings.SCORING_ESCO_BOOST if score.esco_uri else 1.0
        if score.category == BIG_FIVE_CATEGORY:
            weight *= settings.SCORING_BIG_FIVE_BOOST
        role_weight = blueprint.role_competency_weights.get(score.competency_id)
        if role_weight is not None:
            weight *= role_weight
        score.weight_applied = weight

        average = score.percentage / 100.0
        if average >= blueprint.saturation_threshold:
            score.pattern = "SATURATION"
            saturation_count += 1
        elif average >= settings.TEAM_FIT_DIVERSITY_THRESHOLD:
            score.pattern = "DIVERSITY"
            diversity_count += 1
        else:
            score.pattern = "GAP"

    count = len(scores)
    diversity_ratio = diversity_count / count if count else 0.0
    saturation_ratio = saturation_count / count if count else 0.0
    multiplier = team_fit_multiplier(diversity_ratio, saturation_ratio)
    base = _weighted_mean(scores)
    overall = clamp_percentage(base * multiplier)

    big_five = aggregate_big_five(answers, normalizer)
    return StrategyScore(
        strategy=AssessmentStrategy.TEAM_FIT,
        overall_percentage=overall,
        competency_scores=scores,
        big_five_profile=big_five or None,
        extended_metrics={
            "team_id": blueprint.team_id,
            "base_percentage": round(base, 4),
            "team_fit_multiplier": multiplier,
            "diversity_ratio": round(diversity_ratio, 4),
            "saturation_ratio": round(saturation_ratio, 4),
            "diversity_count": diversity_count,
            "saturation_count": saturation_count,
            "gap_count": count - diversity_count - saturation_count,
        },
    )


AnyBlueprint = Union[OverviewBlueprint, JobFitBlueprint, TeamFitBlueprint]


def score_answers(
    answers: Sequence[TestAnswer],
    blueprint: AnyBlueprint,
    benchmark_lookup: Optional[BenchmarkLookup] = None,
    normalizer: Optional[ScoreNormalizer] = None,
) -> StrategyScore:
    """Dispatch to the scoring function of the blueprint's variant."""
    if isinstance(blueprint, JobFitBlueprint):
        return score_job_fit(answers, blueprint, benchmark_lookup, normalizer)
    if isinstance(blueprint, TeamFitBlueprint):
        return score_team_fit(answers, blueprint, normalizer)
    return score_overview(answers, blueprint, normalizer)
