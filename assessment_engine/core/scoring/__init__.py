"""Session scoring: answer normalization, aggregation and strategy scoring."""

from assessment_engine.core.scoring.aggregation import (
    CompetencyScore,
    IndicatorScore,
    aggregate_big_five,
    aggregate_competencies,
)
from assessment_engine.core.scoring.engine import ScoringEngine
from assessment_engine.core.scoring.normalizer import ScoreNormalizer
from assessment_engine.core.scoring.strategies import (
    StrategyScore,
    job_fit_threshold,
    profile_pattern,
    score_answers,
)

__all__ = [
    "CompetencyScore",
    "IndicatorScore",
    "ScoreNormalizer",
    "ScoringEngine",
    "StrategyScore",
    "aggregate_big_five",
    "aggregate_competencies",
    "job_fit_threshold",
    "profile_pattern",
    "score_answers",
]
