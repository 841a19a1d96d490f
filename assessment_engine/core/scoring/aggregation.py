"""
Two-level score aggregation: answers -> indicators -> competencies.

Indicator percentage is the mean normalized score of its answers (skipped
answers count as 0.0). Competency percentage is the indicator-weight-weighted
mean of its indicator percentages; weights need not sum to 1.0, and all-zero
weights fall back to a plain mean. Every percentage is clamped to [0, 100].
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from assessment_engine.core.scoring.normalizer import ScoreNormalizer, is_answered
from assessment_engine.models.models import (
    BehavioralIndicator,
    BigFiveTrait,
    Competency,
    TestAnswer,
)


def clamp_percentage(value: float) -> float:
    return max(0.0, min(100.0, value))


@dataclass
class IndicatorScore:
    indicator_id: int
    indicator_title: str
    weight: float
    percentage: float
    score: float
    max_score: float
    questions_answered: int
    questions_skipped: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "indicator_id": self.indicator_id,
            "indicator_title": self.indicator_title,
            "weight": self.weight,
            "percentage": round(self.percentage, 4),
            "score": round(self.score, 4),
            "max_score": self.max_score,
            "questions_answered": self.questions_answered,
            "questions_skipped": self.questions_skipped,
        }


@dataclass
class CompetencyScore:
    competency_id: int
    competency_name: str
    percentage: float
    score: float
    max_score: float
    questions_answered: int
    questions_skipped: int
    indicator_scores: List[IndicatorScore] = field(default_factory=list)
    onet_code: Optional[str] = None
    esco_uri: Optional[str] = None
    category: Optional[str] = None
    insufficient_evidence: bool = False
    evidence_note: Optional[str] = None
    benchmark_score: Optional[float] = None
    pattern: Optional[str] = None
    weight_applied: Optional[float] = None
    adjusted_percentage: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "competency_id": self.competency_id,
            "competency_name": self.competency_name,
            "percentage": round(self.percentage, 4),
            "score": round(self.score, 4),
            "max_score": self.max_score,
            "questions_answered": self.questions_answered,
            "questions_skipped": self.questions_skipped,
            "insufficient_evidence": self.insufficient_evidence,
            "indicator_scores": [i.to_dict() for i in self.indicator_scores],
        }
        optional = {
            "onet_code": self.onet_code,
            "evidence_note": self.evidence_note,
            "benchmark_score": self.benchmark_score,
            "pattern": self.pattern,
            "weight_applied": self.weight_applied,
            "adjusted_percentage": (
                round(self.adjusted_percentage, 4)
                if self.adjusted_percentage is not None
                else None
            ),
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


@dataclass
class _IndicatorAccumulator:
    indicator: BehavioralIndicator
    total: float = 0.0
    count: int = 0
    skipped: int = 0

    def add(self, normalized: float, answered: bool) -> None:
        self.total += normalized
        self.count += 1
        if not answered:
            self.skipped += 1

    def to_score(self) -> IndicatorScore:
        percentage = (self.total / self.count * 100.0) if self.count else 0.0
        return IndicatorScore(
            indicator_id=self.indicator.id,
            indicator_title=self.indicator.title,
            weight=self.indicator.weight,
            percentage=clamp_percentage(percentage),
            score=self.total,
            max_score=float(self.count),
            questions_answered=self.count - self.skipped,
            questions_skipped=self.skipped,
        )


def weighted_competency_percentage(indicator_scores: List[IndicatorScore]) -> float:
    """Indicator-weight-weighted mean, clamped to [0, 100]."""
    if not indicator_scores:
        return 0.0
    total_weight = sum(max(0.0, i.weight or 0.0) for i in indicator_scores)
    if total_weight <= 0:
        mean = sum(i.percentage for i in indicator_scores) / len(indicator_scores)
        return clamp_percentage(mean)
    weighted = sum(i.percentage * max(0.0, i.weight or 0.0) for i in indicator_scores)
    return clamp_percentage(weighted / total_weight)


def aggregate_competencies(
    answers: Iterable[TestAnswer],
    normalizer: Optional[ScoreNormalizer] = None,
) -> List[CompetencyScore]:
    """Roll answers up to competency scores, ordered by competency id.

    Big Five personality items are excluded here; see aggregate_big_five().
    """
    normalizer = normalizer or ScoreNormalizer()
    indicators: Dict[int, _IndicatorAccumulator] = {}

    for answer in answers:
        question = answer.question
        if question is None or question.big_five_trait is not None:
            continue
        indicator = question.indicator
        accumulator = indicators.get(indicator.id)
        if accumulator is None:
            accumulator = indicators[indicator.id] = _IndicatorAccumulator(indicator)
        accumulator.add(normalizer.normalize(answer, question), is_answered(answer))

    by_competency: Dict[int, List[_IndicatorAccumulator]] = {}
    for accumulator in indicators.values():
        by_competency.setdefault(accumulator.indicator.competency_id, []).append(
            accumulator
        )

    scores = []
    for competency_id in sorted(by_competency):
        accumulators = sorted(by_competency[competency_id], key=lambda a: a.indicator.id)
        competency: Competency = accumulators[0].indicator.competency
        indicator_scores = [a.to_score() for a in accumulators]
        scores.append(
            CompetencyScore(
                competency_id=competency.id,
                competency_name=competency.name,
                percentage=weighted_competency_percentage(indicator_scores),
                score=sum(i.score for i in indicator_scores),
                max_score=sum(i.max_score for i in indicator_scores),
                questions_answered=sum(i.questions_answered for i in indicator_scores),
                questions_skipped=sum(i.questions_skipped for i in indicator_scores),
                indicator_scores=indicator_scores,
                onet_code=competency.onet_code,
                esco_uri=competency.esco_uri,
                category=competency.category,
            )
        )
    return scores


def aggregate_big_five(
    answers: Iterable[TestAnswer],
    normalizer: Optional[ScoreNormalizer] = None,
) -> Dict[str, float]:
    """Mean trait percentage per Big Five trait, for traits with answered items."""
    normalizer = normalizer or ScoreNormalizer()
    totals: Dict[BigFiveTrait, List[float]] = {}
    for answer in answers:
        question = answer.question
        if question is None or question.big_five_trait is None or not is_answered(answer):
            continue
        totals.setdefault(question.big_five_trait, []).append(
            normalizer.normalize(answer, question)
        )
    return {
        trait.value: round(clamp_percentage(sum(values) / len(values) * 100.0), 4)
        for trait in BigFiveTrait
        if (values := totals.get(trait))
    }
