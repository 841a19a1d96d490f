"""Inventory health and assembly warnings.

Classifies how many ACTIVE, non-retired questions exist per
(competency, difficulty) pair and produces the warnings assembly attaches to
its result. Warning codes are stable identifiers meant for localization.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Query, Session

from assessment_engine.core.config import settings
from assessment_engine.models.models import (
    BehavioralIndicator,
    Competency,
    DifficultyLevel,
    ItemStatistics,
    ItemValidityStatus,
    Question,
)

logger = logging.getLogger(__name__)


class WarningSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class WarningCode(str, Enum):
    """Machine-readable assembly warning codes."""

    INDICATOR_EXHAUSTED_BORROWING_DIFFICULTY = "INDICATOR_EXHAUSTED_BORROWING_DIFFICULTY"
    INDICATOR_EXHAUSTED_BORROWING = "INDICATOR_EXHAUSTED_BORROWING"
    INDICATOR_SHORTFALL = "INDICATOR_SHORTFALL"
    INVENTORY_CRITICAL = "INVENTORY_CRITICAL"
    BENCHMARK_NOT_FOUND = "BENCHMARK_NOT_FOUND"
    COMPETENCY_SKIPPED_PASSPORT = "COMPETENCY_SKIPPED_PASSPORT"
    ALL_GAPS_CLOSED = "ALL_GAPS_CLOSED"
    COMPETENCY_NOT_FOUND = "COMPETENCY_NOT_FOUND"
    TEAM_EMPTY = "TEAM_EMPTY"
    TEAM_FULLY_SATURATED = "TEAM_FULLY_SATURATED"
    BIG_FIVE_UNAVAILABLE = "BIG_FIVE_UNAVAILABLE"
    NO_ACTIVE_INDICATORS = "NO_ACTIVE_INDICATORS"


@dataclass(frozen=True)
class InventoryWarning:
    """One assembly warning."""

    severity: WarningSeverity
    code: WarningCode
    message: str
    competency_id: Optional[int] = None
    indicator_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "code": self.code.value,
            "message": self.message,
            "competency_id": self.competency_id,
            "indicator_id": self.indicator_id,
            "details": dict(self.details),
        }


class InventoryHealth(str, Enum):
    CRITICAL = "critical"
    MODERATE = "moderate"
    HEALTHY = "healthy"


def classify_inventory_health(count: int) -> InventoryHealth:
    """Classify an ACTIVE question count.

    < 3 is CRITICAL, 3-5 is MODERATE, > 5 is HEALTHY (thresholds from settings).
    """
    if count < settings.INVENTORY_CRITICAL_BELOW:
        return InventoryHealth.CRITICAL
    if count <= settings.INVENTORY_MODERATE_MAX:
        return InventoryHealth.MODERATE
    return InventoryHealth.HEALTHY


def selectable_questions(db: Session) -> Query:
    """Questions that may be assembled right now.

    Active question, active indicator, active competency, and not RETIRED.
    Status is read at query time so concurrent retirements are honoured.
    """
    return (
        db.query(Question)
        .join(BehavioralIndicator, Question.indicator_id == BehavioralIndicator.id)
        .join(Competency, BehavioralIndicator.competency_id == Competency.id)
        .outerjoin(ItemStatistics, ItemStatistics.question_id == Question.id)
        .filter(
            Question.is_active == True,  # noqa: E712
            BehavioralIndicator.is_active == True,  # noqa: E712
            Competency.is_active == True,  # noqa: E712
            or_(
                ItemStatistics.id.is_(None),
                ItemStatistics.validity_status != ItemValidityStatus.RETIRED,
            ),
        )
    )


@dataclass
class CompetencyInventory:
    """ACTIVE question counts for one competency, by difficulty."""

    competency_id: int
    competency_name: str
    counts: Dict[DifficultyLevel, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def health(self) -> InventoryHealth:
        return classify_inventory_health(self.total)

    def health_for(self, difficulty: DifficultyLevel) -> InventoryHealth:
        return classify_inventory_health(self.counts.get(difficulty, 0))


@dataclass
class InventoryHeatmap:
    """Inventory health across competencies and difficulty levels."""

    competencies: List[CompetencyInventory]

    @property
    def critical_cells(self) -> List[Tuple[int, DifficultyLevel]]:
        return [
            (c.competency_id, level)
            for c in self.competencies
            for level in DifficultyLevel
            if c.health_for(level) == InventoryHealth.CRITICAL
        ]

    def summary(self) -> Dict[str, int]:
        """Count of (competency, difficulty) cells per health class."""
        result = {health.value: 0 for health in InventoryHealth}
        for competency in self.competencies:
            for level in DifficultyLevel:
                result[competency.health_for(level).value] += 1
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "competencies": [
                {
                    "competency_id": c.competency_id,
                    "competency_name": c.competency_name,
                    "total": c.total,
                    "health": c.health.value,
                    "cells": {
                        level.value: {
                            "count": c.counts.get(level, 0),
                            "health": c.health_for(level).value,
                        }
                        for level in DifficultyLevel
                    },
                }
                for c in self.competencies
            ],
            "summary": self.summary(),
        }


class InventoryAnalyzer:
    """Answers the inventory query contract: ACTIVE counts per (competency, difficulty)."""

    def __init__(self, db: Session):
        self.db = db

    def analyze(self, competency_ids: Optional[Iterable[int]] = None) -> InventoryHeatmap:
        """Build the heatmap for the given competencies (all active if None)."""
        competency_query = self.db.query(Competency).filter(
            Competency.is_active == True  # noqa: E712
        )
        if competency_ids is not None:
            competency_query = competency_query.filter(
                Competency.id.in_(list(competency_ids))
            )
        competencies = competency_query.order_by(Competency.id).all()

        rows = (
            selectable_questions(self.db)
            .with_entities(
                BehavioralIndicator.competency_id,
                Question.difficulty_level,
                func.count(Question.id),
            )
            .group_by(BehavioralIndicator.competency_id, Question.difficulty_level)
            .all()
        )
        count_map: Dict[Tuple[int, DifficultyLevel], int] = {
            (competency_id, difficulty): count
            for competency_id, difficulty, count in rows
        }

        inventories = [
            CompetencyInventory(
                competency_id=c.id,
                competency_name=c.name,
                counts={
                    level: count_map.get((c.id, level), 0) for level in DifficultyLevel
                },
            )
            for c in competencies
        ]
        heatmap = InventoryHeatmap(competencies=inventories)
        logger.debug(f"Inventory heatmap: {heatmap.summary()}")
        return heatmap

    def health_warnings(
        self, competency_ids: Iterable[int]
    ) -> List[InventoryWarning]:
        """WARNING for every in-scope competency with CRITICAL total inventory."""
        warnings = []
        for inventory in self.analyze(competency_ids).competencies:
            if inventory.health == InventoryHealth.CRITICAL:
                warnings.append(
                    InventoryWarning(
                        severity=WarningSeverity.WARNING,
                        code=WarningCode.INVENTORY_CRITICAL,
                        message=(
                            f"Competency '{inventory.competency_name}' has only "
                            f"{inventory.total} active question(s)"
                        ),
                        competency_id=inventory.competency_id,
                        details={"active_questions": inventory.total},
                    )
                )
        return warnings
