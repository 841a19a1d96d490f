"""Question selection with exhaustion borrowing.

Selection order for one indicator slot:
1. the target difficulty of the indicator itself,
2. adjacent difficulties of the same indicator, nearest first (lower before
   higher at equal distance), bounded by ``max_difficulty_distance``,
3. sibling indicators of the same competency, ordered by ascending weight
   then id, each tried at the target difficulty and then nearest difficulties.

Every step past (1) emits one warning per indicator. Within a stratum,
questions are ordered by discrimination descending (NULLs last) then id, so
the result is deterministic for a fixed inventory.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy.orm import Session

from assessment_engine.core.assembly.inventory import (
    InventoryWarning,
    WarningCode,
    WarningSeverity,
    selectable_questions,
)
from assessment_engine.models.models import (
    BehavioralIndicator,
    BigFiveTrait,
    DifficultyLevel,
    ItemStatistics,
    Question,
)

logger = logging.getLogger(__name__)

DIFFICULTY_LADDER: Tuple[DifficultyLevel, ...] = tuple(DifficultyLevel)


def difficulty_fallback_order(
    target: DifficultyLevel, max_distance: Optional[int] = None
) -> List[DifficultyLevel]:
    """Difficulties other than target, nearest first, lower before higher.

    >>> difficulty_fallback_order(DifficultyLevel.INTERMEDIATE)
    [FOUNDATIONAL, ADVANCED, EXPERT]
    """
    index = DIFFICULTY_LADDER.index(target)
    limit = len(DIFFICULTY_LADDER) if max_distance is None else max_distance
    order = []
    for distance in range(1, limit + 1):
        for candidate in (index - distance, index + distance):
            if 0 <= candidate < len(DIFFICULTY_LADDER):
                order.append(DIFFICULTY_LADDER[candidate])
    return order


@dataclass(frozen=True)
class IndicatorSlot:
    """A request for questions measuring one indicator."""

    indicator_id: int
    competency_id: int
    weight: float
    target_difficulty: DifficultyLevel


class QuestionSelector:
    """Stateful selector for one assembly call.

    Tracks already-selected question ids so no question appears twice, and
    accumulates warnings (deduplicated per code and indicator).
    """

    def __init__(self, db: Session, max_difficulty_distance: Optional[int] = None):
        self.db = db
        self.max_difficulty_distance = max_difficulty_distance
        self.selected_ids: List[int] = []
        self._selected_set: Set[int] = set()
        self._warnings: Dict[Tuple[WarningCode, Optional[int]], InventoryWarning] = {}
        self._siblings: Dict[int, List[BehavioralIndicator]] = {}

    @property
    def warnings(self) -> List[InventoryWarning]:
        return list(self._warnings.values())

    def add_warning(self, warning: InventoryWarning) -> None:
        key = (warning.code, warning.indicator_id or warning.competency_id)
        self._warnings.setdefault(key, warning)

    def _mark_selected(self, question_ids: Sequence[int]) -> None:
        for question_id in question_ids:
            self.selected_ids.append(question_id)
            self._selected_set.add(question_id)

    def _fetch(
        self, indicator_id: int, difficulty: DifficultyLevel, limit: int
    ) -> List[int]:
        query = selectable_questions(self.db).filter(
            Question.indicator_id == indicator_id,
            Question.difficulty_level == difficulty,
            Question.big_five_trait.is_(None),
        )
        if self._selected_set:
            query = query.filter(~Question.id.in_(self._selected_set))
        rows = (
            query.with_entities(Question.id)
            .order_by(
                ItemStatistics.discrimination_index.desc().nullslast(), Question.id
            )
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    def _sibling_indicators(self, slot: IndicatorSlot) -> List[BehavioralIndicator]:
        if slot.competency_id not in self._siblings:
            self._siblings[slot.competency_id] = (
                self.db.query(BehavioralIndicator)
                .filter(
                    BehavioralIndicator.competency_id == slot.competency_id,
                    BehavioralIndicator.is_active == True,  # noqa: E712
                )
                .order_by(BehavioralIndicator.weight.asc(), BehavioralIndicator.id.asc())
                .all()
            )
        return [i for i in self._siblings[slot.competency_id] if i.id != slot.indicator_id]

    def select(
        self, slot: IndicatorSlot, count: int, report_shortfall: bool = True
    ) -> List[int]:
        """Select up to ``count`` new questions for the slot.

        Returns:
            Selected question ids in selection order
        """
        if count <= 0:
            return []

        picked = self._fetch(slot.indicator_id, slot.target_difficulty, count)
        self._mark_selected(picked)

        fallback_levels = difficulty_fallback_order(
            slot.target_difficulty, self.max_difficulty_distance
        )

        borrowed_levels: List[str] = []
        for level in fallback_levels:
            if len(picked) >= count:
                break
            extra = self._fetch(slot.indicator_id, level, count - len(picked))
            if extra:
                borrowed_levels.append(level.value)
                self._mark_selected(extra)
                picked.extend(extra)
        if borrowed_levels:
            self.add_warning(
                InventoryWarning(
                    severity=WarningSeverity.WARNING,
                    code=WarningCode.INDICATOR_EXHAUSTED_BORROWING_DIFFICULTY,
                    message=(
                        f"Indicator {slot.indicator_id} exhausted at "
                        f"{slot.target_difficulty.value}; borrowed from "
                        f"{', '.join(borrowed_levels)}"
                    ),
                    competency_id=slot.competency_id,
                    indicator_id=slot.indicator_id,
                    details={"borrowed_difficulties": borrowed_levels},
                )
            )

        borrowed_from: List[int] = []
        if len(picked) < count:
            for sibling in self._sibling_indicators(slot):
                for level in (slot.target_difficulty, *fallback_levels):
                    if len(picked) >= count:
                        break
                    extra = self._fetch(sibling.id, level, count - len(picked))
                    if extra:
                        if sibling.id not in borrowed_from:
                            borrowed_from.append(sibling.id)
                        self._mark_selected(extra)
                        picked.extend(extra)
                if len(picked) >= count:
                    break
        if borrowed_from:
            self.add_warning(
                InventoryWarning(
                    severity=WarningSeverity.WARNING,
                    code=WarningCode.INDICATOR_EXHAUSTED_BORROWING,
                    message=(
                        f"Indicator {slot.indicator_id} exhausted; borrowed from "
                        f"sibling indicator(s) {borrowed_from}"
                    ),
                    competency_id=slot.competency_id,
                    indicator_id=slot.indicator_id,
                    details={"sibling_indicator_ids": borrowed_from},
                )
            )

        if report_shortfall and len(picked) < count:
            self.report_shortfall(slot, requested=count, selected=len(picked))

        return picked

    def report_shortfall(self, slot: IndicatorSlot, requested: int, selected: int) -> None:
        logger.warning(
            f"Indicator {slot.indicator_id}: selected {selected} of "
            f"{requested} requested question(s) after borrowing"
        )
        self.add_warning(
            InventoryWarning(
                severity=WarningSeverity.ERROR if not selected else WarningSeverity.WARNING,
                code=WarningCode.INDICATOR_SHORTFALL,
                message=(
                    f"Indicator {slot.indicator_id} could not be filled: "
                    f"{selected} of {requested} question(s)"
                ),
                competency_id=slot.competency_id,
                indicator_id=slot.indicator_id,
                details={"requested": requested, "selected": selected},
            )
        )

    def select_round_robin(self, quotas: Sequence[Tuple[IndicatorSlot, int]]) -> None:
        """Waterfall selection: one question per slot per round until quotas are met.

        Interleaves indicators in the output, and lets earlier (higher
        priority) slots claim shared sibling inventory first in every round.
        """
        remaining = [[slot, quota, quota] for slot, quota in quotas if quota > 0]
        while remaining:
            next_round = []
            for entry in remaining:
                slot, quota, left = entry
                if self.select(slot, 1, report_shortfall=False):
                    entry[2] = left - 1
                    if entry[2] > 0:
                        next_round.append(entry)
                else:
                    # Slot and all of its fallbacks are exhausted
                    self.report_shortfall(slot, requested=quota, selected=quota - left)
            remaining = next_round

    def select_big_five(self, per_trait: int) -> List[int]:
        """Append Big Five personality items, per trait in trait order."""
        picked: List[int] = []
        for trait in BigFiveTrait:
            query = selectable_questions(self.db).filter(
                Question.big_five_trait == trait
            )
            if self._selected_set:
                query = query.filter(~Question.id.in_(self._selected_set))
            rows = query.with_entities(Question.id).order_by(Question.id).limit(per_trait).all()
            ids = [row[0] for row in rows]
            self._mark_selected(ids)
            picked.extend(ids)
        if not picked:
            self.add_warning(
                InventoryWarning(
                    severity=WarningSeverity.INFO,
                    code=WarningCode.BIG_FIVE_UNAVAILABLE,
                    message="No active Big Five items available; personality section omitted",
                )
            )
        return picked
