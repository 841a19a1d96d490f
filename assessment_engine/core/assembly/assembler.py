"""Blueprint-driven test assembly.

BlueprintAssembler resolves a blueprint variant into an ordered question list
plus inventory warnings, publishing AssemblyStarted / AssemblyCompleted /
AssemblyFailed events around every call. Configuration problems (empty scope,
no active indicators, unknown team) raise AssemblyConfigurationError and no
session is created.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError
from sqlalchemy.orm import Session

from assessment_engine.core.assembly.inventory import (
    InventoryAnalyzer,
    InventoryWarning,
    WarningCode,
    WarningSeverity,
)
from assessment_engine.core.assembly.selection import QuestionSelector
from assessment_engine.core.assembly.strategies import (
    AssemblyPlan,
    plan_job_fit,
    plan_overview,
    plan_team_fit,
)
from assessment_engine.core.collaborators import BenchmarkLookup, TeamProfileLookup
from assessment_engine.core.config import settings
from assessment_engine.core.datetime_utils import utc_now
from assessment_engine.core.events import (
    AssemblyCompleted,
    AssemblyFailed,
    AssemblyStarted,
    EngineEvent,
    EventPublisher,
)
from assessment_engine.core.exceptions import AssemblyConfigurationError
from assessment_engine.core.logging_config import OperationContext
from assessment_engine.core.passport import PassportService
from assessment_engine.models.models import (
    AssessmentStrategy,
    SessionStatus,
    TestSession,
    TestTemplate,
)
from assessment_engine.schemas.blueprints import (
    JobFitBlueprint,
    OverviewBlueprint,
    TeamFitBlueprint,
    blueprint_strategy,
    parse_blueprint,
)

logger = logging.getLogger(__name__)

AnyBlueprint = Union[OverviewBlueprint, JobFitBlueprint, TeamFitBlueprint]


@dataclass
class AssemblyResult:
    """Ordered questions and warnings produced by one assembly call."""

    strategy: AssessmentStrategy
    question_ids: List[int]
    warnings: List[InventoryWarning] = field(default_factory=list)
    competency_ids: List[int] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def question_count(self) -> int:
        return len(self.question_ids)

    def warnings_with(self, code: WarningCode) -> List[InventoryWarning]:
        return [w for w in self.warnings if w.code == code]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "question_ids": list(self.question_ids),
            "competency_ids": list(self.competency_ids),
            "warnings": [w.to_dict() for w in self.warnings],
        }


class BlueprintAssembler:
    """Assembles questions for a blueprint against the live inventory."""

    def __init__(
        self,
        db: Session,
        benchmark_lookup: Optional[BenchmarkLookup] = None,
        team_lookup: Optional[TeamProfileLookup] = None,
        passport_service: Optional[PassportService] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.db = db
        self.benchmark_lookup = benchmark_lookup
        self.team_lookup = team_lookup
        self.passport_service = passport_service or PassportService(db)
        self.publisher = publisher

    def _publish(self, event: EngineEvent) -> None:
        if self.publisher is not None:
            self.publisher.publish(event)

    def _plan(self, blueprint: AnyBlueprint) -> AssemblyPlan:
        if isinstance(blueprint, OverviewBlueprint):
            return plan_overview(self.db, blueprint)
        if isinstance(blueprint, JobFitBlueprint):
            return plan_job_fit(
                self.db, blueprint, self.benchmark_lookup, self.passport_service
            )
        if isinstance(blueprint, TeamFitBlueprint):
            return plan_team_fit(self.db, blueprint, self.team_lookup)
        raise AssemblyConfigurationError(
            f"Unsupported blueprint type {type(blueprint).__name__}"
        )

    def assemble(
        self,
        blueprint: Union[AnyBlueprint, Mapping[str, Any]],
        context: Optional[OperationContext] = None,
        template_id: Optional[int] = None,
    ) -> AssemblyResult:
        """Assemble questions for a blueprint.

        Args:
            blueprint: Blueprint variant, or a stored blueprint mapping to validate
            context: Correlation values for logging
            template_id: Owning template, for event tagging

        Returns:
            AssemblyResult with ordered question ids and warnings

        Raises:
            AssemblyConfigurationError: Invalid blueprint, empty scope, or no
                active indicators for the in-scope competencies
        """
        if isinstance(blueprint, Mapping):
            try:
                blueprint = parse_blueprint(blueprint)
            except ValidationError as e:
                # Strategy unknown until the blob validates
                raise AssemblyConfigurationError(
                    "Invalid blueprint configuration", original_error=e
                ) from e

        strategy = blueprint_strategy(blueprint)
        context = (context or OperationContext(operation="assembly")).with_values(
            strategy=strategy.value, template_id=template_id
        )
        started = time.perf_counter()
        self._publish(AssemblyStarted(strategy=strategy, template_id=template_id))
        logger.info(f"Assembling {strategy.value} test", extra=context.log_extra())

        try:
            result = self._assemble(blueprint, strategy)
        except Exception as e:
            duration = time.perf_counter() - started
            self._publish(
                AssemblyFailed(
                    strategy=strategy,
                    error_type=type(e).__name__,
                    duration_seconds=duration,
                    template_id=template_id,
                )
            )
            logger.warning(
                f"Assembly failed for {strategy.value}: {e}", extra=context.log_extra()
            )
            raise

        duration = time.perf_counter() - started
        self._publish(
            AssemblyCompleted(
                strategy=strategy,
                duration_seconds=duration,
                question_count=result.question_count,
                warning_count=len(result.warnings),
                template_id=template_id,
            )
        )
        logger.info(
            f"Assembled {result.question_count} question(s) for {strategy.value} "
            f"with {len(result.warnings)} warning(s) in {duration * 1000:.1f}ms",
            extra=context.log_extra(),
        )
        return result

    def _assemble(self, blueprint: AnyBlueprint, strategy: AssessmentStrategy) -> AssemblyResult:
        plan = self._plan(blueprint)

        if not plan.competency_ids:
            raise AssemblyConfigurationError(
                f"{strategy.value} blueprint resolves to an empty competency set",
                warnings=plan.warnings,
            )
        if not plan.quotas:
            warning = InventoryWarning(
                severity=WarningSeverity.ERROR,
                code=WarningCode.NO_ACTIVE_INDICATORS,
                message="No active behavioral indicators for the blueprint's competencies",
                details={"competency_ids": plan.competency_ids},
            )
            raise AssemblyConfigurationError(
                warning.message,
                warnings=[*plan.warnings, warning],
                context=f"competency_ids={plan.competency_ids}",
            )

        selector = QuestionSelector(self.db, plan.max_difficulty_distance)
        for warning in plan.warnings:
            selector.add_warning(warning)
        for warning in InventoryAnalyzer(self.db).health_warnings(plan.competency_ids):
            selector.add_warning(warning)

        selector.select_round_robin(plan.quotas)
        if plan.include_big_five:
            selector.select_big_five(settings.ASSEMBLY_BIG_FIVE_QUESTIONS_PER_TRAIT)

        question_ids = list(selector.selected_ids)
        if blueprint.shuffle:
            random.Random(blueprint.seed).shuffle(question_ids)

        return AssemblyResult(
            strategy=strategy,
            question_ids=question_ids,
            warnings=selector.warnings,
            competency_ids=plan.competency_ids,
            details=plan.details,
        )

    def start_session(
        self,
        template: TestTemplate,
        user_id: Optional[str] = None,
        context: Optional[OperationContext] = None,
    ) -> tuple[TestSession, AssemblyResult]:
        """Assemble a template and create its IN_PROGRESS session.

        The session captures the resolved blueprint snapshot and the ordered
        question ids. Nothing is written when assembly fails.

        Raises:
            AssemblyConfigurationError: Assembly failed or the blueprint's
                strategy does not match the template goal
        """
        try:
            blueprint = parse_blueprint(template.blueprint or {})
        except ValidationError as e:
            raise AssemblyConfigurationError(
                f"Template {template.id} has an invalid blueprint", original_error=e
            ) from e
        if blueprint_strategy(blueprint) != template.goal:
            raise AssemblyConfigurationError(
                f"Template {template.id} goal {template.goal.value} does not match "
                f"blueprint strategy {blueprint.strategy}"
            )

        context = (context or OperationContext(operation="session_start")).with_values(
            user_id=user_id
        )
        result = self.assemble(blueprint, context=context, template_id=template.id)

        session = TestSession(
            template_id=template.id,
            user_id=user_id,
            status=SessionStatus.IN_PROGRESS,
            question_order=result.question_ids,
            blueprint_snapshot=blueprint.model_dump(mode="json"),
            started_at=utc_now(),
        )
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)
        return session, result
