"""
Pydantic schemas for test blueprints.

A blueprint is a tagged variant: the ``strategy`` field selects exactly one of
OverviewBlueprint, JobFitBlueprint or TeamFitBlueprint. Stored JSON blobs are
validated into the matching variant once, when the assembler is invoked.
"""
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from assessment_engine.models.models import AssessmentStrategy, DifficultyLevel

# Competency weight multiplier bounds
MIN_COMPETENCY_WEIGHT = 0.5
MAX_COMPETENCY_WEIGHT = 2.0

SOC_CODE_PATTERN = r"^\d{2}-\d{4}\.\d{2}$"


def _validate_weights(weights: Dict[int, float]) -> Dict[int, float]:
    out_of_range = {
        key: value
        for key, value in weights.items()
        if not MIN_COMPETENCY_WEIGHT <= value <= MAX_COMPETENCY_WEIGHT
    }
    if out_of_range:
        raise ValueError(
            f"Competency weights must be between {MIN_COMPETENCY_WEIGHT} and "
            f"{MAX_COMPETENCY_WEIGHT}, got {out_of_range}"
        )
    return weights


class AdaptivityMode(str, Enum):
    """Question delivery mode."""

    LINEAR = "linear"


class AdaptivitySettings(BaseModel):
    """Delivery settings captured with the blueprint."""

    model_config = ConfigDict(frozen=True)

    mode: AdaptivityMode = Field(AdaptivityMode.LINEAR, description="Delivery mode")
    allow_backtracking: bool = Field(
        True, description="Whether candidates may revisit earlier questions"
    )


class _BlueprintBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    shuffle: bool = Field(True, description="Shuffle the final question order")
    seed: Optional[int] = Field(
        None, description="Random seed for shuffling (None = nondeterministic)"
    )
    adaptivity: AdaptivitySettings = Field(default_factory=AdaptivitySettings)


class OverviewBlueprint(_BlueprintBase):
    """Broad competency profile across a fixed competency set."""

    strategy: Literal["overview"] = "overview"
    competency_ids: List[int] = Field(
        ..., min_length=1, description="Competencies in scope"
    )
    competency_weights: Dict[int, float] = Field(
        default_factory=dict,
        description="Per-competency question multiplier (0.5-2.0, default 1.0)",
    )
    questions_per_indicator: int = Field(3, ge=1, le=10)
    preferred_difficulty: DifficultyLevel = DifficultyLevel.INTERMEDIATE
    include_big_five: bool = Field(
        True, description="Append Big Five personality items"
    )

    @field_validator("competency_ids")
    @classmethod
    def unique_competencies(cls, value: List[int]) -> List[int]:
        return list(dict.fromkeys(value))

    @field_validator("competency_weights")
    @classmethod
    def weights_in_range(cls, value: Dict[int, float]) -> Dict[int, float]:
        return _validate_weights(value)


class JobFitBlueprint(_BlueprintBase):
    """Fit against an occupational benchmark, with passport delta testing."""

    strategy: Literal["job_fit"] = "job_fit"
    onet_soc_code: str = Field(..., pattern=SOC_CODE_PATTERN)
    strictness_level: int = Field(50, ge=0, le=100)
    candidate_id: Optional[str] = Field(
        None, description="Candidate identity used to look up a passport"
    )
    competency_ids: Optional[List[int]] = Field(
        None, description="Restrict assessment to these competencies"
    )
    passport_max_age_days: int = Field(180, ge=1, le=730)


class TeamFitBlueprint(_BlueprintBase):
    """Complementarity against the current team's competency coverage."""

    strategy: Literal["team_fit"] = "team_fit"
    team_id: str = Field(..., min_length=1)
    saturation_threshold: float = Field(0.75, ge=0.0, le=1.0)
    target_role: Optional[str] = None
    role_competency_weights: Dict[int, float] = Field(default_factory=dict)
    competency_ids: Optional[List[int]] = Field(
        None, description="Restrict assessment to these competencies"
    )

    @field_validator("role_competency_weights")
    @classmethod
    def weights_in_range(cls, value: Dict[int, float]) -> Dict[int, float]:
        return _validate_weights(value)


Blueprint = Annotated[
    Union[OverviewBlueprint, JobFitBlueprint, TeamFitBlueprint],
    Field(discriminator="strategy"),
]

_blueprint_adapter: TypeAdapter[Any] = TypeAdapter(Blueprint)


def parse_blueprint(data: Mapping[str, Any]) -> Union[
    OverviewBlueprint, JobFitBlueprint, TeamFitBlueprint
]:
    """Validate a stored blueprint blob into its strategy variant.

    Raises:
        pydantic.ValidationError: If the blob is missing fields or out of range
    """
    return _blueprint_adapter.validate_python(dict(data))


def blueprint_strategy(
    blueprint: Union[OverviewBlueprint, JobFitBlueprint, TeamFitBlueprint],
) -> AssessmentStrategy:
    return AssessmentStrategy(blueprint.strategy)
