"""
Application configuration settings.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional, Self


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Assessment Engine"
    ENV: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Assembly
    ASSEMBLY_DEFAULT_QUESTIONS_PER_INDICATOR: int = Field(default=3, ge=1, le=10)
    # Upper bound of questions allocated to the largest JOB_FIT gap
    ASSEMBLY_QUESTIONS_PER_GAP: int = Field(default=5, ge=1, le=20)
    # Questions per Big Five trait appended to OVERVIEW assessments
    ASSEMBLY_BIG_FIVE_QUESTIONS_PER_TRAIT: int = Field(default=2, ge=1, le=10)

    # Inventory health thresholds: < CRITICAL_BELOW is CRITICAL, > MODERATE_MAX is HEALTHY
    INVENTORY_CRITICAL_BELOW: int = 3
    INVENTORY_MODERATE_MAX: int = 5

    # Scoring
    SCORING_DEFAULT_PASSING_SCORE: float = Field(default=70.0, ge=0.0, le=100.0)
    SCORING_ONET_BOOST: float = Field(default=1.2, ge=1.0, le=2.0)
    SCORING_ESCO_BOOST: float = Field(default=1.15, ge=1.0, le=2.0)
    SCORING_BIG_FIVE_BOOST: float = Field(default=1.1, ge=1.0, le=2.0)
    JOB_FIT_BASE_THRESHOLD: float = Field(default=0.5, ge=0.0, le=1.0)
    JOB_FIT_STRICTNESS_MAX_ADJUSTMENT: float = Field(default=0.3, ge=0.0, le=1.0)
    JOB_FIT_MIN_QUESTIONS_PER_COMPETENCY: int = Field(default=3, ge=1, le=10)
    # Candidate scores at or above this (0-1) add diversity to a team
    TEAM_FIT_DIVERSITY_THRESHOLD: float = Field(default=0.6, ge=0.0, le=1.0)
    TEAM_FIT_DIVERSITY_BONUS_THRESHOLD: float = Field(default=0.4, ge=0.0, le=1.0)
    TEAM_FIT_DIVERSITY_BONUS: float = Field(default=1.1, ge=0.5, le=1.5)
    TEAM_FIT_SATURATION_PENALTY_THRESHOLD: float = Field(default=0.8, ge=0.0, le=1.0)
    TEAM_FIT_SATURATION_PENALTY: float = Field(default=0.9, ge=0.5, le=1.5)
    OVERVIEW_MIN_QUESTIONS_PER_COMPETENCY: int = Field(default=3, ge=1, le=10)

    # Psychometrics
    ITEM_MIN_RESPONSES: int = Field(default=50, ge=1)
    DIF_MIN_TOTAL: int = Field(default=100, ge=2)
    DIF_MIN_GROUP: int = Field(default=20, ge=1)
    DIF_NUM_STRATA: int = Field(default=5, ge=1)
    # Complete sessions needed before Cronbach's alpha is reported
    RELIABILITY_MIN_SESSIONS: int = Field(default=50, ge=2)

    # Percentile recalculation
    PERCENTILE_WINDOW_MINUTES: int = Field(default=5, ge=1)

    # Competency passport
    PASSPORT_VALIDITY_DAYS: int = Field(default=180, ge=1, le=730)

    # Scoring resilience
    SCORING_RETRY_MAX_ATTEMPTS: int = Field(
        default=3,
        ge=1,
        description="Total scoring attempts including the first one",
    )
    SCORING_RETRY_BASE_DELAY: float = Field(default=0.5, ge=0.0)
    SCORING_RETRY_MAX_DELAY: float = Field(default=5.0, ge=0.0)
    SCORING_RETRY_EXPONENTIAL_BASE: float = Field(default=2.0, ge=1.0)
    CIRCUIT_BREAKER_ENABLED: bool = True
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    CIRCUIT_BREAKER_ERROR_RATE_THRESHOLD: float = Field(default=0.5, ge=0.0, le=1.0)
    CIRCUIT_BREAKER_WINDOW_SIZE: int = Field(default=10, ge=1)
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT: float = Field(default=30.0, ge=0.0)
    CIRCUIT_BREAKER_SUCCESS_THRESHOLD: int = Field(default=2, ge=1)

    # Sentry Error Tracking
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking (leave empty to disable)",
    )
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0, ge=0.0, le=1.0)
    SENTRY_ENVIRONMENT: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra fields from .env not defined in Settings
    )

    @model_validator(mode="after")
    def validate_dif_sample_sizes(self) -> Self:
        """Both DIF groups at their minimum must fit inside the total minimum."""
        if self.DIF_MIN_GROUP * 2 > self.DIF_MIN_TOTAL:
            raise ValueError(
                f"DIF_MIN_GROUP ({self.DIF_MIN_GROUP}) * 2 must not exceed "
                f"DIF_MIN_TOTAL ({self.DIF_MIN_TOTAL})"
            )
        return self

    @model_validator(mode="after")
    def validate_inventory_thresholds(self) -> Self:
        """Validate inventory health band ordering."""
        if self.INVENTORY_CRITICAL_BELOW > self.INVENTORY_MODERATE_MAX:
            raise ValueError(
                "INVENTORY_CRITICAL_BELOW must not exceed INVENTORY_MODERATE_MAX, "
                f"got {self.INVENTORY_CRITICAL_BELOW} > {self.INVENTORY_MODERATE_MAX}"
            )
        return self

    @model_validator(mode="after")
    def validate_retry_delays(self) -> Self:
        """Validate the retry delay bounds."""
        if self.SCORING_RETRY_BASE_DELAY > self.SCORING_RETRY_MAX_DELAY:
            raise ValueError(
                "SCORING_RETRY_BASE_DELAY must not exceed SCORING_RETRY_MAX_DELAY"
            )
        return self


settings = Settings()
