"""
Competency passport store.

A passport holds a candidate's latest OVERVIEW competency scores on a 1.0-5.0
scale plus Big Five trait averages, valid until ``expires_at``. JOB_FIT
assembly reads it for delta testing; the passport listener writes it after
OVERVIEW scoring.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Mapping, Optional

from sqlalchemy.orm import Session

from assessment_engine.core.config import settings
from assessment_engine.core.datetime_utils import ensure_timezone_aware, is_older_than, utc_now
from assessment_engine.models.models import CompetencyPassport

logger = logging.getLogger(__name__)

PASSPORT_MIN_SCORE = 1.0
PASSPORT_MAX_SCORE = 5.0


def passport_score(percentage: float) -> float:
    """Convert a 0-100 competency percentage to the passport's 1.0-5.0 scale.

    ``clamp(percentage / 20, 1.0, 5.0)``: 0% -> 1.0, 50% -> 2.5, 100% -> 5.0.
    """
    return max(PASSPORT_MIN_SCORE, min(PASSPORT_MAX_SCORE, percentage / 20.0))


@dataclass(frozen=True)
class PassportSnapshot:
    """Read-only view of a valid passport."""

    user_id: str
    competency_scores: Dict[int, float]
    big_five_profile: Dict[str, float] = field(default_factory=dict)
    last_assessed: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    source_result_id: Optional[int] = None


class PassportService:
    """Get-by-identity and upsert over CompetencyPassport rows.

    Does not commit; the caller owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_valid_passport(
        self,
        user_id: Optional[str],
        max_age_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[PassportSnapshot]:
        """Return the non-expired passport for the user, if any.

        Args:
            user_id: Candidate identity; blank identities never have a passport
            max_age_days: Additionally require last_assessed within this many days
            now: Reference time (defaults to utc_now())
        """
        if not user_id:
            return None
        now = now or utc_now()

        entity = (
            self.db.query(CompetencyPassport)
            .filter(
                CompetencyPassport.user_id == user_id,
                CompetencyPassport.expires_at > now,
            )
            .first()
        )
        if entity is None:
            return None

        last_assessed = ensure_timezone_aware(entity.last_assessed)
        if max_age_days is not None and is_older_than(last_assessed, max_age_days, now):
            logger.debug(
                f"Passport for {user_id} older than {max_age_days} days, ignoring"
            )
            return None

        return PassportSnapshot(
            user_id=entity.user_id,
            competency_scores={
                int(key): float(value)
                for key, value in (entity.competency_scores or {}).items()
            },
            big_five_profile=dict(entity.big_five_profile or {}),
            last_assessed=last_assessed,
            expires_at=ensure_timezone_aware(entity.expires_at),
            source_result_id=entity.source_result_id,
        )

    def save_passport(
        self,
        user_id: str,
        competency_scores: Mapping[int, float],
        big_five_profile: Optional[Mapping[str, float]] = None,
        source_result_id: Optional[int] = None,
        validity_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> CompetencyPassport:
        """Create or replace the user's passport.

        Raises:
            ValueError: If user_id is blank or a score is outside 1.0-5.0
        """
        if not user_id:
            raise ValueError("user_id is required to save a passport")
        invalid = {
            key: value
            for key, value in competency_scores.items()
            if not PASSPORT_MIN_SCORE <= value <= PASSPORT_MAX_SCORE
        }
        if invalid:
            raise ValueError(f"Passport scores must be within 1.0-5.0, got {invalid}")

        now = now or utc_now()
        validity_days = validity_days or settings.PASSPORT_VALIDITY_DAYS

        entity = (
            self.db.query(CompetencyPassport)
            .filter(CompetencyPassport.user_id == user_id)
            .first()
        )
        if entity is None:
            entity = CompetencyPassport(user_id=user_id)
            self.db.add(entity)

        entity.competency_scores = {
            str(key): round(float(value), 4) for key, value in competency_scores.items()
        }
        entity.big_five_profile = dict(big_five_profile) if big_five_profile else None
        entity.source_result_id = source_result_id
        entity.last_assessed = now
        entity.expires_at = now + timedelta(days=validity_days)
        self.db.flush()

        logger.info(
            f"Passport saved for user={user_id}, competencies={len(competency_scores)}, "
            f"expires_at={entity.expires_at.isoformat()}"
        )
        return entity
