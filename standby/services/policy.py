"""
Live matching policy, read from the ``matching_settings`` singleton row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from standby.core.config import settings
from standby.models.matching_settings import MatchingSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchingPolicy:
    max_search_attempts: int = settings.MAX_SEARCH_ATTEMPTS
    proposal_timeout_hours: int = settings.PROPOSAL_TIMEOUT_HOURS
    sweep_interval_seconds: int = settings.SWEEP_INTERVAL_SECONDS
    candidate_max_results: int = settings.CANDIDATE_MAX_RESULTS
    max_search_radius_km: float = settings.MAX_SEARCH_RADIUS_KM
    distance_penalty_max: float = settings.MATCH_DISTANCE_PENALTY_MAX
    inexperience_threshold: int = settings.MATCH_INEXPERIENCE_THRESHOLD
    inexperience_penalty: float = settings.MATCH_INEXPERIENCE_PENALTY
    rating_bonus_per_point: float = settings.MATCH_RATING_BONUS_PER_POINT
    rating_bonus_max: float = settings.MATCH_RATING_BONUS_MAX
    platform_average_rating: float = settings.MATCH_PLATFORM_AVERAGE_RATING

    @property
    def proposal_timeout(self) -> timedelta:
        return timedelta(hours=self.proposal_timeout_hours)

    @classmethod
    def from_row(cls, row: MatchingSettings) -> MatchingPolicy:
        return cls(
            max_search_attempts=row.max_search_attempts,
            proposal_timeout_hours=row.proposal_timeout_hours,
            sweep_interval_seconds=row.sweep_interval_seconds,
            candidate_max_results=row.candidate_max_results,
            max_search_radius_km=row.max_search_radius_km,
            distance_penalty_max=row.distance_penalty_max,
            inexperience_threshold=row.inexperience_threshold,
            inexperience_penalty=row.inexperience_penalty,
            rating_bonus_per_point=row.rating_bonus_per_point,
            rating_bonus_max=row.rating_bonus_max,
            platform_average_rating=row.platform_average_rating,
        )


async def get_or_create_matching_settings(db: AsyncSession) -> MatchingSettings:
    """Fetch the singleton settings row, creating it with defaults if absent."""
    result = await db.execute(select(MatchingSettings).limit(1))
    row = result.scalar_one_or_none()
    if row is None:
        try:
            row = MatchingSettings(id=1)
            db.add(row)
            await db.commit()
            await db.refresh(row)
            logger.info("Created default matching settings")
        except IntegrityError:
            await db.rollback()
            result = await db.execute(select(MatchingSettings).limit(1))
            row = result.scalar_one()
    return row


async def load_policy(db: AsyncSession) -> MatchingPolicy:
    return MatchingPolicy.from_row(await get_or_create_matching_settings(db))
