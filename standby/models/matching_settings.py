"""
Matching Settings model — singleton table for admin-tunable engine policy.

Only one row should ever exist. The admin updates it via the settings API;
the replacement engine reads it at the start of every operation to get the
attempt cap, proposal timeout, sweep cadence and scoring weights.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, Integer

from standby.core.config import settings
from standby.db.base import Base


class MatchingSettings(Base):
    __tablename__ = "matching_settings"

    id: int = Column(Integer, primary_key=True, default=1)  # type: ignore[assignment]
    max_search_attempts: int = Column(  # type: ignore[assignment]
        Integer, nullable=False, default=settings.MAX_SEARCH_ATTEMPTS
    )
    proposal_timeout_hours: int = Column(  # type: ignore[assignment]
        Integer, nullable=False, default=settings.PROPOSAL_TIMEOUT_HOURS
    )
    sweep_interval_seconds: int = Column(  # type: ignore[assignment]
        Integer, nullable=False, default=settings.SWEEP_INTERVAL_SECONDS
    )
    candidate_max_results: int = Column(  # type: ignore[assignment]
        Integer, nullable=False, default=settings.CANDIDATE_MAX_RESULTS
    )
    max_search_radius_km: float = Column(  # type: ignore[assignment]
        Float, nullable=False, default=settings.MAX_SEARCH_RADIUS_KM
    )
    distance_penalty_max: float = Column(  # type: ignore[assignment]
        Float, nullable=False, default=settings.MATCH_DISTANCE_PENALTY_MAX
    )
    inexperience_threshold: int = Column(  # type: ignore[assignment]
        Integer, nullable=False, default=settings.MATCH_INEXPERIENCE_THRESHOLD
    )
    inexperience_penalty: float = Column(  # type: ignore[assignment]
        Float, nullable=False, default=settings.MATCH_INEXPERIENCE_PENALTY
    )
    rating_bonus_per_point: float = Column(  # type: ignore[assignment]
        Float, nullable=False, default=settings.MATCH_RATING_BONUS_PER_POINT
    )
    rating_bonus_max: float = Column(  # type: ignore[assignment]
        Float, nullable=False, default=settings.MATCH_RATING_BONUS_MAX
    )
    platform_average_rating: float = Column(  # type: ignore[assignment]
        Float, nullable=False, default=settings.MATCH_PLATFORM_AVERAGE_RATING
    )
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
