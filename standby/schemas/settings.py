"""Pydantic schemas for the matching settings singleton."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class MatchingSettingsRead(BaseModel):
    max_search_attempts: int
    proposal_timeout_hours: int
    sweep_interval_seconds: int
    candidate_max_results: int
    max_search_radius_km: float
    distance_penalty_max: float
    inexperience_threshold: int
    inexperience_penalty: float
    rating_bonus_per_point: float
    rating_bonus_max: float
    platform_average_rating: float
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class MatchingSettingsUpdate(BaseModel):
    max_search_attempts: int | None = Field(default=None, ge=1, le=50)
    proposal_timeout_hours: int | None = Field(default=None, ge=1, le=24 * 14)
    sweep_interval_seconds: int | None = Field(default=None, ge=10)
    candidate_max_results: int | None = Field(default=None, ge=1, le=100)
    max_search_radius_km: float | None = Field(default=None, gt=0, le=500)
    distance_penalty_max: float | None = Field(default=None, ge=0, le=100)
    inexperience_threshold: int | None = Field(default=None, ge=0)
    inexperience_penalty: float | None = Field(default=None, ge=0, le=100)
    rating_bonus_per_point: float | None = Field(default=None, ge=0)
    rating_bonus_max: float | None = Field(default=None, ge=0, le=100)
    platform_average_rating: float | None = Field(default=None, ge=0, le=5)
