"""Pydantic schemas for replacements, candidates and sweep reports."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ReplacementRead(BaseModel):
    id: int
    absence_id: int | None
    booking_id: int
    original_provider_id: int
    replacement_provider_id: int | None
    reason: str | None
    type: str
    status: str
    priority: str
    matching_score: float | None
    search_attempts: int
    excluded_provider_ids: list[int] | None = None
    proposal_expires_at: datetime | None
    requested_at: datetime | None
    proposed_at: datetime | None
    accepted_at: datetime | None
    confirmed_at: datetime | None
    rejected_at: datetime | None
    declined_at: datetime | None
    cancelled_at: datetime | None
    completed_at: datetime | None
    cancel_reason: str | None
    decline_reason: str | None
    client_notified: bool
    replacement_notified: bool
    version: int

    model_config = {"from_attributes": True}


class ReplacementDecision(BaseModel):
    reason: str | None = None


class CandidateRead(BaseModel):
    provider_id: int
    score: float
    distance_km: float
    average_rating: float | None
    weekly_load: int

    model_config = {"from_attributes": True}


class SweepReportRead(BaseModel):
    orphans_cancelled: int
    activated: int
    expired: int
    searched: int
    proposed: int
    completed: int
    errors: int

    model_config = {"from_attributes": True}
