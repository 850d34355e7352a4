"""Pydantic schemas for absences and their conflict previews."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from standby.schemas.replacement import ReplacementRead


class AbsenceCreate(BaseModel):
    # Staff declare on behalf of a provider; provider accounts use their own.
    provider_id: int | None = None
    start_date: date
    end_date: date
    type: str
    reason: str | None = Field(default=None, max_length=255)
    description: str | None = None


class AbsenceUpdate(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    type: str | None = None
    reason: str | None = Field(default=None, max_length=255)
    description: str | None = None


class AbsencePreviewRequest(BaseModel):
    provider_id: int | None = None
    start_date: date
    end_date: date


class AbsenceDecision(BaseModel):
    reason: str | None = None


class AbsenceRead(BaseModel):
    id: int
    provider_id: int
    start_date: date
    end_date: date
    days_count: int
    type: str
    reason: str | None
    description: str | None
    status: str
    requires_replacement: bool
    affected_bookings_count: int
    replacements_found_count: int
    approved_by: int | None
    approved_at: datetime | None
    rejected_at: datetime | None
    rejection_reason: str | None
    activated_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    created_at: datetime | None

    model_config = {"from_attributes": True}


class BookingBrief(BaseModel):
    id: int
    reference: str | None
    provider_id: int
    category: str
    scheduled_at: datetime
    duration_minutes: int
    status: str
    amount: Decimal | None = None

    model_config = {"from_attributes": True}


class AbsenceBrief(BaseModel):
    id: int
    start_date: date
    end_date: date
    status: str

    model_config = {"from_attributes": True}


class ConflictPreviewRead(BaseModel):
    has_conflicts: bool
    affected_bookings: list[BookingBrief]
    overlapping_absences: list[AbsenceBrief]

    model_config = {"from_attributes": True}


class AbsenceDetailRead(BaseModel):
    absence: AbsenceRead
    replacements: list[ReplacementRead]
    affected_bookings: list[BookingBrief]

    model_config = {"from_attributes": True}
