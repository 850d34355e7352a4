"""
Absence model — a provider's declared unavailability window.

Lifecycle: ``pending`` → ``approved`` | ``rejected``; ``approved`` →
``active`` once the window opens; ``cancelled`` is reachable from
pending / approved / active.  Only AbsenceWorkflow writes this table.
"""

from __future__ import annotations

import enum
from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from standby.db.base import Base


class AbsenceType(str, enum.Enum):
    LEAVE = "leave"
    ILLNESS = "illness"
    EMERGENCY = "emergency"
    TRAINING = "training"
    PERSONAL = "personal"
    OTHER = "other"


class AbsenceStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    ACTIVE = "active"


CANCELLABLE_STATUSES = (
    AbsenceStatus.PENDING.value,
    AbsenceStatus.APPROVED.value,
    AbsenceStatus.ACTIVE.value,
)

# Absences that still count as the provider being away.
BLOCKING_STATUSES = (AbsenceStatus.APPROVED.value, AbsenceStatus.ACTIVE.value)


class Absence(Base):
    __tablename__ = "absences"
    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_absence_range"),
        CheckConstraint(
            "replacements_found_count <= affected_bookings_count",
            name="ck_absence_counters",
        ),
        Index("ix_absence_provider_dates", "provider_id", "start_date", "end_date"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    provider_id: int = Column(Integer, ForeignKey("providers.id"), nullable=False)  # type: ignore[assignment]
    start_date: date = Column(Date, nullable=False)  # type: ignore[assignment]
    end_date: date = Column(Date, nullable=False)  # type: ignore[assignment]
    type: str = Column(String(20), nullable=False)  # type: ignore[assignment]
    reason: str | None = Column(String(255), nullable=True)  # type: ignore[assignment]
    description: str | None = Column(Text, nullable=True)  # type: ignore[assignment]
    status: str = Column(  # type: ignore[assignment]
        String(20),
        nullable=False,
        default=AbsenceStatus.PENDING.value,
        index=True,
    )
    requires_replacement: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    affected_bookings_count: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    replacements_found_count: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    approved_by: int | None = Column(Integer, ForeignKey("users.id"), nullable=True)  # type: ignore[assignment]
    approved_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    rejected_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    rejection_reason: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    activated_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    cancelled_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    cancellation_reason: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime | None = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        nullable=True,
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def days_count(self) -> int:
        return (self.end_date - self.start_date).days + 1
