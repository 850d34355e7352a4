"""
Replacement model — the workflow record tracking the substitution of one
booking's provider.

Rows reference their booking, absence and both provider roles by id
only; there are no ORM back-references.  ``version`` is bumped by every
state-machine write and is the compare-and-swap token.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from standby.db.base import Base


class ReplacementType(str, enum.Enum):
    ABSENCE = "absence"
    EMERGENCY = "emergency"
    UNAVAILABILITY = "unavailability"
    QUALITY = "quality"
    CLIENT_REQUEST = "client_request"


class ReplacementStatus(str, enum.Enum):
    PENDING = "pending"
    SEARCHING = "searching"
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ReplacementPriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


TERMINAL_STATUSES = frozenset(
    {
        ReplacementStatus.CONFIRMED.value,
        ReplacementStatus.REJECTED.value,
        ReplacementStatus.DECLINED.value,
        ReplacementStatus.CANCELLED.value,
        ReplacementStatus.COMPLETED.value,
    }
)

# `confirmed` is terminal for the substitution itself; it only admits the
# after-care edges to `completed` / `cancelled`.
FINAL_STATUSES = TERMINAL_STATUSES - {ReplacementStatus.CONFIRMED.value}

# Non-terminal: at most one of these per booking.
OPEN_STATUSES = (
    ReplacementStatus.PENDING.value,
    ReplacementStatus.SEARCHING.value,
    ReplacementStatus.PROPOSED.value,
    ReplacementStatus.ACCEPTED.value,
)

NO_CANDIDATE_REASON = "no_candidate"


class Replacement(Base):
    __tablename__ = "replacements"
    __table_args__ = (
        Index("ix_replacements_booking_status", "booking_id", "status"),
        Index("ix_replacements_absence", "absence_id"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    absence_id: int | None = Column(Integer, ForeignKey("absences.id"), nullable=True)  # type: ignore[assignment]
    booking_id: int = Column(Integer, ForeignKey("bookings.id"), nullable=False)  # type: ignore[assignment]
    original_provider_id: int = Column(Integer, ForeignKey("providers.id"), nullable=False)  # type: ignore[assignment]
    replacement_provider_id: int | None = Column(  # type: ignore[assignment]
        Integer, ForeignKey("providers.id"), nullable=True
    )
    reason: str = Column(String(255), nullable=False)  # type: ignore[assignment]
    type: str = Column(String(20), nullable=False, default=ReplacementType.ABSENCE.value)  # type: ignore[assignment]
    status: str = Column(  # type: ignore[assignment]
        String(20),
        nullable=False,
        default=ReplacementStatus.PENDING.value,
        index=True,
    )
    priority: str = Column(String(10), nullable=False, default=ReplacementPriority.NORMAL.value)  # type: ignore[assignment]
    matching_score: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    search_attempts: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    booking_previous_status: str = Column(String(30), nullable=False)  # type: ignore[assignment]
    excluded_provider_ids: list[int] = Column(JSON, nullable=False, default=list)  # type: ignore[assignment]
    proposal_expires_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]

    requested_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    proposed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    accepted_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    confirmed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    rejected_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    declined_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    cancelled_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    completed_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]

    cancel_reason: str | None = Column(String(255), nullable=True)  # type: ignore[assignment]
    decline_reason: str | None = Column(Text, nullable=True)  # type: ignore[assignment]
    notes: str | None = Column(Text, nullable=True)  # type: ignore[assignment]

    client_notified: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    client_notified_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    replacement_notified: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    replacement_notified_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]

    version: int = Column(Integer, nullable=False, default=1)  # type: ignore[assignment]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
