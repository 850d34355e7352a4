"""
Booking model — the external aggregate the replacement engine reads and
moves between ``confirmed`` and ``replacement_pending``.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)

from standby.db.base import Base


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    REPLACEMENT_PENDING = "replacement_pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Bookings an absence can invalidate.
AFFECTABLE_STATUSES = (
    BookingStatus.CONFIRMED.value,
    BookingStatus.SCHEDULED.value,
    BookingStatus.IN_PROGRESS.value,
)

# Bookings that occupy a provider's calendar.
BLOCKING_STATUSES = AFFECTABLE_STATUSES + (
    BookingStatus.PENDING.value,
    BookingStatus.REPLACEMENT_PENDING.value,
)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (Index("ix_bookings_provider_scheduled", "provider_id", "scheduled_at"),)

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    reference: str | None = Column(String(40), nullable=True, unique=True)  # type: ignore[assignment]
    client_id: int = Column(Integer, nullable=False, index=True)  # type: ignore[assignment]
    provider_id: int = Column(Integer, ForeignKey("providers.id"), nullable=False)  # type: ignore[assignment]
    category: str = Column(String(100), nullable=False)  # type: ignore[assignment]
    scheduled_at: datetime = Column(DateTime(timezone=True), nullable=False)  # type: ignore[assignment]
    duration_minutes: int = Column(Integer, nullable=False, default=120)  # type: ignore[assignment]
    address: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    latitude: float = Column(Float, nullable=False)  # type: ignore[assignment]
    longitude: float = Column(Float, nullable=False)  # type: ignore[assignment]
    amount: Decimal | None = Column(Numeric(10, 2), nullable=True)  # type: ignore[assignment]
    status: str = Column(  # type: ignore[assignment]
        String(30),
        nullable=False,
        default=BookingStatus.PENDING.value,
        index=True,
    )
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.duration_minutes)
