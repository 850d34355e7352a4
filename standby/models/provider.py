"""
Provider directory models — independent field workers and the service
categories they cover.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from standby.db.base import Base


class Provider(Base):
    __tablename__ = "providers"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    name: str = Column(String(200), nullable=False)  # type: ignore[assignment]
    email: str | None = Column(String(320), nullable=True)  # type: ignore[assignment]
    phone: str | None = Column(String(30), nullable=True)  # type: ignore[assignment]
    latitude: float = Column(Float, nullable=False)  # type: ignore[assignment]
    longitude: float = Column(Float, nullable=False)  # type: ignore[assignment]
    radius_km: float = Column(Float, nullable=False, default=10.0)  # type: ignore[assignment]
    average_rating: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    total_reviews: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    completed_bookings: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    is_approved: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    is_available: bool = Column(Boolean, nullable=False, default=True)  # type: ignore[assignment]
    is_active: bool = Column(Boolean, nullable=False, default=True, server_default="true")  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )


class ProviderCategory(Base):
    """One service category a provider works in, with per-category experience."""

    __tablename__ = "provider_categories"
    __table_args__ = (
        UniqueConstraint("provider_id", "category", name="uq_provider_category"),
        Index("ix_provider_categories_category", "category"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    provider_id: int = Column(Integer, ForeignKey("providers.id"), nullable=False)  # type: ignore[assignment]
    category: str = Column(String(100), nullable=False)  # type: ignore[assignment]
    completed_count: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
