"""
Collaborator interfaces consumed by the replacement engine, with their
SQLAlchemy implementations.

Each implementation is bound to the caller's session so reads and writes
land in the caller's unit of work.
"""

from __future__ import annotations

import math
from collections.abc import Collection
from datetime import date, datetime, timedelta
from typing import Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from standby.core.clock import start_of_day
from standby.models.booking import BLOCKING_STATUSES, Booking
from standby.models.provider import Provider, ProviderCategory
from standby.services.availability import AvailabilityChecker
from standby.services.geo import Candidate, Location

_KM_PER_DEGREE = 111.32


class BookingStore(Protocol):
    async def get(self, booking_id: int) -> Booking | None: ...

    async def find_in_window(
        self,
        provider_id: int,
        start: date,
        end: date,
        statuses: Collection[str],
    ) -> list[Booking]: ...

    async def update_status(
        self,
        booking_id: int,
        status: str,
        provider_id: int | None = None,
        expected_statuses: Collection[str] | None = None,
    ) -> bool: ...


class ProviderDirectory(Protocol):
    async def find_eligible(
        self,
        category: str,
        location: Location,
        radius_km: float,
        excluding: Collection[int],
    ) -> list[Candidate]: ...

    async def is_available(
        self,
        provider_id: int,
        start: datetime,
        duration: timedelta,
        ignore_booking_id: int | None = None,
    ) -> bool: ...

    async def weekly_load(self, provider_id: int, day: date) -> int: ...


class SqlBookingStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, booking_id: int) -> Booking | None:
        return await self.session.get(Booking, booking_id)

    async def find_in_window(
        self,
        provider_id: int,
        start: date,
        end: date,
        statuses: Collection[str],
    ) -> list[Booking]:
        """Bookings of *provider_id* scheduled on any day in ``[start, end]``."""
        result = await self.session.execute(
            select(Booking)
            .where(
                Booking.provider_id == provider_id,
                Booking.status.in_(tuple(statuses)),
                Booking.scheduled_at >= start_of_day(start),
                Booking.scheduled_at < start_of_day(end + timedelta(days=1)),
            )
            .order_by(Booking.scheduled_at, Booking.id)
        )
        return list(result.scalars())

    async def update_status(
        self,
        booking_id: int,
        status: str,
        provider_id: int | None = None,
        expected_statuses: Collection[str] | None = None,
    ) -> bool:
        """Write the status (and optionally the provider); ``False`` when the
        booking is gone or no longer in one of *expected_statuses*."""
        values: dict[str, object] = {"status": status}
        if provider_id is not None:
            values["provider_id"] = provider_id
        stmt = update(Booking).where(Booking.id == booking_id)
        if expected_statuses is not None:
            stmt = stmt.where(Booking.status.in_(tuple(expected_statuses)))
        result = await self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class SqlProviderDirectory:
    def __init__(
        self,
        session: AsyncSession,
        availability: AvailabilityChecker | None = None,
    ) -> None:
        self.session = session
        self.availability = availability or AvailabilityChecker(session)

    async def find_eligible(
        self,
        category: str,
        location: Location,
        radius_km: float,
        excluding: Collection[int],
    ) -> list[Candidate]:
        """Approved, active providers in *category* inside a bounding box of
        *radius_km* around *location*.  Exact radius coverage is left to the
        matcher."""
        lat_delta = radius_km / _KM_PER_DEGREE
        cos_lat = math.cos(math.radians(location.latitude))
        lon_delta = 180.0 if cos_lat < 1e-6 else min(180.0, radius_km / (_KM_PER_DEGREE * cos_lat))

        stmt = (
            select(Provider, ProviderCategory.completed_count)
            .join(ProviderCategory, ProviderCategory.provider_id == Provider.id)
            .where(
                ProviderCategory.category == category,
                Provider.is_approved.is_(True),
                Provider.is_active.is_(True),
                Provider.is_available.is_(True),
                Provider.latitude.between(location.latitude - lat_delta, location.latitude + lat_delta),
                Provider.longitude.between(location.longitude - lon_delta, location.longitude + lon_delta),
            )
            .order_by(Provider.id)
        )
        if excluding:
            stmt = stmt.where(Provider.id.not_in(tuple(excluding)))

        candidates = []
        for provider, completed_count in (await self.session.execute(stmt)).all():
            candidates.append(
                Candidate(
                    provider_id=provider.id,
                    location=Location(provider.latitude, provider.longitude),
                    radius_km=provider.radius_km,
                    categories=frozenset({category}),
                    category_experience=completed_count or 0,
                    average_rating=provider.average_rating,
                    is_approved=provider.is_approved,
                    is_active=provider.is_active,
                    is_available=provider.is_available,
                )
            )
        return candidates

    async def is_available(
        self,
        provider_id: int,
        start: datetime,
        duration: timedelta,
        ignore_booking_id: int | None = None,
    ) -> bool:
        return await self.availability.is_available(provider_id, start, duration, ignore_booking_id)

    async def weekly_load(self, provider_id: int, day: date) -> int:
        """Blocking bookings of the provider in the ISO week containing *day*."""
        monday = day - timedelta(days=day.weekday())
        result = await self.session.execute(
            select(func.count(Booking.id)).where(
                Booking.provider_id == provider_id,
                Booking.status.in_(BLOCKING_STATUSES),
                Booking.scheduled_at >= start_of_day(monday),
                Booking.scheduled_at < start_of_day(monday + timedelta(days=7)),
            )
        )
        return int(result.scalar_one())
