"""
AvailabilityChecker — is a provider free at a given date/time?

Three things occupy a provider's calendar: their own bookings, their
approved/active absences, and replacement proposals that already hold them
for another booking.  Results are never cached; confirmation re-asks.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from standby.core.clock import ensure_utc
from standby.models.absence import BLOCKING_STATUSES as ABSENCE_BLOCKING
from standby.models.absence import Absence
from standby.models.booking import BLOCKING_STATUSES as BOOKING_BLOCKING
from standby.models.booking import Booking
from standby.models.provider import Provider
from standby.models.replacement import Replacement, ReplacementStatus

logger = logging.getLogger(__name__)

_HOLDING_STATUSES = (ReplacementStatus.PROPOSED.value, ReplacementStatus.ACCEPTED.value)


def _overlaps(start_a: datetime, dur_a: timedelta, start_b: datetime, dur_b: timedelta) -> bool:
    return start_a < start_b + dur_b and start_b < start_a + dur_a


class AvailabilityChecker:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def is_available(
        self,
        provider_id: int,
        start: datetime,
        duration: timedelta,
        ignore_booking_id: int | None = None,
    ) -> bool:
        return not await self.conflicts(provider_id, start, duration, ignore_booking_id)

    async def conflicts(
        self,
        provider_id: int,
        start: datetime,
        duration: timedelta,
        ignore_booking_id: int | None = None,
    ) -> list[str]:
        """Return a short description of everything blocking the slot."""
        start = ensure_utc(start)
        end = start + duration

        provider = await self.session.get(Provider, provider_id)
        if provider is None or not provider.is_active or not provider.is_available:
            return ["provider_unavailable"]

        found: list[str] = []

        last_day = (end - timedelta(microseconds=1)).date()
        absences = await self.session.execute(
            select(Absence.id).where(
                Absence.provider_id == provider_id,
                Absence.status.in_(ABSENCE_BLOCKING),
                Absence.start_date <= last_day,
                Absence.end_date >= start.date(),
            )
        )
        found.extend(f"absence:{absence_id}" for absence_id in absences.scalars())

        own = [
            Booking.provider_id == provider_id,
            Booking.status.in_(BOOKING_BLOCKING),
        ]
        if ignore_booking_id is not None:
            own.append(Booking.id != ignore_booking_id)
        rows = await self._overlapping(
            select(Booking).where(*own),
            select(func.max(Booking.duration_minutes)).where(*own),
            start,
            end,
        )
        found.extend(f"booking:{booking.id}" for booking in rows)

        held_on = and_(
            Replacement.booking_id == Booking.id,
            Replacement.replacement_provider_id == provider_id,
            Replacement.status.in_(_HOLDING_STATUSES),
        )
        held = [Booking.id != ignore_booking_id] if ignore_booking_id is not None else []
        rows = await self._overlapping(
            select(Booking).join(Replacement, held_on).where(*held),
            select(func.max(Booking.duration_minutes)).join(Replacement, held_on).where(*held),
            start,
            end,
        )
        found.extend(f"held:{booking.id}" for booking in rows)

        if found:
            logger.debug("Provider %s busy at %s: %s", provider_id, start, found)
        return found

    async def _overlapping(self, stmt, longest_stmt, start: datetime, end: datetime) -> list[Booking]:
        # Durations are uncapped: look back as far as the longest candidate row runs.
        longest = (await self.session.execute(longest_stmt)).scalar()
        if not longest:
            return []

        earliest = start - timedelta(minutes=longest)
        stmt = stmt.where(Booking.scheduled_at < end, Booking.scheduled_at > earliest)
        return [
            booking
            for booking in (await self.session.execute(stmt)).scalars()
            if _overlaps(ensure_utc(booking.scheduled_at), booking.duration, start, end - start)
        ]
