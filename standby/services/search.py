"""
ReplacementSearch — rank substitutes for one booking and drive a single
search attempt through the state machine.

``attempt_assignment`` is safe to call repeatedly (API path, sweep, tests):
attempts for one booking are serialised on an in-process lock, and the
final write is a CAS on the replacement version, so a result computed
against a replacement that was cancelled meanwhile is discarded.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable, Collection
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from standby.core.clock import ensure_utc
from standby.core.exceptions import ConcurrentModificationError, NotFoundError
from standby.models.booking import Booking
from standby.models.replacement import (
    NO_CANDIDATE_REASON,
    Replacement,
    ReplacementStatus,
)
from standby.services.geo import BookingRequirement, GeoMatcher, Location
from standby.services.notifications import IntentPublisher
from standby.services.policy import MatchingPolicy, load_policy
from standby.services.state_machine import (
    ReplacementStateMachine,
    StaleReplacementError,
    TransitionResult,
    load_replacement,
)
from standby.services.stores import ProviderDirectory, SqlProviderDirectory

logger = logging.getLogger(__name__)

S = ReplacementStatus

DirectoryFactory = Callable[[AsyncSession], ProviderDirectory]


@dataclass(frozen=True)
class RankedCandidate:
    provider_id: int
    score: float
    distance_km: float
    average_rating: float | None
    weekly_load: int

    @property
    def sort_key(self) -> tuple:
        return (-self.score, -(self.average_rating or 0.0), self.weekly_load, self.provider_id)


def requirement_for(booking: Booking) -> BookingRequirement:
    return BookingRequirement(
        booking_id=booking.id,
        category=booking.category,
        location=Location(booking.latitude, booking.longitude),
    )


class KeyedLocks:
    """One ``asyncio.Lock`` per id, dropped once nobody holds it."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def for_key(self, key: int) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


class ReplacementSearch:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: ReplacementStateMachine,
        publisher: IntentPublisher,
        directory_factory: DirectoryFactory = SqlProviderDirectory,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.publisher = publisher
        self.directory_factory = directory_factory
        self.locks = locks or KeyedLocks()

    async def find_candidates(
        self,
        booking_id: int,
        excluded_provider_id: int,
        max_results: int | None = None,
    ) -> list[RankedCandidate]:
        """Ranked substitutes for *booking_id*, best first."""
        async with self.session_factory() as session:
            policy = await load_policy(session)
            booking = await session.get(Booking, booking_id)
            if booking is None:
                raise NotFoundError(f"Booking {booking_id} not found")
            return await self.rank(
                self.directory_factory(session),
                booking,
                {excluded_provider_id},
                max_results or policy.candidate_max_results,
                policy,
            )

    async def rank(
        self,
        directory: ProviderDirectory,
        booking: Booking,
        excluded: Collection[int],
        max_results: int,
        policy: MatchingPolicy,
    ) -> list[RankedCandidate]:
        requirement = requirement_for(booking)
        matcher = GeoMatcher(policy)
        starts_at = ensure_utc(booking.scheduled_at)

        pool = await directory.find_eligible(
            booking.category, requirement.location, policy.max_search_radius_km, excluded
        )
        ranked: list[RankedCandidate] = []
        for candidate in pool:
            if not matcher.is_eligible(requirement, candidate, excluded):
                continue
            if not await directory.is_available(
                candidate.provider_id, starts_at, booking.duration, ignore_booking_id=booking.id
            ):
                continue
            ranked.append(
                RankedCandidate(
                    provider_id=candidate.provider_id,
                    score=matcher.score(requirement, candidate),
                    distance_km=round(matcher.distance_km(requirement, candidate), 3),
                    average_rating=candidate.average_rating,
                    weekly_load=await directory.weekly_load(candidate.provider_id, starts_at.date()),
                )
            )
        ranked.sort(key=lambda r: r.sort_key)
        logger.debug(
            "Booking %s: %s eligible of %s in pool", booking.id, len(ranked), len(pool)
        )
        return ranked[:max_results]

    async def attempt_assignment(self, replacement_id: int) -> TransitionResult:
        """Run one search attempt for *replacement_id*.

        pending → searching first; then either propose the top candidate,
        stay ``searching`` with one more attempt counted, or cancel with
        reason ``no_candidate`` once the attempt cap is reached.  Any other
        status is a no-op.
        """
        async with self.session_factory() as session:
            booking_id = (await load_replacement(session, replacement_id)).booking_id

        async with self.locks.for_key(booking_id):
            result = await self._attempt(replacement_id)
        self.publisher.publish(result.intents)
        return result

    async def _attempt(self, replacement_id: int) -> TransitionResult:
        computed = False
        for _ in range(self.state_machine.max_retries + 1):
            async with self.session_factory() as session:
                policy = await load_policy(session)
                replacement = await load_replacement(session, replacement_id)
                status = replacement.status

                if status not in (S.PENDING.value, S.SEARCHING.value):
                    if computed:
                        logger.warning(
                            "Replacement %s became '%s' during search; result discarded",
                            replacement_id,
                            status,
                        )
                    return TransitionResult(replacement, status, status, changed=False)

                try:
                    if status == S.PENDING.value:
                        await self.state_machine.apply(session, replacement, S.SEARCHING.value)

                    booking = await session.get(Booking, replacement.booking_id)
                    if booking is None:
                        raise NotFoundError(f"Booking {replacement.booking_id} not found")
                    excluded = {replacement.original_provider_id, *(replacement.excluded_provider_ids or [])}
                    ranked = await self.rank(
                        self.directory_factory(session),
                        booking,
                        excluded,
                        policy.candidate_max_results,
                        policy,
                    )
                    computed = True
                    return await self._settle(session, replacement, ranked, policy)
                except StaleReplacementError:
                    continue

        raise ConcurrentModificationError(
            f"Search for replacement {replacement_id} kept losing to concurrent writers"
        )

    async def _settle(
        self,
        session: AsyncSession,
        replacement: Replacement,
        ranked: list[RankedCandidate],
        policy: MatchingPolicy,
    ) -> TransitionResult:
        if ranked:
            top = ranked[0]
            logger.info(
                "Replacement %s: proposing provider %s (score %.2f)",
                replacement.id,
                top.provider_id,
                top.score,
            )
            return await self.state_machine.apply(
                session,
                replacement,
                S.PROPOSED.value,
                candidate_id=top.provider_id,
                matching_score=top.score,
                proposal_timeout=policy.proposal_timeout,
                count_attempt=True,
            )

        if replacement.search_attempts + 1 >= policy.max_search_attempts:
            logger.info(
                "Replacement %s: no candidate after %s attempts; giving up",
                replacement.id,
                replacement.search_attempts + 1,
            )
            return await self.state_machine.apply(
                session,
                replacement,
                S.CANCELLED.value,
                reason=NO_CANDIDATE_REASON,
                count_attempt=True,
            )

        updated = await self.state_machine.record_attempt(session, replacement)
        logger.info(
            "Replacement %s: no candidate yet (attempt %s/%s)",
            replacement.id,
            updated.search_attempts,
            policy.max_search_attempts,
        )
        return TransitionResult(updated, S.SEARCHING.value, S.SEARCHING.value, changed=True)
