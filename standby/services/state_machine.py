"""
ReplacementStateMachine — sole writer of ``replacements.status``.

Every write is a compare-and-swap on ``replacements.version``: read the
row, plan the next state in memory, then ``UPDATE ... WHERE version = :v``.
A write that matches no row lost a race; ``transition`` re-reads and
retries a bounded number of times before raising
:class:`ConcurrentModificationError`.

Planning is pure.  Notification side effects come back as
:class:`NotificationIntent` values for the caller to publish.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from standby.core.clock import utcnow
from standby.core.config import settings
from standby.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from standby.models.booking import AFFECTABLE_STATUSES, Booking, BookingStatus
from standby.models.replacement import (
    OPEN_STATUSES,
    Replacement,
    ReplacementPriority,
    ReplacementStatus,
    ReplacementType,
)
from standby.services.notifications import CLIENT, PROVIDER, NotificationIntent
from standby.services.stores import SqlBookingStore

logger = logging.getLogger(__name__)

S = ReplacementStatus

TRANSITIONS: dict[str, frozenset[str]] = {
    S.PENDING.value: frozenset({S.SEARCHING.value, S.CANCELLED.value}),
    S.SEARCHING.value: frozenset({S.PROPOSED.value, S.CANCELLED.value}),
    S.PROPOSED.value: frozenset({S.ACCEPTED.value, S.REJECTED.value, S.CANCELLED.value}),
    # accepted -> searching: the substitute was booked elsewhere before confirming.
    # accepted -> cancelled: the owning absence was withdrawn.
    S.ACCEPTED.value: frozenset(
        {S.CONFIRMED.value, S.DECLINED.value, S.SEARCHING.value, S.CANCELLED.value}
    ),
    S.CONFIRMED.value: frozenset({S.COMPLETED.value, S.CANCELLED.value}),
    S.REJECTED.value: frozenset(),
    S.DECLINED.value: frozenset(),
    S.CANCELLED.value: frozenset(),
    S.COMPLETED.value: frozenset(),
}

_TIMESTAMP_FIELDS = {
    S.PROPOSED.value: "proposed_at",
    S.ACCEPTED.value: "accepted_at",
    S.CONFIRMED.value: "confirmed_at",
    S.REJECTED.value: "rejected_at",
    S.DECLINED.value: "declined_at",
    S.CANCELLED.value: "cancelled_at",
    S.COMPLETED.value: "completed_at",
}

# Terminal outcomes that hand the booking back to its pre-replacement status.
_RESTORING_TARGETS = frozenset({S.REJECTED.value, S.DECLINED.value, S.CANCELLED.value})


class StaleReplacementError(ConflictError):
    code = "STALE_VERSION"


@dataclass(frozen=True)
class TransitionPlan:
    values: dict[str, Any]
    intents: tuple[NotificationIntent, ...] = ()
    booking_status: str | None = None
    booking_provider_id: int | None = None


@dataclass(frozen=True)
class TransitionResult:
    replacement: Replacement
    source: str
    target: str
    changed: bool
    intents: tuple[NotificationIntent, ...] = field(default_factory=tuple)


def can_transition(source: str, target: str) -> bool:
    return target in TRANSITIONS.get(source, frozenset())


class ReplacementStateMachine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_retries: int = settings.CAS_MAX_RETRIES,
    ) -> None:
        self.session_factory = session_factory
        self.max_retries = max_retries

    # ── Planning (pure) ─────────────────────────────────────────────
    def plan(
        self,
        replacement: Replacement,
        booking: Booking,
        target: str,
        *,
        now: datetime,
        candidate_id: int | None = None,
        matching_score: float | None = None,
        proposal_timeout: timedelta | None = None,
        reason: str | None = None,
        count_attempt: bool = False,
    ) -> TransitionPlan:
        source = replacement.status
        if not can_transition(source, target):
            raise InvalidTransitionError(source, target)

        values: dict[str, Any] = {"status": target}
        if count_attempt:
            values["search_attempts"] = replacement.search_attempts + 1
        stamp = _TIMESTAMP_FIELDS.get(target)
        if stamp and getattr(replacement, stamp) is None:
            values[stamp] = now

        intents: list[NotificationIntent] = []
        booking_status = None
        booking_provider_id = None
        payload = {"replacement_id": replacement.id, "booking_id": booking.id}

        if target == S.PROPOSED.value:
            if candidate_id is None or matching_score is None:
                raise ValidationError("A proposal needs a candidate and a matching score")
            values["replacement_provider_id"] = candidate_id
            values["matching_score"] = matching_score
            if proposal_timeout is not None:
                values["proposal_expires_at"] = now + proposal_timeout
            intents.append(
                NotificationIntent(
                    booking.client_id,
                    CLIENT,
                    "replacement_proposed",
                    {**payload, "candidate_provider_id": candidate_id, "matching_score": matching_score},
                )
            )

        elif target == S.CONFIRMED.value:
            substitute = replacement.replacement_provider_id
            booking_provider_id = substitute
            booking_status = BookingStatus.CONFIRMED.value
            values["proposal_expires_at"] = None
            intents.append(
                NotificationIntent(booking.client_id, CLIENT, "replacement_confirmed",
                                   {**payload, "provider_id": substitute})
            )
            intents.append(
                NotificationIntent(substitute, PROVIDER, "replacement_confirmed",
                                   {**payload, "scheduled_at": booking.scheduled_at.isoformat()})
            )

        elif target == S.SEARCHING.value and source == S.ACCEPTED.value:
            dropped = replacement.replacement_provider_id
            excluded = list(replacement.excluded_provider_ids or [])
            if dropped is not None and dropped not in excluded:
                excluded.append(dropped)
            values.update(
                replacement_provider_id=None,
                matching_score=None,
                proposal_expires_at=None,
                excluded_provider_ids=excluded,
            )

        elif target == S.REJECTED.value:
            values["decline_reason"] = reason
            values["proposal_expires_at"] = None
            if replacement.replacement_provider_id is not None:
                intents.append(
                    NotificationIntent(replacement.replacement_provider_id, PROVIDER,
                                       "replacement_rejected", {**payload, "reason": reason})
                )

        elif target == S.DECLINED.value:
            values["decline_reason"] = reason
            intents.append(
                NotificationIntent(booking.client_id, CLIENT, "replacement_declined",
                                   {**payload, "reason": reason})
            )

        elif target == S.CANCELLED.value:
            values["cancel_reason"] = reason
            values["proposal_expires_at"] = None
            intents.append(
                NotificationIntent(booking.client_id, CLIENT, "replacement_cancelled",
                                   {**payload, "reason": reason})
            )

        if target in _RESTORING_TARGETS and source != S.CONFIRMED.value:
            booking_status = replacement.booking_previous_status

        if any(i.recipient_role == CLIENT for i in intents):
            values["client_notified"] = True
            if replacement.client_notified_at is None:
                values["client_notified_at"] = now
        if any(i.recipient_role == PROVIDER for i in intents):
            values["replacement_notified"] = True
            if replacement.replacement_notified_at is None:
                values["replacement_notified_at"] = now

        return TransitionPlan(values, tuple(intents), booking_status, booking_provider_id)

    # ── Writes (single CAS attempt, caller's session) ──────────────
    async def open(
        self,
        session: AsyncSession,
        booking: Booking,
        *,
        reason: str,
        absence_id: int | None = None,
        type: str = ReplacementType.ABSENCE.value,
        priority: str = ReplacementPriority.NORMAL.value,
        excluded_provider_ids: Collection[int] = (),
    ) -> Replacement:
        """Create a ``pending`` replacement and park the booking in
        ``replacement_pending``.  The booking flip is a status-precondition
        update, so a second opener for the same booking loses."""
        existing = await session.execute(
            select(Replacement.id).where(
                Replacement.booking_id == booking.id,
                Replacement.status.in_(OPEN_STATUSES),
            )
        )
        if existing.first() is not None:
            raise ConflictError(f"Booking {booking.id} already has an active replacement")

        previous_status = booking.status
        flipped = await SqlBookingStore(session).update_status(
            booking.id,
            BookingStatus.REPLACEMENT_PENDING.value,
            expected_statuses=AFFECTABLE_STATUSES,
        )
        if not flipped:
            raise ConflictError(f"Booking {booking.id} is no longer open for replacement")

        replacement = Replacement(
            absence_id=absence_id,
            booking_id=booking.id,
            original_provider_id=booking.provider_id,
            reason=reason,
            type=type,
            priority=priority,
            status=S.PENDING.value,
            booking_previous_status=previous_status,
            excluded_provider_ids=sorted(set(excluded_provider_ids)),
            requested_at=utcnow(),
            version=1,
        )
        session.add(replacement)
        await session.flush()
        logger.info(
            "Replacement %s opened for booking %s (absence %s)",
            replacement.id,
            booking.id,
            absence_id,
        )
        return replacement

    async def apply(
        self,
        session: AsyncSession,
        replacement: Replacement,
        target: str,
        before_commit: Callable[[AsyncSession, Replacement], Awaitable[None]] | None = None,
        **kwargs: Any,
    ) -> TransitionResult:
        """One CAS attempt.  Same-status requests are no-ops; a lost race
        raises :class:`StaleReplacementError` after rolling back.

        *before_commit* runs inside the same transaction once the CAS write
        has landed (used for aggregate counters owned by the caller).
        """
        source = replacement.status
        if source == target:
            return TransitionResult(replacement, source, target, changed=False)

        booking = await session.get(Booking, replacement.booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {replacement.booking_id} not found")
        plan = self.plan(replacement, booking, target, now=utcnow(), **kwargs)

        await self._write(session, replacement, plan.values)
        if plan.booking_status is not None:
            expected = None
            if plan.booking_provider_id is None:
                expected = (BookingStatus.REPLACEMENT_PENDING.value,)
            await SqlBookingStore(session).update_status(
                booking.id,
                plan.booking_status,
                provider_id=plan.booking_provider_id,
                expected_statuses=expected,
            )
        if before_commit is not None:
            await before_commit(session, replacement)
        await session.commit()
        await session.refresh(replacement)
        await session.refresh(booking)

        logger.info("Replacement %s: %s -> %s", replacement.id, source, target)
        return TransitionResult(replacement, source, target, changed=True, intents=plan.intents)

    async def record_attempt(self, session: AsyncSession, replacement: Replacement) -> Replacement:
        """Count one fruitless search attempt; status stays ``searching``."""
        if replacement.status != S.SEARCHING.value:
            raise InvalidTransitionError(replacement.status, S.SEARCHING.value)
        await self._write(session, replacement, {"search_attempts": replacement.search_attempts + 1})
        await session.commit()
        await session.refresh(replacement)
        return replacement

    async def _write(self, session: AsyncSession, replacement: Replacement, values: dict[str, Any]) -> None:
        result = await session.execute(
            update(Replacement)
            .where(Replacement.id == replacement.id, Replacement.version == replacement.version)
            .values(**values, version=replacement.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            logger.warning(
                "Stale write on replacement %s (version %s)", replacement.id, replacement.version
            )
            raise StaleReplacementError(f"Replacement {replacement.id} changed concurrently")

    # ── Retrying entry point (own unit of work) ────────────────────
    async def transition(
        self,
        replacement_id: int,
        target: str,
        *,
        allowed_sources: Collection[str] | None = None,
        **kwargs: Any,
    ) -> TransitionResult:
        """Read-plan-CAS with bounded retries.

        *allowed_sources* narrows the legal sources for this caller (the
        state machine still checks its own table).
        """
        for attempt in range(self.max_retries + 1):
            async with self.session_factory() as session:
                replacement = await load_replacement(session, replacement_id)
                if (
                    allowed_sources is not None
                    and replacement.status != target
                    and replacement.status not in allowed_sources
                ):
                    raise InvalidTransitionError(replacement.status, target)
                try:
                    return await self.apply(session, replacement, target, **kwargs)
                except StaleReplacementError:
                    logger.warning(
                        "Retrying transition of replacement %s to %s (attempt %s)",
                        replacement_id,
                        target,
                        attempt + 1,
                    )
        raise ConcurrentModificationError(
            f"Replacement {replacement_id} kept changing; gave up after {self.max_retries + 1} attempts"
        )


async def load_replacement(session: AsyncSession, replacement_id: int) -> Replacement:
    result = await session.execute(
        select(Replacement)
        .where(Replacement.id == replacement_id)
        .execution_options(populate_existing=True)
    )
    replacement = result.scalar_one_or_none()
    if replacement is None:
        raise NotFoundError(f"Replacement {replacement_id} not found")
    return replacement
