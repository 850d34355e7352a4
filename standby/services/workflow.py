"""
AbsenceWorkflow — top-level orchestrator of the replacement engine.

Owns the Absence aggregate (status and counters) and routes every
replacement decision through the state machine.  Absence status changes
are status-precondition updates (``UPDATE ... WHERE status = :expected``),
so two approvers racing on the same absence cannot both win.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from standby.core.clock import utcnow
from standby.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    StateError,
    ValidationError,
)
from standby.models.absence import (
    CANCELLABLE_STATUSES,
    Absence,
    AbsenceStatus,
    AbsenceType,
)
from standby.models.booking import AFFECTABLE_STATUSES, Booking, BookingStatus
from standby.models.provider import Provider
from standby.models.replacement import (
    NO_CANDIDATE_REASON,
    OPEN_STATUSES,
    Replacement,
    ReplacementPriority,
    ReplacementStatus,
    ReplacementType,
)
from standby.services.search import DirectoryFactory, KeyedLocks, ReplacementSearch
from standby.services.state_machine import (
    ReplacementStateMachine,
    TransitionResult,
    load_replacement,
)
from standby.services.stores import SqlBookingStore, SqlProviderDirectory

logger = logging.getLogger(__name__)

S = ReplacementStatus
A = AbsenceStatus

ABSENCE_CANCELLED_REASON = "absence_cancelled"
DESCRIPTION_MAX_LENGTH = 500

# Outcomes a manual re-search may start from.
_RETRYABLE = (S.REJECTED.value, S.DECLINED.value)


@dataclass
class ConflictPreview:
    affected_bookings: list[Booking] = field(default_factory=list)
    overlapping_absences: list[Absence] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.affected_bookings or self.overlapping_absences)


@dataclass
class AbsenceDetail:
    absence: Absence
    replacements: list[Replacement] = field(default_factory=list)
    affected_bookings: list[Booking] = field(default_factory=list)


def _validate_window(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise ValidationError("End date must be on or after the start date")


def _validate_type(value: str) -> str:
    try:
        return AbsenceType(value).value
    except ValueError:
        allowed = ", ".join(t.value for t in AbsenceType)
        raise ValidationError(f"Absence type must be one of: {allowed}") from None


def _validate_description(value: str | None) -> str | None:
    if value is not None and len(value) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(f"Description must not exceed {DESCRIPTION_MAX_LENGTH} characters")
    return value


class AbsenceWorkflow:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: ReplacementStateMachine,
        search: ReplacementSearch,
        directory_factory: DirectoryFactory = SqlProviderDirectory,
        search_on_approval: bool = True,
        today: Callable[[], date] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.search = search
        self.directory_factory = directory_factory
        self.search_on_approval = search_on_approval
        # Overlap check and insert run one at a time per provider in this process.
        self._provider_locks = KeyedLocks()
        self._today = today or (lambda: utcnow().date())

    @property
    def publisher(self):
        return self.search.publisher

    # ── Absence lifecycle ───────────────────────────────────────────
    async def declare_absence(
        self,
        provider_id: int,
        start_date: date,
        end_date: date,
        type: str,
        reason: str | None = None,
        description: str | None = None,
    ) -> Absence:
        """Record a ``pending`` absence.  Affected bookings are computed at
        approval time, not here."""
        _validate_window(start_date, end_date)
        absence_type = _validate_type(type)
        description = _validate_description(description)

        async with self._provider_locks.for_key(provider_id), self.session_factory() as session:
            await self._lock_provider(session, provider_id)
            await self._ensure_no_overlap(session, provider_id, start_date, end_date)

            absence = Absence(
                provider_id=provider_id,
                start_date=start_date,
                end_date=end_date,
                type=absence_type,
                reason=reason,
                description=description,
                status=A.PENDING.value,
                requires_replacement=False,
                affected_bookings_count=0,
                replacements_found_count=0,
            )
            session.add(absence)
            await session.commit()
            await session.refresh(absence)

        logger.info(
            "Absence %s declared for provider %s (%s .. %s, %s)",
            absence.id,
            provider_id,
            start_date,
            end_date,
            absence_type,
        )
        return absence

    async def update_absence(
        self,
        absence_id: int,
        *,
        start_date: date | None = None,
        end_date: date | None = None,
        type: str | None = None,
        reason: str | None = None,
        description: str | None = None,
    ) -> Absence:
        """Edit a still-``pending`` absence; same checks as declaration."""
        async with self.session_factory() as session:
            absence = await self._get_absence(session, absence_id)
            if absence.status != A.PENDING.value:
                raise StateError(f"Only pending absences can be edited (status is '{absence.status}')")

            new_start = start_date or absence.start_date
            new_end = end_date or absence.end_date
            _validate_window(new_start, new_end)
            values: dict[str, Any] = {"start_date": new_start, "end_date": new_end}
            if type is not None:
                values["type"] = _validate_type(type)
            if reason is not None:
                values["reason"] = reason
            if description is not None:
                values["description"] = _validate_description(description)

            async with self._provider_locks.for_key(absence.provider_id):
                await self._lock_provider(session, absence.provider_id)
                await self._ensure_no_overlap(
                    session, absence.provider_id, new_start, new_end, ignore_id=absence.id
                )
                await self._cas_absence(session, absence, (A.PENDING.value,), values)
                await session.commit()
            await session.refresh(absence)

        logger.info("Absence %s updated: %s", absence_id, sorted(values))
        return absence

    async def approve(self, absence_id: int, approver_id: int) -> Absence:
        """Approve a ``pending`` absence, open one replacement per affected
        booking and (optionally) run the first search attempt for each."""
        now = utcnow()
        async with self.session_factory() as session:
            absence = await self._get_absence(session, absence_id)
            if absence.status != A.PENDING.value:
                raise StateError(f"Cannot approve an absence in status '{absence.status}'")

            affected = await SqlBookingStore(session).find_in_window(
                absence.provider_id, absence.start_date, absence.end_date, AFFECTABLE_STATUSES
            )
            opened: list[int] = []
            for booking in affected:
                logger.info("Absence %s affects booking %s", absence.id, booking.id)
                try:
                    replacement = await self.state_machine.open(
                        session,
                        booking,
                        reason=absence.reason or absence.type,
                        absence_id=absence.id,
                        type=ReplacementType.ABSENCE.value,
                        priority=ReplacementPriority.NORMAL.value,
                    )
                except ConflictError as exc:
                    logger.warning("Absence %s: booking %s skipped: %s", absence.id, booking.id, exc.detail)
                    continue
                opened.append(replacement.id)

            if len(opened) != len(affected):
                logger.warning(
                    "Absence %s: %s of %s affected booking(s) already taken by another replacement",
                    absence.id,
                    len(affected) - len(opened),
                    len(affected),
                )
            values: dict[str, Any] = {
                "status": A.APPROVED.value,
                "approved_by": approver_id,
                "approved_at": now,
                "requires_replacement": len(opened) > 0,
                "affected_bookings_count": len(opened),
            }
            if absence.start_date <= self._today():
                values.update(status=A.ACTIVE.value, activated_at=now)
            await self._cas_absence(session, absence, (A.PENDING.value,), values)
            await session.commit()
            await session.refresh(absence)

        logger.info(
            "Absence %s approved by %s: %s affected booking(s), %s replacement(s) opened",
            absence.id,
            approver_id,
            len(affected),
            len(opened),
        )
        if self.search_on_approval:
            for replacement_id in opened:
                await self._search_quietly(replacement_id)
        return absence

    async def reject(self, absence_id: int, approver_id: int, reason: str | None = None) -> Absence:
        async with self.session_factory() as session:
            absence = await self._get_absence(session, absence_id)
            if absence.status != A.PENDING.value:
                raise StateError(f"Cannot reject an absence in status '{absence.status}'")
            await self._cas_absence(
                session,
                absence,
                (A.PENDING.value,),
                {
                    "status": A.REJECTED.value,
                    "approved_by": approver_id,
                    "rejected_at": utcnow(),
                    "rejection_reason": reason,
                },
            )
            await session.commit()
            await session.refresh(absence)

        logger.info("Absence %s rejected by %s", absence_id, approver_id)
        return absence

    async def activate(self, absence_id: int) -> Absence:
        """``approved`` → ``active`` once the window has opened."""
        async with self.session_factory() as session:
            absence = await self._get_absence(session, absence_id)
            if absence.status == A.ACTIVE.value:
                return absence
            if absence.status != A.APPROVED.value:
                raise StateError(f"Cannot activate an absence in status '{absence.status}'")
            if absence.start_date > self._today():
                raise StateError(f"Absence {absence_id} starts on {absence.start_date}")
            await self._cas_absence(
                session,
                absence,
                (A.APPROVED.value,),
                {"status": A.ACTIVE.value, "activated_at": utcnow()},
            )
            await session.commit()
            await session.refresh(absence)

        logger.info("Absence %s is now active", absence_id)
        return absence

    async def cancel(self, absence_id: int, reason: str | None = None) -> Absence:
        """Cancel the absence, then cancel every replacement it still has in
        flight.  In-flight searches lose their CAS write and drop their
        result."""
        async with self.session_factory() as session:
            absence = await self._get_absence(session, absence_id)
            if absence.status not in CANCELLABLE_STATUSES:
                raise StateError(f"Cannot cancel an absence in status '{absence.status}'")
            await self._cas_absence(
                session,
                absence,
                CANCELLABLE_STATUSES,
                {
                    "status": A.CANCELLED.value,
                    "cancelled_at": utcnow(),
                    "cancellation_reason": reason,
                },
            )
            await session.commit()
            await session.refresh(absence)

        cancelled = await self.cancel_open_replacements(absence_id)
        logger.info("Absence %s cancelled; %s replacement(s) cancelled", absence_id, cancelled)
        return absence

    async def cancel_open_replacements(self, absence_id: int) -> int:
        """Cancel every non-terminal replacement owned by *absence_id*."""
        cancelled = 0
        while True:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Replacement.id).where(
                        Replacement.absence_id == absence_id,
                        Replacement.status.in_(OPEN_STATUSES),
                    )
                )
                open_ids = list(result.scalars())
            if not open_ids:
                return cancelled
            for replacement_id in open_ids:
                try:
                    outcome = await self.state_machine.transition(
                        replacement_id,
                        S.CANCELLED.value,
                        allowed_sources=OPEN_STATUSES,
                        reason=ABSENCE_CANCELLED_REASON,
                    )
                except InvalidTransitionError:
                    # Settled on its own meanwhile (e.g. confirmed).
                    continue
                if outcome.changed:
                    cancelled += 1
                    self.publisher.publish(outcome.intents)

    async def preview_conflicts(self, provider_id: int, start_date: date, end_date: date) -> ConflictPreview:
        """What declaring this window would touch; writes nothing."""
        _validate_window(start_date, end_date)
        async with self.session_factory() as session:
            bookings = await SqlBookingStore(session).find_in_window(
                provider_id, start_date, end_date, AFFECTABLE_STATUSES
            )
            absences = await self._overlapping(session, provider_id, start_date, end_date)
        return ConflictPreview(affected_bookings=bookings, overlapping_absences=absences)

    async def get_absence_detail(self, absence_id: int) -> AbsenceDetail:
        async with self.session_factory() as session:
            absence = await self._get_absence(session, absence_id)
            result = await session.execute(
                select(Replacement)
                .where(Replacement.absence_id == absence_id)
                .order_by(Replacement.id)
            )
            detail = AbsenceDetail(absence=absence, replacements=list(result.scalars()))
            if absence.status == A.PENDING.value:
                detail.affected_bookings = await SqlBookingStore(session).find_in_window(
                    absence.provider_id, absence.start_date, absence.end_date, AFFECTABLE_STATUSES
                )
        return detail

    # ── Replacement decisions ───────────────────────────────────────
    async def get_replacement(self, replacement_id: int) -> Replacement:
        async with self.session_factory() as session:
            return await load_replacement(session, replacement_id)

    async def run_search(self, replacement_id: int) -> Replacement:
        return (await self.search.attempt_assignment(replacement_id)).replacement

    async def accept_proposal(self, replacement_id: int) -> Replacement:
        """The client accepts the proposed substitute."""
        return await self._decide(replacement_id, S.ACCEPTED.value, (S.PROPOSED.value,))

    async def reject_proposal(self, replacement_id: int, reason: str | None = None) -> Replacement:
        """The client turns the proposed substitute down."""
        return await self._decide(replacement_id, S.REJECTED.value, (S.PROPOSED.value,), reason=reason)

    async def decline_replacement(self, replacement_id: int, reason: str | None = None) -> Replacement:
        """The substitute backs out after the client accepted.  No automatic
        retry follows; see :meth:`retry_replacement`."""
        return await self._decide(replacement_id, S.DECLINED.value, (S.ACCEPTED.value,), reason=reason)

    async def complete_replacement(self, replacement_id: int) -> Replacement:
        return await self._decide(replacement_id, S.COMPLETED.value, (S.CONFIRMED.value,))

    async def cancel_replacement(self, replacement_id: int, reason: str | None = None) -> Replacement:
        """Operator cancellation of a single replacement."""
        return await self._decide(
            replacement_id,
            S.CANCELLED.value,
            OPEN_STATUSES + (S.CONFIRMED.value,),
            reason=reason,
        )

    async def confirm_replacement(self, replacement_id: int) -> Replacement:
        """The substitute confirms.  Availability is re-checked now; when the
        substitute was booked elsewhere meanwhile the replacement goes back
        to ``searching`` (candidate excluded) and a new attempt runs."""
        outcome = await self._confirm(replacement_id)
        self.publisher.publish(outcome.intents)
        if outcome.target == S.SEARCHING.value and outcome.changed:
            logger.info("Replacement %s: substitute no longer free, searching again", replacement_id)
            return (await self.search.attempt_assignment(replacement_id)).replacement
        return outcome.replacement

    async def _confirm(self, replacement_id: int) -> TransitionResult:
        for _ in range(self.state_machine.max_retries + 1):
            async with self.session_factory() as session:
                replacement = await load_replacement(session, replacement_id)
                if replacement.status == S.CONFIRMED.value:
                    return TransitionResult(replacement, replacement.status, replacement.status, changed=False)
                if replacement.status != S.ACCEPTED.value:
                    raise InvalidTransitionError(replacement.status, S.CONFIRMED.value)

                booking = await session.get(Booking, replacement.booking_id)
                directory = self.directory_factory(session)
                free = await directory.is_available(
                    replacement.replacement_provider_id,
                    booking.scheduled_at,
                    booking.duration,
                    ignore_booking_id=booking.id,
                )
                try:
                    if not free:
                        return await self.state_machine.apply(session, replacement, S.SEARCHING.value)
                    return await self.state_machine.apply(
                        session,
                        replacement,
                        S.CONFIRMED.value,
                        before_commit=self._count_replacement_found,
                    )
                except ConflictError:
                    continue
        raise ConcurrentModificationError(
            f"Replacement {replacement_id} kept changing during confirmation"
        )

    async def _count_replacement_found(self, session: AsyncSession, replacement: Replacement) -> None:
        if replacement.absence_id is None:
            return
        await session.execute(
            update(Absence)
            .where(
                Absence.id == replacement.absence_id,
                Absence.replacements_found_count < Absence.affected_bookings_count,
            )
            .values(replacements_found_count=Absence.replacements_found_count + 1)
            .execution_options(synchronize_session=False)
        )

    async def retry_replacement(self, replacement_id: int) -> Replacement:
        """Open a fresh replacement for the same booking after a rejection,
        a decline, or a ``no_candidate`` give-up, excluding every provider
        already tried for that booking, and run one search attempt."""
        async with self.session_factory() as session:
            booking_id = (await load_replacement(session, replacement_id)).booking_id

        async with self.search.locks.for_key(booking_id):
            async with self.session_factory() as session:
                previous = await load_replacement(session, replacement_id)
                retryable = previous.status in _RETRYABLE or (
                    previous.status == S.CANCELLED.value and previous.cancel_reason == NO_CANDIDATE_REASON
                )
                if not retryable:
                    raise StateError(
                        f"Replacement {replacement_id} cannot be retried from status '{previous.status}'"
                    )
                if previous.absence_id is not None:
                    absence = await self._get_absence(session, previous.absence_id)
                    if absence.status not in (A.APPROVED.value, A.ACTIVE.value):
                        raise StateError(f"Absence {absence.id} is '{absence.status}'")

                booking = await session.get(Booking, booking_id)
                excluded = await self._tried_providers(session, booking_id)
                fresh = await self.state_machine.open(
                    session,
                    booking,
                    reason=previous.reason,
                    absence_id=previous.absence_id,
                    type=previous.type,
                    priority=previous.priority,
                    excluded_provider_ids=excluded,
                )
                await session.commit()
                fresh_id = fresh.id

        logger.info("Replacement %s retried as %s (excluding %s)", replacement_id, fresh_id, excluded)
        return (await self.search.attempt_assignment(fresh_id)).replacement

    async def release_booking(self, booking_id: int, reason: str | None = None) -> Booking:
        """Operator gives up on a booking left without a substitute."""
        async with self.session_factory() as session:
            booking = await session.get(Booking, booking_id)
            if booking is None:
                raise NotFoundError(f"Booking {booking_id} not found")
            result = await session.execute(
                select(Replacement.status).where(Replacement.booking_id == booking_id)
            )
            statuses = set(result.scalars())
            if not statuses:
                raise StateError(f"Booking {booking_id} never needed a replacement")
            if statuses & set(OPEN_STATUSES):
                raise ConflictError(f"Booking {booking_id} still has a replacement in flight")
            if statuses & {S.CONFIRMED.value, S.COMPLETED.value}:
                raise StateError(f"Booking {booking_id} already has a substitute")

            released = await SqlBookingStore(session).update_status(
                booking_id, BookingStatus.CANCELLED.value, expected_statuses=AFFECTABLE_STATUSES
            )
            if not released:
                raise StateError(f"Booking {booking_id} cannot be cancelled from '{booking.status}'")
            await session.commit()
            await session.refresh(booking)

        logger.info("Booking %s released without substitute (%s)", booking_id, reason)
        return booking

    # ── Helpers ─────────────────────────────────────────────────────
    async def _decide(
        self,
        replacement_id: int,
        target: str,
        allowed_sources: Collection[str],
        **kwargs: Any,
    ) -> Replacement:
        outcome = await self.state_machine.transition(
            replacement_id, target, allowed_sources=allowed_sources, **kwargs
        )
        self.publisher.publish(outcome.intents)
        return outcome.replacement

    async def _search_quietly(self, replacement_id: int) -> None:
        try:
            await self.search.attempt_assignment(replacement_id)
        except ConflictError as exc:
            # The sweep picks it up on its next pass.
            logger.warning("Initial search for replacement %s deferred: %s", replacement_id, exc.detail)

    async def _tried_providers(self, session: AsyncSession, booking_id: int) -> list[int]:
        result = await session.execute(
            select(Replacement.replacement_provider_id, Replacement.excluded_provider_ids).where(
                Replacement.booking_id == booking_id
            )
        )
        tried: set[int] = set()
        for provider_id, excluded in result.all():
            if provider_id is not None:
                tried.add(provider_id)
            tried.update(excluded or [])
        return sorted(tried)

    async def _get_absence(self, session: AsyncSession, absence_id: int) -> Absence:
        result = await session.execute(
            select(Absence).where(Absence.id == absence_id).execution_options(populate_existing=True)
        )
        absence = result.scalar_one_or_none()
        if absence is None:
            raise NotFoundError(f"Absence {absence_id} not found")
        return absence

    async def _overlapping(
        self,
        session: AsyncSession,
        provider_id: int,
        start_date: date,
        end_date: date,
        ignore_id: int | None = None,
    ) -> list[Absence]:
        stmt = select(Absence).where(
            Absence.provider_id == provider_id,
            Absence.status.not_in((A.CANCELLED.value, A.REJECTED.value)),
            Absence.start_date <= end_date,
            Absence.end_date >= start_date,
        )
        if ignore_id is not None:
            stmt = stmt.where(Absence.id != ignore_id)
        return list((await session.execute(stmt.order_by(Absence.start_date))).scalars())

    async def _lock_provider(self, session: AsyncSession, provider_id: int) -> Provider:
        """Row-lock the provider so concurrent declarations for it queue up
        on the database as well."""
        result = await session.execute(
            select(Provider).where(Provider.id == provider_id).with_for_update()
        )
        provider = result.scalar_one_or_none()
        if provider is None:
            raise NotFoundError(f"Provider {provider_id} not found")
        return provider

    async def _ensure_no_overlap(
        self,
        session: AsyncSession,
        provider_id: int,
        start_date: date,
        end_date: date,
        ignore_id: int | None = None,
    ) -> None:
        clashes = await self._overlapping(session, provider_id, start_date, end_date, ignore_id)
        if clashes:
            raise ConflictError(
                f"Absence overlaps existing absence {clashes[0].id} "
                f"({clashes[0].start_date} .. {clashes[0].end_date})"
            )

    async def _cas_absence(
        self,
        session: AsyncSession,
        absence: Absence,
        expected: Collection[str],
        values: dict[str, Any],
    ) -> None:
        result = await session.execute(
            update(Absence)
            .where(Absence.id == absence.id, Absence.status.in_(tuple(expected)))
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            raise StateError(f"Absence {absence.id} changed status concurrently")
