"""
ReplacementSweeper — periodic background pass over in-flight replacements.

One ``run_once`` tick:

1. cancel replacements still open under a cancelled/rejected absence;
2. activate approved absences whose window has opened;
3. expire unanswered proposals (``rejected`` / ``proposal_timeout``) and
   re-search each booking with the expired candidate excluded;
4. run one search attempt on every ``pending`` / ``searching`` replacement;
5. complete confirmed replacements whose booking has been completed.

A failure on one row is logged and the tick moves on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from standby.core.clock import utcnow
from standby.core.config import settings
from standby.core.exceptions import StandbyError
from standby.models.absence import Absence, AbsenceStatus
from standby.models.booking import Booking, BookingStatus
from standby.models.replacement import (
    OPEN_STATUSES,
    Replacement,
    ReplacementStatus,
)
from standby.services.policy import load_policy
from standby.services.workflow import AbsenceWorkflow

logger = logging.getLogger(__name__)

S = ReplacementStatus

PROPOSAL_TIMEOUT_REASON = "proposal_timeout"


@dataclass
class SweepReport:
    orphans_cancelled: int = 0
    activated: int = 0
    expired: int = 0
    searched: int = 0
    proposed: int = 0
    completed: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


class ReplacementSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        workflow: AbsenceWorkflow,
    ) -> None:
        self.session_factory = session_factory
        self.workflow = workflow

    @property
    def search(self):
        return self.workflow.search

    @property
    def state_machine(self):
        return self.workflow.state_machine

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        await self._cancel_orphans(report)
        await self._activate_absences(now, report)
        await self._expire_proposals(now, report)
        await self._search_open(report)
        await self._complete_finished(report)

        logger.info("Sweep finished: %s", report.as_dict())
        return report

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Tick until *stop_event* is set.  The interval is re-read from the
        matching settings before every wait."""
        logger.info("Replacement sweep started")
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Sweep tick failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=await self._interval())
            except asyncio.TimeoutError:
                pass
        logger.info("Replacement sweep stopped")

    async def _interval(self) -> float:
        try:
            async with self.session_factory() as session:
                return (await load_policy(session)).sweep_interval_seconds
        except Exception:
            logger.exception("Reading the sweep interval failed, using %ss", settings.SWEEP_INTERVAL_SECONDS)
            return settings.SWEEP_INTERVAL_SECONDS

    # ── Steps ───────────────────────────────────────────────────────
    async def _cancel_orphans(self, report: SweepReport) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Replacement.absence_id)
                .join(Absence, Absence.id == Replacement.absence_id)
                .where(
                    Replacement.status.in_(OPEN_STATUSES),
                    Absence.status.in_((AbsenceStatus.CANCELLED.value, AbsenceStatus.REJECTED.value)),
                )
                .distinct()
            )
            absence_ids = list(result.scalars())

        for absence_id in absence_ids:
            try:
                report.orphans_cancelled += await self.workflow.cancel_open_replacements(absence_id)
            except StandbyError as exc:
                report.errors += 1
                logger.warning("Sweep: cancelling leftovers of absence %s failed: %s", absence_id, exc.detail)

    async def _activate_absences(self, now: datetime, report: SweepReport) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Absence.id).where(
                    Absence.status == AbsenceStatus.APPROVED.value,
                    Absence.start_date <= now.date(),
                )
            )
            absence_ids = list(result.scalars())

        for absence_id in absence_ids:
            try:
                await self.workflow.activate(absence_id)
                report.activated += 1
            except StandbyError as exc:
                report.errors += 1
                logger.warning("Sweep: activating absence %s failed: %s", absence_id, exc.detail)

    async def _expire_proposals(self, now: datetime, report: SweepReport) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Replacement.id)
                .where(
                    Replacement.status == S.PROPOSED.value,
                    Replacement.proposal_expires_at.is_not(None),
                    Replacement.proposal_expires_at <= now,
                )
                .order_by(Replacement.id)
            )
            expired_ids = list(result.scalars())

        for replacement_id in expired_ids:
            try:
                outcome = await self.state_machine.transition(
                    replacement_id,
                    S.REJECTED.value,
                    allowed_sources=(S.PROPOSED.value,),
                    reason=PROPOSAL_TIMEOUT_REASON,
                )
                self.search.publisher.publish(outcome.intents)
                if not outcome.changed:
                    continue
                report.expired += 1
                logger.info("Sweep: proposal on replacement %s timed out", replacement_id)
                await self.workflow.retry_replacement(replacement_id)
            except StandbyError as exc:
                report.errors += 1
                logger.warning("Sweep: expiring replacement %s failed: %s", replacement_id, exc.detail)

    async def _search_open(self, report: SweepReport) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Replacement.id)
                .where(Replacement.status.in_((S.PENDING.value, S.SEARCHING.value)))
                .order_by(Replacement.id)
            )
            open_ids = list(result.scalars())

        for replacement_id in open_ids:
            try:
                outcome = await self.search.attempt_assignment(replacement_id)
            except StandbyError as exc:
                report.errors += 1
                logger.warning("Sweep: search on replacement %s failed: %s", replacement_id, exc.detail)
                continue
            report.searched += 1
            if outcome.target == S.PROPOSED.value and outcome.changed:
                report.proposed += 1

    async def _complete_finished(self, report: SweepReport) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Replacement.id)
                .join(Booking, Booking.id == Replacement.booking_id)
                .where(
                    Replacement.status == S.CONFIRMED.value,
                    Booking.status == BookingStatus.COMPLETED.value,
                )
                .order_by(Replacement.id)
            )
            done_ids = list(result.scalars())

        for replacement_id in done_ids:
            try:
                await self.workflow.complete_replacement(replacement_id)
                report.completed += 1
            except StandbyError as exc:
                report.errors += 1
                logger.warning("Sweep: completing replacement %s failed: %s", replacement_id, exc.detail)
