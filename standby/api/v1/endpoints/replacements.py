"""
Replacement endpoints — inspect, search, and record client/substitute
decisions.  Staff act on behalf of clients; a provider account may only
confirm or decline a replacement it is the substitute on.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from standby.api.v1.deps import (
    ensure_owner_or_staff,
    get_current_active_user,
    get_db,
    get_engine,
    get_workflow,
    require_admin,
    require_staff,
)
from standby.core.exceptions import NotFoundError, PermissionDeniedError
from standby.models.booking import Booking
from standby.models.replacement import Replacement
from standby.models.user import User
from standby.schemas.absence import BookingBrief
from standby.schemas.replacement import (
    CandidateRead,
    ReplacementDecision,
    ReplacementRead,
    SweepReportRead,
)
from standby.services.engine import ReplacementEngine
from standby.services.search import RankedCandidate
from standby.services.sweep import SweepReport
from standby.services.workflow import AbsenceWorkflow

router = APIRouter(tags=["replacements"])


async def _substitute_or_staff(workflow: AbsenceWorkflow, replacement_id: int, user: User) -> None:
    if user.is_staff:
        return
    replacement = await workflow.get_replacement(replacement_id)
    if replacement.replacement_provider_id is None:
        raise PermissionDeniedError("Replacement has no substitute yet")
    ensure_owner_or_staff(user, replacement.replacement_provider_id)


@router.get("/replacements", response_model=list[ReplacementRead])
async def list_replacements(
    absence_id: int | None = Query(default=None),
    booking_id: int | None = Query(default=None),
    status: str | None = Query(default=None),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    _staff: User = Depends(require_staff),
) -> list[Replacement]:
    stmt = select(Replacement)
    if absence_id is not None:
        stmt = stmt.where(Replacement.absence_id == absence_id)
    if booking_id is not None:
        stmt = stmt.where(Replacement.booking_id == booking_id)
    if status is not None:
        stmt = stmt.where(Replacement.status == status)
    result = await db.execute(stmt.order_by(Replacement.id.desc()).offset(skip).limit(limit))
    return list(result.scalars())


@router.get("/replacements/{replacement_id}", response_model=ReplacementRead)
async def get_replacement(
    replacement_id: int,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    _staff: User = Depends(require_staff),
) -> Replacement:
    return await workflow.get_replacement(replacement_id)


@router.post("/replacements/{replacement_id}/search", response_model=ReplacementRead)
async def run_search(
    replacement_id: int,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    _staff: User = Depends(require_staff),
) -> Replacement:
    """One search attempt; a no-op unless the replacement is pending/searching."""
    return await workflow.run_search(replacement_id)


@router.post("/replacements/{replacement_id}/accept", response_model=ReplacementRead)
async def accept_proposal(
    replacement_id: int,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    _staff: User = Depends(require_staff),
) -> Replacement:
    return await workflow.accept_proposal(replacement_id)


@router.post("/replacements/{replacement_id}/reject", response_model=ReplacementRead)
async def reject_proposal(
    replacement_id: int,
    body: ReplacementDecision,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    _staff: User = Depends(require_staff),
) -> Replacement:
    return await workflow.reject_proposal(replacement_id, body.reason)


@router.post("/replacements/{replacement_id}/confirm", response_model=ReplacementRead)
async def confirm_replacement(
    replacement_id: int,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    user: User = Depends(get_current_active_user),
) -> Replacement:
    await _substitute_or_staff(workflow, replacement_id, user)
    return await workflow.confirm_replacement(replacement_id)


@router.post("/replacements/{replacement_id}/decline", response_model=ReplacementRead)
async def decline_replacement(
    replacement_id: int,
    body: ReplacementDecision,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    user: User = Depends(get_current_active_user),
) -> Replacement:
    await _substitute_or_staff(workflow, replacement_id, user)
    return await workflow.decline_replacement(replacement_id, body.reason)


@router.post("/replacements/{replacement_id}/complete", response_model=ReplacementRead)
async def complete_replacement(
    replacement_id: int,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    _staff: User = Depends(require_staff),
) -> Replacement:
    return await workflow.complete_replacement(replacement_id)


@router.post("/replacements/{replacement_id}/cancel", response_model=ReplacementRead)
async def cancel_replacement(
    replacement_id: int,
    body: ReplacementDecision,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    _staff: User = Depends(require_staff),
) -> Replacement:
    return await workflow.cancel_replacement(replacement_id, body.reason)


@router.post("/replacements/{replacement_id}/retry", response_model=ReplacementRead, status_code=201)
async def retry_replacement(
    replacement_id: int,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    _staff: User = Depends(require_staff),
) -> Replacement:
    """Open a fresh replacement for the same booking, skipping providers already tried."""
    return await workflow.retry_replacement(replacement_id)


# ── Bookings ────────────────────────────────────────────────────────
@router.get("/bookings/{booking_id}/candidates", response_model=list[CandidateRead])
async def booking_candidates(
    booking_id: int,
    max_results: int | None = Query(default=None, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    engine: ReplacementEngine = Depends(get_engine),
    _staff: User = Depends(require_staff),
) -> list[RankedCandidate]:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found")
    return await engine.search.find_candidates(booking_id, booking.provider_id, max_results)


@router.post("/bookings/{booking_id}/release", response_model=BookingBrief)
async def release_booking(
    booking_id: int,
    body: ReplacementDecision,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    _staff: User = Depends(require_staff),
) -> Booking:
    return await workflow.release_booking(booking_id, body.reason)


# ── Sweep ───────────────────────────────────────────────────────────
@router.post("/sweep", response_model=SweepReportRead)
async def run_sweep(
    engine: ReplacementEngine = Depends(get_engine),
    _admin: User = Depends(require_admin),
) -> SweepReport:
    """Run one sweep tick now."""
    return await engine.sweeper.run_once()
