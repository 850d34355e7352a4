"""
Absence endpoints — declare, edit, preview, approve/reject, activate, cancel.

Every mutating route is a single call into :class:`AbsenceWorkflow`.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from standby.api.v1.deps import (
    acting_provider_id,
    ensure_owner_or_staff,
    get_current_active_user,
    get_db,
    get_workflow,
    require_staff,
)
from standby.core.exceptions import NotFoundError
from standby.models.absence import Absence
from standby.models.user import User
from standby.schemas.absence import (
    AbsenceCreate,
    AbsenceDecision,
    AbsenceDetailRead,
    AbsencePreviewRequest,
    AbsenceRead,
    AbsenceUpdate,
    ConflictPreviewRead,
)
from standby.services.workflow import AbsenceDetail, AbsenceWorkflow, ConflictPreview

router = APIRouter(prefix="/absences", tags=["absences"])


async def _owned_absence(db: AsyncSession, absence_id: int, user: User) -> Absence:
    absence = await db.get(Absence, absence_id)
    if absence is None:
        raise NotFoundError(f"Absence {absence_id} not found")
    ensure_owner_or_staff(user, absence.provider_id)
    return absence


@router.get("", response_model=list[AbsenceRead])
async def list_absences(
    provider_id: int | None = Query(default=None),
    status: str | None = Query(default=None),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_active_user),
) -> list[Absence]:
    """Staff see every absence; providers only their own."""
    stmt = select(Absence)
    if not user.is_staff:
        provider_id = acting_provider_id(user, provider_id)
    if provider_id is not None:
        stmt = stmt.where(Absence.provider_id == provider_id)
    if status is not None:
        stmt = stmt.where(Absence.status == status)
    result = await db.execute(
        stmt.order_by(Absence.start_date.desc(), Absence.id.desc()).offset(skip).limit(limit)
    )
    return list(result.scalars())


@router.post("", response_model=AbsenceRead, status_code=201)
async def declare_absence(
    body: AbsenceCreate,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    user: User = Depends(get_current_active_user),
) -> Absence:
    return await workflow.declare_absence(
        acting_provider_id(user, body.provider_id),
        body.start_date,
        body.end_date,
        body.type,
        reason=body.reason,
        description=body.description,
    )


@router.post("/preview", response_model=ConflictPreviewRead)
async def preview_conflicts(
    body: AbsencePreviewRequest,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    user: User = Depends(get_current_active_user),
) -> ConflictPreview:
    """Bookings and absences a window would collide with; writes nothing."""
    return await workflow.preview_conflicts(
        acting_provider_id(user, body.provider_id), body.start_date, body.end_date
    )


@router.get("/{absence_id}", response_model=AbsenceDetailRead)
async def get_absence(
    absence_id: int,
    db: AsyncSession = Depends(get_db),
    workflow: AbsenceWorkflow = Depends(get_workflow),
    user: User = Depends(get_current_active_user),
) -> AbsenceDetail:
    await _owned_absence(db, absence_id, user)
    return await workflow.get_absence_detail(absence_id)


@router.patch("/{absence_id}", response_model=AbsenceRead)
async def update_absence(
    absence_id: int,
    body: AbsenceUpdate,
    db: AsyncSession = Depends(get_db),
    workflow: AbsenceWorkflow = Depends(get_workflow),
    user: User = Depends(get_current_active_user),
) -> Absence:
    await _owned_absence(db, absence_id, user)
    return await workflow.update_absence(absence_id, **body.model_dump(exclude_unset=True))


@router.post("/{absence_id}/approve", response_model=AbsenceRead)
async def approve_absence(
    absence_id: int,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    staff: User = Depends(require_staff),
) -> Absence:
    return await workflow.approve(absence_id, staff.id)


@router.post("/{absence_id}/reject", response_model=AbsenceRead)
async def reject_absence(
    absence_id: int,
    body: AbsenceDecision,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    staff: User = Depends(require_staff),
) -> Absence:
    return await workflow.reject(absence_id, staff.id, body.reason)


@router.post("/{absence_id}/activate", response_model=AbsenceRead)
async def activate_absence(
    absence_id: int,
    workflow: AbsenceWorkflow = Depends(get_workflow),
    _staff: User = Depends(require_staff),
) -> Absence:
    return await workflow.activate(absence_id)


@router.post("/{absence_id}/cancel", response_model=AbsenceRead)
async def cancel_absence(
    absence_id: int,
    body: AbsenceDecision,
    db: AsyncSession = Depends(get_db),
    workflow: AbsenceWorkflow = Depends(get_workflow),
    user: User = Depends(get_current_active_user),
) -> Absence:
    await _owned_absence(db, absence_id, user)
    return await workflow.cancel(absence_id, body.reason)
