"""
Matching settings endpoints — admin-tunable engine policy.

Singleton pattern: only one row in matching_settings. GET retrieves it,
PUT updates it. If no row exists, one is created from the environment
defaults on first read. The engine re-reads the row on every operation.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from standby.api.v1.deps import get_db, require_admin
from standby.models.matching_settings import MatchingSettings
from standby.models.user import User
from standby.schemas.settings import MatchingSettingsRead, MatchingSettingsUpdate
from standby.services.policy import get_or_create_matching_settings

router = APIRouter(tags=["settings"])
logger = logging.getLogger(__name__)


@router.get("/settings", response_model=MatchingSettingsRead)
async def get_settings(
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> MatchingSettings:
    """Current attempt cap, timeouts, sweep cadence and scoring weights."""
    return await get_or_create_matching_settings(db)


@router.put("/settings", response_model=MatchingSettingsRead)
async def update_settings(
    body: MatchingSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> MatchingSettings:
    row = await get_or_create_matching_settings(db)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)

    for field, value in changes.items():
        setattr(row, field, value)

    await db.commit()
    await db.refresh(row)
    logger.info("Matching settings updated: %s", changes)
    return row
