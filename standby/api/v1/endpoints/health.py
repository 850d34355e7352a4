"""
Health endpoint — database connectivity and sweep task state.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from standby.api.v1.deps import get_db
from standby.schemas.common import HealthResponse

router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """Public health check."""
    result = HealthResponse(db=False, sweep=False)

    try:
        await db.execute(select(1))
        result.db = True
    except SQLAlchemyError as e:
        logger.error("Health check DB failure: %s", e)

    task = getattr(request.app.state, "sweep_task", None)
    result.sweep = task is not None and not task.done()
    return result
