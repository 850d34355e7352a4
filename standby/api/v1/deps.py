"""
FastAPI dependencies — database session, replacement engine and auth guards.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Optional

from fastapi import Cookie, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from standby.core.exceptions import PermissionDeniedError
from standby.core.security import decode_token
from standby.db.session import async_session_factory
from standby.models.user import User
from standby.services.engine import ReplacementEngine
from standby.services.workflow import AbsenceWorkflow

# auto_error=False so the HttpOnly cookie can stand in for the header
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


# ── Database session ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        yield session


# ── Replacement engine ──────────────────────────────────────────────
def get_engine(request: Request) -> ReplacementEngine:
    return request.app.state.engine


def get_workflow(engine: ReplacementEngine = Depends(get_engine)) -> AbsenceWorkflow:
    return engine.workflow


# ── Auth dependencies ───────────────────────────────────────────────
async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    access_token: Optional[str] = Cookie(default=None),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Decode JWT from header or cookie (header wins), look up user."""
    final_token = token
    if not final_token and access_token:
        final_token = access_token.removeprefix("Bearer ")

    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not final_token:
        raise credentials_exc

    payload = decode_token(final_token)
    if payload is None or payload.get("sub") is None:
        raise credentials_exc

    result = await db.execute(select(User).where(User.id == int(payload["sub"])))
    user = result.scalar_one_or_none()
    if user is None:
        raise credentials_exc
    return user


async def get_current_active_user(
    current_user: User = Depends(get_current_user),
) -> User:
    """Reject inactive accounts."""
    if not current_user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user account")
    return current_user


async def require_admin(
    current_user: User = Depends(get_current_active_user),
) -> User:
    """Only allow admin role to proceed."""
    if current_user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return current_user


async def require_staff(
    current_user: User = Depends(get_current_active_user),
) -> User:
    """Admins and managers: approvers and replacement operators."""
    if not current_user.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff privileges required",
        )
    return current_user


def acting_provider_id(user: User, requested: int | None) -> int:
    """Provider an absence request is made for.

    Provider accounts always act for their own provider; staff must name one.
    """
    if user.is_staff:
        if requested is None:
            raise HTTPException(status_code=422, detail="provider_id is required")
        return requested
    if user.role == "provider" and user.provider_id is not None:
        if requested is not None and requested != user.provider_id:
            raise PermissionDeniedError("Providers can only act on their own absences")
        return user.provider_id
    raise PermissionDeniedError("Not allowed to manage absences")


def ensure_owner_or_staff(user: User, provider_id: int) -> None:
    if user.is_staff:
        return
    if user.role == "provider" and user.provider_id == provider_id:
        return
    raise PermissionDeniedError("Not allowed to act on this provider's records")
