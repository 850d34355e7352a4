"""
Domain error taxonomy + global exception handlers.

The core raises the typed errors below; the handlers translate them to
JSON responses and prevent stack-trace leakage to clients.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)


# ── Domain errors ───────────────────────────────────────────────────
class StandbyError(Exception):
    """Base class for every error the replacement engine raises."""

    status_code = 400
    code = "STANDBY_ERROR"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(StandbyError):
    """Bad input, rejected before any write."""

    status_code = 422
    code = "VALIDATION_ERROR"


class NotFoundError(StandbyError):
    status_code = 404
    code = "NOT_FOUND"


class PermissionDeniedError(StandbyError):
    status_code = 403
    code = "PERMISSION_DENIED"


class ConflictError(StandbyError):
    """Overlapping absence window, or a competing writer."""

    status_code = 409
    code = "CONFLICT"


class ConcurrentModificationError(ConflictError):
    """CAS write kept losing after the bounded number of retries."""

    code = "CONCURRENT_MODIFICATION"


class StateError(StandbyError):
    """Operation is not valid for the aggregate's current status."""

    status_code = 409
    code = "INVALID_STATE"


class InvalidTransitionError(StateError):
    """The replacement state machine refused a transition."""

    code = "INVALID_TRANSITION"

    def __init__(self, source: str, target: str) -> None:
        super().__init__(f"Cannot move replacement from '{source}' to '{target}'")
        self.source = source
        self.target = target


# ── Handlers ────────────────────────────────────────────────────────
async def _standby_error_handler(_request: Request, exc: StandbyError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code, "success": False},
    )


async def _http_exception_handler(_request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "success": False},
        headers=getattr(exc, "headers", None),
    )


async def _integrity_error_handler(_request: Request, exc: IntegrityError) -> JSONResponse:
    logger.error("Database integrity error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=409,
        content={"detail": "Database constraint violation", "success": False},
    )


async def _sqlalchemy_error_handler(_request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Database error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal database error", "success": False},
    )


async def _generic_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "success": False},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI app."""
    app.add_exception_handler(StandbyError, _standby_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(IntegrityError, _integrity_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _sqlalchemy_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _generic_exception_handler)
