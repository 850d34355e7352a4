"""
Standby — application entry point.

This is the **only** file that assembles the app.  The replacement engine
lives in ``services/``; the routers under ``api/`` only delegate to it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import select

from standby.api.v1.api import api_router
from standby.api.v1.endpoints.auth import limiter
from standby.core.config import settings
from standby.core.exceptions import register_exception_handlers
from standby.core.security import get_password_hash
from standby.db.base import Base
from standby.db.session import async_session_factory
from standby.db.session import engine as db_engine

# Ensure all models are imported so metadata.create_all can see them
from standby.models.absence import Absence  # noqa: F401
from standby.models.booking import Booking  # noqa: F401
from standby.models.matching_settings import MatchingSettings  # noqa: F401
from standby.models.provider import Provider, ProviderCategory  # noqa: F401
from standby.models.replacement import Replacement  # noqa: F401
from standby.models.user import User
from standby.services.engine import build_engine

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


async def _seed_admin() -> None:
    async with async_session_factory() as session:
        result = await session.execute(
            select(User).where(User.email == settings.FIRST_ADMIN_EMAIL)
        )
        if result.scalar_one_or_none() is None:
            session.add(
                User(
                    email=settings.FIRST_ADMIN_EMAIL,
                    hashed_password=get_password_hash(settings.FIRST_ADMIN_PASSWORD),
                    full_name="System Administrator",
                    role="admin",
                )
            )
            await session.commit()
            logger.info(
                "Default admin created: %s (password: <redacted>)",
                settings.FIRST_ADMIN_EMAIL,
            )


# ── Lifespan ────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")

    await _seed_admin()

    stop_event = asyncio.Event()
    if settings.SWEEP_ENABLED:
        app.state.sweep_task = asyncio.create_task(
            app.state.engine.sweeper.run_forever(stop_event)
        )

    logger.info("Standby v%s started", settings.VERSION)
    yield

    stop_event.set()
    task = getattr(app.state, "sweep_task", None)
    if task is not None:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await app.state.engine.publisher.drain()
    await db_engine.dispose()
    logger.info("Shutdown complete")


# ── App factory ─────────────────────────────────────────────────────
def create_app() -> FastAPI:
    application = FastAPI(
        title="Standby",
        description="Absence-driven provider replacement engine",
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    application.state.engine = build_engine(async_session_factory)
    application.state.sweep_task = None

    # Login rate limiting
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Global exception handlers (prevent stack-trace leakage)
    register_exception_handlers(application)

    application.include_router(api_router, prefix=settings.API_V1_PREFIX)
    return application


app = create_app()
