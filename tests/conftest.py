"""
Shared test fixtures for the Standby test suite.

Every test gets its own file-backed aiosqlite database, a replacement
engine wired to it, and a dispatcher that records notifications.
"""

import os
from collections.abc import AsyncGenerator
from datetime import date, datetime, timezone
from decimal import Decimal
from itertools import count
from typing import Any

import pytest

# Override environment BEFORE importing application modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CORS_ORIGINS"] = '["*"]'
os.environ["SWEEP_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key-with-enough-entropy-0123456789"

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from standby.api.v1.deps import get_current_user, get_db
from standby.api.v1.endpoints.auth import limiter
from standby.core.security import get_password_hash
from standby.db.base import Base
from standby.main import app
from standby.models.booking import Booking, BookingStatus
from standby.models.provider import Provider, ProviderCategory
from standby.models.user import User
from standby.services.engine import ReplacementEngine, build_engine

# Window used by most scenarios: it opens after this "today".
TODAY = date(2024, 6, 1)


class RecordingDispatcher:
    """Keeps every notification in memory."""

    def __init__(self) -> None:
        self.sent: list[tuple[int, str, dict[str, Any]]] = []

    async def notify(self, recipient_id: int, kind: str, payload: dict[str, Any]) -> None:
        self.sent.append((recipient_id, kind, payload))

    def kinds(self) -> list[str]:
        return [kind for _, kind, _ in self.sent]


class Seed:
    """Row factories for providers, bookings and users."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self._refs = count(1)

    async def provider(
        self,
        name: str = "Provider",
        latitude: float = 48.8566,
        longitude: float = 2.3522,
        radius_km: float = 20.0,
        categories: dict[str, int] | None = None,
        average_rating: float | None = 4.0,
        **fields: Any,
    ) -> Provider:
        categories = {"cleaning": 10} if categories is None else categories
        fields.setdefault("is_approved", True)
        async with self.session_factory() as session:
            provider = Provider(
                name=name,
                latitude=latitude,
                longitude=longitude,
                radius_km=radius_km,
                average_rating=average_rating,
                **fields,
            )
            session.add(provider)
            await session.flush()
            for category, completed in categories.items():
                session.add(
                    ProviderCategory(provider_id=provider.id, category=category, completed_count=completed)
                )
            await session.commit()
            await session.refresh(provider)
            return provider

    async def booking(
        self,
        provider_id: int,
        scheduled_at: datetime = datetime(2024, 6, 11, 10, 0, tzinfo=timezone.utc),
        category: str = "cleaning",
        status: str = BookingStatus.CONFIRMED.value,
        latitude: float = 48.8566,
        longitude: float = 2.3522,
        client_id: int = 500,
        duration_minutes: int = 120,
    ) -> Booking:
        async with self.session_factory() as session:
            booking = Booking(
                reference=f"BK-{next(self._refs):05d}",
                client_id=client_id,
                provider_id=provider_id,
                category=category,
                scheduled_at=scheduled_at,
                duration_minutes=duration_minutes,
                latitude=latitude,
                longitude=longitude,
                amount=Decimal("80.00"),
                status=status,
            )
            session.add(booking)
            await session.commit()
            await session.refresh(booking)
            return booking

    async def user(
        self,
        email: str,
        role: str = "admin",
        provider_id: int | None = None,
        password: str = "correct-horse-battery",
    ) -> User:
        async with self.session_factory() as session:
            user = User(
                email=email,
                hashed_password=get_password_hash(password),
                full_name=email.split("@")[0],
                role=role,
                provider_id=provider_id,
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get(self, model: type, pk: int) -> Any:
        async with self.session_factory() as session:
            return await session.get(model, pk)


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh database per test; tables created up front."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'standby.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    await db_engine.dispose()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def engine(session_factory, dispatcher) -> ReplacementEngine:
    return build_engine(session_factory, dispatcher, today=lambda: TODAY)


@pytest.fixture
def workflow(engine):
    return engine.workflow


@pytest.fixture
def seed(session_factory) -> Seed:
    return Seed(session_factory)


@pytest.fixture
async def admin(seed) -> User:
    return await seed.user("admin@standby.test", role="admin")


@pytest.fixture
async def async_client(session_factory, engine, admin) -> AsyncGenerator[AsyncClient, None]:
    """httpx AsyncClient wired to the app, authenticated as *admin* by default.

    Tests switch identity with ``app.dependency_overrides[get_current_user]``.
    """

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def _override_get_current_user() -> User:
        return admin

    app.state.engine = engine
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_current_user] = _override_get_current_user
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await engine.publisher.drain()
    app.dependency_overrides.clear()
