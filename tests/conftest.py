"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite) and session factories
- A file-backed SQLite factory for tests that need real concurrent connections
- Fake Redis, delivery transports and event factories
"""
# הגדרות סביבה לפני ייבוא relay - Settings נטען בזמן import
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("WEBHOOK_PROVIDER_SECRETS", "stripe:whsec_test,github:gh_secret")
os.environ.setdefault("LOG_JSON", "false")

import asyncio
from typing import Any, AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from relay.db.database import Base, get_db
import relay.db.models  # noqa: F401
from relay.db.models.dispatch_queue_entry import DispatchQueueEntry
from relay.db.models.domain_event import DomainEvent
from relay.domain.services.event_service import EventService
from relay.domain.services.transports import BaseDeliveryTransport
from relay.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


def _enforce_foreign_keys(engine) -> None:
    """SQLite ignores FOREIGN KEY clauses (and ON DELETE CASCADE) unless enabled per connection"""
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    _enforce_foreign_keys(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory over the shared in-memory engine (worker pool, tasks)"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def concurrent_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    File-backed SQLite with one connection per session.

    The in-memory StaticPool shares a single connection, so two sessions there
    are not really concurrent. Races on leases and locks run against this one.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}",
        connect_args={"timeout": 30},
        echo=False
    )
    _enforce_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": "test-admin-key"}


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def event_factory(db_session: AsyncSession):
    """Factory for recording an event plus its dispatch row (committed)"""
    async def _create_event(
        event_type: str = "delivery.created",
        payload: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> tuple[DomainEvent, DispatchQueueEntry]:
        event, entry = await EventService(db_session).record_event(
            event_type,
            payload if payload is not None else {"delivery_id": 1},
            **kwargs,
        )
        await db_session.commit()
        return event, entry

    return _create_event


# ============================================================================
# Process-wide singletons
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from relay.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_delivery_transport():
    """Forget any transport a test installed"""
    from relay.domain.services.transports import reset_transports
    reset_transports()
    yield
    reset_transports()


class RecordingTransport(BaseDeliveryTransport):
    """Transport double: records deliveries and fails on demand."""

    def __init__(self, name: str = "recording") -> None:
        self.name = name
        self.delivered: list[int] = []
        self.failures: dict[int, BaseException] = {}
        self.delay: float = 0.0

    @property
    def transport_name(self) -> str:
        return self.name

    async def deliver(self, event: DomainEvent, entry: DispatchQueueEntry) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        failure = self.failures.get(event.id)
        if failure is not None:
            raise failure
        self.delivered.append(event.id)


@pytest.fixture
def recording_transport() -> RecordingTransport:
    return RecordingTransport()


class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("relay.core.redis_client.get_redis", _get_fake_redis), \
         patch("relay.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake
