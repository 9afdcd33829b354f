import os
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any
from unittest.mock import patch

import fakeredis
import fakeredis.aioredis
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

# Set test env vars before importing app modules
os.environ["REDIS_URL"] = "memory://"
os.environ["ANALYTICS_CACHE_TTL_SECONDS"] = "30"

# Shared FakeServer holds state; each call creates a fresh client
# bound to the current event loop (avoids pytest-asyncio loop mismatch).
_fake_server = fakeredis.FakeServer()


async def _mock_get_redis():
    return fakeredis.aioredis.FakeRedis(server=_fake_server, decode_responses=True)


# Patch the module-level get_redis() used as fallback in non-DI contexts
_redis_patcher = patch("app.core.redis.get_redis", _mock_get_redis)
_redis_patcher.start()

# Fixed reference time for engine-level tests: Friday 2024-03-15 12:30 UTC
NOW = datetime(2024, 3, 15, 12, 30, tzinfo=timezone.utc)


def _make_fake_redis():
    """Create a fakeredis instance bound to the shared server."""
    return fakeredis.aioredis.FakeRedis(server=_fake_server, decode_responses=True)


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite engine living on the current test's event loop.

    Each orchestrator call opens one connection per store call, so the test
    engine does not pool connections across loops.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
async def setup_database(engine: AsyncEngine):
    from app.core.limiter import limiter
    from app.db.base import Base
    from app.models import event, project  # noqa: F401  registers tables on Base.metadata

    # Disable rate limiting in tests
    limiter.enabled = False

    # Clear fakeredis for each test
    r = fakeredis.aioredis.FakeRedis(server=_fake_server, decode_responses=True)
    await r.flushall()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def fake_redis():
    """Provide a fakeredis instance for direct use in tests."""
    return _make_fake_redis()


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory):
    """Event store reading from the test database."""
    from app.services.event_store import SQLEventStore

    return SQLEventStore(session_factory)


@pytest.fixture
def service(store):
    """Analytics service pinned to ``NOW``."""
    from app.services.analytics_service import AnalyticsService

    return AnalyticsService(store, clock=lambda: NOW)


@pytest.fixture
async def client(db_session: AsyncSession, store) -> AsyncGenerator[AsyncClient, None]:
    from app.api.deps import get_event_store
    from app.core.redis import get_redis_dep
    from app.db.session import get_db
    from app.main import app

    async def override_get_db():
        yield db_session

    async def override_get_redis_dep():
        return _make_fake_redis()

    async def override_get_event_store():
        return store

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis_dep] = override_get_redis_dep
    app.dependency_overrides[get_event_store] = override_get_event_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def project(db_session: AsyncSession):
    """Create an empty project."""
    from app.models.project import Project

    project = Project(name="Test Site", domain="example.com")
    db_session.add(project)
    await db_session.commit()
    await db_session.refresh(project)
    return project


@pytest.fixture
def add_records(db_session: AsyncSession, project) -> Callable[..., Any]:
    """Insert page views / custom events for ``project``.

    Each record is a dict of ``Event`` columns; ``session_id`` and
    ``timestamp`` are required, everything else has a default.
    """
    from app.models.event import Event, EventKind

    async def _add(*records: dict[str, Any], project_id: int | None = None) -> None:
        for record in records:
            path = record.get("path", "/")
            values = {
                "project_id": project_id or project.id,
                "kind": EventKind.PAGEVIEW.value,
                "url": f"https://example.com{path}",
                "path": path,
                **record,
            }
            if isinstance(values["kind"], EventKind):
                values["kind"] = values["kind"].value
            db_session.add(Event(**values))
        await db_session.commit()

    return _add
