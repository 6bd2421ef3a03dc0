"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests: one database for the registry and a
separate one for the analytics store. Outbound HTTP is mocked.
"""
from datetime import datetime, timezone

import httpx
import pytest
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import StaticPool

import faultline.models  # noqa: F401  registers every table on the metadata
from faultline.database import AnalyticsBase, Base

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
ENCRYPTION_KEY = "test-encryption-key"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


def _memory_engine():
    # StaticPool keeps every session on the one in-memory connection
    return create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest.fixture
async def registry_session_factory():
    """Session factory over an in-memory registry database."""
    engine = _memory_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def analytics_session_factory():
    """Session factory over an in-memory analytics database."""
    engine = _memory_engine()
    async with engine.begin() as conn:
        await conn.run_sync(AnalyticsBase.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(registry_session_factory):
    """A single registry session."""
    async with registry_session_factory() as session:
        yield session


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def webhook_requests():
    """Requests captured by the mock_http_client transport."""
    return []


@pytest.fixture
def webhook_status():
    """Status code the mock webhook endpoint answers with. Mutate [0] to change it."""
    return [200]


@pytest.fixture
async def mock_http_client(webhook_requests, webhook_status):
    """httpx client whose transport records requests instead of sending them."""
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(webhook_status[0], text="ok" if webhook_status[0] < 300 else "nope")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client
