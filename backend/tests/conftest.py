"""Pytest configuration and fixtures for CanopyTrack tests.

Every test gets its own in-memory SQLite database (aiosqlite, one shared
connection) with all tables created, a session on it, and an HTTP client
whose ``get_db`` dependency is bound to that session.
"""

import os

# Settings are read at import time; point them at SQLite before importing app.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("SYNC_WORKER_ENABLED", "false")
os.environ.setdefault("CREATE_TABLES_ON_STARTUP", "false")

from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401  register every table on Base.metadata
from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.middleware.exceptions import ExternalSyncFailure
from app.models.batch import DomainType
from app.models.inventory import InventoryItem
from app.models.jurisdiction import Jurisdiction
from app.models.site import Pod, Site
from app.schemas.batch import BatchCreate
from app.services.batch_lifecycle import create_batch
from app.services.regulatory_client import RegulatoryClient

TAG_REGEX = r"^TAG[0-9]{6}$"


def _tags(start: int, count: int) -> list[str]:
    return [f"TAG{n:06d}" for n in range(start, start + count)]


@pytest.fixture
def make_tags():
    """``make_tags(start, count)`` → valid tags for the test jurisdiction."""
    return _tags


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's implicit transaction handling breaks SAVEPOINT; take it over.
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session) -> AsyncGenerator[AsyncClient, None]:
    """Test client with ``get_db`` bound to the test session.

    Commits on success and rolls back on error, like the real dependency.
    """

    async def override_get_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _cache_disabled(monkeypatch):
    monkeypatch.setattr(settings, "cache_enabled", False)


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest_asyncio.fixture
async def jurisdiction(db_session: AsyncSession) -> Jurisdiction:
    record = Jurisdiction(
        code="TEST",
        name="Test State",
        requires_external_sync=True,
        requires_plant_tags=True,
        manifest_required_on_destroy=False,
        tag_format_regex=TAG_REGEX,
        harvest_weight_tolerance_pct=1.0,
    )
    db_session.add(record)
    await db_session.commit()
    return record


@pytest_asyncio.fixture
async def site(db_session: AsyncSession, jurisdiction: Jurisdiction) -> Site:
    record = Site(name="North Facility", jurisdiction_id=jurisdiction.id, license_number="LIC-1")
    db_session.add(record)
    await db_session.commit()
    return record


@pytest_asyncio.fixture
async def pod(db_session: AsyncSession, site: Site) -> Pod:
    record = Pod(site_id=site.id, name="Pod A", capacity=100)
    db_session.add(record)
    await db_session.commit()
    return record


@pytest_asyncio.fixture
async def small_pod(db_session: AsyncSession, site: Site) -> Pod:
    record = Pod(site_id=site.id, name="Pod B", capacity=10)
    db_session.add(record)
    await db_session.commit()
    return record


@pytest_asyncio.fixture
async def inventory_item(db_session: AsyncSession, site: Site) -> InventoryItem:
    record = InventoryItem(site_id=site.id, name="Dried Flower", unit_of_measure="g")
    db_session.add(record)
    await db_session.commit()
    return record


@pytest.fixture
def make_batch(db_session: AsyncSession, site: Site):
    """Factory: create and commit a batch through the lifecycle service."""

    async def _make(
        domain: DomainType = DomainType.CANNABIS,
        stage: str = "planning",
        plant_count: int = 10,
        external_batch_id: str | None = None,
        site_id: str | None = None,
    ):
        batch = await create_batch(
            db_session,
            BatchCreate(
                domain_type=domain,
                site_id=site_id or site.id,
                stage=stage,
                plant_count=plant_count,
                external_batch_id=external_batch_id,
            ),
            actor="user-1",
        )
        await db_session.commit()
        return batch

    return _make


@pytest_asyncio.fixture
async def cannabis_batch(make_batch):
    return await make_batch(external_batch_id="EXT-1001")


@pytest_asyncio.fixture
async def produce_batch(make_batch):
    return await make_batch(domain=DomainType.PRODUCE, plant_count=50)


# ── Regulator Fakes ──────────────────────────────────────────────

class FakeRegulatoryClient:
    """Records reports; fails the first ``fail_times`` calls."""

    def __init__(self, fail_times: int = 0, message: str = "Regulatory API returned 503"):
        self.fail_times = fail_times
        self.message = message
        self.reports = []

    async def report_phase_change(self, report):
        self.reports.append(report)
        if len(self.reports) <= self.fail_times:
            raise ExternalSyncFailure(self.message)
        return f"CONF-{len(self.reports)}"


@pytest.fixture
def fake_regulator():
    return FakeRegulatoryClient()


@pytest.fixture
def mock_regulator_transport():
    """httpx.MockTransport factory: ``handler(request) -> httpx.Response``."""

    def _make(handler) -> RegulatoryClient:
        return RegulatoryClient(
            base_url="https://regulator.test/v2",
            api_key="test-key",
            timeout=5,
            transport=httpx.MockTransport(handler),
        )

    return _make


# ── Redis Fixtures ───────────────────────────────────────────────

@pytest_asyncio.fixture
async def redis_client(monkeypatch):
    """Redis client for cache tests; skips when no server is reachable."""
    import redis.asyncio as redis

    from app.utils import cache

    client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except (redis.RedisError, OSError):
        await client.aclose()
        pytest.skip("Redis server not available")

    monkeypatch.setattr(settings, "cache_enabled", True)
    monkeypatch.setattr(cache, "_redis_client", None)

    yield client

    await client.flushdb()
    await client.aclose()
    await cache.close_redis()


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "cache: Redis cache tests")
