"""
Centralized Test Configuration.
"""

import pytest
from datetime import datetime, timedelta, timezone
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from fleetstore.app.main import app
from fleetstore.app.db.session import get_db, Base
from fleetstore.app.core.config import Settings
from fleetstore.app.domain.engine import TelemetryEngine
from fleetstore.app.schemas.telemetry import TelemetryPoint

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

# Start of the first test day and the wall clock the engines see
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
NOW = datetime(2024, 1, 10, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock passed to engines instead of the wall clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture(scope="session", autouse=True)
def apply_overrides():
    """Apply overrides once for the session."""
    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield

    # Restore and clear
    app.dependency_overrides = {}

@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

@pytest.fixture
def clock():
    return FakeClock(NOW)

@pytest.fixture
def test_settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        maintenance_enabled=False,
    )

@pytest.fixture
def telemetry(test_settings, clock):
    """Telemetry engine with the default aggregates, installed on the app."""
    telemetry_engine = TelemetryEngine.from_settings(test_settings, clock=clock)
    app.state.engine = telemetry_engine
    app.state.catalog = None
    app.state.scheduler = None
    yield telemetry_engine
    app.state.engine = None

@pytest.fixture
def make_point():
    """Build a TelemetryPoint `seconds` after T0."""
    def _make(entity_id=1, seconds=0, latitude=47.60, longitude=-122.33, **measurements):
        return TelemetryPoint(
            entity_id=entity_id,
            time=T0 + timedelta(seconds=seconds),
            latitude=latitude,
            longitude=longitude,
            measurements=measurements,
        )
    return _make

@pytest.fixture
async def client(telemetry):
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session

@pytest.fixture
def session_factory():
    return TestingSessionLocal
