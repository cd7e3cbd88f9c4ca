"""Shared fixtures: per-test SQLite database, seeded driver/job, API client."""

import os
import uuid
from datetime import datetime, timedelta

# Settings are read once at import; point them at test values first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DEBUG"] = "false"
os.environ["ENABLE_BACKGROUND_WORKERS"] = "false"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["SYNC_ENCRYPTION_KEY"] = "5f" * 32
os.environ["SYNC_WORKER_CONCURRENCY"] = "1"
os.environ["SESSION_START_MAX_ATTEMPTS"] = "3"
os.environ["STORAGE_RETRY_BACKOFF_SECONDS"] = "0"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fleetcore.auth.jwt import ROLE_SUPERVISOR, create_access_token
from fleetcore.database import Base, get_db, get_session_factory
from fleetcore.main import app
from fleetcore.models import Driver, EventType, ExecutionJob
from fleetcore.schemas.events import EventSubmission
from fleetcore.services import session_registry
from fleetcore.utils.timezone import utc_now

ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-key"}
SYNC_KEY = os.environ["SYNC_ENCRYPTION_KEY"]

# Berlin Alexanderplatz and a point roughly 300 m east of it
ORIGIN = {"lat": 52.5219, "lng": 13.4132}
NEARBY = {"lat": 52.5219, "lng": 13.4176}


def driver_headers(driver_id: uuid.UUID) -> dict:
    return {"Authorization": f"Bearer {create_access_token(driver_id)}"}


def supervisor_headers() -> dict:
    return {"Authorization": f"Bearer {create_access_token(uuid.uuid4(), role=ROLE_SUPERVISOR)}"}


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fleetcore.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# Seed rows are written through their own session and returned detached, so a
# rollback in the test's `db` session never expires them.

async def _persist(session_factory, obj):
    async with session_factory() as session:
        session.add(obj)
        await session.commit()
    return obj


@pytest.fixture
async def driver(session_factory) -> Driver:
    return await _persist(session_factory, Driver(id=uuid.uuid4(), name="Amina Bello"))


@pytest.fixture
async def other_driver(session_factory) -> Driver:
    return await _persist(session_factory, Driver(id=uuid.uuid4(), name="Chinedu Okafor"))


@pytest.fixture
async def job(session_factory, driver) -> ExecutionJob:
    return await _persist(
        session_factory,
        ExecutionJob(id=uuid.uuid4(), name="Kano North batch", assigned_driver_id=driver.id, total_stops=3),
    )


@pytest.fixture
async def active_session(session_factory, driver):
    async with session_factory() as session:
        return await session_registry.start_session(session, driver.id, "device-a")


@pytest.fixture
def make_event(driver, job, active_session):
    """Build an EventSubmission for the default driver/job/session."""

    def _make(
        event_type: EventType,
        captured_at: datetime | None = None,
        location: dict | None = None,
        **overrides,
    ) -> EventSubmission:
        data = {
            "event_id": uuid.uuid4(),
            "event_type": event_type,
            "driver_id": driver.id,
            "session_id": active_session.id,
            "job_id": job.id,
            "location": location or ORIGIN,
            "captured_at": captured_at or utc_now(),
        }
        data.update(overrides)
        return EventSubmission.model_validate(data)

    return _make


@pytest.fixture
def make_point(driver, active_session):
    """Build a raw telemetry point dict for the default session."""

    def _make(captured_at: datetime, **overrides) -> dict:
        point = {
            "driver_id": str(driver.id),
            "session_id": str(active_session.id),
            "device_id": active_session.device_id,
            "lat": ORIGIN["lat"],
            "lng": ORIGIN["lng"],
            "accuracy": 8.0,
            "captured_at": captured_at.isoformat(),
        }
        point.update(overrides)
        return point

    return _make


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()


def minutes_ago(minutes: float) -> datetime:
    return utc_now() - timedelta(minutes=minutes)
