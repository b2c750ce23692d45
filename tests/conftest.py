import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from syncjobs.config.settings import Settings
from syncjobs.infra.database import Database, get_database, set_database
from syncjobs.v1.core.registries import job_registry
from syncjobs.v1.errors import models as error_models  # noqa: F401
from syncjobs.v1.errors.tracker import ErrorTracker
from syncjobs.v1.ingestion import models as ingestion_models  # noqa: F401
from syncjobs.v1.jobs.models import Job, JobStatus
from syncjobs.v1.jobs.registry_init import register_job_handlers


class SucceedingHandler:
    """Handler that records its calls and returns a fixed result."""

    def __init__(self, result: dict[str, Any] | None = None):
        self.result = result or {"handled": True}
        self.calls: list[dict[str, Any]] = []

    async def handle(self, session, ctx, payload):
        self.calls.append(payload)
        return self.result


class FailingHandler:
    """Handler that raises the same exception on every call."""

    def __init__(self, error: Exception):
        self.error = error
        self.calls = 0

    async def handle(self, session, ctx, payload):
        self.calls += 1
        raise self.error


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite database."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'syncjobs.db'}",
        environment="development",
    )


@pytest.fixture
async def database(test_settings) -> AsyncGenerator[Database, None]:
    """Create the schema and install the database as the global instance."""
    db = Database(test_settings)
    await db.create_all()
    set_database(db)
    yield db
    set_database(None)
    await db.close()


@pytest.fixture
async def session(database) -> AsyncGenerator[AsyncSession, None]:
    async with database.SessionLocal() as db_session:
        yield db_session


@pytest.fixture
def session_factory(database):
    return database.SessionLocal


@pytest.fixture
def owner_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture(autouse=True)
def job_handlers(test_settings):
    """Register the real handlers and restore the registry afterwards."""
    saved = {name: job_registry.get(name) for name in job_registry.list()}
    register_job_handlers(test_settings)
    yield job_registry
    for name in job_registry.list():
        if name not in saved:
            job_registry.unregister(name)
    for name, handler in saved.items():
        job_registry.register(name, handler)


@pytest.fixture
def use_handler(job_handlers):
    """Swap in a test handler for one job kind."""

    def _use(kind: str, handler):
        job_registry.register(kind, handler)
        return handler

    return _use


@pytest.fixture
def make_job(session):
    """Insert a job row directly, in any status."""

    async def _make(
        owner_id: uuid.UUID,
        kind: str = "embed",
        status: JobStatus = JobStatus.QUEUED,
        attempts: int = 0,
        payload: dict[str, Any] | None = None,
        batch_id: str | None = None,
        updated_at: datetime | None = None,
    ) -> Job:
        now = datetime.now(UTC)
        job = Job(
            id=uuid.uuid4(),
            owner_id=owner_id,
            kind=kind,
            status=status.value,
            attempts=attempts,
            payload=payload or {},
            batch_id=batch_id,
            created_at=now,
            updated_at=updated_at or now,
        )
        session.add(job)
        await session.commit()
        return job

    return _make


@pytest.fixture
def record_job_error(test_settings, session_factory):
    """Record a classified error against a job through the tracker."""
    tracker = ErrorTracker(test_settings, session_factory)

    async def _record(
        owner_id: uuid.UUID,
        job: Job | None,
        error: Exception | str,
        provider: str | None = "provider_a",
        stage: str | None = "ingestion",
    ):
        context = {"provider": provider, "stage": stage}
        if job is not None:
            context.update(job_id=str(job.id), job_kind=job.kind)
        return await tracker.record_error(
            owner_id, error, context, job_id=job.id if job is not None else None
        )

    return _record


@pytest.fixture
def app(database):
    """FastAPI application bound to the test database."""
    from syncjobs.main import create_app

    app = create_app()
    app.dependency_overrides[get_database] = lambda: database
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
