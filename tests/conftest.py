import base64
import io
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from pypdf import PdfWriter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config.settings import Settings, get_settings
from api.infra.database import Base, build_engine, get_session, get_sessionmaker
from api.infra.email_transport import LogTransport
from api.main import create_app
from api.v1.core.registries import JobRegistry
from api.v1.infra.jobs.errors import CollaboratorError
from api.v1.infra.jobs.models import Job, JobStatus
from api.v1.infra.jobs.registry_init import register_job_handlers
from api.v1.infra.jobs.resource_pool import ResourcePool
from api.v1.infra.jobs.routes import get_job_runner, get_storage
from api.v1.infra.jobs.worker import JobRunner


def make_pdf(pages: int = 1) -> bytes:
    """A small valid PDF document with blank pages."""
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=200, height=200)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class FakeRenderer:
    """PDF renderer returning blank documents, with optional per-order failures."""

    def __init__(self, failures: dict[str, Exception] | None = None, pages: int = 1):
        self.failures = failures or {}
        self.pages = pages
        self.calls: list[tuple[str, str]] = []

    async def render(self, match_id: str, official_id: str) -> str:
        self.calls.append((match_id, official_id))
        error = self.failures.get(match_id)
        if error is not None:
            raise error
        return base64.b64encode(make_pdf(self.pages)).decode()


class FakeStorage:
    """In-memory artifact storage."""

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        self.objects[path] = (data, content_type)

    async def create_signed_url(self, path: str, ttl_s: int) -> str:
        if path not in self.objects:
            raise FileNotFoundError(path)
        return f"https://storage.test/{path}?ttl={ttl_s}"


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test SQLite database."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        storage_local_root=str(tmp_path / "artifacts"),
        job_claim_batch_size=5,
        job_stale_after_s=600,
        job_max_attempts=3,
        job_backoff_jitter=0,
    )


@pytest.fixture
async def test_engine(settings):
    """Create a test database engine with all tables."""
    engine = build_engine(settings.database_url, settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def sessionmaker(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest.fixture
async def db_session(sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with sessionmaker() as session:
        yield session


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def transport() -> LogTransport:
    return LogTransport()


@pytest.fixture
def registry(settings, renderer, transport, storage) -> JobRegistry:
    return register_job_handlers(
        JobRegistry(),
        settings,
        renderer=renderer,
        transport=transport,
        storage=storage,
    )


@pytest.fixture
def runner(settings, sessionmaker, registry) -> JobRunner:
    return JobRunner(settings, sessionmaker, registry, ResourcePool.from_settings(settings))


@pytest.fixture
def app(settings, sessionmaker, storage, runner):
    """Create a test FastAPI application bound to the test database."""
    app = create_app()

    async def get_test_session():
        async with sessionmaker() as session:
            yield session

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_sessionmaker] = lambda: sessionmaker
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_job_runner] = lambda: runner

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_job(sessionmaker):
    """Insert a job row directly, bypassing submission."""

    async def _make_job(
        type: str = "maintenance.cleanup",
        payload: dict[str, Any] | None = None,
        **fields: Any,
    ) -> Job:
        fields.setdefault("status", JobStatus.PENDING.value)
        fields.setdefault("priority", 100)
        job = Job(id=uuid.uuid4(), type=type, payload=payload or {}, **fields)
        async with sessionmaker() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
        return job

    return _make_job


@pytest.fixture
def fetch_job(sessionmaker):
    """Reload a job's current row."""

    async def _fetch_job(job_id) -> Job | None:
        async with sessionmaker() as session:
            return await session.get(Job, job_id)

    return _fetch_job


def as_utc(value: datetime) -> datetime:
    """SQLite hands datetimes back without tzinfo; they are stored as UTC."""
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def render_error(status_code: int) -> CollaboratorError:
    return CollaboratorError(
        f"PDF generator failed ({status_code})",
        code="render_failed",
        status_code=status_code,
    )
