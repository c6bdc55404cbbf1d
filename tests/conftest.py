from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

from pipeline.config.settings import Settings
from pipeline.infra.database import Database
from pipeline.main import create_app
from pipeline.v1.core.registries import JobRegistry
from pipeline.v1.infra.jobs.compute import ComputePool
from pipeline.v1.infra.jobs.events import EventBus
from pipeline.v1.infra.jobs.models import Job, JobItem
from pipeline.v1.infra.jobs.schemas import JobCreate
from pipeline.v1.infra.jobs.store import JobStore
from pipeline.v1.infra.jobs.tasks import TaskOrchestrator
from pipeline.v1.infra.jobs.worker import WorkerConfig, WorkerLoop


@pytest.fixture
def library(tmp_path: Path) -> Path:
    """Empty library root; tests add project folders as needed."""
    root = tmp_path / "library"
    root.mkdir()
    return root


@pytest.fixture
def test_settings(tmp_path: Path, library: Path) -> Settings:
    """Settings pointing at a throwaway SQLite file, with background loops off."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        environment="development",
        debug=False,
        worker_enabled=False,
        scheduler_enabled=False,
        library_root=str(library),
        heartbeat_ms=250,
        stale_seconds=5,
        compute_pool_size=4,
        sse_ping_seconds=0.05,
    )


@pytest.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, None]:
    db = Database(test_settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def store(database: Database) -> JobStore:
    return JobStore(database.SessionLocal)


@pytest.fixture
def events() -> EventBus:
    return EventBus(queue_size=100)


@pytest.fixture
def pool():
    compute = ComputePool(max_workers=4)
    yield compute
    compute.shutdown()


@pytest.fixture
def registry() -> JobRegistry:
    """A private job registry so tests never touch the global one."""
    return JobRegistry()


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(
        total_slots=2,
        priority_lane_slots=1,
        priority_threshold=90,
        tick_interval_ms=10,
        heartbeat_interval_ms=250,
        stale_seconds=5,
        max_attempts_default=3,
    )


@pytest.fixture
async def worker(store, events, pool, registry, worker_config, test_settings):
    loop = WorkerLoop(
        store,
        events,
        worker_config,
        pool=pool,
        registry=registry,
        orchestrator=TaskOrchestrator(store),
        settings=test_settings,
        worker_id="test-worker",
    )
    yield loop
    await loop.stop(timeout=1)


@pytest.fixture
def enqueue(store: JobStore):
    """Factory enqueueing a job with sensible defaults."""

    async def _enqueue(type: str = "noop", priority: int = 0, **fields) -> Job:
        fields.setdefault("tenant_id", "tenant-1")
        return await store.enqueue(JobCreate(type=type, priority=priority, **fields))

    return _enqueue


@pytest.fixture
def set_job_fields(database: Database):
    """Write job columns directly, bypassing the store's state machine."""

    async def _set(job_id: int, **values) -> None:
        async with database.SessionLocal() as session:
            await session.execute(update(Job).where(Job.id == job_id).values(**values))
            await session.commit()

    return _set


@pytest.fixture
def set_item_fields(database: Database):
    async def _set(item_id: int, **values) -> None:
        async with database.SessionLocal() as session:
            await session.execute(
                update(JobItem).where(JobItem.id == item_id).values(**values)
            )
            await session.commit()

    return _set


@pytest.fixture
async def app(test_settings: Settings):
    """Application with its lifespan entered, wired to the test database."""
    application = create_app(test_settings)
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
