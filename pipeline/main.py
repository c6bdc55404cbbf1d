from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from pipeline.config.logging import get_logger, setup_logging
from pipeline.config.settings import Settings, get_settings, settings as default_settings
from pipeline.infra.database import Database, set_database
from pipeline.v1.core.exceptions import (
    PipelineException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    pipeline_exception_handler,
)
from pipeline.v1.core.registries import job_registry, renderer_registry
from pipeline.v1.healthz import router as health_router
from pipeline.v1.infra.jobs.compute import ComputePool
from pipeline.v1.infra.jobs.events import EventBus
from pipeline.v1.infra.jobs.registry_init import init_registries
from pipeline.v1.infra.jobs.routes import router as jobs_router
from pipeline.v1.infra.jobs.scheduler import Scheduler
from pipeline.v1.infra.jobs.store import JobStore
from pipeline.v1.infra.jobs.tasks import TaskOrchestrator
from pipeline.v1.infra.jobs.worker import WorkerConfig, WorkerLoop

logger = get_logger(__name__)


def build_lifespan(settings: Settings, database: Database | None = None):
    """Wire the job engine onto ``app.state`` for the lifetime of the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db = database or Database(settings)
        set_database(db)
        if settings.database_url.startswith("sqlite"):
            await db.create_all()

        store = JobStore(db.SessionLocal)
        events = EventBus(settings.event_queue_size)
        pool = ComputePool.from_settings(settings)
        orchestrator = TaskOrchestrator(store)
        worker = WorkerLoop(
            store,
            events,
            WorkerConfig.from_settings(settings),
            pool=pool,
            orchestrator=orchestrator,
            settings=settings,
        )
        scheduler = Scheduler(store, orchestrator, settings)

        app.state.database = db
        app.state.store = store
        app.state.events = events
        app.state.pool = pool
        app.state.orchestrator = orchestrator
        app.state.worker = worker
        app.state.scheduler = scheduler

        if settings.worker_enabled:
            await worker.start()
        if settings.scheduler_enabled:
            await scheduler.start()
        logger.info(
            "pipeline_started",
            worker_enabled=settings.worker_enabled,
            scheduler_enabled=settings.scheduler_enabled,
        )

        try:
            yield
        finally:
            await scheduler.stop()
            await worker.stop()
            pool.shutdown(wait=False)
            await db.close()
            set_database(None)
            logger.info("pipeline_stopped")

    return lifespan


def create_app(
    settings: Settings | None = None, database: Database | None = None
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or default_settings

    # Initialize structured logging
    setup_logging(settings)

    # Handlers and renderers must exist before the worker can claim anything
    init_registries(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Background job engine for the photo pipeline",
        version=settings.version,
        debug=settings.debug,
        lifespan=build_lifespan(settings, database),
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )
    app.dependency_overrides[get_settings] = lambda: settings

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(PipelineException, pipeline_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        job_registry.freeze()
        renderer_registry.freeze()

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pipeline.main:create_app",
        factory=True,
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
    )
