from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from pipeline.config.logging import get_logger
from pipeline.config.settings import Settings, SettingsDep
from pipeline.infra.database import get_session
from pipeline.v1.core.exceptions import create_success_response
from pipeline.v1.infra.jobs.models import Job, JobStatus

router = APIRouter()
logger = get_logger(__name__)


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Worker health status."""

    running: bool = False
    worker_id: str | None = None
    active_jobs: int = 0
    active_workers: int = 0
    last_heartbeat_age_seconds: int | None = None
    stale_jobs_count: int = 0
    queue_depth: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    request: Request,
    settings: Settings = SettingsDep,
    session: AsyncSession = Depends(get_session),
):
    """Health check with database and worker status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)
    overall_ok = db_health.connected

    worker_health = None
    if db_health.connected:
        try:
            worker_health = await _check_worker_health(session, settings)
        except Exception as e:
            # Worker health never fails the overall check
            logger.warning("worker_health_check_failed", error=str(e))
            worker_health = WorkerHealth()

        worker = getattr(request.app.state, "worker", None)
        if worker is not None:
            worker_health.running = worker.running
            worker_health.worker_id = worker.worker_id
            worker_health.active_jobs = worker.active_count

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "worker": worker_health.model_dump() if worker_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_worker_health(
    session: AsyncSession, settings: Settings
) -> WorkerHealth:
    """Queue depth and heartbeat freshness across every worker sharing the store."""
    now = datetime.now(UTC)
    running = Job.status == JobStatus.RUNNING.value

    active_workers_result = await session.execute(
        select(func.count(func.distinct(Job.claimed_by))).where(
            running, Job.heartbeat_at > now - timedelta(seconds=settings.stale_seconds)
        )
    )
    active_workers = active_workers_result.scalar() or 0

    last_heartbeat_result = await session.execute(
        select(func.max(Job.heartbeat_at)).where(running, Job.heartbeat_at.is_not(None))
    )
    last_heartbeat = last_heartbeat_result.scalar()

    last_heartbeat_age_seconds = None
    if last_heartbeat:
        if last_heartbeat.tzinfo is None:
            last_heartbeat = last_heartbeat.replace(tzinfo=UTC)
        last_heartbeat_age_seconds = int((now - last_heartbeat).total_seconds())

    stale_jobs_result = await session.execute(
        select(func.count(Job.id)).where(
            running, Job.heartbeat_at < now - timedelta(seconds=settings.stale_seconds)
        )
    )
    stale_jobs_count = stale_jobs_result.scalar() or 0

    queue_depth_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value])
        )
    )
    queue_depth = queue_depth_result.scalar() or 0

    return WorkerHealth(
        active_workers=active_workers,
        last_heartbeat_age_seconds=last_heartbeat_age_seconds,
        stale_jobs_count=stale_jobs_count,
        queue_depth=queue_depth,
    )
