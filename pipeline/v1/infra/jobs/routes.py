"""
Job and task endpoints: start tasks, inspect and cancel jobs, stream events.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse

from pipeline.config.settings import Settings, SettingsDep
from pipeline.v1.core.exceptions import (
    NotFoundError,
    ValidationError,
    create_success_response,
)
from pipeline.v1.infra.jobs.events import JOBS_CHANNEL, EventBus, format_sse
from pipeline.v1.infra.jobs.models import JobStatus
from pipeline.v1.infra.jobs.schemas import (
    JobDetailResponse,
    JobResponse,
    TaskStartRequest,
)
from pipeline.v1.infra.jobs.store import JobStore
from pipeline.v1.infra.jobs.tasks import TaskOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter(tags=["jobs"])


def get_store(request: Request) -> JobStore:
    return request.app.state.store


def get_events(request: Request) -> EventBus:
    return request.app.state.events


def get_orchestrator(request: Request) -> TaskOrchestrator:
    return request.app.state.orchestrator


StoreDep = Depends(get_store)
EventsDep = Depends(get_events)
OrchestratorDep = Depends(get_orchestrator)


# ---- tasks ---------------------------------------------------------------


@router.post(
    "/projects/{project_id}/tasks",
    response_model=dict,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_task(
    project_id: int,
    body: TaskStartRequest,
    orchestrator: TaskOrchestrator = OrchestratorDep,
) -> dict[str, Any]:
    """Start a named task for a project; the first step is queued."""
    result = await orchestrator.start_task(
        body.task_type,
        project_id=project_id,
        source=body.source,
        items=body.items,
        payload=body.payload,
    )
    logger.info(
        "Task started via API",
        extra={"project_id": project_id, "task_id": result.task_id},
    )
    return create_success_response(data=result.model_dump())


@router.get("/tasks/definitions", response_model=dict)
async def task_definitions(
    orchestrator: TaskOrchestrator = OrchestratorDep,
) -> dict[str, Any]:
    return create_success_response(data=orchestrator.definitions)


# ---- project jobs ----------------------------------------------------------


@router.get("/projects/{project_id}/jobs", response_model=dict)
async def list_project_jobs(
    project_id: int,
    status: JobStatus | None = Query(default=None, description="Filter by status"),
    type: str | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    store: JobStore = StoreDep,
) -> dict[str, Any]:
    """List a project's jobs, newest first."""
    jobs = await store.list_by_project(
        project_id,
        status=status.value if status else None,
        type=type,
        limit=limit,
        offset=offset,
    )
    return create_success_response(
        data={
            "jobs": [JobResponse.model_validate(job).model_dump(mode="json") for job in jobs],
            "limit": limit,
            "offset": offset,
        }
    )


@router.post("/projects/{project_id}/cancel", response_model=dict)
async def cancel_project_jobs(
    project_id: int,
    store: JobStore = StoreDep,
    events: EventBus = EventsDep,
) -> dict[str, Any]:
    """Cancel every queued or running job of a project; unfinished items are skipped."""
    canceled = await store.cancel_by_project(project_id)
    for job_id in canceled:
        job = await store.get_by_id(job_id)
        if job is not None:
            events.publish_job(job)
    return create_success_response(
        data={"project_id": project_id, "canceled_job_ids": canceled}
    )


# ---- jobs ----------------------------------------------------------------


@router.get("/jobs/stats", response_model=dict)
async def get_job_stats(store: JobStore = StoreDep) -> dict[str, Any]:
    """Queue-wide job statistics."""
    stats = await store.get_stats()
    return create_success_response(data=stats.model_dump())


async def event_stream(
    events: EventBus,
    is_disconnected: Callable[[], Awaitable[bool]],
    ping_seconds: float,
) -> AsyncIterator[str]:
    """Relay job events as SSE frames, with comment pings while idle."""
    subscription = events.subscribe([JOBS_CHANNEL])
    try:
        yield ": connected\n\n"
        while not await is_disconnected():
            try:
                event = await asyncio.wait_for(subscription.get(), timeout=ping_seconds)
            except asyncio.TimeoutError:
                yield ": ping\n\n"
                continue
            yield format_sse(event)
    finally:
        events.unsubscribe(subscription)


@router.get("/jobs/stream")
async def stream_jobs(
    request: Request,
    events: EventBus = EventsDep,
    settings: Settings = SettingsDep,
) -> StreamingResponse:
    """Server-Sent Events stream of job and item updates."""
    return StreamingResponse(
        event_stream(events, request.is_disconnected, settings.sse_ping_seconds),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/jobs/{job_id}", response_model=dict)
async def get_job(job_id: int, store: JobStore = StoreDep) -> dict[str, Any]:
    """Get a job with an aggregate of its item statuses."""
    job = await store.get_by_id(job_id)
    if job is None:
        raise NotFoundError("Job not found", {"job_id": job_id})

    summary = await store.items_summary(job_id)
    detail = JobDetailResponse(
        job=JobResponse.model_validate(job),
        items_summary=summary,
        total_items=sum(summary.values()),
    )
    return create_success_response(data=detail.model_dump(mode="json"))


@router.post("/jobs/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: int,
    store: JobStore = StoreDep,
    events: EventBus = EventsDep,
) -> dict[str, Any]:
    """Cancel a queued or running job. Running handlers stop at their next batch."""
    job = await store.get_by_id(job_id)
    if job is None:
        raise NotFoundError("Job not found", {"job_id": job_id})
    if job.is_terminal():
        raise ValidationError(
            f"Cannot cancel job in status '{job.status}'", {"job_id": job_id}
        )

    job = await store.cancel(job_id)
    events.publish_job(job)
    logger.info("Job canceled via API", extra={"job_id": job_id})
    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json"),
        message="Job canceled",
    )


@router.post("/jobs/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: int,
    store: JobStore = StoreDep,
    events: EventBus = EventsDep,
) -> dict[str, Any]:
    """Put a failed job back in the queue with its attempts reset."""
    job = await store.get_by_id(job_id)
    if job is None:
        raise NotFoundError("Job not found", {"job_id": job_id})
    if not await store.retry_failed(job_id):
        raise ValidationError(
            f"Only failed jobs can be retried (status '{job.status}')",
            {"job_id": job_id},
        )

    job = await store.get_by_id(job_id)
    events.publish_job(job)
    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json"),
        message="Job queued for retry",
    )
