"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pipeline.v1.infra.jobs.models import JobItemStatus, JobScope


class JobItemCreate(BaseModel):
    """Subject of a job item; at least one identifier is required."""

    filename: str | None = None
    photo_id: int | None = None
    status: JobItemStatus = JobItemStatus.PENDING

    @model_validator(mode="after")
    def _require_subject(self) -> "JobItemCreate":
        if self.filename is None and self.photo_id is None:
            raise ValueError("job item needs a filename or a photo_id")
        return self


class JobCreate(BaseModel):
    """Enqueue request."""

    tenant_id: str = Field(..., description="Tenant owning the job")
    project_id: int | None = Field(
        default=None, description="Owning project, None for global jobs"
    )
    type: str = Field(..., min_length=1, description="Job type identifier")
    priority: int = Field(default=0, description="Higher is more urgent")
    scope: JobScope | None = Field(
        default=None, description="Defaults to project when project_id is set"
    )
    payload: dict[str, Any] | None = Field(default=None, description="Job parameters")
    progress_total: int | None = Field(default=None, ge=0)
    max_attempts: int | None = Field(default=None, ge=1)

    def effective_scope(self) -> JobScope:
        if self.scope is not None:
            return self.scope
        return JobScope.PROJECT if self.project_id is not None else JobScope.GLOBAL


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    project_id: int | None
    type: str
    status: str
    priority: int
    scope: str
    payload: dict[str, Any] | None = None
    progress_done: int | None = None
    progress_total: int | None = None
    attempts: int
    max_attempts: int | None = None
    claimed_by: str | None = None
    heartbeat_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None
    last_error_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class JobItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: int
    photo_id: int | None = None
    filename: str | None = None
    status: str
    message: str | None = None
    created_at: datetime
    updated_at: datetime


class JobDetailResponse(BaseModel):
    """Job with an aggregate of its item statuses."""

    job: JobResponse
    items_summary: dict[str, int]
    total_items: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # queued + running
    failed_last_hour: int


class TaskStartRequest(BaseModel):
    """Start a named multi-step task for a project."""

    task_type: str = Field(..., description="Task definition name")
    source: str = Field(default="api", description="Who started the task")
    items: list[JobItemCreate | str] | None = Field(
        default=None, description="Optional explicit subjects (filenames or items)"
    )
    payload: dict[str, Any] | None = None


class TaskStartResponse(BaseModel):
    task_id: str
    type: str
    first_job_id: int | None = None


class JobEvent(BaseModel):
    """Job-level lifecycle/progress message published to subscribers."""

    id: int
    status: str
    progress_done: int | None = None
    progress_total: int | None = None
    task_id: str | None = None
    task_type: str | None = None
    source: str | None = None


class ItemEvent(BaseModel):
    """Item-level message published as a handler resolves a subject."""

    type: str = "item"
    job_id: int
    project_id: int | None = None
    filename: str | None = None
    photo_id: int | None = None
    status: str
    message: str | None = None
    updated_at: datetime
