"""
Job and job item models for the durable pipeline queue.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from pipeline.infra.database import Base


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on storage; values read back are re-tagged as UTC.
    """

    impl = TIMESTAMP(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_JOB_STATUSES = (
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELED.value,
)


class JobScope(str, Enum):
    """What a job operates on."""

    PROJECT = "project"
    PHOTO_SET = "photo_set"
    GLOBAL = "global"


class JobItemStatus(str, Enum):
    """Per-subject sub-task status."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


class Job(Base):
    """
    Durable unit of asynchronous work.

    A job is claimed by exactly one worker at a time (``claimed_by``) and
    stays alive through ``heartbeat_at`` while running. Jobs may cycle
    ``running -> queued`` on retry or stale recovery, bounded by
    ``max_attempts``.
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Tenant owning the job"
    )
    project_id: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="Owning project; NULL means global scope"
    )
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.QUEUED.value,
        comment="Job status: queued|running|completed|failed|canceled",
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Higher is more urgent"
    )
    scope: Mapped[str] = mapped_column(
        Text, nullable=False, default=JobScope.PROJECT.value
    )
    payload: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Handler-specific parameters"
    )

    # Progress
    progress_done: Mapped[int | None] = mapped_column(Integer, nullable=True)
    progress_total: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Retry bookkeeping
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Worker coordination
    claimed_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker holding the claim"
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Last worker heartbeat"
    )
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Errors
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'failed', 'canceled')",
            name="jobs_status_check",
        ),
        CheckConstraint(
            "scope IN ('project', 'photo_set', 'global')", name="jobs_scope_check"
        ),
        Index("ix_jobs_claim", "status", "priority", "created_at"),
        Index("ix_jobs_project_status", "project_id", "status"),
        Index("ix_jobs_heartbeat_at", "heartbeat_at"),
    )

    def is_active(self) -> bool:
        """Check if job is in an active state (queued, running)."""
        return self.status in (JobStatus.QUEUED.value, JobStatus.RUNNING.value)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def can_retry(self, default_max_attempts: int) -> bool:
        """Check whether another attempt is allowed after a failure."""
        limit = self.max_attempts or default_max_attempts
        return self.attempts < limit

    def is_stale(self, stale_seconds: int, now: datetime | None = None) -> bool:
        """Check if running job is stale based on heartbeat timeout."""
        if self.status != JobStatus.RUNNING.value or not self.heartbeat_at:
            return False
        now = now or utcnow()
        return (now - self.heartbeat_at).total_seconds() > stale_seconds

    def get_progress_percentage(self) -> float | None:
        """Get progress as percentage if progress data is available."""
        if not self.progress_total or self.progress_total <= 0:
            return None
        done = self.progress_done or 0
        return min(100.0, (done / self.progress_total) * 100.0)


class JobItem(Base):
    """Per-subject sub-task of a job (one photo, one folder, ...)."""

    __tablename__ = "job_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    job_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    photo_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    filename: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=JobItemStatus.PENDING.value
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'done', 'skipped', 'failed')",
            name="job_items_status_check",
        ),
        CheckConstraint(
            "photo_id IS NOT NULL OR filename IS NOT NULL",
            name="job_items_subject_check",
        ),
        Index("ix_job_items_job_status", "job_id", "status"),
    )
