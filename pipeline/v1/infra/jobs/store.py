"""
Durable job store.

Every operation runs in its own session and commits one transaction, so the
store is safe to share between the worker loop, the scheduler, handlers and
HTTP routes, and between processes pointed at the same database. The store
never retries; retry policy lives in the worker loop.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, NamedTuple

from sqlalchemy import and_, case, delete, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from pipeline.v1.infra.jobs.models import (
    TERMINAL_JOB_STATUSES,
    Job,
    JobItem,
    JobItemStatus,
    JobStatus,
)
from pipeline.v1.infra.jobs.schemas import JobCreate, JobItemCreate, JobStatsResponse

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 1000
HEARTBEAT_LOST = "worker heartbeat lost"
CANCELED_ITEM_MESSAGE = "canceled"
_UNFINISHED_ITEMS = (JobItemStatus.PENDING.value, JobItemStatus.RUNNING.value)


class StaleRecovery(NamedTuple):
    """Outcome of a stale-heartbeat sweep."""

    requeued: list[int]
    failed: list[int]


def _now() -> datetime:
    return datetime.now(UTC)


def _clip(message: Any) -> str:
    return str(message or "")[:ERROR_MESSAGE_LIMIT]


def _coerce_item(item: JobItemCreate | dict[str, Any] | str) -> JobItemCreate:
    if isinstance(item, JobItemCreate):
        return item
    if isinstance(item, str):
        return JobItemCreate(filename=item)
    return JobItemCreate(**item)


def _skip_items(job_ids: list[int], message: str):
    """UPDATE marking the pending/running items of ``job_ids`` skipped."""
    return (
        update(JobItem)
        .where(
            and_(
                JobItem.job_id.in_(job_ids),
                JobItem.status.in_(_UNFINISHED_ITEMS),
            )
        )
        .values(status=JobItemStatus.SKIPPED.value, message=message, updated_at=_now())
        .execution_options(synchronize_session=False)
    )


class JobStore:
    """Atomic persistence operations for jobs and job items."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ---- enqueue -------------------------------------------------------

    async def enqueue(self, spec: JobCreate) -> Job:
        """Create a queued job with zero attempts."""
        async with self._session_factory() as session:
            job = self._new_job(spec)
            session.add(job)
            await session.commit()

        logger.info(
            "Job enqueued",
            extra={
                "job_id": job.id,
                "type": job.type,
                "priority": job.priority,
                "project_id": job.project_id,
            },
        )
        return job

    async def enqueue_with_items(
        self,
        spec: JobCreate,
        items: list[JobItemCreate | dict[str, Any] | str],
    ) -> Job:
        """Create a queued job and its items in a single transaction."""
        parsed = [_coerce_item(item) for item in items]
        async with self._session_factory() as session:
            job = self._new_job(spec)
            job.progress_total = len(parsed)
            session.add(job)
            await session.flush()
            session.add_all(
                [self._new_item(job.id, job.tenant_id, item) for item in parsed]
            )
            await session.commit()

        logger.info(
            "Job enqueued with items",
            extra={"job_id": job.id, "type": job.type, "item_count": len(parsed)},
        )
        return job

    @staticmethod
    def _new_job(spec: JobCreate) -> Job:
        now = _now()
        return Job(
            tenant_id=spec.tenant_id,
            project_id=spec.project_id,
            type=spec.type,
            status=JobStatus.QUEUED.value,
            priority=spec.priority,
            scope=spec.effective_scope().value,
            payload=spec.payload,
            progress_total=spec.progress_total,
            progress_done=0,
            attempts=0,
            max_attempts=spec.max_attempts,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _new_item(job_id: int, tenant_id: str, item: JobItemCreate) -> JobItem:
        now = _now()
        return JobItem(
            tenant_id=tenant_id,
            job_id=job_id,
            photo_id=item.photo_id,
            filename=item.filename,
            status=item.status.value,
            created_at=now,
            updated_at=now,
        )

    # ---- claim / liveness ---------------------------------------------

    async def claim_next(
        self,
        worker_id: str,
        min_priority: int | None = None,
        max_priority: int | None = None,
        tenant_id: str | None = None,
    ) -> Job | None:
        """
        Atomically claim the most urgent queued job in a priority band.

        Candidates are ordered by priority (highest first), then age (oldest
        first). Selection and the ``queued -> running`` transition are one
        UPDATE statement; the ``status = 'queued'`` guard makes a lost race
        return None instead of double-claiming.
        """
        candidate = aliased(Job)
        conditions = [candidate.status == JobStatus.QUEUED.value]
        if min_priority is not None:
            conditions.append(candidate.priority >= min_priority)
        if max_priority is not None:
            conditions.append(candidate.priority <= max_priority)
        if tenant_id is not None:
            conditions.append(candidate.tenant_id == tenant_id)

        next_id = (
            select(candidate.id)
            .where(and_(*conditions))
            .order_by(
                candidate.priority.desc(),
                candidate.created_at.asc(),
                candidate.id.asc(),
            )
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        now = _now()
        stmt = (
            update(Job)
            .where(and_(Job.id == next_id, Job.status == JobStatus.QUEUED.value))
            .values(
                status=JobStatus.RUNNING.value,
                claimed_by=worker_id,
                heartbeat_at=now,
                started_at=now,
                finished_at=None,
                updated_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            job = result.scalars().first()
            await session.commit()

        if job is not None:
            logger.debug(
                "Job claimed",
                extra={"job_id": job.id, "worker_id": worker_id, "type": job.type},
            )
        return job

    async def heartbeat(self, job_id: int, worker_id: str | None = None) -> bool:
        """Refresh the heartbeat of a running job; False if no longer ours."""
        conditions = [Job.id == job_id, Job.status == JobStatus.RUNNING.value]
        if worker_id is not None:
            conditions.append(Job.claimed_by == worker_id)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(and_(*conditions))
                .values(heartbeat_at=_now())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    # ---- progress / payload -------------------------------------------

    async def update_progress(
        self, job_id: int, done: int | None = None, total: int | None = None
    ) -> Job | None:
        """Merge progress fields; ``progress_done`` never moves backwards."""
        values: dict[str, Any] = {}
        if done is not None:
            values["progress_done"] = case(
                (Job.progress_done.is_(None), done),
                (Job.progress_done < done, done),
                else_=Job.progress_done,
            )
        if total is not None:
            values["progress_total"] = total
        if values:
            values["updated_at"] = _now()
            async with self._session_factory() as session:
                await session.execute(
                    update(Job)
                    .where(Job.id == job_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        return await self.get_by_id(job_id)

    async def update_payload(self, job_id: int, payload: dict[str, Any] | None) -> Job | None:
        async with self._session_factory() as session:
            await session.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(payload=payload, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return await self.get_by_id(job_id)

    # ---- terminal transitions -----------------------------------------

    async def complete(self, job_id: int, worker_id: str | None = None) -> Job | None:
        """
        Mark a running job completed.

        A concurrent cancel is left intact. With ``worker_id`` the write only
        lands while that worker still holds the claim, and None is returned
        when it does not.
        """
        return await self._finish(
            job_id,
            JobStatus.COMPLETED,
            only_from=(JobStatus.RUNNING.value,),
            worker_id=worker_id,
        )

    async def fail(
        self, job_id: int, message: Any, worker_id: str | None = None
    ) -> Job | None:
        now = _now()
        return await self._finish(
            job_id,
            JobStatus.FAILED,
            only_from=(
                (JobStatus.RUNNING.value,)
                if worker_id is not None
                else (JobStatus.QUEUED.value, JobStatus.RUNNING.value)
            ),
            worker_id=worker_id,
            error_message=_clip(message),
            last_error_at=now,
        )

    async def cancel(self, job_id: int) -> Job | None:
        """Cancel a queued or running job and skip its unfinished items."""
        return await self._finish(
            job_id,
            JobStatus.CANCELED,
            only_from=(JobStatus.QUEUED.value, JobStatus.RUNNING.value),
            skip_items=True,
        )

    async def _finish(
        self,
        job_id: int,
        status: JobStatus,
        only_from: tuple[str, ...],
        worker_id: str | None = None,
        skip_items: bool = False,
        **extra: Any,
    ) -> Job | None:
        now = _now()
        conditions = [Job.id == job_id, Job.status.in_(only_from)]
        if worker_id is not None:
            conditions.append(Job.claimed_by == worker_id)

        async with self._session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(and_(*conditions))
                .values(
                    status=status.value,
                    claimed_by=None,
                    heartbeat_at=None,
                    finished_at=now,
                    updated_at=now,
                    **extra,
                )
                .execution_options(synchronize_session=False)
            )
            if skip_items and result.rowcount > 0:
                await session.execute(_skip_items([job_id], CANCELED_ITEM_MESSAGE))
            await session.commit()

        if result.rowcount > 0:
            logger.info(
                "Job finished", extra={"job_id": job_id, "status": status.value}
            )
        elif worker_id is not None:
            logger.warning(
                "Job write skipped, claim not held",
                extra={"job_id": job_id, "worker_id": worker_id, "status": status.value},
            )
            return None
        return await self.get_by_id(job_id)

    async def cancel_by_project(self, project_id: int) -> list[int]:
        """Cancel every queued or running job of a project and skip their unfinished items."""
        now = _now()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(
                    and_(
                        Job.project_id == project_id,
                        Job.status.in_(
                            [JobStatus.QUEUED.value, JobStatus.RUNNING.value]
                        ),
                    )
                )
                .values(
                    status=JobStatus.CANCELED.value,
                    claimed_by=None,
                    heartbeat_at=None,
                    finished_at=now,
                    updated_at=now,
                )
                .returning(Job.id)
                .execution_options(synchronize_session=False)
            )
            canceled = list(result.scalars().all())
            if canceled:
                await session.execute(_skip_items(canceled, CANCELED_ITEM_MESSAGE))
            await session.commit()

        if canceled:
            logger.info(
                "Project jobs canceled",
                extra={"project_id": project_id, "job_ids": canceled},
            )
        return canceled

    # ---- retry bookkeeping --------------------------------------------

    async def increment_attempts(self, job_id: int, worker_id: str | None = None) -> bool:
        """Count one attempt; False when ``worker_id`` no longer holds the claim."""
        conditions = [Job.id == job_id]
        if worker_id is not None:
            conditions += [
                Job.status == JobStatus.RUNNING.value,
                Job.claimed_by == worker_id,
            ]
        async with self._session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(and_(*conditions))
                .values(attempts=func.coalesce(Job.attempts, 0) + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    async def set_default_max_attempts(self, job_id: int, max_attempts: int) -> None:
        """Fill ``max_attempts`` only where the job did not set its own."""
        async with self._session_factory() as session:
            await session.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(max_attempts=func.coalesce(Job.max_attempts, max_attempts))
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def requeue(self, job_id: int, worker_id: str | None = None) -> Job | None:
        """
        Return a running job to the queue, keeping its attempt count.

        With ``worker_id`` only that worker's claim is released; None when it
        no longer holds one.
        """
        conditions = [Job.id == job_id, Job.status == JobStatus.RUNNING.value]
        if worker_id is not None:
            conditions.append(Job.claimed_by == worker_id)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(and_(*conditions))
                .values(
                    status=JobStatus.QUEUED.value,
                    claimed_by=None,
                    heartbeat_at=None,
                    started_at=None,
                    finished_at=None,
                    updated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if worker_id is not None and result.rowcount == 0:
            return None
        return await self.get_by_id(job_id)

    async def requeue_stale_running(
        self, stale_seconds: int, max_attempts_default: int = 3
    ) -> StaleRecovery:
        """
        Recover running jobs whose heartbeat is older than ``stale_seconds``.

        Recovery counts as an attempt. Jobs that reach their attempt limit
        this way are failed; the rest go back to ``queued`` with the claim
        cleared.
        """
        now = _now()
        cutoff = now - timedelta(seconds=stale_seconds)
        stale = and_(
            Job.status == JobStatus.RUNNING.value,
            or_(Job.heartbeat_at.is_(None), Job.heartbeat_at < cutoff),
        )
        limit = func.coalesce(Job.max_attempts, max_attempts_default)
        cleared = {
            "claimed_by": None,
            "heartbeat_at": None,
            "updated_at": now,
            "attempts": func.coalesce(Job.attempts, 0) + 1,
        }

        async with self._session_factory() as session:
            exhausted = await session.execute(
                update(Job)
                .where(and_(stale, func.coalesce(Job.attempts, 0) + 1 >= limit))
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=HEARTBEAT_LOST,
                    last_error_at=now,
                    finished_at=now,
                    **cleared,
                )
                .returning(Job.id)
                .execution_options(synchronize_session=False)
            )
            failed = list(exhausted.scalars().all())

            recovered = await session.execute(
                update(Job)
                .where(stale)
                .values(
                    status=JobStatus.QUEUED.value,
                    started_at=None,
                    finished_at=None,
                    **cleared,
                )
                .returning(Job.id)
                .execution_options(synchronize_session=False)
            )
            requeued = list(recovered.scalars().all())
            await session.commit()

        if requeued or failed:
            logger.warning(
                "Recovered stale jobs",
                extra={
                    "requeued": requeued,
                    "failed": failed,
                    "stale_seconds": stale_seconds,
                },
            )
        return StaleRecovery(requeued=requeued, failed=failed)

    async def retry_failed(self, job_id: int) -> bool:
        """Manually put a failed job back in the queue with fresh attempts."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(and_(Job.id == job_id, Job.status == JobStatus.FAILED.value))
                .values(
                    status=JobStatus.QUEUED.value,
                    attempts=0,
                    claimed_by=None,
                    heartbeat_at=None,
                    started_at=None,
                    finished_at=None,
                    error_message=None,
                    updated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info("Job retried", extra={"job_id": job_id})
        return success

    # ---- reads ---------------------------------------------------------

    async def get_by_id(self, job_id: int) -> Job | None:
        async with self._session_factory() as session:
            return await session.get(Job, job_id)

    async def list_by_project(
        self,
        project_id: int,
        status: str | None = None,
        type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        return await self.list_jobs(
            project_id=project_id, status=status, type=type, limit=limit, offset=offset
        )

    async def list_jobs(
        self,
        project_id: int | None = None,
        status: str | None = None,
        type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        query = select(Job)
        if project_id is not None:
            query = query.where(Job.project_id == project_id)
        if status:
            query = query.where(Job.status == status)
        if type:
            query = query.where(Job.type == type)
        query = query.order_by(Job.created_at.desc(), Job.id.desc())
        query = query.offset(offset).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_stats(self) -> JobStatsResponse:
        """Queue-wide statistics."""
        async with self._session_factory() as session:
            total_jobs = (await session.execute(select(func.count(Job.id)))).scalar() or 0

            status_result = await session.execute(
                select(Job.status, func.count(Job.id)).group_by(Job.status)
            )
            by_status = dict(status_result.all())

            type_result = await session.execute(
                select(Job.type, func.count(Job.id)).group_by(Job.type)
            )
            by_type = dict(type_result.all())

            one_hour_ago = _now() - timedelta(hours=1)
            failed_recent = await session.execute(
                select(func.count(Job.id)).where(
                    and_(
                        Job.status == JobStatus.FAILED.value,
                        Job.updated_at >= one_hour_ago,
                    )
                )
            )
            failed_last_hour = failed_recent.scalar() or 0

        queue_depth = by_status.get(JobStatus.QUEUED.value, 0) + by_status.get(
            JobStatus.RUNNING.value, 0
        )
        return JobStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            by_type=by_type,
            queue_depth=queue_depth,
            failed_last_hour=failed_last_hour,
        )

    # ---- items ---------------------------------------------------------

    async def list_items(self, job_id: int) -> list[JobItem]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(JobItem).where(JobItem.job_id == job_id).order_by(JobItem.id)
            )
            return list(result.scalars().all())

    async def create_items(
        self, job_id: int, items: list[JobItemCreate | dict[str, Any] | str]
    ) -> list[JobItem]:
        """
        Lazily create the items of a job.

        Items are created once: when the job already has items they are
        returned unchanged, so a re-run resumes from their stored statuses.
        """
        parsed = [_coerce_item(item) for item in items]
        async with self._session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                return []
            existing = await session.execute(
                select(func.count(JobItem.id)).where(JobItem.job_id == job_id)
            )
            if (existing.scalar() or 0) == 0 and parsed:
                await session.execute(
                    insert(JobItem),
                    [
                        {
                            "tenant_id": job.tenant_id,
                            "job_id": job_id,
                            "photo_id": item.photo_id,
                            "filename": item.filename,
                            "status": item.status.value,
                            "created_at": _now(),
                            "updated_at": _now(),
                        }
                        for item in parsed
                    ],
                )
                await session.execute(
                    update(Job)
                    .where(Job.id == job_id)
                    .values(progress_total=len(parsed), updated_at=_now())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        return await self.list_items(job_id)

    async def next_pending_item(self, job_id: int) -> JobItem | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(JobItem)
                .where(
                    and_(
                        JobItem.job_id == job_id,
                        JobItem.status == JobItemStatus.PENDING.value,
                    )
                )
                .order_by(JobItem.id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def update_item_status(
        self, item_id: int, status: JobItemStatus | str, message: str | None = None
    ) -> None:
        await self.update_items_status([item_id], status, message)

    async def update_items_status(
        self,
        item_ids: list[int],
        status: JobItemStatus | str,
        message: str | None = None,
    ) -> None:
        if not item_ids:
            return
        value = status.value if isinstance(status, JobItemStatus) else status
        async with self._session_factory() as session:
            await session.execute(
                update(JobItem)
                .where(JobItem.id.in_(item_ids))
                .values(status=value, message=message, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def items_summary(self, job_id: int) -> dict[str, int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(JobItem.status, func.count(JobItem.id))
                .where(JobItem.job_id == job_id)
                .group_by(JobItem.status)
            )
            return dict(result.all())

    async def skip_unfinished_items(self, job_id: int, message: str) -> int:
        """Mark pending/running items of a job as skipped."""
        async with self._session_factory() as session:
            result = await session.execute(_skip_items([job_id], message))
            await session.commit()
        return result.rowcount

    # ---- maintenance ---------------------------------------------------

    async def reconcile_terminal_items(self) -> int:
        """Skip items left pending/running under jobs that already ended."""
        terminal_jobs = select(Job.id).where(Job.status.in_(TERMINAL_JOB_STATUSES))
        async with self._session_factory() as session:
            result = await session.execute(
                update(JobItem)
                .where(
                    and_(
                        JobItem.job_id.in_(terminal_jobs),
                        JobItem.status.in_(
                            [JobItemStatus.PENDING.value, JobItemStatus.RUNNING.value]
                        ),
                    )
                )
                .values(
                    status=JobItemStatus.SKIPPED.value,
                    message="job ended",
                    updated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        reconciled = result.rowcount
        if reconciled > 0:
            logger.info("Reconciled orphaned items", extra={"count": reconciled})
        return reconciled

    async def cleanup_old_jobs(self, retention_days: int) -> int:
        """Delete terminal jobs (and their items) older than the retention window."""
        cutoff = _now() - timedelta(days=retention_days)
        old_jobs = select(Job.id).where(
            and_(Job.status.in_(TERMINAL_JOB_STATUSES), Job.updated_at < cutoff)
        )

        async with self._session_factory() as session:
            await session.execute(
                delete(JobItem)
                .where(JobItem.job_id.in_(old_jobs))
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(
                delete(Job)
                .where(
                    and_(
                        Job.status.in_(TERMINAL_JOB_STATUSES),
                        Job.updated_at < cutoff,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            deleted_count = result.rowcount
            await session.commit()

        if deleted_count > 0:
            logger.info(
                "Cleaned up old jobs",
                extra={"deleted_count": deleted_count, "retention_days": retention_days},
            )
        return deleted_count

    async def count_orphaned_items(self) -> int:
        """Items still pending/running under jobs that already ended."""
        terminal_jobs = select(Job.id).where(Job.status.in_(TERMINAL_JOB_STATUSES))
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(JobItem.id)).where(
                    and_(
                        JobItem.job_id.in_(terminal_jobs),
                        JobItem.status.in_(
                            [JobItemStatus.PENDING.value, JobItemStatus.RUNNING.value]
                        ),
                    )
                )
            )
            return result.scalar() or 0

    async def count_old_jobs(self, retention_days: int) -> int:
        cutoff = _now() - timedelta(days=retention_days)
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(Job.id)).where(
                    and_(
                        Job.status.in_(TERMINAL_JOB_STATUSES),
                        Job.updated_at < cutoff,
                    )
                )
            )
            return result.scalar() or 0
