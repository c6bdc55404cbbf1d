"""
Job handlers for the photo pipeline.

Handlers implement the JobHandler protocol and are registered in the job
registry by ``registry_init``. Item-oriented handlers build on
``BatchJobHandler``, which owns resumption, per-batch persistence and
cooperative cancellation.
"""

import asyncio
import logging
from collections import Counter
from typing import Any

from pipeline.config.settings import Settings
from pipeline.v1.core.exceptions import ItemSkipped, PermanentJobError
from pipeline.v1.core.registries import renderer_registry
from pipeline.v1.infra.jobs.events import JOBS_CHANNEL
from pipeline.v1.infra.jobs.models import Job, JobItem, JobItemStatus
from pipeline.v1.infra.jobs.schemas import JobItemCreate
from pipeline.v1.infra.jobs.sources import (
    SUPPORTED_EXTENSIONS,
    DirectorySubjectSource,
    SubjectSource,
)
from pipeline.v1.infra.jobs.store import CANCELED_ITEM_MESSAGE, ERROR_MESSAGE_LIMIT

logger = logging.getLogger(__name__)

# Items picked up again when a job is (re)run
_REPROCESS = (
    JobItemStatus.PENDING.value,
    JobItemStatus.RUNNING.value,
    JobItemStatus.FAILED.value,
)

DEFAULT_DERIVATIVES: list[dict[str, Any]] = [
    {"name": "thumbnail", "max_size": 256},
    {"name": "preview", "max_size": 1600},
]


class BatchJobHandler:
    """
    Base class for handlers that work through a job's items.

    Subclasses provide ``subjects`` (what to create items for on the first
    run) and ``process_item`` (the per-item work). The base class:

    - creates items once and only reprocesses pending/running/failed ones,
      so a retried job never redoes finished work;
    - persists item statuses and ``progress_done`` after every batch;
    - re-reads the job before each batch and stops when it was canceled,
      marking the unfinished items skipped;
    - stops without touching items once another worker holds the claim;
    - sizes batches to the compute pool's concurrency.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    async def subjects(self, job: Job, ctx: Any) -> list[JobItemCreate | str]:
        raise NotImplementedError

    async def process_item(self, job: Job, item: JobItem, ctx: Any) -> str | None:
        """Do the work for one item; the return value is stored as its message."""
        raise NotImplementedError

    def batch_size(self, ctx: Any) -> int:
        pool = getattr(ctx, "pool", None)
        return max(1, pool.concurrency) if pool is not None else 1

    async def handle(self, job: Job, ctx: Any) -> dict[str, Any] | None:
        store = ctx.store
        items = await store.list_items(job.id)
        if not items:
            items = await store.create_items(job.id, await self.subjects(job, ctx))

        total = len(items)
        work = [item for item in items if item.status in _REPROCESS]
        resolved = total - len(work)
        await ctx.report_progress(done=resolved, total=total)

        counts: Counter[str] = Counter()
        size = self.batch_size(ctx)
        for start in range(0, len(work), size):
            if await ctx.is_canceled():
                skipped = await store.skip_unfinished_items(job.id, CANCELED_ITEM_MESSAGE)
                logger.info(
                    "Job canceled, stopping",
                    extra={"job_id": job.id, "skipped_items": skipped},
                )
                return {"canceled": True, "skipped": skipped, **counts}
            if await ctx.claim_lost():
                # Another worker owns the job now; leave its items alone
                logger.warning(
                    "Job claim lost, stopping",
                    extra={"job_id": job.id, "resolved": resolved},
                )
                return {"claim_lost": True, **counts}

            batch = work[start : start + size]
            await store.update_items_status(
                [item.id for item in batch], JobItemStatus.RUNNING
            )
            outcomes = await asyncio.gather(
                *(self._run_item(job, item, ctx) for item in batch)
            )
            for item, (status, message) in zip(batch, outcomes):
                await store.update_item_status(item.id, status, message)
                ctx.events.publish_item(
                    job,
                    status.value,
                    filename=item.filename,
                    photo_id=item.photo_id,
                    message=message,
                )
                counts[status.value] += 1

            resolved += len(batch)
            await ctx.report_progress(done=resolved)

        return {"total": total, **counts}

    async def _run_item(
        self, job: Job, item: JobItem, ctx: Any
    ) -> tuple[JobItemStatus, str | None]:
        try:
            message = await self.process_item(job, item, ctx)
            return JobItemStatus.DONE, message
        except ItemSkipped as e:
            return JobItemStatus.SKIPPED, str(e) or None
        except Exception as e:
            logger.warning(
                "Item failed",
                extra={
                    "job_id": job.id,
                    "item_id": item.id,
                    "item_filename": item.filename,
                    "error": str(e),
                },
            )
            return JobItemStatus.FAILED, (str(e) or e.__class__.__name__)[
                :ERROR_MESSAGE_LIMIT
            ]


class GenerateDerivativesHandler(BatchJobHandler):
    """
    Render derivatives (thumbnail, preview) for each photo of a project.

    Payload (all optional):
    {
        "filenames": ["IMG_0001.jpg", ...],   # default: every photo in the project
        "derivatives": [{"name": "thumbnail", "max_size": 256}, ...]
    }
    """

    def __init__(self, settings: Settings, source: SubjectSource | None = None):
        super().__init__(settings)
        self.source = source or DirectorySubjectSource(settings.library_root)

    async def subjects(self, job: Job, ctx: Any) -> list[JobItemCreate | str]:
        payload = job.payload or {}
        filenames = payload.get("filenames")
        if filenames is None:
            filenames = self.source.list_subjects(job.project_id)
        return list(filenames)

    async def process_item(self, job: Job, item: JobItem, ctx: Any) -> str | None:
        path = self.source.resolve(job.project_id, item.filename)
        if path is None:
            raise ItemSkipped("no supported source")

        derivatives = [
            {
                **spec,
                "path": str(
                    self.source.derivative_path(job.project_id, item.filename, spec["name"])
                ),
            }
            for spec in (job.payload or {}).get("derivatives") or DEFAULT_DERIVATIVES
        ]
        renderer = renderer_registry.get(self.settings.derivative_renderer.value)
        if ctx.pool is not None:
            results = await ctx.pool.run(renderer, str(path), derivatives)
        else:
            results = renderer(str(path), derivatives)
        return ",".join(result["name"] for result in results)


class MaintenanceHandler:
    """
    Housekeeping over the job tables.

    Payload:
    {
        "tasks": ["reconcile_items", "cleanup_jobs"],
        "retention_days": 30,   # optional, cleanup_jobs only
        "dry_run": false        # count only, change nothing
    }
    """

    TASKS = ("reconcile_items", "cleanup_jobs")

    def __init__(self, settings: Settings):
        self.settings = settings

    async def handle(self, job: Job, ctx: Any) -> dict[str, Any] | None:
        payload = job.payload or {}
        tasks = payload.get("tasks") or list(self.TASKS)
        unknown = [task for task in tasks if task not in self.TASKS]
        if unknown:
            raise PermanentJobError(f"Unknown maintenance task: {', '.join(unknown)}")

        dry_run = bool(payload.get("dry_run", False))
        retention_days = int(
            payload.get("retention_days", self.settings.job_retention_days)
        )
        store = ctx.store
        results: dict[str, Any] = {"dry_run": dry_run}

        await ctx.report_progress(done=0, total=len(tasks))
        for index, task in enumerate(tasks, start=1):
            if task == "reconcile_items":
                if dry_run:
                    results["orphaned_items"] = await store.count_orphaned_items()
                else:
                    results["reconciled_items"] = await store.reconcile_terminal_items()
            elif task == "cleanup_jobs":
                if dry_run:
                    results["expired_jobs"] = await store.count_old_jobs(retention_days)
                else:
                    results["deleted_jobs"] = await store.cleanup_old_jobs(retention_days)
            await ctx.report_progress(done=index)

        logger.info("Maintenance completed", extra={"job_id": job.id, **results})
        return results


class FolderDiscoveryHandler(BatchJobHandler):
    """Record one item per folder found under the library root."""

    def __init__(self, settings: Settings, source: DirectorySubjectSource | None = None):
        super().__init__(settings)
        self.source = source or DirectorySubjectSource(settings.library_root)

    async def subjects(self, job: Job, ctx: Any) -> list[JobItemCreate | str]:
        return self.source.list_folders()

    async def process_item(self, job: Job, item: JobItem, ctx: Any) -> str | None:
        folder = self.source.root / item.filename
        if not folder.is_dir():
            raise ItemSkipped("folder vanished")
        photos = [
            entry
            for entry in folder.iterdir()
            if entry.is_file() and entry.suffix.lower() in SUPPORTED_EXTENSIONS
        ]
        return f"{len(photos)} photos"

    async def handle(self, job: Job, ctx: Any) -> dict[str, Any] | None:
        summary = await super().handle(job, ctx)
        if summary and summary.get("canceled"):
            return summary

        folders = [
            {"folder": item.filename, "message": item.message}
            for item in await ctx.store.list_items(job.id)
            if item.status == JobItemStatus.DONE.value
        ]
        ctx.events.publish(
            JOBS_CHANNEL,
            "folders_discovered",
            {"job_id": job.id, "count": len(folders), "folders": folders},
        )
        return summary
