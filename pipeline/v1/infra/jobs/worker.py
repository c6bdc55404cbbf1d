"""
Priority-lane worker loop with heartbeats, retries and stale-job recovery.
"""

import asyncio
import os
import socket
from dataclasses import dataclass
from typing import Any

from pipeline.config.logging import get_logger
from pipeline.config.settings import Settings
from pipeline.v1.core.exceptions import PermanentJobError, UnknownJobTypeError
from pipeline.v1.core.registries import JobRegistry, job_registry
from pipeline.v1.infra.jobs.compute import ComputePool
from pipeline.v1.infra.jobs.events import EventBus
from pipeline.v1.infra.jobs.models import Job, JobStatus
from pipeline.v1.infra.jobs.store import CANCELED_ITEM_MESSAGE, JobStore
from pipeline.v1.infra.jobs.tasks import TaskOrchestrator

logger = get_logger(__name__)


@dataclass(frozen=True)
class WorkerConfig:
    """Concurrency and liveness knobs of one worker process."""

    total_slots: int = 1
    priority_lane_slots: int = 1
    priority_threshold: int = 90
    tick_interval_ms: int = 500
    heartbeat_interval_ms: int = 1000
    stale_seconds: int = 60
    max_attempts_default: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkerConfig":
        if settings.max_parallel_jobs < 1:
            logger.warning(
                "config_sanity_max_parallel_clamped",
                configured=settings.max_parallel_jobs,
                effective=1,
            )
        return cls(
            total_slots=max(1, settings.max_parallel_jobs),
            priority_lane_slots=max(0, settings.priority_lane_slots),
            priority_threshold=settings.priority_threshold,
            tick_interval_ms=max(10, settings.tick_interval_ms),
            heartbeat_interval_ms=max(250, settings.heartbeat_ms),
            stale_seconds=max(5, settings.stale_seconds),
            max_attempts_default=max(1, settings.max_attempts_default),
        )

    @property
    def priority_slots(self) -> int:
        """Priority lane size, capped by the total slot count."""
        return min(self.priority_lane_slots, self.total_slots)

    @property
    def normal_slots(self) -> int:
        return max(0, self.total_slots - self.priority_lane_slots)


class JobContext:
    """What a handler gets besides the job row."""

    def __init__(
        self,
        job: Job,
        store: JobStore,
        events: EventBus,
        pool: ComputePool | None,
        settings: Settings | None = None,
        worker_id: str | None = None,
    ):
        self.job = job
        self.store = store
        self.events = events
        self.pool = pool
        self.settings = settings
        self.worker_id = worker_id
        self.lost = False

    async def report_progress(self, done: int | None = None, total: int | None = None) -> Job | None:
        """Persist aggregate progress and re-publish the stored row."""
        updated = await self.store.update_progress(self.job.id, done=done, total=total)
        if updated is not None:
            self.events.publish_job(updated, event_type="job_update")
        return updated

    async def is_canceled(self) -> bool:
        """Cooperative cancellation check point."""
        fresh = await self.store.get_by_id(self.job.id)
        return fresh is None or fresh.status == JobStatus.CANCELED.value

    async def claim_lost(self) -> bool:
        """
        True once this worker no longer holds the job's claim.

        Set early by the heartbeat task; otherwise read from the row. Without
        a ``worker_id`` there is no claim to lose.
        """
        if self.lost:
            return True
        if self.worker_id is None:
            return False
        fresh = await self.store.get_by_id(self.job.id)
        self.lost = (
            fresh is None
            or fresh.status != JobStatus.RUNNING.value
            or fresh.claimed_by != self.worker_id
        )
        return self.lost


class WorkerLoop:
    """
    Bounded, priority-aware dispatcher.

    Features:
    - Atomic claims per lane: a priority lane for jobs at or above the
      threshold and a normal lane for the rest
    - Ticks never wait for running jobs; each job is its own task
    - Per-job heartbeats and stale-heartbeat recovery each tick
    - Retry with bounded attempts, permanent failures for unknown types
    """

    def __init__(
        self,
        store: JobStore,
        events: EventBus,
        config: WorkerConfig | None = None,
        pool: ComputePool | None = None,
        registry: JobRegistry | None = None,
        orchestrator: TaskOrchestrator | None = None,
        settings: Settings | None = None,
        worker_id: str | None = None,
    ):
        self.store = store
        self.events = events
        self.config = config or WorkerConfig()
        self.pool = pool
        self.registry = registry if registry is not None else job_registry
        self.orchestrator = orchestrator
        self.settings = settings
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False
        self.active_priority: set[int] = set()
        self.active_normal: set[int] = set()
        self._tasks: set[asyncio.Task] = set()
        self._tick_task: asyncio.Task | None = None

    # ---- lifecycle -----------------------------------------------------

    async def start(self) -> None:
        """Start ticking in the background."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self._check_config()
        logger.info(
            "worker_started",
            worker_id=self.worker_id,
            total_slots=self.config.total_slots,
            priority_slots=self.config.priority_slots,
            normal_slots=self.config.normal_slots,
            priority_threshold=self.config.priority_threshold,
        )
        self._tick_task = asyncio.create_task(self._run(), name="worker-tick")

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop ticking, then give in-flight jobs ``timeout`` seconds to finish."""
        logger.info("worker_stopping", worker_id=self.worker_id)
        self.running = False

        if self._tick_task is not None:
            self._tick_task.cancel()
            await asyncio.gather(self._tick_task, return_exceptions=True)
            self._tick_task = None

        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                logger.warning(
                    "worker_stopped_with_active_jobs",
                    worker_id=self.worker_id,
                    active_jobs=len(pending),
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

    async def drain(self) -> None:
        """Wait until every dispatched job task has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def active_count(self) -> int:
        return len(self.active_priority) + len(self.active_normal)

    def _check_config(self) -> None:
        cfg = self.config
        if cfg.priority_lane_slots > cfg.total_slots:
            logger.warning(
                "config_sanity_priority_slots_exceed_total",
                priority_slots=cfg.priority_lane_slots,
                total_slots=cfg.total_slots,
            )
        if cfg.normal_slots == 0:
            logger.warning(
                "config_sanity_normal_lane_zero",
                total_slots=cfg.total_slots,
                priority_slots=cfg.priority_lane_slots,
                note="Normal-priority jobs may starve",
            )
        if cfg.heartbeat_interval_ms / 1000 * 5 > cfg.stale_seconds:
            logger.warning(
                "config_sanity_heartbeat_close_to_stale",
                heartbeat_ms=cfg.heartbeat_interval_ms,
                stale_seconds=cfg.stale_seconds,
            )

    # ---- ticking -------------------------------------------------------

    async def _run(self) -> None:
        while self.running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("worker_tick_failed", worker_id=self.worker_id)
            await asyncio.sleep(self.config.tick_interval_ms / 1000)

    async def run_once(self) -> int:
        """One tick: recover stale jobs, then fill both lanes. Returns jobs dispatched."""
        recovery = await self.store.requeue_stale_running(
            self.config.stale_seconds, self.config.max_attempts_default
        )
        for job_id in recovery.requeued + recovery.failed:
            job = await self.store.get_by_id(job_id)
            if job is not None:
                self.events.publish_job(job)

        dispatched = 0
        while len(self.active_priority) < self.config.priority_slots:
            job = await self.store.claim_next(
                self.worker_id, min_priority=self.config.priority_threshold
            )
            if job is None:
                break
            self._dispatch(job, self.active_priority)
            dispatched += 1

        while len(self.active_normal) < self.config.normal_slots:
            job = await self.store.claim_next(
                self.worker_id, max_priority=self.config.priority_threshold - 1
            )
            if job is None:
                break
            self._dispatch(job, self.active_normal)
            dispatched += 1

        return dispatched

    def _dispatch(self, job: Job, lane: set[int]) -> None:
        lane.add(job.id)
        self.events.publish_job(job, status=JobStatus.RUNNING.value)
        logger.info(
            "job_claimed",
            job_id=job.id,
            job_type=job.type,
            priority=job.priority,
            worker_id=self.worker_id,
        )

        task = asyncio.create_task(self.handle_job(job), name=f"job-{job.id}")
        self._tasks.add(task)

        def _settled(finished: asyncio.Task) -> None:
            lane.discard(job.id)
            self._tasks.discard(finished)

        task.add_done_callback(_settled)

    # ---- job execution -------------------------------------------------

    async def handle_job(self, job: Job) -> None:
        """Run one claimed job to a terminal state or back to the queue."""
        job_logger = logger.bind(job_id=job.id, job_type=job.type, worker_id=self.worker_id)

        if not job.max_attempts:
            await self.store.set_default_max_attempts(job.id, self.config.max_attempts_default)
            job.max_attempts = self.config.max_attempts_default

        ctx = JobContext(
            job, self.store, self.events, self.pool, self.settings, worker_id=self.worker_id
        )
        heartbeat = asyncio.create_task(self._heartbeat_loop(ctx))
        try:
            try:
                handler = self.registry.get(job.type)
            except KeyError:
                raise UnknownJobTypeError(job.type) from None

            job_logger.info("job_processing_started", attempts=job.attempts)
            result = await handler.handle(job, ctx)

        except asyncio.CancelledError:
            await self._stop_heartbeat(heartbeat)
            job_logger.info("job_processing_cancelled")
            # Shutdown: hand the job back instead of waiting for stale recovery
            await asyncio.shield(self.store.requeue(job.id, self.worker_id))
            raise

        except PermanentJobError as e:
            job_logger.error("job_failed_permanently", error=str(e))
            await self._record_failure(job, e)

        except Exception as e:
            job_logger.exception("job_processing_failed", error=str(e))
            await self._retry_or_fail(job, e)

        else:
            await self._record_success(job, result)

        finally:
            await self._stop_heartbeat(heartbeat)

    async def _record_success(self, job: Job, result: dict[str, Any] | None) -> None:
        finished = await self.store.complete(job.id, self.worker_id)
        if finished is None:
            await self._release_unowned(job)
            return

        self.events.publish_job(finished)
        job_logger = logger.bind(job_id=job.id, job_type=job.type)
        job_logger.info("job_completed", result=result)
        if self.orchestrator is not None:
            try:
                await self.orchestrator.on_job_completed(finished)
            except Exception:
                job_logger.exception("task_advance_failed")

    async def _record_failure(self, job: Job, error: BaseException) -> None:
        failed = await self.store.fail(
            job.id, str(error) or error.__class__.__name__, self.worker_id
        )
        if failed is None:
            await self._release_unowned(job)
            return
        self.events.publish_job(failed)

    async def _retry_or_fail(self, job: Job, error: BaseException) -> None:
        job_logger = logger.bind(job_id=job.id, job_type=job.type)
        if not await self.store.increment_attempts(job.id, self.worker_id):
            await self._release_unowned(job)
            return

        current = await self.store.get_by_id(job.id) or job
        attempts = current.attempts or 0
        max_attempts = current.max_attempts or self.config.max_attempts_default or 1

        if attempts < max_attempts:
            requeued = await self.store.requeue(job.id, self.worker_id)
            if requeued is None:
                await self._release_unowned(job)
                return
            self.events.publish_job(requeued)
            job_logger.info("job_requeued", attempts=attempts, max_attempts=max_attempts)
        else:
            job_logger.error("job_attempts_exhausted", attempts=attempts)
            await self._record_failure(job, error)

    async def _release_unowned(self, job: Job) -> None:
        """
        Settle a job this worker no longer holds.

        A canceled job gets its leftover items skipped. Anything else belongs
        to whoever holds it now and is left untouched.
        """
        job_logger = logger.bind(job_id=job.id, job_type=job.type, worker_id=self.worker_id)
        current = await self.store.get_by_id(job.id)
        if current is not None and current.status == JobStatus.CANCELED.value:
            skipped = await self.store.skip_unfinished_items(job.id, CANCELED_ITEM_MESSAGE)
            self.events.publish_job(current)
            job_logger.info("job_canceled_during_run", skipped_items=skipped)
            return

        job_logger.warning(
            "job_claim_lost",
            status=current.status if current is not None else None,
            claimed_by=current.claimed_by if current is not None else None,
        )

    async def _heartbeat_loop(self, ctx: JobContext) -> None:
        interval = self.config.heartbeat_interval_ms / 1000
        job_id = ctx.job.id
        while True:
            await asyncio.sleep(interval)
            try:
                alive = await self.store.heartbeat(job_id, self.worker_id)
            except Exception:
                logger.exception("heartbeat_failed", job_id=job_id)
                continue
            if not alive:
                # The handler notices at its next claim check
                ctx.lost = True
                logger.info("heartbeat_stopped_claim_lost", job_id=job_id)
                return

    @staticmethod
    async def _stop_heartbeat(task: asyncio.Task) -> None:
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
