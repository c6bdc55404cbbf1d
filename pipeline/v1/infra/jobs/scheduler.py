"""
Timer-driven job producer.

The scheduler only enqueues work; the worker loop executes it.
"""

import asyncio
from typing import Any, Awaitable, Callable

from pipeline.config.logging import get_logger
from pipeline.config.settings import Settings
from pipeline.v1.infra.jobs.models import JobScope, JobStatus
from pipeline.v1.infra.jobs.schemas import JobCreate
from pipeline.v1.infra.jobs.store import JobStore
from pipeline.v1.infra.jobs.tasks import SYSTEM_TENANT, TaskOrchestrator

logger = get_logger(__name__)

FOLDER_DISCOVERY_PRIORITY = 95

Action = Callable[[], Awaitable[Any]]


class Scheduler:
    """
    Owns one asyncio task per periodic action plus a warm-up pass.

    ``start()`` always re-arms from scratch and ``stop()`` cancels and awaits
    every task it owns, so start/stop cycles never leak timers.
    """

    def __init__(
        self,
        store: JobStore,
        orchestrator: TaskOrchestrator,
        settings: Settings,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.settings = settings
        self.running = False
        self._intervals: dict[str, tuple[float, Action]] = {}
        self._tasks: set[asyncio.Task] = set()

        self.add_interval(
            "maintenance_global",
            settings.maintenance_interval_minutes * 60,
            self.start_maintenance,
        )
        self.add_interval(
            "folder_discovery",
            settings.folder_discovery_interval_minutes * 60,
            self.enqueue_folder_discovery,
        )
        self.add_interval(
            "job_retention",
            settings.retention_interval_hours * 3600,
            self.start_retention,
        )

    def add_interval(self, name: str, seconds: float, action: Action) -> None:
        """Register a periodic action; takes effect on the next ``start()``."""
        if seconds <= 0:
            raise ValueError(f"interval for '{name}' must be positive")
        self._intervals[name] = (seconds, action)

    @property
    def actions(self) -> list[str]:
        return list(self._intervals)

    async def start(self) -> None:
        if self.running:
            await self.stop()

        self.running = True
        for name, (seconds, action) in self._intervals.items():
            self._spawn(self._every(name, seconds, action), f"scheduler-{name}")
        self._spawn(self._warm_up(), "scheduler-warmup")
        logger.info(
            "scheduler_started",
            actions=self.actions,
            warmup_seconds=self.settings.scheduler_warmup_seconds,
        )

    async def stop(self) -> None:
        self.running = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("scheduler_stopped")

    @property
    def task_count(self) -> int:
        return len(self._tasks)

    def _spawn(self, coro: Awaitable[Any], name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _every(self, name: str, seconds: float, action: Action) -> None:
        while True:
            await asyncio.sleep(seconds)
            await self.run_action(name)

    async def _warm_up(self) -> None:
        await asyncio.sleep(self.settings.scheduler_warmup_seconds)
        await self.run_all()

    async def run_all(self) -> dict[str, bool]:
        """Run every action once, in registration order."""
        return {name: await self.run_action(name) for name in self._intervals}

    async def run_action(self, name: str) -> bool:
        """Run one action; a failure is logged and never propagates."""
        _, action = self._intervals[name]
        try:
            await action()
        except Exception as e:
            logger.warning("scheduler_action_failed", action=name, error=str(e))
            return False
        return True

    # ---- default actions -------------------------------------------------

    async def start_maintenance(self) -> None:
        await self.orchestrator.start_task(
            "maintenance_global", source="scheduler", scope=JobScope.GLOBAL.value
        )

    async def start_retention(self) -> None:
        await self.orchestrator.start_task(
            "job_retention",
            source="scheduler",
            scope=JobScope.GLOBAL.value,
            payload={"retention_days": self.settings.job_retention_days},
        )

    async def enqueue_folder_discovery(self) -> None:
        pending = await self.store.list_jobs(
            status=JobStatus.QUEUED.value, type="folder_discovery", limit=1
        )
        if pending:
            logger.debug("folder_discovery_already_queued", job_id=pending[0].id)
            return

        await self.store.enqueue(
            JobCreate(
                tenant_id=SYSTEM_TENANT,
                type="folder_discovery",
                priority=FOLDER_DISCOVERY_PRIORITY,
                scope=JobScope.GLOBAL,
                payload={"source": "scheduler"},
            )
        )
