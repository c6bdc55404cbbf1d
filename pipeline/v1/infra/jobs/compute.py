"""
Bounded pool for CPU-heavy per-item work (image resizing and the like).
"""

import asyncio
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from pipeline.config.logging import get_logger
from pipeline.config.settings import ComputePoolKind, Settings

logger = get_logger(__name__)

R = TypeVar("R")


class ComputePool:
    """
    Shared executor with a hard concurrency bound.

    Handlers size their batches with ``concurrency``; the semaphore keeps
    the bound even when several jobs submit work at the same time.
    """

    def __init__(self, max_workers: int = 4, kind: ComputePoolKind = ComputePoolKind.THREAD):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.kind = kind
        self._executor: Executor = (
            ProcessPoolExecutor(max_workers=max_workers)
            if kind == ComputePoolKind.PROCESS
            else ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="compute")
        )
        self._semaphore = asyncio.Semaphore(max_workers)
        self._closed = False
        logger.info("pool_init", workers=max_workers, kind=kind.value)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ComputePool":
        return cls(settings.compute_pool_size, settings.compute_pool_kind)

    @property
    def concurrency(self) -> int:
        return self.max_workers

    async def run(self, fn: Callable[..., R], *args: Any) -> R:
        """Run ``fn(*args)`` in the pool once a slot is free."""
        if self._closed:
            raise RuntimeError("compute pool is shut down")
        async with self._semaphore:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("pool_shutdown", kind=self.kind.value)
