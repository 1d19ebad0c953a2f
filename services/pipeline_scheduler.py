"""
Lightweight async job scheduler for background precompute runs.
Provides bounded concurrency; failures are logged, never surfaced to the caller.
Jobs sharing a key run one at a time and wait for their turn outside the
concurrency limit, so a queued run for a busy shop never holds a slot.
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Optional, Set


class PipelineScheduler:
    """Simple semaphore-backed task scheduler for async precompute work."""

    def __init__(self, max_concurrency: Optional[int] = None) -> None:
        self._logger = logging.getLogger(__name__)
        self._concurrency = max_concurrency or int(
            os.getenv("ASYNC_PIPELINE_CONCURRENCY", "2")
        )
        self._semaphore = asyncio.Semaphore(self._concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._key_locks: Dict[str, asyncio.Lock] = {}

    @property
    def active(self) -> int:
        return len(self._tasks)

    @asynccontextmanager
    async def _key_turn(self, key: Optional[str]):
        if key is None:
            yield
            return
        lock = self._key_locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            self._logger.info("Job key %s busy; waiting outside the concurrency limit", key)
        async with lock:
            yield

    def schedule(
        self,
        coro_factory: Callable[[], Awaitable[object]],
        name: str = "pipeline-job",
        key: Optional[str] = None,
    ) -> asyncio.Task:
        """Schedule coroutine factory to run under semaphore, serialized per ``key``."""

        async def _runner() -> None:
            async with self._key_turn(key), self._semaphore:
                try:
                    self._logger.info(
                        "Executing background job %s | pending=%d",
                        name,
                        len(self._tasks),
                    )
                    await coro_factory()
                except asyncio.CancelledError:
                    self._logger.warning("Background job %s cancelled", name)
                    raise
                except Exception:
                    self._logger.exception("Background job %s failed", name)

        task = asyncio.create_task(_runner(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._logger.info(
            "Background job %s scheduled | active=%d capacity=%d",
            name,
            len(self._tasks),
            self._concurrency,
        )
        return task

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Wait for running jobs, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        self._logger.info("Waiting for %d background job(s) before shutdown", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            self._logger.warning("Cancelled %d background job(s) at shutdown", len(still_running))
