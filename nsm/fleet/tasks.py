"""Detached background work.

Probes, pushes and discovery passes are launched with :meth:`BackgroundTasks.spawn`,
which returns immediately. At most ``limit`` of them run at once; the rest
wait for a slot. A failing task is logged and forgotten, it never reaches
the code that launched it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Bounded fire-and-forget task runner bound to the running event loop."""

    def __init__(self, limit: int = 64) -> None:
        self.limit = max(1, limit)
        self._sem: asyncio.Semaphore | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = "") -> asyncio.Task | None:
        """Schedule *coro* in the background. Returns ``None`` after shutdown."""
        if self._closed:
            coro.close()
            logger.debug("Dropping background task %s after shutdown", name or coro)
            return None
        task = asyncio.create_task(self._run(coro, name), name=name or None)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Coroutine[Any, Any, Any], name: str) -> Any:
        if self._sem is None:
            self._sem = asyncio.Semaphore(self.limit)
        async with self._sem:
            try:
                return await coro
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Background task %s failed", name or "<unnamed>")
                return None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for everything currently running to finish."""
        while self._tasks:
            tasks = list(self._tasks)
            done, _ = await asyncio.wait(tasks, timeout=timeout)
            if timeout is not None and len(done) < len(tasks):
                return

    async def shutdown(self) -> None:
        """Cancel all running tasks and refuse new ones."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d background task(s)", len(tasks))
        self._tasks.clear()
