# mediagate/workers.py
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Set

log = logging.getLogger("workers")


class WorkerPool:
    """Supervised background tasks with at most ``size`` running at once.

    Submitted jobs queue on a semaphore. A job that raises is logged and
    dropped; its owner is expected to have recorded the outcome itself.
    """

    def __init__(self, size: int = 2, name: str = "workers"):
        self.size = max(1, int(size))
        self.name = name
        self._sem = asyncio.Semaphore(self.size)
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, label: str, fn: Callable[[], Awaitable[None]]) -> asyncio.Task:
        task = asyncio.create_task(self._supervise(label, fn), name=f"{self.name}:{label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _supervise(self, label: str, fn: Callable[[], Awaitable[None]]) -> None:
        async with self._sem:
            try:
                await fn()
            except asyncio.CancelledError:
                log.info("%s job %s cancelled", self.name, label)
                raise
            except Exception:
                log.exception("%s job %s crashed", self.name, label)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for t in list(self._tasks):
            t.cancel()
        with contextlib.suppress(Exception):
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
