"""Timer abstraction for the supervisor, the watchdog and the keep-alive loop.

Every delayed or periodic job goes through a :class:`Scheduler` so that
shutdown can cancel all of them at once, and tests can substitute a
scheduler whose ``sleep`` returns immediately while advancing a fake clock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class Scheduler:
    """Owns the background tasks of one bot lifetime."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    def now(self) -> float:
        return self._clock()

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def call_later(self, delay: float, job: Job, *, name: str) -> asyncio.Task:
        """Run *job* once after *delay* seconds."""

        async def _run() -> None:
            await self.sleep(delay)
            await job()

        return self.spawn(_run(), name=name)

    def every(
        self,
        period: float,
        job: Job,
        *,
        name: str,
        initial_delay: float | None = None,
    ) -> asyncio.Task:
        """Run *job* every *period* seconds until cancelled.

        A failing run is logged and the loop carries on with the next tick.
        """

        async def _loop() -> None:
            await self.sleep(period if initial_delay is None else initial_delay)
            while True:
                try:
                    await job()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error("Periodic job %s failed: %s", name, exc, exc_info=True)
                await self.sleep(period)

        return self.spawn(_loop(), name=name)

    async def cancel_all(self, timeout: float = 10.0) -> None:
        tasks = [t for t in self._tasks if not t.done()]
        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current]
        for task in tasks:
            task.cancel()
        if not tasks:
            return
        done, still_running = await asyncio.wait(tasks, timeout=timeout)
        if still_running:
            logger.warning(
                "%d background task(s) did not stop within %.0fs: %s",
                len(still_running), timeout,
                ", ".join(t.get_name() for t in still_running),
            )

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s crashed: %s", task.get_name(), exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
