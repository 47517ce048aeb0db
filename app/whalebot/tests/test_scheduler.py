"""Tests for the task Scheduler."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from app.whalebot.util.scheduler import Scheduler


class TestScheduler:
    @pytest.mark.asyncio
    async def test_call_later(self, scheduler) -> None:
        job = AsyncMock()
        await scheduler.call_later(7, job, name="later")
        job.assert_awaited_once()
        assert scheduler.sleeps == [7]

    @pytest.mark.asyncio
    async def test_every_survives_failing_run(self, scheduler) -> None:
        job = AsyncMock(side_effect=[RuntimeError("boom"), None, asyncio.CancelledError()])
        task = scheduler.every(60, job, name="tick", initial_delay=1)
        with pytest.raises(asyncio.CancelledError):
            await task
        assert job.await_count == 3
        assert scheduler.sleeps == [1, 60, 60]

    @pytest.mark.asyncio
    async def test_cancel_all(self) -> None:
        sched = Scheduler()
        tasks = [sched.spawn(asyncio.sleep(3600), name=f"sleeper-{i}") for i in range(3)]
        assert sched.pending == 3
        await sched.cancel_all(timeout=1)
        assert all(t.cancelled() for t in tasks)
        assert sched.pending == 0

    @pytest.mark.asyncio
    async def test_cancel_all_spares_caller(self) -> None:
        sched = Scheduler()

        async def stopper() -> str:
            await sched.cancel_all(timeout=1)
            return "finished"

        other = sched.spawn(asyncio.sleep(3600), name="other")
        me = sched.spawn(stopper(), name="stopper")
        assert await me == "finished"
        assert other.cancelled()

    @pytest.mark.asyncio
    async def test_crash_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        sched = Scheduler()

        async def crash() -> None:
            raise ValueError("bad state")

        with caplog.at_level(logging.ERROR, logger="app.whalebot.util.scheduler"):
            task = sched.spawn(crash(), name="crasher")
            with pytest.raises(ValueError):
                await task
            await asyncio.sleep(0)
        assert "crasher crashed" in caplog.text

    def test_now_uses_clock(self, clock) -> None:
        assert Scheduler(clock).now() == clock.now
