"""Tests for the liveness watchdog."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from telegram.error import NetworkError, TimedOut

from app.whalebot.supervisor.connection import ConnectionSupervisor, SupervisorState
from app.whalebot.supervisor.watchdog import Watchdog


@pytest_asyncio.fixture
async def supervisor(transport, scheduler) -> ConnectionSupervisor:
    sup = ConnectionSupervisor(transport, scheduler)
    await sup.start()
    return sup


@pytest.fixture()
def reinit() -> AsyncMock:
    return AsyncMock(return_value=True)


@pytest.fixture()
def watchdog(transport, supervisor, scheduler, reinit) -> Watchdog:
    return Watchdog(transport, supervisor, scheduler, reinit)


class TestProbe:
    @pytest.mark.asyncio
    async def test_healthy_probe_marks_alive(self, watchdog, supervisor, clock) -> None:
        clock.advance(60)
        assert not await watchdog.check()
        assert supervisor.health.last_known_good_at == clock.now

    @pytest.mark.asyncio
    async def test_probe_error_is_false(self, watchdog, transport) -> None:
        transport.get_me.side_effect = TimedOut()
        assert not await watchdog.probe()

    @pytest.mark.asyncio
    async def test_probe_timeout(self, transport, supervisor, scheduler, reinit) -> None:
        async def hang():
            await asyncio.sleep(10)

        transport.get_me.side_effect = hang
        wd = Watchdog(transport, supervisor, scheduler, reinit, probe_timeout=0.01)
        assert not await wd.probe()


class TestRecovery:
    @pytest.mark.asyncio
    async def test_first_retry_recovers(self, watchdog, transport, supervisor, scheduler, reinit) -> None:
        transport.get_me.side_effect = NetworkError("hung")
        assert await watchdog.check()
        transport.stop_polling.assert_awaited_once()
        assert scheduler.sleeps == [5]
        assert supervisor.state is SupervisorState.POLLING
        assert supervisor.health.active
        assert watchdog.ready
        reinit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_retry_recovers(self, watchdog, transport, supervisor, scheduler, reinit) -> None:
        transport.get_me.side_effect = NetworkError("hung")
        transport.start_polling.side_effect = [NetworkError("still down"), None]
        assert await watchdog.check()
        assert scheduler.sleeps == [5, 15]
        assert supervisor.health.active
        reinit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_two_failed_retries_request_reinit(
        self, watchdog, transport, supervisor, scheduler, reinit,
    ) -> None:
        transport.get_me.side_effect = NetworkError("hung")
        transport.start_polling.side_effect = NetworkError("still down")
        assert await watchdog.check()
        assert scheduler.sleeps == [5, 15, 30]
        reinit.assert_awaited_once()
        assert watchdog.reinitializations == 1
        assert watchdog.ready
        assert not supervisor.health.active

    @pytest.mark.asyncio
    async def test_stop_error_does_not_block_recovery(self, watchdog, transport, supervisor) -> None:
        transport.get_me.side_effect = NetworkError("hung")
        transport.stop_polling.side_effect = RuntimeError("cannot stop")
        assert await watchdog.check()
        assert supervisor.health.active

    @pytest.mark.asyncio
    async def test_reinit_failure_still_ready(self, watchdog, transport, reinit) -> None:
        transport.get_me.side_effect = NetworkError("hung")
        transport.start_polling.side_effect = NetworkError("still down")
        reinit.side_effect = RuntimeError("reinit exploded")
        assert await watchdog.check()
        assert watchdog.ready


class TestExactlyOnce:
    @pytest.mark.asyncio
    async def test_back_to_back_failures_reinit_once(self, watchdog, transport, reinit) -> None:
        transport.get_me.side_effect = NetworkError("hung")
        transport.start_polling.side_effect = NetworkError("still down")
        await watchdog.check()
        await watchdog.check()
        reinit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_failures_reinit_once(self, watchdog, transport, reinit) -> None:
        transport.get_me.side_effect = NetworkError("hung")
        transport.start_polling.side_effect = NetworkError("still down")
        results = await asyncio.gather(watchdog.check(), watchdog.check())
        assert sorted(results) == [False, True]
        reinit.assert_awaited_once()
        assert watchdog.reinitializations == 1

    @pytest.mark.asyncio
    async def test_skips_while_supervisor_restarting(self, watchdog, transport, supervisor, reinit) -> None:
        transport.get_me.side_effect = NetworkError("hung")
        async with supervisor.exclusive_restart("supervisor restart") as acquired:
            assert acquired
            supervisor.health.active = True
            assert not await watchdog.check()
        transport.stop_polling.assert_not_awaited()
        reinit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skips_while_supervisor_inactive(self, watchdog, transport, supervisor) -> None:
        transport.get_me.side_effect = NetworkError("hung")
        supervisor.mark_inactive("test")
        assert not await watchdog.check()
        transport.stop_polling.assert_not_awaited()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, transport, supervisor, reinit) -> None:
        from app.whalebot.util.scheduler import Scheduler

        wd = Watchdog(transport, supervisor, Scheduler(), reinit)
        task = wd.start()
        assert wd.start() is task
        wd.stop()
        await asyncio.sleep(0)
        assert task.cancelled()
