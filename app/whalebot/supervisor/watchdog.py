"""Liveness watchdog -- catches a polling connection that hangs silently.

Transport errors reach the supervisor through the error callback, but a
connection can also stall without raising anything. Once a minute the
watchdog does an identity round-trip; if that fails while the supervisor
thinks it is polling, the watchdog restarts polling itself and, when two
restarts in a row fail, asks the application for a full reinitialisation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ..messaging.transport import Transport
from ..util.scheduler import Scheduler
from .connection import ConnectionSupervisor

logger = logging.getLogger(__name__)

ReinitRequest = Callable[[str], Awaitable[object]]


class Watchdog:
    def __init__(
        self,
        transport: Transport,
        supervisor: ConnectionSupervisor,
        scheduler: Scheduler,
        request_reinit: ReinitRequest,
        *,
        period: float = 60.0,
        probe_timeout: float = 10.0,
        first_retry: float = 5.0,
        second_retry: float = 15.0,
        reinit_delay: float = 30.0,
    ) -> None:
        self._transport = transport
        self._supervisor = supervisor
        self._scheduler = scheduler
        self._request_reinit = request_reinit
        self._period = period
        self._probe_timeout = probe_timeout
        self._retry_delays = (first_retry, second_retry)
        self._reinit_delay = reinit_delay
        self._ready = True
        self.reinitializations = 0
        self._task: asyncio.Task | None = None

    @property
    def ready(self) -> bool:
        return self._ready

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = self._scheduler.every(self._period, self.check, name="watchdog")
            logger.info("Watchdog started (every %.0fs)", self._period)
        return self._task

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def probe(self) -> bool:
        try:
            result = await asyncio.wait_for(self._transport.get_me(), timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            logger.error("Bot did not answer getMe() within %.0fs", self._probe_timeout)
            return False
        except Exception as exc:
            logger.error("Bot is not responsive to getMe(): %s", exc)
            return False
        return bool(result)

    async def check(self) -> bool:
        """One watchdog tick. Returns ``True`` if a recovery was carried out."""
        alive = await self.probe()
        if alive:
            self._supervisor.mark_alive()
            return False
        if not self._ready:
            logger.debug("Watchdog recovery already running; probe failure ignored")
            return False
        if not self._supervisor.health.active:
            logger.debug("Supervisor inactive; watchdog leaves recovery to it")
            return False
        if self._supervisor.is_restarting:
            logger.info("Probe failed during a supervisor restart; not starting another")
            return False
        logger.warning("Watchdog detected unresponsive bot, restarting polling...")
        return await self._recover()

    async def _recover(self) -> bool:
        async with self._supervisor.exclusive_restart("watchdog: liveness probe failed") as acquired:
            if not acquired:
                return False
            self._ready = False
            self._supervisor.mark_inactive("liveness probe failed")
            try:
                await self._supervisor.stop_polling()
            except Exception as exc:
                logger.error("Watchdog failed to stop polling: %s", exc)

            for attempt, wait in enumerate(self._retry_delays, 1):
                await self._scheduler.sleep(wait)
                try:
                    await self._supervisor.resume_polling(f"watchdog attempt {attempt}")
                except Exception as exc:
                    logger.error("Failed to restart polling from watchdog (attempt %d): %s", attempt, exc)
                    continue
                logger.info("Bot polling restarted by watchdog (attempt %d)", attempt)
                self._ready = True
                return True

        logger.error(
            "Watchdog failed to restart polling twice; full reinitialisation in %.0fs",
            self._reinit_delay,
        )
        try:
            await self._scheduler.sleep(self._reinit_delay)
            self.reinitializations += 1
            await self._request_reinit("watchdog: polling could not be restarted")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Watchdog reinitialisation request failed: %s", exc, exc_info=True)
        finally:
            self._ready = True
        return True
