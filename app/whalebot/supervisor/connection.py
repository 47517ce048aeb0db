"""Connection supervisor -- keeps one long-polling transport running.

State machine::

    IDLE --start()--> POLLING --failure--> RESTARTING(delay) --ok--> POLLING
                         \\                        /
                          +--shutdown()--> STOPPED <+

Failures reported by the transport are classified, turned into a delay by
:class:`BackoffPolicy`, and handled by a restart sequence that keeps
re-arming until polling is back or the supervisor is stopped. Only one
restart sequence runs at a time; the watchdog borrows the same slot via
:meth:`ConnectionSupervisor.exclusive_restart`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum

from ..messaging.transport import Transport
from ..util.scheduler import Scheduler
from .failures import BackoffPolicy, Failure, FailureClass, classify

logger = logging.getLogger(__name__)


class SupervisorState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    RESTARTING = "restarting"
    STOPPED = "stopped"


@dataclass
class ConnectionHealth:
    active: bool = False
    last_known_good_at: float | None = None
    consecutive_failure_class: FailureClass | None = None
    consecutive_failures: int = 0
    window_started_at: float = 0.0
    last_failure: str = ""
    restarts: int = 0
    state: SupervisorState = SupervisorState.IDLE


class ConnectionSupervisor:
    def __init__(
        self,
        transport: Transport,
        scheduler: Scheduler,
        policy: BackoffPolicy | None = None,
        *,
        shutdown_timeout: float = 10.0,
    ) -> None:
        self._transport = transport
        self._scheduler = scheduler
        self._policy = policy or BackoffPolicy()
        self._shutdown_timeout = shutdown_timeout
        self._health = ConnectionHealth()
        self._restart_lock = asyncio.Lock()
        self._restart_task: asyncio.Task | None = None
        self.bot_username: str = ""

    # -- read side (watchdog, health endpoint) -----------------------------

    @property
    def health(self) -> ConnectionHealth:
        return self._health

    @property
    def state(self) -> SupervisorState:
        return self._health.state

    @property
    def is_restarting(self) -> bool:
        return self._restart_lock.locked()

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Probe the bot identity, then begin polling.

        Errors propagate: a bot that cannot even start is the caller's
        problem (startup retry), not a restart case.
        """
        if self.state is SupervisorState.STOPPED:
            raise RuntimeError("Supervisor has been stopped")
        me = await self._transport.get_me()
        self.bot_username = getattr(me, "username", "") or ""
        logger.info("Bot connected successfully. Bot username: @%s", self.bot_username or "?")
        await self._transport.start_polling(self.on_polling_error)
        self._mark_polling("startup")

    async def shutdown(self) -> None:
        if self.state is SupervisorState.STOPPED:
            return
        self._transition(SupervisorState.STOPPED, "shutdown requested")
        self._health.active = False
        task, self._restart_task = self._restart_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        try:
            await asyncio.wait_for(self._transport.close(), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("Transport did not close within %.0fs", self._shutdown_timeout)
        except Exception as exc:
            logger.error("Error closing transport: %s", exc, exc_info=True)

    # -- failure path ------------------------------------------------------

    def on_polling_error(self, exc: Exception) -> None:
        """Transport error callback; must not block."""
        self.report_failure(exc)

    def report_failure(self, exc: BaseException) -> asyncio.Task | None:
        if self.state is SupervisorState.STOPPED:
            logger.debug("Ignoring polling error after shutdown: %s", exc)
            return None
        failure = classify(exc)
        if self.is_restarting or (self._restart_task is not None and not self._restart_task.done()):
            logger.info("Polling error while a restart is in flight (%s); not scheduling another", failure.describe())
            return None
        delay = self._record_failure(failure)
        logger.error("Polling error (%s); restarting polling in %.1fs", failure.describe(), delay)
        self._restart_task = self._scheduler.spawn(
            self.restart(delay, failure.kind.value),
            name="supervisor-restart",
        )
        return self._restart_task

    def _record_failure(self, failure: Failure) -> float:
        h = self._health
        now = self._scheduler.now()
        same_class = failure.kind is h.consecutive_failure_class
        if same_class and now - h.window_started_at <= self._policy.streak_window:
            h.consecutive_failures += 1
        else:
            h.consecutive_failures = 1
            h.window_started_at = now
        h.consecutive_failure_class = failure.kind
        h.last_failure = failure.describe()
        return self._policy.delay_for(failure, h.consecutive_failures)

    async def restart(self, delay: float, cause: str) -> bool:
        """Stop polling, wait *delay*, start again; keep trying until it works.

        Returns ``False`` without doing anything when another restart
        already holds the slot, or when the supervisor stops mid-way.
        """
        async with self.exclusive_restart(cause) as acquired:
            if not acquired:
                logger.info("Restart (%s) skipped: another restart is in progress", cause)
                return False
            return await self._restart_sequence(delay)

    async def _restart_sequence(self, delay: float) -> bool:
        wait = delay
        try:
            await self._transport.stop_polling()
        except Exception as exc:
            logger.error("Error stopping polling: %s", exc)
            wait = delay * 3
        logger.info("Restarting polling in %.1fs ...", wait)

        attempt = 0
        while self.state is not SupervisorState.STOPPED:
            await self._scheduler.sleep(wait)
            if self.state is SupervisorState.STOPPED:
                break
            attempt += 1
            try:
                await self._transport.start_polling(self.on_polling_error)
            except Exception as exc:
                wait = delay * 2 if attempt == 1 else self._policy.escalate(wait, floor=delay * 2)
                logger.error(
                    "Failed to restart polling (attempt %d): %s; next attempt in %.1fs",
                    attempt, exc, wait,
                )
                continue
            self._health.restarts += 1
            self._mark_polling(f"restart attempt {attempt}")
            return True
        return False

    # -- shared restart slot (watchdog) ------------------------------------

    @contextlib.asynccontextmanager
    async def exclusive_restart(self, cause: str) -> AsyncIterator[bool]:
        """Hold the single restart slot; yields ``False`` if it is taken."""
        if self._restart_lock.locked() or self.state is SupervisorState.STOPPED:
            yield False
            return
        async with self._restart_lock:
            self._transition(SupervisorState.RESTARTING, cause)
            yield True
            if self.state is SupervisorState.RESTARTING:
                # Sequence ended without resuming polling.
                self._health.active = False

    def mark_inactive(self, reason: str) -> None:
        if self._health.active:
            logger.warning("Supervisor marked inactive: %s", reason)
        self._health.active = False

    def mark_alive(self) -> None:
        self._health.last_known_good_at = self._scheduler.now()

    async def resume_polling(self, cause: str) -> None:
        """Start polling from inside an exclusive restart; raises on failure."""
        await self._transport.start_polling(self.on_polling_error)
        self._health.restarts += 1
        self._mark_polling(cause)

    async def stop_polling(self) -> None:
        await self._transport.stop_polling()

    # -- helpers -----------------------------------------------------------

    def _mark_polling(self, cause: str) -> None:
        self._health.active = True
        self._health.last_known_good_at = self._scheduler.now()
        self._transition(SupervisorState.POLLING, cause)

    def _transition(self, new: SupervisorState, cause: str) -> None:
        old = self._health.state
        self._health.state = new
        if old is not new:
            logger.info("Supervisor %s -> %s (%s)", old.value, new.value, cause)
