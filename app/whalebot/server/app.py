"""Process entry point -- wires the bot, the supervisor and the health server."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from aiohttp import web
from aiohttp.abc import AbstractAccessLogger

from .. import __version__
from ..config import settings as settings_module
from ..config.settings import Settings, ShutdownStrategy
from ..messaging.events import InboundEvent
from ..messaging.handlers import BotHandlers
from ..messaging.router import CommandRouter
from ..messaging.transport import TelegramTransport, Transport
from ..services.alerts import AlertService
from ..services.keepalive import KeepAlive
from ..services.vybe import VybeClient
from ..state import redis_store
from ..state.conversation_store import ConversationStore
from ..state.redis_store import RedisManager, SubscriptionStore
from ..supervisor.connection import ConnectionSupervisor, SupervisorState
from ..supervisor.watchdog import Watchdog
from ..util.scheduler import Scheduler
from .routes.health_routes import HealthRoutes

logger = logging.getLogger(__name__)

_QUIET_PATHS = frozenset({"/health", "/ping"})

STARTUP_RESET_DELAY = 60.0


# ---------------------------------------------------------------------------
# Access logger
# ---------------------------------------------------------------------------


class QuietAccessLogger(AbstractAccessLogger):
    """Demotes uptime-probe log entries to DEBUG."""

    def log(self, request: web.BaseRequest, response: web.StreamResponse, time: float) -> None:
        level = logging.DEBUG if request.path in _QUIET_PATHS else logging.INFO
        self.logger.log(
            level,
            "%s %s %s %s %.3fs",
            request.remote,
            request.method,
            request.path,
            response.status,
            time,
        )


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


class BotApplication:
    """Owns every long-lived component and the bot sessions built on top.

    A *session* is one transport lifetime: a supervisor, a watchdog and the
    scheduler that runs their timers. A full reinitialisation tears the
    session down and builds a fresh one; the stores, the HTTP server and
    the keep-alive loop survive it.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Transport | None = None,
        redis: RedisManager | None = None,
        scheduler: Scheduler | None = None,
        session_factory: Callable[[], Scheduler] = Scheduler,
    ) -> None:
        self._cfg = settings
        t = settings.timings
        self._redis = redis or redis_store.redis_manager
        self._session_factory = session_factory
        self.scheduler = scheduler or Scheduler()

        self.conversations = ConversationStore(ttl=t.conversation_ttl)
        self.subscriptions = SubscriptionStore(self._redis)
        self.vybe = VybeClient(settings.vybe_api_base_url, settings.vybe_api_key)
        self.handlers = BotHandlers(self.conversations, self.subscriptions, self.vybe)
        self.transport: Transport = transport or TelegramTransport(settings.telegram_bot_token, self._on_event)
        self.router = CommandRouter(
            self.transport, self.conversations,
            self.handlers.command_specs(), self.handlers.flows(),
        )
        self.keepalive = KeepAlive(
            settings.server_url,
            settings.fallback_ping_url,
            self.scheduler,
            settings.ping_urls,
            period=t.keepalive_period,
            timeout=t.keepalive_timeout,
            registration_timeout=t.registration_timeout,
        )
        self.alerts = AlertService(
            self.subscriptions, self.vybe, self.transport, period=settings.alert_check_interval,
        )

        self.supervisor: ConnectionSupervisor | None = None
        self.watchdog: Watchdog | None = None
        self._session: Scheduler | None = None
        self._startup_task: asyncio.Task | None = None
        self._runner: web.AppRunner | None = None
        self._stop = asyncio.Event()
        self._stopping = False
        self._handling_signal = False
        self._started_at = self.scheduler.now()
        self.reinitializations = 0
        self.exit_code = 0

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # -- session lifecycle -------------------------------------------------

    async def setup(self) -> None:
        """Connect storage, start polling and arm the watchdog."""
        if not self._cfg.bot_configured:
            raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")
        t = self._cfg.timings
        await self._redis.initialize(self._cfg.redis_url)

        session = self._session_factory()
        supervisor = ConnectionSupervisor(self.transport, session, shutdown_timeout=t.shutdown_timeout)
        self._session, self.supervisor = session, supervisor
        await supervisor.start()

        try:
            await self.transport.set_commands(self.router.menu)
        except Exception as exc:
            logger.warning("Failed to publish command menu: %s", exc)

        self.watchdog = Watchdog(
            self.transport,
            supervisor,
            session,
            self.request_reinit,
            period=t.watchdog_period,
            probe_timeout=t.watchdog_probe_timeout,
            first_retry=t.watchdog_first_retry,
            second_retry=t.watchdog_second_retry,
            reinit_delay=t.watchdog_reinit_delay,
        )
        self.watchdog.start()
        self.alerts.start(session)
        logger.info("Bot initialized successfully")

    async def teardown_session(self) -> None:
        session, self._session = self._session, None
        supervisor, self.supervisor = self.supervisor, None
        watchdog, self.watchdog = self.watchdog, None
        self.alerts.stop()
        if watchdog is not None:
            watchdog.stop()
        if supervisor is not None:
            await supervisor.shutdown()
        else:
            try:
                await asyncio.wait_for(self.transport.close(), timeout=self._cfg.timings.shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("Transport did not close in time")
            except Exception as exc:
                logger.error("Error closing transport: %s", exc, exc_info=True)
        if session is not None:
            await session.cancel_all(timeout=self._cfg.timings.shutdown_timeout)

    async def start_with_retry(self) -> bool:
        """Run :meth:`setup` until it succeeds.

        After ``startup_max_retries`` failures the process exits with code 1
        under the ``exit`` strategy; under ``reinit`` the counter is reset
        after a pause and the attempts start over.
        """
        t = self._cfg.timings
        attempts = 0
        while not self._stopping:
            attempts += 1
            try:
                await self.setup()
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "Failed to start bot (attempt %d/%d): %s",
                    attempts, t.startup_max_retries, exc, exc_info=True,
                )
                await self.teardown_session()

            if attempts >= t.startup_max_retries:
                if self._cfg.shutdown_strategy is ShutdownStrategy.EXIT:
                    logger.critical("Maximum startup attempts reached. Exiting.")
                    self.exit_code = 1
                    self._stop.set()
                    return False
                logger.error("Maximum startup attempts reached; trying again in %.0fs", STARTUP_RESET_DELAY)
                await self.scheduler.sleep(STARTUP_RESET_DELAY)
                attempts = 0
                continue

            logger.info("Retrying bot startup in %.0fs ...", t.startup_retry_delay)
            await self.scheduler.sleep(t.startup_retry_delay)
        return False

    async def request_reinit(self, reason: str, delay: float = 0.0) -> bool:
        """Schedule a full reinitialisation and return at once.

        Returns ``False`` when one is already pending or the process is
        shutting down. The work runs on the application scheduler so that
        tearing down the current session cannot cancel it.
        """
        if self._stopping:
            return False
        if self._startup_task is not None and not self._startup_task.done():
            logger.info("Reinitialisation already pending; ignoring request (%s)", reason)
            return False
        logger.warning("Full reinitialisation requested: %s", reason)
        self.reinitializations += 1
        self._schedule_startup(reason, delay)
        return True

    def _schedule_startup(self, reason: str, delay: float) -> asyncio.Task:
        self._startup_task = self.scheduler.spawn(self._bring_up(reason, delay), name="bot-startup")
        return self._startup_task

    async def _bring_up(self, reason: str, delay: float) -> None:
        if delay > 0:
            logger.info("Initializing bot in %.0fs (%s)", delay, reason)
            await self.scheduler.sleep(delay)
        await self.teardown_session()
        await self.start_with_retry()

    # -- signals and shutdown ----------------------------------------------

    async def on_signal(self, signame: str) -> None:
        strategy = self._cfg.shutdown_strategy
        logger.info("Received %s (shutdown strategy: %s)", signame, strategy.value)
        if strategy is ShutdownStrategy.EXIT:
            await self.shutdown()
            return

        if self._handling_signal:
            logger.info("Signal %s ignored: previous signal still being handled", signame)
            return
        self._handling_signal = True
        try:
            task, self._startup_task = self._startup_task, None
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
            await self.teardown_session()
            await self._redis.quit()
            delay = self._cfg.timings.reinit_after_signal
            logger.info("Keeping process alive; reinitialising in %.0fs", delay)
            await self.request_reinit(f"signal {signame}", delay=delay)
        finally:
            self._handling_signal = False

    async def shutdown(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        logger.info("Shutting down gracefully ...")
        t = self._cfg.timings
        try:
            await self.teardown_session()
            await self.keepalive.close()
            await self.vybe.close()
            await self._redis.quit()
            if self._runner is not None:
                await self._runner.cleanup()
                self._runner = None
            await self.scheduler.cancel_all(timeout=t.shutdown_timeout)
        finally:
            self._stop.set()
        logger.info("Shutdown complete")

    def _signal_received(self, sig: signal.Signals) -> None:
        self.scheduler.spawn(self.on_signal(sig.name), name=f"signal-{sig.name}")

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._signal_received, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not supported on this platform", sig.name)

    # -- HTTP surface ------------------------------------------------------

    def status(self) -> dict[str, Any]:
        sup = self.supervisor
        if sup is None or sup.state in (SupervisorState.IDLE, SupervisorState.STOPPED):
            polling = "stopped"
        else:
            polling = sup.state.value
        return {
            "status": "up",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "bot": "connected" if sup is not None and sup.health.active else "disconnected",
            "polling": polling,
            "redis": "connected" if self._redis.is_connected else "disconnected",
            "uptime": f"{int(self.scheduler.now() - self._started_at)} seconds",
            "version": __version__,
            "restarts": sup.health.restarts if sup is not None else 0,
            "last_known_good_at": sup.health.last_known_good_at if sup is not None else None,
        }

    def build_web_app(self) -> web.Application:
        app = web.Application()
        HealthRoutes(self.status).register(app.router)
        return app

    async def start_http(self) -> None:
        self._runner = web.AppRunner(self.build_web_app(), access_log_class=QuietAccessLogger)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._cfg.host, self._cfg.port)
        await site.start()
        logger.info("Health server listening on %s:%d", self._cfg.host, self._cfg.port)

    # -- main loop ---------------------------------------------------------

    async def run(self) -> int:
        if not self._cfg.bot_configured:
            logger.error("TELEGRAM_BOT_TOKEN is not set; refusing to start")
            return 1
        logger.info(
            "Config: token=%s redis=%s server=%s strategy=%s",
            self._cfg.masked("TELEGRAM_BOT_TOKEN"),
            redis_store.redact_url(self._cfg.redis_url),
            self._cfg.server_url,
            self._cfg.shutdown_strategy.value,
        )
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(_loop_exception_handler)
        self._install_signal_handlers(loop)

        await self.start_http()
        self.keepalive.start()
        self._schedule_startup("startup", 0.0)

        await self._stop.wait()
        await self.shutdown()
        return self.exit_code

    async def _on_event(self, event: InboundEvent) -> None:
        await self.router.dispatch(event)


# ---------------------------------------------------------------------------
# Uncaught errors
# ---------------------------------------------------------------------------


def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error(
        "Unhandled error in event loop: %s", context.get("message", "unknown"),
        exc_info=(type(exc), exc, exc.__traceback__) if exc is not None else None,
    )


def _log_uncaught(exc_type: type[BaseException], exc: BaseException, tb: Any) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc, tb))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    cfg = settings_module.cfg
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s  %(name)s  %(levelname)s  %(message)s",
    )
    sys.excepthook = _log_uncaught
    logger.info("Starting VybeWhale bot v%s ...", __version__)
    code = asyncio.run(BotApplication(cfg).run())
    sys.exit(code)


if __name__ == "__main__":
    main()
