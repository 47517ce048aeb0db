"""Keep-alive pinger so the host does not suspend an idle process."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Iterable
from urllib.parse import quote

import aiohttp

from ..util.scheduler import Scheduler

logger = logging.getLogger(__name__)

_LOG_SAMPLE_RATE = 0.1


class KeepAlive:
    """Pings ``<server_url>/ping`` periodically, with one fallback target.

    At start-up the server URL is also registered with any external
    uptime-ping services; each target may contain ``{url}``, replaced with
    the URL-encoded server address.
    """

    def __init__(
        self,
        server_url: str,
        fallback_url: str,
        scheduler: Scheduler,
        registration_urls: Iterable[str] = (),
        *,
        period: float = 300.0,
        timeout: float = 10.0,
        registration_timeout: float = 30.0,
    ) -> None:
        self._server_url = server_url.rstrip("/")
        self._fallback_url = fallback_url
        self._scheduler = scheduler
        self._registration_urls = tuple(registration_urls)
        self._period = period
        self._timeout = timeout
        self._registration_timeout = registration_timeout
        self._session: aiohttp.ClientSession | None = None
        self._task: asyncio.Task | None = None

    @property
    def ping_url(self) -> str:
        return f"{self._server_url}/ping"

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            logger.info("Setting up keep-alive ping to %s", self._server_url)
            self._task = self._scheduler.every(self._period, self.ping_once, name="keepalive")
            if self._registration_urls:
                self._scheduler.spawn(self.register(), name="keepalive-register")
            else:
                logger.info("No external ping service configured. Set PING_URL for better uptime.")
        return self._task

    async def ping_once(self) -> bool:
        verbose = random.random() < _LOG_SAMPLE_RATE
        if verbose:
            logger.debug("Sending keep-alive ping to %s", self.ping_url)
        try:
            status = await self._get(self.ping_url, self._timeout)
            if verbose:
                logger.debug("Keep-alive ping response: %s", status)
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Keep-alive ping failed: %s", exc or type(exc).__name__)

        logger.info("Attempting alternative ping to %s", self._fallback_url)
        try:
            status = await self._get(self._fallback_url, self._timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Alternative ping also failed: %s", exc or type(exc).__name__)
            return False
        logger.info("Alternative ping response: %s", status)
        return True

    async def register(self) -> int:
        """Register with every configured uptime service; returns successes."""
        encoded = quote(self._server_url, safe="")
        ok = 0
        for target in self._registration_urls:
            url = target.replace("{url}", encoded)
            logger.info("Registering with external ping service: %s", url)
            try:
                status = await self._get(url, self._registration_timeout)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.error("Failed to register with ping service %s: %s", url, exc or type(exc).__name__)
                continue
            logger.info("Ping service registration response: %s", status)
            ok += 1
        return ok

    async def _get(self, url: str, timeout: float) -> int:
        """GET *url*; a 5xx answer counts as a failure like a network error."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        async with self._session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            await resp.read()
            if resp.status >= 500:
                raise aiohttp.ClientResponseError(
                    resp.request_info, resp.history, status=resp.status, message=resp.reason or "",
                )
            return resp.status

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
