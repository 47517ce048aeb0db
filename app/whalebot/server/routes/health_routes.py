"""Liveness routes -- /health, /ping and the root banner."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

logger = logging.getLogger(__name__)

StatusProvider = Callable[[], dict[str, Any]]


class HealthRoutes:
    """Unauthenticated status endpoints polled by the host and uptime monitors."""

    def __init__(self, status: StatusProvider) -> None:
        self._status = status

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get("/health", self._health)
        router.add_get("/ping", self._ping)
        router.add_get("/", self._root)

    async def _health(self, _req: web.Request) -> web.Response:
        try:
            return web.json_response(self._status())
        except Exception as exc:
            logger.error("Health status failed: %s", exc, exc_info=True)
            return web.json_response({"status": "error", "error": str(exc)}, status=500)

    async def _ping(self, _req: web.Request) -> web.Response:
        return web.Response(text="pong", content_type="text/plain")

    async def _root(self, _req: web.Request) -> web.Response:
        return web.Response(text="VybeWhale Bot is running", content_type="text/plain")
