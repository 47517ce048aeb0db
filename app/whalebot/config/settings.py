"""Application settings -- reads from environment and ``.env`` file.

Values in the ``.env`` file win over the process environment so a
deployment can be reconfigured by editing one file and calling
:meth:`Settings.reload`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum

from dotenv import dotenv_values

from ..util.singletons import register_singleton

logger = logging.getLogger(__name__)

SECRET_ENV_KEYS: frozenset[str] = frozenset({
    "TELEGRAM_BOT_TOKEN",
    "VYBE_API_KEY",
})

_TRUTHY = ("1", "true", "yes", "on")


class ShutdownStrategy(str, Enum):
    """What a termination signal does to the process."""

    EXIT = "exit"
    REINIT = "reinit"


@dataclass(frozen=True)
class Timings:
    """Supervisor timing constants, in seconds."""

    watchdog_period: float = 60.0
    watchdog_probe_timeout: float = 10.0
    watchdog_first_retry: float = 5.0
    watchdog_second_retry: float = 15.0
    watchdog_reinit_delay: float = 30.0
    keepalive_period: float = 300.0
    keepalive_timeout: float = 10.0
    registration_timeout: float = 30.0
    reinit_after_signal: float = 30.0
    shutdown_timeout: float = 10.0
    startup_retry_delay: float = 30.0
    startup_max_retries: int = 5
    conversation_ttl: float = 300.0


class Settings:
    """Runtime configuration sourced from environment variables and ``.env``."""

    def __init__(self) -> None:
        self.dotenv_path: str = os.getenv("DOTENV_PATH") or ".env"
        self.timings = Timings()
        self.reload()

    def reload(self) -> None:
        """Re-read the ``.env`` file and environment variables."""
        self._file_values = self._load_dotenv()
        e = self._read

        self.telegram_bot_token: str = e("TELEGRAM_BOT_TOKEN")
        self.redis_url: str = e("REDIS_URL") or "redis://localhost:6379/0"
        self.port: int = int(e("PORT") or "3000")
        self.host: str = e("HOST") or "0.0.0.0"
        self.log_level: str = (e("LOG_LEVEL") or "INFO").upper()

        raw_server = e("SERVER_URL") or f"http://localhost:{self.port}"
        self.server_url: str = raw_server if "://" in raw_server else f"https://{raw_server}"

        raw_pings = e("PING_URL")
        self.ping_urls: tuple[str, ...] = tuple(
            url.strip() for url in raw_pings.split(",") if url.strip()
        ) if raw_pings else ()

        self.render_app_name: str = e("RENDER_APP_NAME") or "vybewhale-bot"
        self.shutdown_strategy: ShutdownStrategy = self._resolve_strategy()

        self.vybe_api_base_url: str = (e("VYBE_API_BASE_URL") or "https://api.vybenetwork.xyz").rstrip("/")
        self.vybe_api_key: str = e("VYBE_API_KEY")
        # Milliseconds in the environment, seconds here.
        self.alert_check_interval: float = int(e("ALERT_CHECK_INTERVAL") or "60000") / 1000

    @property
    def fallback_ping_url(self) -> str:
        return f"https://{self.render_app_name}.onrender.com/ping"

    @property
    def bot_configured(self) -> bool:
        return bool(self.telegram_bot_token)

    # -- helpers -----------------------------------------------------------

    def _resolve_strategy(self) -> ShutdownStrategy:
        explicit = self._read("SHUTDOWN_STRATEGY").lower()
        if explicit:
            try:
                return ShutdownStrategy(explicit)
            except ValueError:
                logger.warning("Unknown SHUTDOWN_STRATEGY %r; falling back to platform default", explicit)
        keep_alive = self._read("KEEP_ALIVE_ON_SIGNAL").lower() in _TRUTHY
        on_render = bool(self._read("RENDER"))
        return ShutdownStrategy.REINIT if (keep_alive or on_render) else ShutdownStrategy.EXIT

    def _load_dotenv(self) -> dict[str, str]:
        if not os.path.isfile(self.dotenv_path):
            return {}
        return {k: v for k, v in dotenv_values(self.dotenv_path).items() if v is not None}

    def _read(self, key: str) -> str:
        return (self._file_values.get(key) or os.getenv(key, "")).strip()

    def masked(self, key: str) -> str:
        """Return a log-safe rendering of a secret setting."""
        value = self._read(key)
        if not value:
            return "(none)"
        if key in SECRET_ENV_KEYS:
            return value[:6] + "..." if len(value) > 10 else "***"
        return value


# Module-level singleton
cfg = Settings()


def _reset_cfg() -> None:
    global cfg
    cfg = Settings()


register_singleton(_reset_cfg)
