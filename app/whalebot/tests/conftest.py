"""Shared pytest fixtures for app.whalebot tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.whalebot.util.scheduler import Scheduler

_ENV_KEYS = (
    "TELEGRAM_BOT_TOKEN",
    "REDIS_URL",
    "PORT",
    "HOST",
    "SERVER_URL",
    "PING_URL",
    "RENDER",
    "RENDER_APP_NAME",
    "KEEP_ALIVE_ON_SIGNAL",
    "SHUTDOWN_STRATEGY",
    "VYBE_API_BASE_URL",
    "VYBE_API_KEY",
    "LOG_LEVEL",
    "ALERT_CHECK_INTERVAL",
)


@pytest.fixture(autouse=True)
def _isolate_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("DOTENV_PATH", str(tmp_path / ".env"))
    return tmp_path


@pytest.fixture(autouse=True)
def _reset_singletons(_isolate_env: Path):
    from app.whalebot.util.singletons import reset_all_singletons

    reset_all_singletons()
    yield
    reset_all_singletons()


@pytest.fixture()
def env_file(_isolate_env: Path) -> Path:
    return _isolate_env / ".env"


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeScheduler(Scheduler):
    """Scheduler whose ``sleep`` records the delay, moves the clock and yields once."""

    def __init__(self, clock: FakeClock) -> None:
        super().__init__(clock)
        self.clock = clock
        self.sleeps: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.clock.advance(delay)
        await asyncio.sleep(0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def scheduler(clock: FakeClock) -> FakeScheduler:
    return FakeScheduler(clock)


@pytest.fixture()
def transport() -> AsyncMock:
    t = AsyncMock()
    t.get_me.return_value = SimpleNamespace(username="vybewhale_bot")
    t.is_polling = True
    return t
