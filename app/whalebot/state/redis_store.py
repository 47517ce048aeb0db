"""Redis connection lifecycle and the subscription sets kept in it.

:class:`RedisManager` is a process-wide singleton with an explicit
``initialize`` / ``quit`` lifecycle; it can be quit and re-initialised any
number of times (signal-driven reinitialisation does exactly that).
:class:`SubscriptionStore` wraps the few sets the bot needs and turns
storage failures into safe defaults instead of exceptions.
"""

from __future__ import annotations

import asyncio
import logging

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

from ..util.result import Result
from ..util.singletons import register_singleton

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_USD = 10_000.0
SEEN_TTL_SECONDS = 86_400
ALERT_TYPES: tuple[str, ...] = ("whale", "wallet")

STORAGE_UNAVAILABLE = "⚠️ Storage service is currently unavailable. Please try again later."

_STORE_ERRORS = (RedisError, OSError)


async def _close_client(client: aioredis.Redis, timeout: float) -> bool:
    try:
        await asyncio.wait_for(client.aclose(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Redis client did not close within %.0fs", timeout)
        return False
    except _STORE_ERRORS as exc:
        logger.warning("Error while closing Redis client: %s", exc)
        return False
    return True


class RedisManager:
    """Owns the single async Redis client of the process."""

    def __init__(self) -> None:
        self._client: aioredis.Redis | None = None
        self._url: str = ""

    async def initialize(self, url: str, close_timeout: float = 5.0) -> aioredis.Redis:
        if self._client is not None:
            return self._client
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=10,
            health_check_interval=30,
            retry=Retry(ExponentialBackoff(cap=3, base=0.1), retries=10),
        )
        try:
            await client.ping()
        except _STORE_ERRORS:
            logger.error("Redis initialization failed for %s", redact_url(url), exc_info=True)
            await _close_client(client, close_timeout)
            raise
        self._client = client
        self._url = url
        logger.info("Redis client connected (%s)", redact_url(url))
        return client

    async def quit(self, timeout: float = 5.0) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        if await _close_client(client, timeout):
            logger.info("Redis client closed")

    @property
    def client(self) -> aioredis.Redis | None:
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except _STORE_ERRORS as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False


def redact_url(url: str) -> str:
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"


class SubscriptionStore:
    """Wallet tracking, alert switches and whale thresholds per chat."""

    def __init__(self, manager: RedisManager | None = None) -> None:
        self._manager = manager

    @property
    def _redis(self) -> aioredis.Redis | None:
        return (self._manager or redis_manager).client

    # -- wallets -----------------------------------------------------------

    async def track_wallet(self, chat_id: int | str, wallet: str) -> Result:
        r = self._redis
        if r is None:
            return Result.fail(STORAGE_UNAVAILABLE)
        try:
            added = await r.sadd(f"user:{chat_id}:wallets", wallet)
            await r.sadd("tracked_wallets", wallet)
            await r.sadd(f"wallet:{wallet}:users", str(chat_id))
        except _STORE_ERRORS as exc:
            logger.error("Failed to track wallet for chat %s: %s", chat_id, exc)
            return Result.fail(STORAGE_UNAVAILABLE)
        return Result.ok(value=bool(added))

    async def untrack_wallet(self, chat_id: int | str, wallet: str) -> Result:
        r = self._redis
        if r is None:
            return Result.fail(STORAGE_UNAVAILABLE)
        try:
            removed = await r.srem(f"user:{chat_id}:wallets", wallet)
            await r.srem(f"wallet:{wallet}:users", str(chat_id))
            if not await r.scard(f"wallet:{wallet}:users"):
                await r.srem("tracked_wallets", wallet)
        except _STORE_ERRORS as exc:
            logger.error("Failed to untrack wallet for chat %s: %s", chat_id, exc)
            return Result.fail(STORAGE_UNAVAILABLE)
        return Result.ok(value=bool(removed))

    async def is_tracked(self, chat_id: int | str, wallet: str) -> bool:
        r = self._redis
        if r is None:
            return False
        try:
            return bool(await r.sismember(f"user:{chat_id}:wallets", wallet))
        except _STORE_ERRORS as exc:
            logger.warning("Tracked-wallet lookup failed for chat %s: %s", chat_id, exc)
            return False

    async def list_wallets(self, chat_id: int | str) -> list[str]:
        r = self._redis
        if r is None:
            return []
        try:
            return sorted(await r.smembers(f"user:{chat_id}:wallets"))
        except _STORE_ERRORS as exc:
            logger.warning("Wallet listing failed for chat %s: %s", chat_id, exc)
            return []

    # -- alerts ------------------------------------------------------------

    async def set_threshold(self, chat_id: int | str, threshold: float) -> Result:
        r = self._redis
        if r is None:
            return Result.fail(STORAGE_UNAVAILABLE)
        try:
            await r.set(f"threshold:{chat_id}", threshold)
        except _STORE_ERRORS as exc:
            logger.error("Failed to set threshold for chat %s: %s", chat_id, exc)
            return Result.fail(STORAGE_UNAVAILABLE)
        return Result.ok(value=threshold)

    async def get_threshold(self, chat_id: int | str) -> float:
        r = self._redis
        if r is None:
            return DEFAULT_THRESHOLD_USD
        try:
            raw = await r.get(f"threshold:{chat_id}")
        except _STORE_ERRORS as exc:
            logger.warning("Threshold lookup failed for chat %s: %s", chat_id, exc)
            return DEFAULT_THRESHOLD_USD
        try:
            return float(raw) if raw is not None else DEFAULT_THRESHOLD_USD
        except ValueError:
            return DEFAULT_THRESHOLD_USD

    async def enable_alerts(self, chat_id: int | str, alert_type: str) -> Result:
        r = self._redis
        if r is None:
            return Result.fail(STORAGE_UNAVAILABLE)
        types = ALERT_TYPES if alert_type == "all" else (alert_type,)
        try:
            await r.sadd("alert_enabled_chats", str(chat_id))
            await r.sadd(f"alerts:{chat_id}", *types)
        except _STORE_ERRORS as exc:
            logger.error("Failed to enable alerts for chat %s: %s", chat_id, exc)
            return Result.fail(STORAGE_UNAVAILABLE)
        return Result.ok(value=types)

    async def disable_alerts(self, chat_id: int | str, alert_type: str) -> Result:
        r = self._redis
        if r is None:
            return Result.fail(STORAGE_UNAVAILABLE)
        types = ALERT_TYPES if alert_type == "all" else (alert_type,)
        try:
            await r.srem(f"alerts:{chat_id}", *types)
            if not await r.scard(f"alerts:{chat_id}"):
                await r.srem("alert_enabled_chats", str(chat_id))
        except _STORE_ERRORS as exc:
            logger.error("Failed to disable alerts for chat %s: %s", chat_id, exc)
            return Result.fail(STORAGE_UNAVAILABLE)
        return Result.ok(value=types)

    async def alert_types(self, chat_id: int | str) -> set[str]:
        r = self._redis
        if r is None:
            return set()
        try:
            return set(await r.smembers(f"alerts:{chat_id}"))
        except _STORE_ERRORS as exc:
            logger.warning("Alert lookup failed for chat %s: %s", chat_id, exc)
            return set()

    async def has_alert(self, chat_id: int | str, alert_type: str) -> bool:
        r = self._redis
        if r is None:
            return False
        try:
            return bool(await r.sismember(f"alerts:{chat_id}", alert_type))
        except _STORE_ERRORS as exc:
            logger.warning("Alert lookup failed for chat %s: %s", chat_id, exc)
            return False

    # -- alert delivery ----------------------------------------------------

    @property
    def available(self) -> bool:
        return self._redis is not None

    async def _members(self, key: str) -> set[str]:
        r = self._redis
        if r is None:
            return set()
        try:
            return set(await r.smembers(key))
        except _STORE_ERRORS as exc:
            logger.warning("Could not read %s: %s", key, exc)
            return set()

    async def alert_chats(self) -> set[str]:
        return await self._members("alert_enabled_chats")

    async def tracked_wallets(self) -> set[str]:
        return await self._members("tracked_wallets")

    async def wallet_subscribers(self, wallet: str) -> set[str]:
        return await self._members(f"wallet:{wallet}:users")

    async def watched_tokens(self) -> set[str]:
        return await self._members("tracked_tokens")

    async def watch_token(self, mint: str) -> bool:
        r = self._redis
        if r is None:
            return False
        try:
            await r.sadd("tracked_tokens", mint)
        except _STORE_ERRORS as exc:
            logger.warning("Could not watch token %s: %s", mint, exc)
            return False
        return True

    async def mark_transfer_seen(self, transfer_id: str) -> bool:
        """Claim a transfer for alerting; ``False`` if already seen or unknown."""
        r = self._redis
        if r is None:
            return False
        try:
            return bool(await r.set(f"whale_alert:{transfer_id}", "1", ex=SEEN_TTL_SECONDS, nx=True))
        except _STORE_ERRORS as exc:
            logger.warning("Could not record whale transfer %s: %s", transfer_id, exc)
            return False

    async def wallet_signature(self, wallet: str) -> str | None:
        r = self._redis
        if r is None:
            return None
        try:
            return await r.get(f"wallet:{wallet}:last_message_signature")
        except _STORE_ERRORS as exc:
            logger.warning("Could not read alert signature for %s: %s", wallet, exc)
            return None

    async def set_wallet_signature(self, wallet: str, signature: str) -> None:
        r = self._redis
        if r is None:
            return
        try:
            await r.set(f"wallet:{wallet}:last_message_signature", signature, ex=SEEN_TTL_SECONDS)
        except _STORE_ERRORS as exc:
            logger.warning("Could not store alert signature for %s: %s", wallet, exc)


# Module-level singleton
redis_manager = RedisManager()


def _reset_redis_manager() -> None:
    global redis_manager
    redis_manager = RedisManager()


register_singleton(_reset_redis_manager)
