"""Thin async client for the Vybe market-data REST API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)

_TIMEOUT = aiohttp.ClientTimeout(total=20)


class VybeApiError(Exception):
    """Upstream request failed or returned something unusable."""


class VybeClient:
    """Fetches raw JSON; callers pick the fields they need."""

    def __init__(self, base_url: str, api_key: str = "") -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session: aiohttp.ClientSession | None = None

    async def _get(self, path: str, **params: Any) -> Any:
        if self._session is None or self._session.closed:
            headers = {"accept": "application/json"}
            if self._api_key:
                headers["X-API-KEY"] = self._api_key
            self._session = aiohttp.ClientSession(headers=headers, timeout=_TIMEOUT)
        url = f"{self._base_url}{path}"
        query = {k: str(v) for k, v in params.items() if v is not None}
        try:
            async with self._session.get(url, params=query) as resp:
                if resp.status >= 400:
                    body = (await resp.text())[:200]
                    raise VybeApiError(f"GET {path} -> {resp.status}: {body}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise VybeApiError(f"GET {path} failed: {exc}") from exc

    async def get_token(self, mint_address: str) -> dict[str, Any]:
        data = await self._get(f"/token/{mint_address}")
        if not isinstance(data, dict):
            raise VybeApiError(f"Unexpected token payload for {mint_address}")
        return data

    async def get_whale_transfers(
        self, mint_address: str, min_usd_amount: float, limit: int = 10,
    ) -> list[dict[str, Any]]:
        data = await self._get(
            "/token/transfers",
            mintAddress=mint_address,
            minUsdAmount=min_usd_amount,
            limit=limit,
            sortByDesc="valueUsd",
        )
        transfers = data.get("transfers", []) if isinstance(data, dict) else data
        return [t for t in transfers or [] if isinstance(t, dict)][:limit]

    async def get_wallet_pnl(self, wallet: str, resolution: str = "30d") -> dict[str, Any]:
        data = await self._get(f"/account/pnl/{wallet}", resolution=resolution)
        if not isinstance(data, dict):
            raise VybeApiError(f"Unexpected PnL payload for {wallet}")
        return data

    async def get_wallet_tokens(self, wallet: str, limit: int = 10) -> dict[str, Any]:
        data = await self._get(f"/account/token-balance/{wallet}", limit=limit, sortByDesc="valueUsd")
        if not isinstance(data, dict):
            raise VybeApiError(f"Unexpected token balance payload for {wallet}")
        return data

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
