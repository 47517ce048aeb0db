"""Periodic whale and wallet alerts pushed to subscribed chats.

Each tick reads the subscription sets, asks the upstream API about the
watched tokens and tracked wallets, and sends a message to every chat that
switched the matching alert type on. Storage problems degrade to empty
sets; upstream and send failures are logged per item and the tick goes on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..messaging.transport import Transport
from ..state.redis_store import SubscriptionStore
from ..util.scheduler import Scheduler
from .vybe import VybeApiError, VybeClient

logger = logging.getLogger(__name__)

WALLET_CHANGE_PERCENT = 5.0
TOP_HOLDINGS = 5


def compact_number(value: float) -> str:
    for bound, suffix in ((1e9, "B"), (1e6, "M"), (1e3, "K")):
        if abs(value) >= bound:
            return f"{value / bound:.2f}{suffix}"
    return f"{value:.2f}"


def _float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class Holding:
    symbol: str
    mint: str
    value: float


@dataclass(frozen=True)
class WalletBalance:
    total_value: float
    holdings: tuple[Holding, ...] = ()

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> WalletBalance:
        rows = data.get("data") or []
        return cls(
            total_value=_float(data.get("totalTokenValueUsd")),
            holdings=tuple(
                Holding(
                    symbol=row.get("symbol") or "Unknown",
                    mint=row.get("mintAddress") or "",
                    value=_float(row.get("valueUsd")),
                )
                for row in rows if isinstance(row, dict)
            ),
        )

    def changed_from(self, previous: WalletBalance | None) -> bool:
        """First sighting, a >5% swing in total value, or a token gained or lost."""
        if previous is None:
            return True
        if previous.total_value > 0:
            swing = abs(self.total_value - previous.total_value) / previous.total_value * 100
            if swing > WALLET_CHANGE_PERCENT:
                return True
        return {h.mint for h in self.holdings} != {h.mint for h in previous.holdings}

    def signature(self, wallet: str) -> str:
        top = ";".join(f"{h.symbol}:{h.value:.2f}" for h in self.holdings[:TOP_HOLDINGS])
        return f"{wallet}:{self.total_value:.2f}:{top}" if top else f"{wallet}:{self.total_value:.2f}"


def format_whale_alert(mint: str, transfer: dict[str, Any]) -> str:
    amount = _float(transfer.get("calculatedAmount") or transfer.get("amount"))
    return (
        "🐋 Whale Alert!\n\n"
        f"Token: {mint}\n"
        f"Amount: {compact_number(amount)}\n"
        f"USD Value: ${compact_number(_float(transfer.get('valueUsd')))}\n"
        f"From: {transfer.get('senderAddress') or '?'}\n"
        f"To: {transfer.get('receiverAddress') or '?'}\n\n"
        f"View token: https://vybe.fyi/token/{mint}"
    )


def format_wallet_alert(wallet: str, balance: WalletBalance, previous: WalletBalance | None) -> str:
    lines = ["👀 Wallet Activity Update", "", f"Wallet: {wallet}",
             f"Total Value: ${compact_number(balance.total_value)}"]
    if previous is not None:
        change = balance.total_value - previous.total_value
        pct = change / previous.total_value * 100 if previous.total_value > 0 else 0.0
        arrow = "📈" if change >= 0 else "📉"
        sign = "+" if change >= 0 else ""
        lines.append(f"Change: {arrow} {sign}{compact_number(change)} USD ({pct:.2f}%)")
    lines += ["", "Top Holdings:"]
    lines += [f"• {h.symbol}: ${compact_number(h.value)}" for h in balance.holdings[:TOP_HOLDINGS]]
    lines += ["", f"View wallet: https://vybe.fyi/wallets/{wallet}"]
    return "\n".join(lines)


class AlertService:
    def __init__(
        self,
        subscriptions: SubscriptionStore,
        vybe: VybeClient,
        transport: Transport,
        *,
        period: float = 60.0,
        token_cooldown: float = 30.0,
        wallet_cooldown: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._subs = subscriptions
        self._vybe = vybe
        self._transport = transport
        self._period = period
        self._token_cooldown = token_cooldown
        self._wallet_cooldown = wallet_cooldown
        self._clock = clock
        self._last_check: dict[str, float] = {}
        self._balances: dict[str, WalletBalance] = {}
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, scheduler: Scheduler) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = scheduler.every(self._period, self.check_once, name="alerts")
            logger.info("Alert checks started (every %.0fs)", self._period)
        return self._task

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def check_once(self) -> int:
        """One alert tick; returns the number of messages sent."""
        if not self._subs.available:
            logger.debug("Storage unavailable; skipping alert checks")
            return 0
        return await self.check_whale_alerts() + await self.check_wallet_alerts()

    async def check_whale_alerts(self) -> int:
        thresholds: dict[str, float] = {}
        for chat in sorted(await self._subs.alert_chats()):
            if await self._subs.has_alert(chat, "whale"):
                thresholds[chat] = await self._subs.get_threshold(chat)
        if not thresholds:
            return 0

        floor = min(thresholds.values())
        sent = 0
        for mint in sorted(await self._subs.watched_tokens()):
            if not self._due(f"token:{mint}", self._token_cooldown):
                continue
            try:
                transfers = await self._vybe.get_whale_transfers(mint, floor)
            except VybeApiError as exc:
                logger.warning("Whale alert lookup failed for %s: %s", mint, exc)
                continue
            for transfer in transfers:
                transfer_id = transfer.get("signature")
                if not transfer_id or not await self._subs.mark_transfer_seen(transfer_id):
                    continue
                value = _float(transfer.get("valueUsd"))
                text = format_whale_alert(mint, transfer)
                for chat, threshold in thresholds.items():
                    if value >= threshold:
                        sent += await self._send(chat, text)
        return sent

    async def check_wallet_alerts(self) -> int:
        sent = 0
        for wallet in sorted(await self._subs.tracked_wallets()):
            if not self._due(f"wallet:{wallet}", self._wallet_cooldown):
                continue
            chats = await self._subs.wallet_subscribers(wallet)
            if not chats:
                continue
            try:
                balance = WalletBalance.from_payload(await self._vybe.get_wallet_tokens(wallet))
            except VybeApiError as exc:
                logger.warning("Wallet alert lookup failed for %s: %s", wallet, exc)
                continue

            previous = self._balances.get(wallet)
            self._balances[wallet] = balance
            if not balance.changed_from(previous):
                logger.debug("No significant change for wallet %s", wallet)
                continue
            signature = balance.signature(wallet)
            if await self._subs.wallet_signature(wallet) == signature:
                logger.info("Wallet %s changed but the alert would repeat the last one; skipped", wallet)
                continue

            logger.info("Significant change in wallet %s; alerting %d chat(s)", wallet, len(chats))
            text = format_wallet_alert(wallet, balance, previous)
            for chat in sorted(chats):
                if await self._subs.has_alert(chat, "wallet"):
                    sent += await self._send(chat, text)
            await self._subs.set_wallet_signature(wallet, signature)
        return sent

    def _due(self, key: str, cooldown: float) -> bool:
        now = self._clock()
        last = self._last_check.get(key)
        if last is not None and now - last < cooldown:
            return False
        self._last_check[key] = now
        return True

    async def _send(self, chat_id: str, text: str) -> int:
        try:
            await self._transport.send_message(chat_id, text)
        except Exception as exc:
            logger.error("Failed to send alert to chat %s: %s", chat_id, exc)
            return 0
        return 1
