"""Command and flow handlers.

These are deliberately thin: they read or write the subscription sets,
call the upstream API and answer in plain text. Multi-step commands park
a :class:`ConversationState` and finish in the matching ``*_input`` flow.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from ..state.conversation_store import ConversationState, ConversationStore
from ..state.redis_store import SubscriptionStore
from ..services.vybe import VybeApiError, VybeClient
from .router import (
    CommandContext,
    CommandSpec,
    FlowHandler,
    alert_type_validator,
    parse_threshold,
)

logger = logging.getLogger(__name__)

SOLANA_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

EXAMPLE_WALLET = "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1"
EXAMPLE_TOKEN = "So11111111111111111111111111111111111111112"

INVALID_WALLET = "❌ Invalid Solana wallet address format. Please enter a valid Solana wallet address."
INVALID_TOKEN = f"❌ Invalid Solana token address format.\n\nPlease enter a valid address. Example:\n{EXAMPLE_TOKEN}"
UPSTREAM_FAILED = "⚠️ Could not fetch data right now. Please try again later."

HELP_TEXT = """🤖 VybeWhale Bot Commands

General:
/start - Start the bot
/help - Show this help message
/config - View your settings

Tokens:
/token - Check token info and market data
/whale - View whale transactions for a token

Wallet tracking:
/trackwallet - Track a wallet's activity
/listwallets - List tracked wallets
/untrackwallet - Stop tracking a wallet
/walletperformance - Analyze wallet performance

Alerts:
/enablealerts [whale|wallet|all] - Enable alerts
/disablealerts [whale|wallet|all] - Disable alerts
/setthreshold [amount] - Whale alert threshold (USD)"""


def is_solana_address(text: str) -> bool:
    return bool(SOLANA_ADDRESS_RE.match(text))


def short_address(address: str) -> str:
    return f"{address[:8]}...{address[-4:]}"


def _usd(value: Any) -> str:
    try:
        return f"${float(value):,.2f}"
    except (TypeError, ValueError):
        return "n/a"


class BotHandlers:
    """Binds handlers to the stores and the upstream client."""

    def __init__(
        self,
        conversations: ConversationStore,
        subscriptions: SubscriptionStore,
        vybe: VybeClient,
    ) -> None:
        self._conversations = conversations
        self._subs = subscriptions
        self._vybe = vybe

    def command_specs(self) -> list[CommandSpec]:
        return [
            CommandSpec("start", "Start the bot", self.start),
            CommandSpec("help", "Show help message", self.help),
            CommandSpec("config", "View and manage all settings", self.config),
            CommandSpec("token", "Check token info", self.token),
            CommandSpec("whale", "View whale transactions", self.whale),
            CommandSpec("trackwallet", "Track a wallet", self.track_wallet),
            CommandSpec("listwallets", "List tracked wallets", self.list_wallets),
            CommandSpec("untrackwallet", "Stop tracking a wallet", self.untrack_wallet),
            CommandSpec("walletperformance", "Analyze wallet performance", self.wallet_performance),
            CommandSpec("setthreshold", "Set whale alert threshold", self.set_threshold, parse_threshold),
            CommandSpec(
                "enablealerts", "Enable specific alerts", self.enable_alerts,
                alert_type_validator("enablealerts"),
            ),
            CommandSpec(
                "disablealerts", "Disable specific alerts", self.disable_alerts,
                alert_type_validator("disablealerts"),
            ),
        ]

    def flows(self) -> dict[str, FlowHandler]:
        return {
            "token": self.token_input,
            "whale": self.whale_input,
            "trackwallet": self.wallet_input,
            "untrackwallet": self.untrack_input,
            "walletperformance": self.performance_input,
        }

    def _await_input(self, ctx: CommandContext, command: str, step: str, **payload: Any) -> None:
        self._conversations.set(
            ctx.owner_id,
            ConversationState(owner_id=ctx.owner_id, command=command, step=step, payload=payload),
        )

    # -- general -----------------------------------------------------------

    async def start(self, ctx: CommandContext, _args: str) -> None:
        await ctx.reply(
            "👋 Welcome to VybeWhale!\n\n"
            "I track Solana whales, wallets and tokens for you.\n"
            "Use /help to see everything I can do."
        )

    async def help(self, ctx: CommandContext, _args: str) -> None:
        await ctx.reply(HELP_TEXT)

    async def config(self, ctx: CommandContext, _args: str) -> None:
        threshold = await self._subs.get_threshold(ctx.chat_id)
        alerts = await self._subs.alert_types(ctx.chat_id)
        wallets = await self._subs.list_wallets(ctx.chat_id)
        lines = [
            "⚙️ Your settings",
            f"  Whale threshold: {_usd(threshold)}",
            f"  Whale alerts: {'on' if 'whale' in alerts else 'off'}",
            f"  Wallet alerts: {'on' if 'wallet' in alerts else 'off'}",
            f"  Tracked wallets: {len(wallets)}",
            "",
            "Change with /setthreshold, /enablealerts, /disablealerts",
        ]
        await ctx.reply("\n".join(lines))

    # -- alerts ------------------------------------------------------------

    async def set_threshold(self, ctx: CommandContext, threshold: float) -> None:
        result = await self._subs.set_threshold(ctx.chat_id, threshold)
        if not result:
            await ctx.reply(result.message)
            return
        await ctx.reply(
            f"✅ Whale alert threshold set to {_usd(threshold)}\n\n"
            "You'll now receive alerts for whale transfers above this value when whale alerts are enabled."
        )
        logger.info("Threshold set for chat %s: %s", ctx.chat_id, threshold)

    async def enable_alerts(self, ctx: CommandContext, alert_type: str) -> None:
        result = await self._subs.enable_alerts(ctx.chat_id, alert_type)
        if not result:
            await ctx.reply(result.message)
            return
        await ctx.reply(f"✅ Enabled {', '.join(result.value)} alerts.")

    async def disable_alerts(self, ctx: CommandContext, alert_type: str) -> None:
        result = await self._subs.disable_alerts(ctx.chat_id, alert_type)
        if not result:
            await ctx.reply(result.message)
            return
        await ctx.reply(f"🔕 Disabled {', '.join(result.value)} alerts.")

    # -- wallets -----------------------------------------------------------

    async def track_wallet(self, ctx: CommandContext, args: str) -> None:
        if args:
            await self._track(ctx, args.split()[0])
            return
        self._await_input(ctx, "trackwallet", "awaiting_wallet")
        await ctx.reply(
            "Please enter the Solana wallet address you want to track.\n\n"
            f"Example: {EXAMPLE_WALLET}"
        )

    async def wallet_input(self, ctx: CommandContext, text: str, _state: ConversationState) -> None:
        await self._track(ctx, text.strip())

    async def _track(self, ctx: CommandContext, wallet: str) -> None:
        if not is_solana_address(wallet):
            await ctx.reply(INVALID_WALLET)
            return
        await ctx.transport.send_typing(ctx.chat_id)
        result = await self._subs.track_wallet(ctx.chat_id, wallet)
        self._conversations.clear(ctx.owner_id)
        if not result:
            await ctx.reply(result.message)
            return
        if result.value:
            await ctx.reply(
                f"✅ Wallet {short_address(wallet)} is now being tracked.\n\n"
                "Use /listwallets to see all tracked wallets."
            )
        else:
            await ctx.reply(f"ℹ️ Wallet {short_address(wallet)} is already being tracked.")
        logger.info("Wallet %s tracked for chat %s", short_address(wallet), ctx.chat_id)

    async def untrack_wallet(self, ctx: CommandContext, args: str) -> None:
        if args:
            await self._untrack(ctx, args.split()[0])
            return
        self._await_input(ctx, "untrackwallet", "awaiting_wallet")
        await ctx.reply(
            "Please enter the Solana wallet address you want to stop tracking.\n\n"
            "Use /listwallets to see all tracked wallets."
        )

    async def untrack_input(self, ctx: CommandContext, text: str, _state: ConversationState) -> None:
        await self._untrack(ctx, text.strip())

    async def _untrack(self, ctx: CommandContext, wallet: str) -> None:
        if not is_solana_address(wallet):
            await ctx.reply(INVALID_WALLET)
            return
        if not await self._subs.is_tracked(ctx.chat_id, wallet):
            self._conversations.clear(ctx.owner_id)
            await ctx.reply(f"❌ Wallet {short_address(wallet)} is not being tracked.")
            return
        result = await self._subs.untrack_wallet(ctx.chat_id, wallet)
        self._conversations.clear(ctx.owner_id)
        if not result:
            await ctx.reply(result.message)
            return
        await ctx.reply(f"✅ Wallet {short_address(wallet)} is no longer being tracked.")

    async def list_wallets(self, ctx: CommandContext, _args: str) -> None:
        wallets = await self._subs.list_wallets(ctx.chat_id)
        if not wallets:
            await ctx.reply("You are not tracking any wallets yet.\n\nUse /trackwallet to add one.")
            return
        lines = [f"👛 Tracked wallets ({len(wallets)}):"]
        lines += [f"  {i}. {w}" for i, w in enumerate(wallets, 1)]
        await ctx.reply("\n".join(lines))

    # -- market data -------------------------------------------------------

    async def token(self, ctx: CommandContext, args: str) -> None:
        if args:
            await self._lookup_token(ctx, args.split()[0])
            return
        self._await_input(ctx, "token", "awaiting_token", last_token=None)
        await ctx.reply(
            "🧠 Token Analyzer\n\n"
            f"Please enter the Solana token address you want to analyze.\n\nExample: {EXAMPLE_TOKEN}"
        )

    async def token_input(self, ctx: CommandContext, text: str, _state: ConversationState) -> None:
        await self._lookup_token(ctx, text.strip())

    async def _lookup_token(self, ctx: CommandContext, mint: str) -> None:
        if not is_solana_address(mint):
            await ctx.reply(INVALID_TOKEN)
            return
        await ctx.transport.send_typing(ctx.chat_id)
        try:
            info = await self._vybe.get_token(mint)
        except VybeApiError as exc:
            logger.warning("Token lookup failed for %s: %s", mint, exc)
            await ctx.reply(UPSTREAM_FAILED)
            return
        symbol = info.get("symbol") or "?"
        lines = [
            f"🪙 {info.get('name') or symbol} ({symbol})",
            f"  Price: {_usd(info.get('price'))}",
            f"  Market cap: {_usd(info.get('marketCap'))}",
            f"  24h volume: {_usd(info.get('usdValueVolume24h'))}",
            "",
            "Send another address to analyze more, or any command to stop.",
        ]
        await ctx.reply("\n".join(lines))
        self._await_input(ctx, "token", "awaiting_token", last_token=symbol)

    async def whale(self, ctx: CommandContext, args: str) -> None:
        if args:
            await self._whale_transfers(ctx, args.split()[0])
            return
        self._await_input(ctx, "whale", "awaiting_token")
        await ctx.reply(
            "🐋 Whale Watch\n\n"
            f"Please enter the Solana token address to scan for whale transfers.\n\nExample: {EXAMPLE_TOKEN}"
        )

    async def whale_input(self, ctx: CommandContext, text: str, _state: ConversationState) -> None:
        await self._whale_transfers(ctx, text.strip())

    async def _whale_transfers(self, ctx: CommandContext, mint: str) -> None:
        if not is_solana_address(mint):
            await ctx.reply(INVALID_TOKEN)
            return
        await ctx.transport.send_typing(ctx.chat_id)
        threshold = await self._subs.get_threshold(ctx.chat_id)
        try:
            transfers = await self._vybe.get_whale_transfers(mint, threshold)
        except VybeApiError as exc:
            logger.warning("Whale lookup failed for %s: %s", mint, exc)
            self._conversations.clear(ctx.owner_id)
            await ctx.reply(UPSTREAM_FAILED)
            return
        self._conversations.clear(ctx.owner_id)
        await self._subs.watch_token(mint)
        if not transfers:
            await ctx.reply(f"No whale transfers above {_usd(threshold)} found for {short_address(mint)}.")
            return
        lines = [f"🐋 Whale transfers for {short_address(mint)} (≥ {_usd(threshold)}):"]
        for t in transfers:
            sender = t.get("senderAddress") or "?"
            receiver = t.get("receiverAddress") or "?"
            lines.append(
                f"  {_usd(t.get('valueUsd'))}  {short_address(sender)} → {short_address(receiver)}"
            )
        await ctx.reply("\n".join(lines))

    async def wallet_performance(self, ctx: CommandContext, args: str) -> None:
        if args:
            await self._performance(ctx, args.split()[0])
            return
        self._await_input(ctx, "walletperformance", "awaiting_wallet")
        await ctx.reply(
            "📈 Wallet Performance\n\n"
            f"Please enter the Solana wallet address to analyze.\n\nExample: {EXAMPLE_WALLET}"
        )

    async def performance_input(self, ctx: CommandContext, text: str, _state: ConversationState) -> None:
        await self._performance(ctx, text.strip())

    async def _performance(self, ctx: CommandContext, wallet: str) -> None:
        if not is_solana_address(wallet):
            await ctx.reply(INVALID_WALLET)
            return
        await ctx.transport.send_typing(ctx.chat_id)
        try:
            pnl = await self._vybe.get_wallet_pnl(wallet)
        except VybeApiError as exc:
            logger.warning("PnL lookup failed for %s: %s", short_address(wallet), exc)
            self._conversations.clear(ctx.owner_id)
            await ctx.reply(UPSTREAM_FAILED)
            return
        self._conversations.clear(ctx.owner_id)
        summary = pnl.get("summary") or {}
        lines = [
            f"📈 Performance of {short_address(wallet)} (30d)",
            f"  Realized PnL: {_usd(summary.get('realizedPnlUsd'))}",
            f"  Unrealized PnL: {_usd(summary.get('unrealizedPnlUsd'))}",
            f"  Trades: {summary.get('tradesCount', 'n/a')}",
            f"  Win rate: {summary.get('winRate', 'n/a')}",
        ]
        await ctx.reply("\n".join(lines))
