"""Inbound event routing -- slash commands versus pending-flow continuations.

Every text event ends in exactly one of three places:

* a **command** (leading ``/``): any pending flow of the owner is dropped
  first, arguments are validated, then the command handler runs;
* a **continuation**: free text while the owner has a live flow, handed
  to that flow's handler;
* **ignored**: free text with nothing waiting for it.

Handler failures stop here. They are logged, the owner gets a short
apology and the owner's flow is cleared.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..state.conversation_store import ConversationState, ConversationStore
from ..util.result import Result
from .events import CommandEvent, IgnoredEvent, InboundEvent, TextEvent
from .transport import Transport

logger = logging.getLogger(__name__)

APOLOGY = "Sorry, something went wrong. Please try again later."
UNKNOWN_COMMAND = "❌ Unknown command. Use /help to see available commands."
TIMEOUT_NOTICE = (
    "⌛ Your previous request timed out after 5 minutes of inactivity.\n\n"
    "Please start again with the command you were using."
)

ALERT_TYPE_CHOICES: tuple[str, ...] = ("whale", "wallet", "all")

_NUMBER_RE = re.compile(r"^\d+(\.\d+)?$")


@dataclass
class CommandContext:
    owner_id: int | str
    chat_id: int | str
    text: str
    transport: Transport

    async def reply(self, text: str, **kwargs: Any) -> None:
        await self.transport.send_message(self.chat_id, text, **kwargs)


CommandHandler = Callable[[CommandContext, Any], Awaitable[None]]
FlowHandler = Callable[[CommandContext, str, ConversationState], Awaitable[None]]
Validator = Callable[[str], Result]


@dataclass(frozen=True)
class CommandSpec:
    name: str
    description: str
    handler: CommandHandler
    validator: Validator | None = None


class RouteOutcome(str, Enum):
    COMMAND = "command"
    REJECTED = "rejected"
    UNKNOWN = "unknown"
    CONTINUATION = "continuation"
    EXPIRED = "expired"
    IGNORED = "ignored"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Argument validators
# ---------------------------------------------------------------------------


def parse_threshold(args: str) -> Result:
    raw = args.strip()
    if not raw:
        return Result.fail("❌ Please provide a threshold amount.\n\nExample: /setthreshold 10000")
    if not _NUMBER_RE.match(raw):
        return Result.fail(
            "❌ Please provide a valid number for the threshold.\n\nExample: /setthreshold 10000"
        )
    value = float(raw)
    if value <= 0:
        return Result.fail(
            "❌ Please provide a valid positive number for the threshold (e.g., /setthreshold 5000)."
        )
    return Result.ok(value=value)


def alert_type_validator(command: str) -> Validator:
    def _parse(args: str) -> Result:
        raw = args.strip().lower()
        if not raw:
            return Result.fail(
                "❌ Please specify an alert type: whale, wallet, or all\n\n"
                f"Example: /{command} whale"
            )
        if raw not in ALERT_TYPE_CHOICES:
            return Result.fail("❌ Invalid alert type. Available types: whale, wallet, all")
        return Result.ok(value=raw)

    return _parse


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class CommandRouter:
    def __init__(
        self,
        transport: Transport,
        conversations: ConversationStore,
        commands: Iterable[CommandSpec] = (),
        flows: Mapping[str, FlowHandler] | None = None,
    ) -> None:
        self._transport = transport
        self._conversations = conversations
        self._commands: dict[str, CommandSpec] = {}
        self._flows: dict[str, FlowHandler] = dict(flows or {})
        for spec in commands:
            self.register_command(spec)

    def register_command(self, spec: CommandSpec) -> None:
        self._commands[spec.name.lower()] = spec

    def register_flow(self, command: str, handler: FlowHandler) -> None:
        self._flows[command] = handler

    @property
    def menu(self) -> list[tuple[str, str]]:
        return [(s.name, s.description) for s in self._commands.values()]

    @property
    def transport(self) -> Transport:
        return self._transport

    @transport.setter
    def transport(self, value: Transport) -> None:
        self._transport = value

    async def dispatch(self, event: InboundEvent) -> RouteOutcome:
        if isinstance(event, IgnoredEvent):
            logger.debug("Dropping event from %s: %s", event.owner_id, event.reason)
            return RouteOutcome.IGNORED
        async with self._conversations.lock(event.owner_id):
            if isinstance(event, CommandEvent):
                return await self._dispatch_command(event)
            return await self._dispatch_text(event)

    async def _dispatch_command(self, event: CommandEvent) -> RouteOutcome:
        # Any slash command, known or not, abandons the pending flow.
        self._conversations.clear(event.owner_id)
        ctx = self._context(event.owner_id, event.chat_id, event.text)

        spec = self._commands.get(event.name)
        if spec is None:
            logger.info("Unknown command /%s from %s", event.name, event.owner_id)
            return await self._reply_or_fail(ctx, UNKNOWN_COMMAND, RouteOutcome.UNKNOWN)

        arg: Any = event.args
        if spec.validator is not None:
            outcome = spec.validator(event.args)
            if not outcome:
                logger.info("Rejected /%s from %s: invalid arguments", spec.name, event.owner_id)
                return await self._reply_or_fail(ctx, outcome.message, RouteOutcome.REJECTED)
            arg = outcome.value

        logger.info("Command /%s from %s", spec.name, event.owner_id)
        return await self._run(ctx, f"/{spec.name}", spec.handler(ctx, arg), RouteOutcome.COMMAND)

    async def _dispatch_text(self, event: TextEvent) -> RouteOutcome:
        state = self._conversations.get(event.owner_id)
        if state is None:
            return RouteOutcome.IGNORED
        handler = self._flows.get(state.command)
        if handler is None:
            logger.info("No flow registered for pending command %r; clearing state", state.command)
            self._conversations.clear(event.owner_id)
            return RouteOutcome.IGNORED

        ctx = self._context(event.owner_id, event.chat_id, event.text)
        if self._conversations.is_expired(state):
            logger.info("Flow %s for %s expired", state.command, event.owner_id)
            self._conversations.clear(event.owner_id)
            return await self._reply_or_fail(ctx, TIMEOUT_NOTICE, RouteOutcome.EXPIRED)

        return await self._run(
            ctx, f"flow {state.command}", handler(ctx, event.text, state), RouteOutcome.CONTINUATION,
        )

    def _context(self, owner_id: int | str, chat_id: int | str, text: str) -> CommandContext:
        return CommandContext(owner_id=owner_id, chat_id=chat_id, text=text, transport=self._transport)

    async def _run(
        self,
        ctx: CommandContext,
        label: str,
        call: Awaitable[None],
        success: RouteOutcome,
    ) -> RouteOutcome:
        try:
            await call
            return success
        except Exception as exc:
            logger.error("Error handling %s for %s: %s", label, ctx.owner_id, exc, exc_info=True)
            await self._apologise(ctx)
            self._conversations.clear(ctx.owner_id)
            return RouteOutcome.FAILED

    async def _reply_or_fail(
        self, ctx: CommandContext, text: str, outcome: RouteOutcome,
    ) -> RouteOutcome:
        try:
            await ctx.reply(text)
        except Exception as exc:
            logger.error("Failed to send reply to %s: %s", ctx.chat_id, exc)
        return outcome

    async def _apologise(self, ctx: CommandContext) -> None:
        try:
            await ctx.reply(APOLOGY)
        except Exception as send_exc:
            logger.error("Failed to send error message to %s: %s", ctx.chat_id, send_exc)
