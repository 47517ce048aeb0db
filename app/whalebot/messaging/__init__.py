"""Chat messaging pipeline -- inbound events, routing, handlers and transport."""

from .events import CommandEvent, IgnoredEvent, InboundEvent, TextEvent, classify
from .handlers import BotHandlers
from .router import CommandContext, CommandRouter, CommandSpec, RouteOutcome
from .transport import TelegramTransport, Transport

__all__ = [
    "BotHandlers",
    "CommandContext",
    "CommandEvent",
    "CommandRouter",
    "CommandSpec",
    "IgnoredEvent",
    "InboundEvent",
    "RouteOutcome",
    "TelegramTransport",
    "TextEvent",
    "Transport",
    "classify",
]
