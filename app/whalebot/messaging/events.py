"""Inbound events as a closed set of variants.

The transport turns every update it receives into exactly one of
:class:`CommandEvent`, :class:`TextEvent` or :class:`IgnoredEvent`; the
router matches on the type and never looks at raw update fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

COMMAND_PREFIX = "/"


@dataclass(frozen=True)
class CommandEvent:
    owner_id: int | str
    chat_id: int | str
    name: str
    args: str = ""
    text: str = ""


@dataclass(frozen=True)
class TextEvent:
    owner_id: int | str
    chat_id: int | str
    text: str


@dataclass(frozen=True)
class IgnoredEvent:
    owner_id: int | str | None
    chat_id: int | str | None
    reason: str


InboundEvent = Union[CommandEvent, TextEvent, IgnoredEvent]


def parse_command(text: str) -> tuple[str, str]:
    """Split ``/name@bot args`` into a lower-case name and the argument string."""
    parts = text.strip().split(maxsplit=1)
    if not parts:
        return "", ""
    name = parts[0][len(COMMAND_PREFIX):].split("@", 1)[0].lower()
    return name, parts[1].strip() if len(parts) > 1 else ""


def classify(
    owner_id: int | str | None,
    chat_id: int | str | None,
    text: str | None,
    kind: str = "text",
) -> InboundEvent:
    if owner_id is None or chat_id is None:
        return IgnoredEvent(owner_id, chat_id, "no sender")
    if kind != "text" or not text or not text.strip():
        return IgnoredEvent(owner_id, chat_id, f"non-text {kind}")
    stripped = text.strip()
    if stripped.startswith(COMMAND_PREFIX):
        name, args = parse_command(stripped)
        return CommandEvent(owner_id, chat_id, name, args, stripped)
    return TextEvent(owner_id, chat_id, stripped)
