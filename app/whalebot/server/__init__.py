"""Server module -- bot application wiring and the health HTTP surface."""

from __future__ import annotations

from .app import BotApplication, QuietAccessLogger, main

__all__ = ["BotApplication", "QuietAccessLogger", "main"]
