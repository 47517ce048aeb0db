"""Shared utilities."""

from .result import Result
from .scheduler import Scheduler
from .singletons import register_singleton, reset_all_singletons

__all__ = [
    "Result",
    "Scheduler",
    "register_singleton",
    "reset_all_singletons",
]
