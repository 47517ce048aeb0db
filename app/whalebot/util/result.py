"""Outcome type shared by argument validators and subscription store writes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class Result:
    """Success flag plus a user-facing message and an optional payload.

    Validators return ``Result.ok(value=parsed)`` or ``Result.fail(reply)``;
    the router only dispatches on success and sends *message* otherwise::

        outcome = parse_threshold("500")
        if outcome:
            threshold = outcome.value
    """

    success: bool
    message: str = ""
    value: Any = field(default=None, repr=False)

    @classmethod
    def ok(cls, message: str = "", *, value: Any = None) -> Result:
        return cls(success=True, message=message, value=value)

    @classmethod
    def fail(cls, message: str = "") -> Result:
        return cls(success=False, message=message)

    def __bool__(self) -> bool:
        return self.success

    def __iter__(self):
        yield self.success
        yield self.message
