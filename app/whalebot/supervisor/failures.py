"""Transport failure classification and the backoff chosen for each class."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from telegram.error import Conflict, InvalidToken, NetworkError, RetryAfter, TimedOut

_SERVER_ERROR_RE = re.compile(
    r"\b5\d\d\b|bad gateway|internal server error|service unavailable|gateway time-?out",
    re.IGNORECASE,
)

DEFAULT_RETRY_AFTER = 30.0


class FailureClass(str, Enum):
    RATE_LIMITED = "rate-limited"
    SERVER_ERROR = "remote-server-error"
    FATAL = "fatal-protocol-error"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class Failure:
    kind: FailureClass
    cause: BaseException | None = None
    retry_after: float | None = None

    def describe(self) -> str:
        extra = f", retry after {self.retry_after:g}s" if self.retry_after is not None else ""
        return f"{self.kind.value}{extra}: {self.cause!s}" if self.cause else f"{self.kind.value}{extra}"


def _seconds(value: float | int | timedelta | None) -> float | None:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def classify(exc: BaseException) -> Failure:
    """Map a polling error onto one of the four failure classes."""
    if isinstance(exc, RetryAfter):
        retry_after = _seconds(exc.retry_after)
        return Failure(FailureClass.RATE_LIMITED, exc, DEFAULT_RETRY_AFTER if retry_after is None else retry_after)
    if isinstance(exc, (InvalidToken, Conflict)):
        return Failure(FailureClass.FATAL, exc)
    if isinstance(exc, NetworkError) and not isinstance(exc, TimedOut):
        if _SERVER_ERROR_RE.search(str(exc)):
            return Failure(FailureClass.SERVER_ERROR, exc)
        return Failure(FailureClass.FATAL, exc)
    if isinstance(exc, (TimedOut, OSError)):
        return Failure(FailureClass.FATAL, exc)
    return Failure(FailureClass.UNCLASSIFIED, exc)


@dataclass(frozen=True)
class BackoffPolicy:
    """Seconds to wait before restarting polling, by failure class.

    Rate-limited waits are the server's advice plus a buffer and never
    grow with repetition. Unclassified waits double for each consecutive
    unclassified failure inside ``streak_window`` up to ``max_delay``.
    """

    rate_limit_buffer: float = 1.0
    server_error: float = 15.0
    fatal: float = 10.0
    unclassified: float = 5.0
    max_delay: float = 120.0
    streak_window: float = 60.0

    def delay_for(self, failure: Failure, streak: int = 1) -> float:
        if failure.kind is FailureClass.RATE_LIMITED:
            advised = DEFAULT_RETRY_AFTER if failure.retry_after is None else failure.retry_after
            return advised + self.rate_limit_buffer
        if failure.kind is FailureClass.SERVER_ERROR:
            return self.server_error
        if failure.kind is FailureClass.FATAL:
            return self.fatal
        return min(self.unclassified * 2 ** max(streak - 1, 0), self.max_delay)

    def escalate(self, delay: float, floor: float = 0.0) -> float:
        """Next wait after a failed restart: doubled, capped, never below *floor*."""
        return max(min(delay * 2, self.max_delay), floor)
