"""Connection supervision -- failure classification, restarts, liveness watchdog."""

from .connection import ConnectionHealth, ConnectionSupervisor, SupervisorState
from .failures import BackoffPolicy, Failure, FailureClass, classify
from .watchdog import Watchdog

__all__ = [
    "BackoffPolicy",
    "ConnectionHealth",
    "ConnectionSupervisor",
    "Failure",
    "FailureClass",
    "SupervisorState",
    "Watchdog",
    "classify",
]
