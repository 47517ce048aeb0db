"""Process-wide singletons and their reset hooks.

Module-level instances (settings, the Redis manager) register a reset
function here so the test suite can rebuild them between tests.
"""

from __future__ import annotations

from collections.abc import Callable

_reset_fns: list[Callable[[], None]] = []


def register_singleton(reset_fn: Callable[[], None]) -> None:
    if reset_fn not in _reset_fns:
        _reset_fns.append(reset_fn)


def reset_all_singletons() -> None:
    for fn in list(_reset_fns):
        fn()
