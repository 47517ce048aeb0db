"""Per-owner conversation state for multi-step command flows."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field, replace
from typing import Any

logger = logging.getLogger(__name__)

CONVERSATION_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class ConversationState:
    """A pending flow: which command is waiting for input and at what step.

    ``created_at`` of ``0`` means "stamp me on insert".
    """

    owner_id: int | str = ""
    command: str = ""
    step: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0

    def age(self, now: float) -> float:
        return now - self.created_at


@dataclass
class _OwnerLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ConversationStore:
    """In-memory owner -> state map.

    One instance per process, injected into the router and the flow
    handlers. Writes replace the whole state object, so readers never see
    a half-updated entry. Expiry is lazy: the router asks
    :meth:`is_expired` when continuation input arrives.
    """

    def __init__(
        self,
        ttl: float = CONVERSATION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._states: dict[int | str, ConversationState] = {}
        self._locks: dict[int | str, _OwnerLock] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def set(self, owner_id: int | str, state: ConversationState) -> ConversationState:
        stamped = replace(
            state,
            owner_id=owner_id,
            created_at=state.created_at or self._clock(),
        )
        self._states[owner_id] = stamped
        logger.info("State set for owner %s: %s/%s", owner_id, stamped.command, stamped.step or "-")
        return stamped

    def get(self, owner_id: int | str) -> ConversationState | None:
        return self._states.get(owner_id)

    def clear(self, owner_id: int | str) -> None:
        if self._states.pop(owner_id, None) is not None:
            logger.info("State cleared for owner %s", owner_id)

    def is_expired(self, state: ConversationState, now: float | None = None) -> bool:
        return state.age(self._clock() if now is None else now) > self._ttl

    @contextlib.asynccontextmanager
    async def lock(self, owner_id: int | str) -> AsyncIterator[None]:
        """Serialise event handling for one owner.

        The lock lives only while some event of that owner holds or waits
        for it, so idle owners leave nothing behind.
        """
        entry = self._locks.get(owner_id)
        if entry is None:
            entry = self._locks[owner_id] = _OwnerLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if not entry.users:
                del self._locks[owner_id]

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, owner_id: object) -> bool:
        return owner_id in self._states
