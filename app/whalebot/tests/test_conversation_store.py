"""Tests for ConversationStore."""

from __future__ import annotations

import asyncio

import pytest

from app.whalebot.state.conversation_store import ConversationState, ConversationStore


@pytest.fixture()
def store(clock) -> ConversationStore:
    return ConversationStore(ttl=300, clock=clock)


class TestSetGetClear:
    def test_set_then_get_returns_same_state(self, store: ConversationStore) -> None:
        state = ConversationState(command="trackwallet", step="awaiting_wallet", payload={"a": 1})
        stored = store.set(42, state)
        assert store.get(42) == stored
        assert stored.command == "trackwallet"
        assert stored.step == "awaiting_wallet"
        assert stored.payload == {"a": 1}

    def test_clear_then_get_returns_none(self, store: ConversationStore) -> None:
        store.set(42, ConversationState(command="token"))
        store.clear(42)
        assert store.get(42) is None
        assert 42 not in store

    def test_clear_is_idempotent(self, store: ConversationStore) -> None:
        store.clear(7)
        store.clear(7)
        assert len(store) == 0

    def test_unknown_owner(self, store: ConversationStore) -> None:
        assert store.get("nobody") is None

    def test_set_replaces_previous_state(self, store: ConversationStore) -> None:
        store.set(1, ConversationState(command="token"))
        store.set(1, ConversationState(command="whale"))
        assert store.get(1).command == "whale"
        assert len(store) == 1

    def test_owner_id_taken_from_key(self, store: ConversationStore) -> None:
        stored = store.set(99, ConversationState(owner_id=1, command="token"))
        assert stored.owner_id == 99

    def test_owners_are_independent(self, store: ConversationStore) -> None:
        store.set(1, ConversationState(command="token"))
        store.set(2, ConversationState(command="whale"))
        store.clear(1)
        assert store.get(2).command == "whale"


class TestExpiry:
    def test_created_at_stamped_on_insert(self, store: ConversationStore, clock) -> None:
        stored = store.set(1, ConversationState(command="token"))
        assert stored.created_at == clock.now

    def test_explicit_created_at_kept(self, store: ConversationStore) -> None:
        stored = store.set(1, ConversationState(command="token", created_at=5.0))
        assert stored.created_at == 5.0

    def test_fresh_state_not_expired(self, store: ConversationStore, clock) -> None:
        stored = store.set(1, ConversationState(command="token"))
        clock.advance(299)
        assert not store.is_expired(stored)

    def test_exactly_ttl_not_expired(self, store: ConversationStore, clock) -> None:
        stored = store.set(1, ConversationState(command="token"))
        clock.advance(300)
        assert not store.is_expired(stored)

    def test_older_than_ttl_expired(self, store: ConversationStore, clock) -> None:
        stored = store.set(1, ConversationState(command="token"))
        clock.advance(300.5)
        assert store.is_expired(stored)

    def test_explicit_now(self, store: ConversationStore) -> None:
        state = ConversationState(command="token", created_at=100.0)
        assert store.is_expired(state, now=401.0)
        assert not store.is_expired(state, now=400.0)


class TestLocks:
    @pytest.mark.asyncio
    async def test_same_owner_serialised(self, store: ConversationStore) -> None:
        order: list[str] = []
        release = asyncio.Event()

        async def first() -> None:
            async with store.lock(1):
                order.append("first in")
                await release.wait()
                order.append("first out")

        async def second() -> None:
            async with store.lock(1):
                order.append("second in")

        tasks = [asyncio.create_task(first()), asyncio.create_task(second())]
        await asyncio.sleep(0)
        assert order == ["first in"]
        release.set()
        await asyncio.gather(*tasks)
        assert order == ["first in", "first out", "second in"]

    @pytest.mark.asyncio
    async def test_other_owner_not_blocked(self, store: ConversationStore) -> None:
        async with store.lock(1):
            async with store.lock(2):
                assert len(store._locks) == 2

    @pytest.mark.asyncio
    async def test_idle_locks_released(self, store: ConversationStore) -> None:
        for owner in range(50):
            async with store.lock(owner):
                pass
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_lock_released_after_error(self, store: ConversationStore) -> None:
        with pytest.raises(RuntimeError):
            async with store.lock(1):
                raise RuntimeError("boom")
        assert store._locks == {}
