"""Conversation state and the Redis-backed subscription sets."""

from .conversation_store import ConversationState, ConversationStore
from .redis_store import RedisManager, SubscriptionStore

__all__ = [
    "ConversationState",
    "ConversationStore",
    "RedisManager",
    "SubscriptionStore",
]
