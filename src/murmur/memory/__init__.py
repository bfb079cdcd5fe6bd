"""Message history and its persistence backends."""

from .history import HistoryRegistry, MessageHistory, estimate_tokens
from .storage import FileKeyValueStore, InMemoryKeyValueStore

__all__ = [
    "FileKeyValueStore",
    "HistoryRegistry",
    "InMemoryKeyValueStore",
    "MessageHistory",
    "estimate_tokens",
]
