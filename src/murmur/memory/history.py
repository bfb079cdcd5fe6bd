"""
Thread-scoped message histories.

A MessageHistory is the ordered message log of one conversation (thread).
It is bounded by message count and by an estimated token budget, persisted
through an IKeyValueStore as one JSON array per thread, and serializes its
mutating calls through a per-history lock so appends land in call order.

HistoryRegistry maps thread ids to history instances. It is an explicit
object handed to the components that need it; its background sweep evicts
histories that have been idle longer than the configured window.

Example:
    registry = HistoryRegistry(store=FileKeyValueStore("./.murmur/history"))
    await registry.start()

    history = await registry.open("support-42")
    await history.add_message(Message.user("Hello"))

    await registry.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from datetime import datetime
from typing import Optional

from ..domain.entities import Message
from ..domain.ports import IKeyValueStore
from ..exceptions import InvalidConfigurationError, ResourceExhaustedError, StateError

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 50
DEFAULT_MAX_TOKENS = 4000
DEFAULT_MAX_STORAGE_BYTES = 5 * 1024 * 1024
DEFAULT_IDLE_TIMEOUT = 3600.0
DEFAULT_SWEEP_INTERVAL = 300.0

STORAGE_KEY_PREFIX = "chat_history_"

# Rough characters-per-token ratio used for budget estimates
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Approximate token count of a text (about 4 characters per token)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class MessageHistory:
    """Bounded, persisted message log for one thread.

    Attributes:
        thread_id: Conversation identifier
        max_messages: Oldest messages are dropped beyond this count
        max_tokens: Oldest messages are dropped while the estimated token
            count exceeds this budget (the newest message is always kept)
        max_storage_bytes: Serialized size ceiling for save()
    """

    def __init__(
        self,
        thread_id: str,
        store: Optional[IKeyValueStore] = None,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        max_storage_bytes: int = DEFAULT_MAX_STORAGE_BYTES,
        registry: Optional[HistoryRegistry] = None,
    ):
        if not thread_id:
            raise InvalidConfigurationError("thread_id is required", missing_keys=["thread_id"])
        if max_messages < 1:
            raise InvalidConfigurationError("max_messages must be positive")

        self.thread_id = thread_id
        self.store = store
        self.max_messages = max_messages
        self.max_tokens = max_tokens
        self.max_storage_bytes = max_storage_bytes
        self._registry = registry

        self._messages: list[Message] = []
        self._lock = asyncio.Lock()
        self._loaded = False
        self._last_access = time.monotonic()
        self.last_accessed_at = datetime.utcnow()

    @property
    def storage_key(self) -> str:
        return f"{STORAGE_KEY_PREFIX}{self.thread_id}"

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self._last_access

    def __len__(self) -> int:
        return len(self._messages)

    def get_messages(self, limit: Optional[int] = None) -> list[Message]:
        """Return the newest `limit` messages (all when limit is None)."""
        self._touch()
        if limit is None:
            return list(self._messages)
        if limit <= 0:
            return []
        return list(self._messages[-limit:])

    def token_count(self) -> int:
        return sum(estimate_tokens(m.content) for m in self._messages)

    # ----------------------------------------
    # Mutations
    # ----------------------------------------

    async def add_message(self, message: Message) -> None:
        """Append a message, trim to bounds and persist.

        If persisting fails the in-memory log is restored to its previous
        contents before the error propagates.

        Raises:
            ResourceExhaustedError: If the serialized history is over budget
        """
        async with self._lock:
            if not self._loaded:
                await self._load_unlocked()

            previous = list(self._messages)
            self._messages.append(message)
            self._trim()
            self._touch()

            try:
                await self._save_unlocked()
            except Exception:
                self._messages = previous
                raise

    async def load(self, force: bool = False) -> None:
        """Hydrate from the store, replacing in-memory messages.

        Subsequent calls are no-ops unless force is set.

        Raises:
            StateError: If the persisted record cannot be decoded
        """
        async with self._lock:
            if self._loaded and not force:
                return
            await self._load_unlocked()

    async def save(self) -> None:
        """Persist the full message log.

        Raises:
            ResourceExhaustedError: If the serialized history is over budget
        """
        async with self._lock:
            await self._save_unlocked()

    async def clear(self) -> None:
        """Empty the log, delete the persisted record and leave the registry."""
        async with self._lock:
            self._messages = []
            self._loaded = True
            if self.store is not None:
                await self.store.remove(self.storage_key)
        if self._registry is not None:
            self._registry.evict(self.thread_id)
        logger.info(f"Cleared history for thread {self.thread_id}")

    # ----------------------------------------
    # Internals (caller holds the lock)
    # ----------------------------------------

    async def _load_unlocked(self) -> None:
        self._loaded = True
        self._touch()
        if self.store is None:
            return

        raw = await self.store.get_string(self.storage_key)
        if raw is None:
            self._messages = []
            return

        try:
            decoded = json.loads(raw)
            messages = [Message.from_json(item) for item in decoded]
        except (ValueError, KeyError, TypeError) as e:
            self._loaded = False
            raise StateError(
                f"Corrupted history for thread {self.thread_id}",
                details={"thread_id": self.thread_id},
                cause=e,
            ) from e

        self._messages = messages
        self._trim()
        logger.debug(f"Loaded {len(self._messages)} messages for thread {self.thread_id}")

    async def _save_unlocked(self) -> None:
        if self.store is None:
            return

        payload = json.dumps([m.to_json() for m in self._messages])
        size = len(payload.encode("utf-8"))
        if size > self.max_storage_bytes:
            raise ResourceExhaustedError(
                f"History for thread {self.thread_id} is {size} bytes, "
                f"over the {self.max_storage_bytes} byte limit",
                limit=self.max_storage_bytes,
                actual=size,
                recovery_steps=[
                    "Clear the history or lower max_messages",
                    "Send shorter messages",
                ],
            )
        await self.store.set_string(self.storage_key, payload)

    def _trim(self) -> None:
        overflow = len(self._messages) - self.max_messages
        if overflow > 0:
            del self._messages[:overflow]

        tokens = self.token_count()
        while len(self._messages) > 1 and tokens > self.max_tokens:
            dropped = self._messages.pop(0)
            tokens -= estimate_tokens(dropped.content)

    def _touch(self) -> None:
        self._last_access = time.monotonic()
        self.last_accessed_at = datetime.utcnow()

    def __repr__(self) -> str:
        return f"MessageHistory(thread_id={self.thread_id!r}, messages={len(self._messages)})"


class HistoryRegistry:
    """Maps thread ids to their MessageHistory instances.

    Repeated lookups with the same thread id return the same object until
    it is evicted, either explicitly, by `clear()`, or by the idle sweep.
    """

    def __init__(
        self,
        store: Optional[IKeyValueStore] = None,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        max_storage_bytes: int = DEFAULT_MAX_STORAGE_BYTES,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        self.store = store
        self.max_messages = max_messages
        self.max_tokens = max_tokens
        self.max_storage_bytes = max_storage_bytes
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval

        self._histories: dict[str, MessageHistory] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def get_or_create(self, thread_id: str) -> MessageHistory:
        """Return the cached history for thread_id, creating it if needed."""
        history = self._histories.get(thread_id)
        if history is None:
            history = MessageHistory(
                thread_id,
                store=self.store,
                max_messages=self.max_messages,
                max_tokens=self.max_tokens,
                max_storage_bytes=self.max_storage_bytes,
                registry=self,
            )
            self._histories[thread_id] = history
            logger.debug(f"Created history for thread {thread_id}")
        return history

    async def open(self, thread_id: str) -> MessageHistory:
        """get_or_create followed by load()."""
        history = self.get_or_create(thread_id)
        await history.load()
        return history

    def evict(self, thread_id: str) -> bool:
        return self._histories.pop(thread_id, None) is not None

    def cleanup_idle(self) -> int:
        """Evict histories idle for longer than idle_timeout."""
        stale = [
            thread_id
            for thread_id, history in self._histories.items()
            if history.idle_seconds > self.idle_timeout
        ]
        for thread_id in stale:
            del self._histories[thread_id]
        if stale:
            logger.info(f"Evicted {len(stale)} idle histories")
        return len(stale)

    def __contains__(self, thread_id: str) -> bool:
        return thread_id in self._histories

    def __len__(self) -> int:
        return len(self._histories)

    # ----------------------------------------
    # Lifecycle
    # ----------------------------------------

    async def start(self) -> None:
        """Start the background idle sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def close(self) -> None:
        """Stop the sweep and drop every cached history."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self._histories.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.cleanup_idle()

    async def __aenter__(self) -> HistoryRegistry:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
