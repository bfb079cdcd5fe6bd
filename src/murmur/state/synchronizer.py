"""
Keyed state shared between agents.

A StateSynchronizer holds one JSON-like map per key. Updates to a key are
merged into its current map with the configured ConflictResolutionStrategy
and published to every watcher of that key, and to the watchers of keys
subscribed to it. Maps can be persisted into (and loaded from) an
ImmutableState, and reconciled with a remote copy under a timeout.

Usage:
    sync = StateSynchronizer(strategy=ConflictResolutionStrategy.MERGE)
    watcher = sync.watch_state("inventory")

    await sync.update_state("inventory", {"devices": {"SN1": "ok"}}, source_agent="scanner")

    async for update in watcher:
        print(update.key, update.state)
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from ..exceptions import InvalidConfigurationError, StateSynchronizationError
from ..exceptions import TimeoutError as RequestTimeoutError
from ..resilience import with_timeout
from .immutable_state import ImmutableState

logger = logging.getLogger(__name__)

DEFAULT_SYNC_TIMEOUT = 5.0

StateMap = dict[str, Any]
CustomMerge = Callable[
    [str, StateMap, StateMap, Optional[str]],
    Union[StateMap, Awaitable[StateMap]],
]


class ConflictResolutionStrategy(str, Enum):
    """How an incoming map is combined with the one already stored."""

    PREFER_NEWER = "prefer_newer"  # incoming top-level keys win
    PREFER_OLDER = "prefer_older"  # stored top-level keys win
    MERGE = "merge"  # nested maps merged recursively, incoming leaves win
    CUSTOM = "custom"


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> StateMap:
    """Recursively merge two maps; values from override win at the leaves."""
    result = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


@dataclass(frozen=True)
class StateUpdate:
    """One published change.

    Attributes:
        key: Key whose watchers receive the update
        state: Current map for that key
        source_key: Key that actually changed (differs from key for subscribers)
        source_agent: Agent that made the change, when known
    """

    key: str
    state: StateMap
    source_key: str
    source_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


class StateWatcher:
    """Async iterator over the updates published for one key."""

    def __init__(self, key: str, on_close: Callable[[StateWatcher], None]):
        self.key = key
        self._queue: asyncio.Queue[Optional[StateUpdate]] = asyncio.Queue()
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, update: StateUpdate) -> None:
        if not self._closed:
            self._queue.put_nowait(update)

    def close(self) -> None:
        """Stop the iteration once already queued updates are consumed."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
        self._on_close(self)

    async def next_update(self, timeout: Optional[float] = None) -> Optional[StateUpdate]:
        """Wait for the next update; None once the watcher is closed."""
        return await with_timeout(
            self._queue.get(), timeout, f"No update for state key '{self.key}'"
        )

    def __aiter__(self) -> StateWatcher:
        return self

    async def __anext__(self) -> StateUpdate:
        update = await self._queue.get()
        if update is None:
            raise StopAsyncIteration
        return update


class StateSynchronizer:
    """Per-key state store with conflict resolution and change notification."""

    def __init__(
        self,
        initial_state: Optional[ImmutableState] = None,
        strategy: ConflictResolutionStrategy = ConflictResolutionStrategy.PREFER_NEWER,
        sync_timeout: float = DEFAULT_SYNC_TIMEOUT,
        custom_merge: Optional[CustomMerge] = None,
    ):
        """Initialize the synchronizer.

        Args:
            initial_state: Snapshot that persist_state/load_state use as storage
            strategy: Conflict resolution for updates and synchronization
            sync_timeout: Seconds allowed for each remote call in synchronize
            custom_merge: Merge callable, required for the CUSTOM strategy

        Raises:
            InvalidConfigurationError: CUSTOM without custom_merge, or a
                non-positive sync_timeout
        """
        strategy = ConflictResolutionStrategy(strategy)
        if strategy is ConflictResolutionStrategy.CUSTOM and custom_merge is None:
            raise InvalidConfigurationError(
                "custom_merge is required for the custom conflict resolution strategy",
                missing_keys=["custom_merge"],
            )
        if sync_timeout <= 0:
            raise InvalidConfigurationError("sync_timeout must be positive")

        self.global_state = initial_state if initial_state is not None else ImmutableState()
        self.strategy = strategy
        self.sync_timeout = sync_timeout
        self._custom_merge = custom_merge

        self._states: dict[str, StateMap] = {}
        self._watchers: dict[str, list[StateWatcher]] = defaultdict(list)
        self._subscriptions: dict[str, set[str]] = defaultdict(set)
        self._subscribers: dict[str, set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    # ----------------------------------------
    # Watching and subscriptions
    # ----------------------------------------

    def watch_state(self, key: str) -> StateWatcher:
        """Start receiving updates for a key."""
        watcher = StateWatcher(key, self._remove_watcher)
        self._watchers[key].append(watcher)
        return watcher

    def _remove_watcher(self, watcher: StateWatcher) -> None:
        watchers = self._watchers.get(watcher.key)
        if watchers and watcher in watchers:
            watchers.remove(watcher)

    def subscribe(self, subscriber_key: str, target_key: str) -> None:
        """Notify watchers of subscriber_key whenever target_key changes."""
        self._subscriptions[subscriber_key].add(target_key)
        self._subscribers[target_key].add(subscriber_key)

    def unsubscribe(self, subscriber_key: str, target_key: Optional[str] = None) -> None:
        """Drop one subscription, or all of subscriber_key's when no target is given."""
        targets = [target_key] if target_key is not None else list(self._subscriptions.get(subscriber_key, ()))
        for target in targets:
            self._subscriptions[subscriber_key].discard(target)
            self._subscribers[target].discard(subscriber_key)
        if not self._subscriptions[subscriber_key]:
            del self._subscriptions[subscriber_key]

    def _publish(self, key: str, source_agent: Optional[str]) -> None:
        state = self.get_state(key)
        for watcher in list(self._watchers.get(key, ())):
            watcher.publish(StateUpdate(key, state, source_key=key, source_agent=source_agent))

        for subscriber in sorted(self._subscribers.get(key, ())):
            subscriber_state = self.get_state(subscriber)
            for watcher in list(self._watchers.get(subscriber, ())):
                watcher.publish(
                    StateUpdate(subscriber, subscriber_state, source_key=key, source_agent=source_agent)
                )

    # ----------------------------------------
    # Reads and updates
    # ----------------------------------------

    def get_state(self, key: str) -> StateMap:
        """Copy of the current map for a key (empty when unknown)."""
        return copy.deepcopy(self._states.get(key, {}))

    @property
    def state_keys(self) -> set[str]:
        return set(self._states)

    async def update_state(
        self,
        key: str,
        new_state: Mapping[str, Any],
        source_agent: Optional[str] = None,
    ) -> StateMap:
        """Merge new_state into the key's map and notify watchers.

        Returns:
            The stored map after conflict resolution
        """
        async with self._lock:
            current = self._states.get(key, {})
            merged = await self._resolve_conflicts(key, current, dict(new_state), source_agent)
            self._states[key] = merged
            logger.debug(f"State '{key}' updated by {source_agent or 'unknown source'}")
            self._publish(key, source_agent)
            return copy.deepcopy(merged)

    async def _resolve_conflicts(
        self,
        key: str,
        current: StateMap,
        incoming: StateMap,
        source_agent: Optional[str] = None,
    ) -> StateMap:
        if not current:
            return copy.deepcopy(incoming)
        if not incoming:
            return copy.deepcopy(current)

        if self.strategy is ConflictResolutionStrategy.PREFER_NEWER:
            return copy.deepcopy({**current, **incoming})
        if self.strategy is ConflictResolutionStrategy.PREFER_OLDER:
            return copy.deepcopy({**incoming, **current})
        if self.strategy is ConflictResolutionStrategy.MERGE:
            return deep_merge(current, incoming)

        merged = self._custom_merge(key, copy.deepcopy(current), copy.deepcopy(incoming), source_agent)
        if inspect.isawaitable(merged):
            merged = await merged
        return dict(merged)

    # ----------------------------------------
    # Persistence
    # ----------------------------------------

    def persist_state(self, key: str) -> ImmutableState:
        """Store the key's map as JSON in the global snapshot.

        Returns:
            The updated global snapshot (unchanged when the key is unknown)
        """
        if key in self._states:
            self.global_state = self.global_state.copy_with({key: json.dumps(self._states[key])})
        return self.global_state

    def load_state(self, key: str) -> bool:
        """Restore the key's map from the global snapshot.

        Returns:
            True when a stored map was found

        Raises:
            StateSynchronizationError: The stored value is not a JSON object
        """
        stored = self.global_state.get(key)
        if stored is None:
            return False
        try:
            loaded = json.loads(stored) if isinstance(stored, str) else stored
        except json.JSONDecodeError as e:
            raise StateSynchronizationError(
                f"Stored state for '{key}' is not valid JSON", key=key, cause=e
            ) from e
        if not isinstance(loaded, Mapping):
            raise StateSynchronizationError(f"Stored state for '{key}' is not an object", key=key)
        self._states[key] = dict(loaded)
        return True

    # ----------------------------------------
    # Remote synchronization
    # ----------------------------------------

    async def synchronize(
        self,
        key: str,
        remote_fetch: Callable[[], Awaitable[Mapping[str, Any]]],
        remote_update: Callable[[StateMap], Awaitable[Any]],
        force: bool = False,
    ) -> StateMap:
        """Reconcile the key's map with a remote copy.

        The remote map is merged into the local one with the configured
        strategy, written back through remote_update, and published to
        watchers. When both sides already match nothing is written unless
        force is set.

        Returns:
            The reconciled map

        Raises:
            StateSynchronizationError: A remote call failed or timed out
        """
        async with self._lock:
            local = self._states.get(key, {})
            try:
                remote = dict(
                    await with_timeout(remote_fetch(), self.sync_timeout, f"Fetching state '{key}'")
                )
                if not force and remote == local:
                    logger.debug(f"State '{key}' already in sync")
                    return copy.deepcopy(local)

                merged = await self._resolve_conflicts(key, local, remote)
                await with_timeout(
                    remote_update(copy.deepcopy(merged)),
                    self.sync_timeout,
                    f"Updating state '{key}'",
                )
            except RequestTimeoutError as e:
                logger.warning(f"State synchronization timed out for '{key}'")
                raise StateSynchronizationError(
                    f"State synchronization timed out for key: {key}", key=key, cause=e
                ) from e
            except Exception as e:
                logger.error(f"State synchronization failed for '{key}': {e}")
                raise StateSynchronizationError(
                    f"Failed to synchronize state '{key}': {e}", key=key, cause=e
                ) from e

            self._states[key] = merged
            logger.info(f"State '{key}' synchronized")
            self._publish(key, None)
            return copy.deepcopy(merged)

    def clear(self) -> None:
        """Drop every map and subscription and close all watchers."""
        for watchers in list(self._watchers.values()):
            for watcher in list(watchers):
                watcher.close()
        self._states.clear()
        self._watchers.clear()
        self._subscriptions.clear()
        self._subscribers.clear()


__all__ = [
    "ConflictResolutionStrategy",
    "DEFAULT_SYNC_TIMEOUT",
    "StateSynchronizer",
    "StateUpdate",
    "StateWatcher",
    "deep_merge",
]
