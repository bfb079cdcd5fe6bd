"""Copy-on-write state snapshots and keyed state shared between agents."""

from .immutable_state import DEFAULT_MAX_HISTORY_SIZE, ImmutableState
from .synchronizer import (
    ConflictResolutionStrategy,
    StateSynchronizer,
    StateUpdate,
    StateWatcher,
    deep_merge,
)

__all__ = [
    "ConflictResolutionStrategy",
    "DEFAULT_MAX_HISTORY_SIZE",
    "ImmutableState",
    "StateSynchronizer",
    "StateUpdate",
    "StateWatcher",
    "deep_merge",
]
