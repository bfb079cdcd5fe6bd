"""
Versioned, copy-on-write key/value state.

Agents and chains hold one current ImmutableState and replace it on every
update. Mutating methods never touch the receiver: they return a new
snapshot whose change history gains one audit line, or the receiver itself
when the requested change is empty.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping, Optional, TypeVar

from ..exceptions import InvalidConfigurationError, TypeMismatchError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_HISTORY_SIZE = 100

_MISSING = object()


class ImmutableState:
    """Snapshot of agent/workflow data with a bounded audit trail.

    Attributes:
        data: Read-only view of the state map
        metadata: Read-only view of the metadata map
        change_history: Audit lines, oldest first, at most max_history_size
        version: Number of updates that led to this snapshot
    """

    __slots__ = ("_data", "_metadata", "_change_history", "_max_history_size", "_version")

    def __init__(
        self,
        data: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        change_history: Optional[list[str]] = None,
        max_history_size: int = DEFAULT_MAX_HISTORY_SIZE,
        version: int = 0,
    ):
        if max_history_size < 1:
            raise InvalidConfigurationError("max_history_size must be positive")
        self._data = MappingProxyType(dict(data or {}))
        self._metadata = MappingProxyType(dict(metadata or {}))
        history = list(change_history or [])
        self._change_history = tuple(history[-max_history_size:])
        self._max_history_size = max_history_size
        self._version = version

    # ----------------------------------------
    # Read access
    # ----------------------------------------

    @property
    def data(self) -> Mapping[str, Any]:
        return self._data

    @property
    def metadata(self) -> Mapping[str, Any]:
        return self._metadata

    @property
    def change_history(self) -> tuple[str, ...]:
        return self._change_history

    @property
    def max_history_size(self) -> int:
        return self._max_history_size

    @property
    def version(self) -> int:
        return self._version

    def get(self, key: str, expected_type: Optional[type[T]] = None, default: Any = None) -> Any:
        """Return the value stored under key.

        Args:
            key: State key
            expected_type: When given, the stored value must be an instance
                of it (bool is not accepted as int)
            default: Returned when the key is absent

        Raises:
            TypeMismatchError: If the stored value has a different type
        """
        value = self._data.get(key, _MISSING)
        if value is _MISSING:
            return default
        if expected_type is not None:
            mismatched = not isinstance(value, expected_type) or (
                isinstance(value, bool) and expected_type in (int, float)
            )
            if mismatched:
                raise TypeMismatchError(key, expected_type, type(value))
        return value

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def is_empty(self) -> bool:
        return not self._data

    # ----------------------------------------
    # Updates (each returns a snapshot)
    # ----------------------------------------

    def copy_with(
        self,
        new_data: Optional[Mapping[str, Any]] = None,
        new_metadata: Optional[Mapping[str, Any]] = None,
    ) -> ImmutableState:
        """Shallow-merge new entries over the current ones.

        Raises:
            ValidationError: If new_data contains None values
        """
        new_data = dict(new_data or {})
        new_metadata = dict(new_metadata or {})

        null_keys = [k for k, v in new_data.items() if v is None]
        if null_keys:
            raise ValidationError(
                f"Null values are not allowed in state: {', '.join(null_keys)}",
                errors=[f"Null value for key: {k}" for k in null_keys],
            )

        if not new_data and not new_metadata:
            return self

        parts = []
        if new_data:
            parts.append(f"Updated data: {', '.join(new_data)}")
        if new_metadata:
            parts.append(f"Updated metadata: {', '.join(new_metadata)}")

        return self._next(
            data={**self._data, **new_data},
            metadata={**self._metadata, **new_metadata},
            entry="; ".join(parts),
        )

    def merge(self, other: ImmutableState) -> ImmutableState:
        """Merge another snapshot's data and metadata into this one."""
        return self.copy_with(
            copy.deepcopy(dict(other.data)),
            copy.deepcopy(dict(other.metadata)),
        )

    def remove(self, key: str) -> ImmutableState:
        if key not in self._data:
            return self
        data = dict(self._data)
        del data[key]
        return self._next(data=data, metadata=self._metadata, entry=f"Removed key: {key}")

    def clear(self) -> ImmutableState:
        if not self._data:
            return self
        return self._next(data={}, metadata=self._metadata, entry="Cleared all data")

    def copy(self) -> ImmutableState:
        """Deep copy of the data map, used for handoff between agents."""
        return ImmutableState(
            data=copy.deepcopy(dict(self._data)),
            metadata=copy.deepcopy(dict(self._metadata)),
            change_history=list(self._change_history),
            max_history_size=self._max_history_size,
            version=self._version,
        )

    def _next(
        self,
        data: Mapping[str, Any],
        metadata: Mapping[str, Any],
        entry: str,
    ) -> ImmutableState:
        line = f"[{datetime.utcnow().isoformat()}] {entry}"
        logger.debug(f"State v{self._version + 1}: {entry}")
        return ImmutableState(
            data=data,
            metadata=metadata,
            change_history=[*self._change_history, line],
            max_history_size=self._max_history_size,
            version=self._version + 1,
        )

    # ----------------------------------------
    # Serialization
    # ----------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": dict(self._data),
            "metadata": dict(self._metadata),
            "change_history": list(self._change_history),
            "version": self._version,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ImmutableState:
        return cls(
            data=payload.get("data"),
            metadata=payload.get("metadata"),
            change_history=payload.get("change_history"),
            version=payload.get("version", 0),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ImmutableState):
            return NotImplemented
        return self._data == other._data and self._metadata == other._metadata

    def __repr__(self) -> str:
        return (
            f"ImmutableState(version={self._version}, keys={list(self._data)}, "
            f"history={len(self._change_history)})"
        )
