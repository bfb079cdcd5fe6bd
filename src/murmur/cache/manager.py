"""
Response cache.

Two tiers:
    - Memory: bounded by item count, least-accessed entries evicted first
    - Disk (optional): one JSON file per key, named by the MD5 of the key,
      bounded by total bytes, oldest-modified files deleted first

Entries expire on wall-clock time. An entry whose expiry is not in the
future is a miss, so a TTL of zero expires immediately.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import aiofiles
import aiofiles.os

from ..exceptions import CacheError

logger = logging.getLogger(__name__)

DEFAULT_MAX_IN_MEMORY_ITEMS = 100
DEFAULT_MAX_CACHE_SIZE = 100 * 1024 * 1024  # 100 MB
DEFAULT_TTL_SECONDS = 7 * 24 * 3600.0


@dataclass
class CacheEntry:
    """A cached value with its expiry and grouping metadata."""

    key: str
    value: Any
    created_at: datetime
    expires_at: datetime
    tags: tuple[str, ...] = ()
    priority: int = 0
    access_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_json(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "tags": list(self.tags),
            "priority": self.priority,
            "runtimeType": type(self.value).__name__,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            key=data["key"],
            value=data["value"],
            created_at=datetime.fromisoformat(data["createdAt"]),
            expires_at=datetime.fromisoformat(data["expiresAt"]),
            tags=tuple(data.get("tags") or ()),
            priority=int(data.get("priority") or 0),
        )


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of cache occupancy.

    Attributes:
        memory_items: Entries held in memory
        disk_items: Entry files on disk
        total_size: Bytes used on disk
    """

    memory_items: int
    disk_items: int
    total_size: int


class CacheManager:
    """Two-tier TTL cache.

    Usage:
        cache = CacheManager(directory=".murmur_cache")
        await cache.set("prompt:abc", response.to_dict(), ttl=3600, tags=["chat"])
        cached = await cache.get("prompt:abc")
        await cache.invalidate_tag("chat")
    """

    def __init__(
        self,
        directory: Optional[str | Path] = None,
        max_in_memory_items: int = DEFAULT_MAX_IN_MEMORY_ITEMS,
        max_cache_size: int = DEFAULT_MAX_CACHE_SIZE,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """Initialize the cache.

        Args:
            directory: Disk tier location; None keeps the cache in memory only
            max_in_memory_items: Memory tier item cap
            max_cache_size: Disk tier byte cap
            default_ttl: TTL in seconds when set() is given none
            clock: Source of the current time
        """
        if max_in_memory_items < 1:
            raise CacheError("max_in_memory_items must be positive")
        self.directory = Path(directory) if directory is not None else None
        self.max_in_memory_items = max_in_memory_items
        self.max_cache_size = max_cache_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._memory: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def persist_to_disk(self) -> bool:
        return self.directory is not None

    async def initialize(self) -> None:
        """Create the disk tier directory.

        Raises:
            CacheError: If the directory cannot be created
        """
        if self._initialized:
            return
        if self.directory is not None:
            try:
                await aiofiles.os.makedirs(self.directory, exist_ok=True)
            except OSError as e:
                raise CacheError(f"Failed to initialize cache: {e}", cause=e) from e
            logger.debug(f"Cache directory ready: {self.directory}")
        self._initialized = True

    # ----------------------------------------
    # Public operations
    # ----------------------------------------

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        priority: int = 0,
    ) -> None:
        """Store a value.

        Args:
            key: Cache key
            value: JSON-serializable value when the disk tier is enabled
            ttl: Seconds until expiry (default_ttl when None)
            tags: Group labels for invalidate_tag
            priority: Stored with the entry
        """
        await self.initialize()
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + timedelta(seconds=self.default_ttl if ttl is None else ttl),
            tags=tuple(tags or ()),
            priority=priority,
        )

        async with self._lock:
            previous = self._memory.get(key)
            entry.access_count = (previous.access_count if previous else 0) + 1
            self._memory[key] = entry
            if self.persist_to_disk:
                await self._write_entry(entry)
            await self._evict_if_needed()

    async def get(self, key: str) -> Any:
        """Return the cached value, or None on a miss or expiry."""
        await self.initialize()
        async with self._lock:
            now = self._clock()
            entry = self._memory.get(key)
            if entry is None and self.persist_to_disk:
                entry = await self._read_entry(self._path_for(key))
                if entry is not None and not entry.is_expired(now):
                    entry.access_count = 1
                    self._memory[key] = entry
                    await self._evict_if_needed()
                    return entry.value

            if entry is None:
                return None
            if entry.is_expired(now):
                await self._remove_unlocked(key)
                logger.debug(f"Cache entry expired: {key}")
                return None

            entry.access_count += 1
            return entry.value

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def remove(self, key: str) -> bool:
        """Remove a key from both tiers. Returns True if it was present."""
        await self.initialize()
        async with self._lock:
            return await self._remove_unlocked(key)

    async def clear(self) -> None:
        """Drop every entry from both tiers."""
        await self.initialize()
        async with self._lock:
            self._memory.clear()
            if self.persist_to_disk:
                try:
                    for path in await self._entry_files():
                        await aiofiles.os.remove(path)
                except OSError as e:
                    raise CacheError(f"Failed to clear cache: {e}", cause=e) from e
        logger.info("Cache cleared")

    async def get_keys(self) -> list[str]:
        """Keys of all live (unexpired) entries in either tier."""
        await self.initialize()
        async with self._lock:
            entries = await self._all_entries()
            now = self._clock()
            return sorted(key for key, entry in entries.items() if not entry.is_expired(now))

    async def cleanup(self) -> int:
        """Purge expired entries. Returns how many keys were removed."""
        await self.initialize()
        async with self._lock:
            entries = await self._all_entries()
            now = self._clock()
            expired = [key for key, entry in entries.items() if entry.is_expired(now)]
            for key in expired:
                await self._remove_unlocked(key)
        if expired:
            logger.info(f"Cache cleanup removed {len(expired)} expired entries")
        return len(expired)

    async def invalidate_tag(self, tag: str) -> int:
        """Remove every entry carrying tag. Returns how many were removed."""
        await self.initialize()
        async with self._lock:
            entries = await self._all_entries()
            tagged = [key for key, entry in entries.items() if tag in entry.tags]
            for key in tagged:
                await self._remove_unlocked(key)
        logger.debug(f"Invalidated {len(tagged)} cache entries tagged {tag!r}")
        return len(tagged)

    async def get_stats(self) -> CacheStats:
        await self.initialize()
        async with self._lock:
            disk_items = 0
            total_size = 0
            if self.persist_to_disk:
                for path in await self._entry_files():
                    stat = await aiofiles.os.stat(path)
                    disk_items += 1
                    total_size += stat.st_size
            return CacheStats(
                memory_items=len(self._memory),
                disk_items=disk_items,
                total_size=total_size,
            )

    # ----------------------------------------
    # Internals (callers hold the lock)
    # ----------------------------------------

    def _path_for(self, key: str) -> Path:
        digest = hashlib.md5(key.encode("utf-8")).hexdigest()
        return self.directory / f"{digest}.json"

    async def _entry_files(self) -> list[Path]:
        names = await aiofiles.os.listdir(self.directory)
        return [self.directory / name for name in names if name.endswith(".json")]

    async def _write_entry(self, entry: CacheEntry) -> None:
        try:
            payload = json.dumps(entry.to_json())
        except (TypeError, ValueError) as e:
            raise CacheError(
                f"Cache value for {entry.key!r} is not JSON serializable: {e}", cause=e
            ) from e
        try:
            async with aiofiles.open(self._path_for(entry.key), "w", encoding="utf-8") as f:
                await f.write(payload)
        except OSError as e:
            raise CacheError(f"Failed to persist cache entry: {e}", cause=e) from e

    async def _read_entry(self, path: Path) -> Optional[CacheEntry]:
        """Load an entry file; corrupt files are deleted and read as a miss."""
        if not await aiofiles.os.path.exists(path):
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return CacheEntry.from_json(json.loads(await f.read()))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Removing corrupt cache file {path.name}: {e}")
            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                pass
            return None

    async def _all_entries(self) -> dict[str, CacheEntry]:
        entries: dict[str, CacheEntry] = {}
        if self.persist_to_disk:
            for path in await self._entry_files():
                entry = await self._read_entry(path)
                if entry is not None:
                    entries[entry.key] = entry
        entries.update(self._memory)
        return entries

    async def _remove_unlocked(self, key: str) -> bool:
        existed = self._memory.pop(key, None) is not None
        if self.persist_to_disk:
            try:
                await aiofiles.os.remove(self._path_for(key))
                existed = True
            except FileNotFoundError:
                pass
        return existed

    async def _evict_if_needed(self) -> None:
        overflow = len(self._memory) - self.max_in_memory_items
        if overflow > 0:
            by_access = sorted(self._memory.values(), key=lambda e: e.access_count)
            for entry in by_access[:overflow]:
                del self._memory[entry.key]
            logger.debug(f"Evicted {overflow} entries from memory cache")

        if not self.persist_to_disk:
            return

        files = []
        total_size = 0
        for path in await self._entry_files():
            stat = await aiofiles.os.stat(path)
            files.append((stat.st_mtime, stat.st_size, path))
            total_size += stat.st_size

        if total_size <= self.max_cache_size:
            return

        files.sort(key=lambda item: item[0])
        removed = 0
        for _, size, path in files:
            if total_size <= self.max_cache_size:
                break
            await aiofiles.os.remove(path)
            total_size -= size
            removed += 1
        logger.info(f"Evicted {removed} cache files to stay under {self.max_cache_size} bytes")


__all__ = [
    "CacheEntry",
    "CacheManager",
    "CacheStats",
]
