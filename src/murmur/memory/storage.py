"""
Key-value store adapters for message history persistence.

Two adapters implement IKeyValueStore:
    - InMemoryKeyValueStore: process-local dict, for tests and ephemeral runs
    - FileKeyValueStore: one UTF-8 file per key under a directory
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from ..domain.ports import IKeyValueStore

logger = logging.getLogger(__name__)


class InMemoryKeyValueStore(IKeyValueStore):
    """Dict-backed store."""

    def __init__(self):
        self._values: dict[str, str] = {}

    async def get_string(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def set_string(self, key: str, value: str) -> None:
        self._values[key] = value

    async def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)


class FileKeyValueStore(IKeyValueStore):
    """Stores each key as a file named by the SHA-256 of the key.

    Writes go to a temporary file that is then renamed over the target,
    so a reader never observes a half-written value.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def _ensure_directory(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if not self._initialized:
                await aiofiles.os.makedirs(self.directory, exist_ok=True)
                self._initialized = True
                logger.debug(f"Key-value store directory ready: {self.directory}")

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.directory / f"{digest}.json"

    async def get_string(self, key: str) -> Optional[str]:
        await self._ensure_directory()
        path = self._path_for(key)
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return await f.read()

    async def set_string(self, key: str, value: str) -> None:
        await self._ensure_directory()
        path = self._path_for(key)
        tmp_path = path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(value)
        await aiofiles.os.replace(tmp_path, path)

    async def remove(self, key: str) -> None:
        await self._ensure_directory()
        path = self._path_for(key)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
