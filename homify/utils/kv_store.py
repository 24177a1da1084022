"""Key-value persistence for local state (the saved-photos collection, failed jobs).

Values are JSON-serializable objects. The file backend keeps one JSON file
per key under a directory, named by a hash of the key so arbitrary key
strings (``@homify_saved_photos``) are safe on disk. Writes go to a temp file
and are moved into place, so a crash never leaves a half-written collection.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

import structlog

from homify.errors import StorageError

logger = structlog.get_logger()


class KeyValueStore(Protocol):
    async def get_item(self, key: str) -> Any | None: ...

    async def set_item(self, key: str, value: Any) -> None: ...

    async def remove_item(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local store. Used when no cache directory is configured, and in tests."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get_item(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set_item(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    async def remove_item(self, key: str) -> None:
        self._data.pop(key, None)


class FileKeyValueStore:
    """One JSON file per key. Writes and removes run one at a time, in call order."""

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._write_lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode()).hexdigest()[:20]
        return self._dir / f"{digest}.json"

    def _read(self, key: str) -> Any | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt value for key {key!r}: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"Cannot read key {key!r}: {exc}") from exc

    def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._dir, suffix=".tmp")
        except OSError as exc:
            raise StorageError(f"Cannot write key {key!r}: {exc}") from exc
        try:
            with os.fdopen(fd, "w") as fh:
                json.dump(value, fh)
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"Cannot write key {key!r}: {exc}") from exc

    def _remove(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot remove key {key!r}: {exc}") from exc

    async def get_item(self, key: str) -> Any | None:
        return await asyncio.to_thread(self._read, key)

    async def set_item(self, key: str, value: Any) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._write, key, value)
        logger.debug("kv_store_write", key=key, path=str(self._path(key)))

    async def remove_item(self, key: str) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._remove, key)


def build_store(directory: str) -> KeyValueStore:
    """File-backed store under ``directory``; in-memory when ``directory`` is empty."""
    if not directory:
        logger.warning("kv_store_in_memory", hint="Set PHOTO_CACHE_DIR to persist photos")
        return MemoryKeyValueStore()
    return FileKeyValueStore(directory)
