"""Durable key/value storage: one JSON document per key under a state directory."""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from chat_relay.errors import PersistenceError

logger = logging.getLogger(__name__)


class JsonFileStore:
    """Each key is an independently addressable ``<key>.json`` file.

    Writes go through a temp file and an atomic rename. One asyncio lock
    serializes all readers and writers of the store.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        if not key or "/" in key or key.startswith("."):
            raise PersistenceError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    def _read(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read {path}: {e}")

    def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(value, f, indent=2)
                    f.write("\n")
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {path}: {e}")

    def _remove(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to remove {path}: {e}")

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._lock:
            value = await asyncio.to_thread(self._read, key)
        return default if value is None else value

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, key, value)
        logger.debug(f"Stored {key}")

    async def remove(self, key: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._remove, key)
