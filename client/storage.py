"""Credential Store: durable, namespaced, async key-value storage for client state.

Holds the device registration, the current device token, the install id and
one cache entry per canonical key. Values must be JSON-serializable.
"""

import abc
import asyncio
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Optional

from client.config import ClientConfig

logger = logging.getLogger(__name__)


class CredentialStore(abc.ABC):
    """Async interface independent of any platform storage API."""

    def __init__(self, namespace: str):
        self.namespace = namespace

    def _scoped(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Value for `key`, or None when absent."""

    @abc.abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...

    @abc.abstractmethod
    async def remove(self, key: str) -> None:
        """Delete `key`; absent keys are not an error."""


class MemoryCredentialStore(CredentialStore):
    """In-process store for tests and ephemeral clients.

    Values are copied through JSON on the way in and out so callers can't
    mutate stored state by reference, same as with a persistent backend.
    """

    def __init__(self, namespace: str = "timetable"):
        super().__init__(namespace)
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(self._scoped(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[self._scoped(key)] = json.dumps(value)

    async def remove(self, key: str) -> None:
        self._data.pop(self._scoped(key), None)


class FileCredentialStore(CredentialStore):
    """One JSON document on disk; survives process restarts.

    Writes go to a temp file in the same directory and are moved into place,
    so a crash mid-write leaves the previous document intact.
    """

    def __init__(self, path: Path, namespace: str = "timetable"):
        super().__init__(namespace)
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        text = self.path.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            aside = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
            os.replace(self.path, aside)
            logger.error("Credential store %s is corrupt; moved to %s, starting empty", self.path, aside)
            return {}

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            os.unlink(tmp)
            raise

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
        return data.get(self._scoped(key))

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data[self._scoped(key)] = value
            await asyncio.to_thread(self._write, data)

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            if data.pop(self._scoped(key), None) is not None:
                await asyncio.to_thread(self._write, data)


def store_from_config(config: ClientConfig) -> CredentialStore:
    """File-backed when `storage_path` is configured, in-memory otherwise."""
    if config.storage_path:
        return FileCredentialStore(config.storage_path, namespace=config.storage_namespace)
    return MemoryCredentialStore(namespace=config.storage_namespace)
