"""Key-value stores backing the durable patient update log."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Protocol

from shared.http.errors import EventLogStorageError


class KeyValueStore(Protocol):
    """Minimal async string store shared by every app instance on a device."""

    async def get_item(self, key: str) -> str | None:
        """Return the value stored under ``key`` or ``None``."""

    async def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""


class InMemoryKeyValueStore:
    """Process-local store, mainly for tests and single-instance setups."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._items: dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value


class JsonFileKeyValueStore:
    """Store every key in one JSON document on disk.

    Writes go to a temporary file that replaces the document in one step, so
    readers never see a half-written file. Concurrent writers are not
    coordinated: the last one to replace the file wins.
    """

    def __init__(self, path: str | Path, *, encoding: str = "utf-8") -> None:
        self._path = Path(path)
        self._encoding = encoding

    @property
    def path(self) -> Path:
        return self._path

    def _read_document(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            raw = self._path.read_text(encoding=self._encoding)
        except OSError as exc:
            raise EventLogStorageError(f"Unable to read {self._path}") from exc
        if not raw.strip():
            return {}
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise EventLogStorageError(f"Corrupt store document {self._path}") from exc
        if not isinstance(document, dict):
            raise EventLogStorageError(f"Unexpected store document in {self._path}")
        return {str(key): str(value) for key, value in document.items()}

    def _write_document(self, document: dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding=self._encoding) as handle:
                json.dump(document, handle, ensure_ascii=False)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            raise EventLogStorageError(f"Unable to write {self._path}") from exc

    def _get(self, key: str) -> str | None:
        return self._read_document().get(key)

    def _set(self, key: str, value: str) -> None:
        document = self._read_document()
        document[key] = value
        self._write_document(document)

    async def get_item(self, key: str) -> str | None:
        return await asyncio.to_thread(self._get, key)

    async def set_item(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set, key, value)


__all__ = ["InMemoryKeyValueStore", "JsonFileKeyValueStore", "KeyValueStore"]
