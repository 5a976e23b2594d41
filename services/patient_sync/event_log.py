"""Durable, capacity-bounded log of patient update events.

The log is the only channel through which sibling app instances learn about
patient changes. It is a read-modify-write over a single key of a shared
key-value store with no locking, so concurrent appends may lose updates
(last writer wins). Every storage failure is logged and swallowed: the log is
a best-effort notification channel, never a system of record.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Protocol

from pydantic import ValidationError

from services.patient_sync.storage import KeyValueStore
from shared.http.errors import EventLogStorageError
from shared.models.patient import PatientUpdateLogEntry, ensure_utc, utcnow
from shared.observability.logger import get_logger

logger = get_logger(__name__)

DEFAULT_STORAGE_KEY = "patient_sync_events"
DEFAULT_CAPACITY = 50
DEFAULT_INITIAL_SLICE = 10
DEFAULT_MAX_AGE = timedelta(hours=24)

_MIN_STEP = timedelta(microseconds=1)


class NotificationChannel(Protocol):
    """Cross-instance patient update channel consumed by the poll loop."""

    async def append(
        self, patient_id: str, updated_data: Mapping[str, Any]
    ) -> PatientUpdateLogEntry | None: ...

    async def read_all(self) -> list[PatientUpdateLogEntry]: ...

    async def read_since(
        self, since: datetime | None
    ) -> list[PatientUpdateLogEntry]: ...

    async def purge_older_than(self, max_age: timedelta) -> int: ...

    async def latest_for_patient(self, patient_id: str) -> datetime | None: ...


def _newest_first(entries: list[PatientUpdateLogEntry]) -> list[PatientUpdateLogEntry]:
    return sorted(entries, key=lambda entry: entry.timestamp, reverse=True)


class DurableEventLog:
    """Patient update log persisted under one key of a :class:`KeyValueStore`."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        storage_key: str = DEFAULT_STORAGE_KEY,
        capacity: int = DEFAULT_CAPACITY,
        initial_slice: int = DEFAULT_INITIAL_SLICE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._store = store
        self._storage_key = storage_key
        self._capacity = capacity
        self._initial_slice = initial_slice
        self._clock = clock

    @property
    def capacity(self) -> int:
        return self._capacity

    async def _load(self) -> list[PatientUpdateLogEntry]:
        try:
            raw = await self._store.get_item(self._storage_key)
        except EventLogStorageError:
            raise
        except Exception as exc:
            raise EventLogStorageError(
                f"Patient update log could not be read: {exc}"
            ) from exc
        if not raw:
            return []
        try:
            items = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise EventLogStorageError("Patient update log is not valid JSON") from exc
        if not isinstance(items, list):
            raise EventLogStorageError("Patient update log is not a list")

        entries: list[PatientUpdateLogEntry] = []
        skipped = 0
        for item in items:
            try:
                entries.append(PatientUpdateLogEntry.model_validate(item))
            except ValidationError:
                skipped += 1
        if skipped:
            logger.warning("event_log_entries_skipped", skipped=skipped)
        return entries

    async def _save(self, entries: list[PatientUpdateLogEntry]) -> None:
        payload = [
            entry.model_dump(mode="json", by_alias=True) for entry in entries
        ]
        try:
            await self._store.set_item(
                self._storage_key, json.dumps(payload, ensure_ascii=False)
            )
        except EventLogStorageError:
            raise
        except Exception as exc:
            raise EventLogStorageError(
                f"Patient update log could not be written: {exc}"
            ) from exc

    async def _read_entries(self) -> list[PatientUpdateLogEntry]:
        try:
            return _newest_first(await self._load())
        except EventLogStorageError as exc:
            logger.error("event_log_read_failed", error=str(exc))
            return []

    async def append(
        self, patient_id: str, updated_data: Mapping[str, Any]
    ) -> PatientUpdateLogEntry | None:
        """Prepend an update for ``patient_id`` and truncate to capacity.

        Returns the stored entry, or ``None`` when the write failed.
        """

        existing = await self._read_entries()
        timestamp = self._clock()
        if existing and existing[0].timestamp >= timestamp:
            timestamp = existing[0].timestamp + _MIN_STEP

        entry = PatientUpdateLogEntry(
            patient_id=patient_id,
            updated_data=dict(updated_data),
            timestamp=timestamp,
        )
        entries = [entry, *existing][: self._capacity]
        try:
            await self._save(entries)
        except EventLogStorageError as exc:
            logger.error(
                "event_log_append_failed", patient_id=patient_id, error=str(exc)
            )
            return None

        logger.info(
            "patient_update_broadcast",
            patient_id=patient_id,
            timestamp=entry.timestamp.isoformat(),
        )
        return entry

    async def read_all(self) -> list[PatientUpdateLogEntry]:
        """Return every retained entry, most recent first."""

        return await self._read_entries()

    async def read_since(
        self, since: datetime | None
    ) -> list[PatientUpdateLogEntry]:
        """Return entries strictly newer than ``since``, most recent first.

        Without a checkpoint only the most recent slice is returned.
        """

        entries = await self._read_entries()
        if since is None:
            return entries[: self._initial_slice]
        checkpoint = ensure_utc(since)
        return [entry for entry in entries if entry.timestamp > checkpoint]

    async def purge_older_than(self, max_age: timedelta = DEFAULT_MAX_AGE) -> int:
        """Drop entries older than ``max_age`` and return how many were removed."""

        try:
            entries = await self._load()
        except EventLogStorageError as exc:
            logger.error("event_log_purge_failed", error=str(exc))
            return 0

        cutoff = self._clock() - max_age
        retained = [entry for entry in entries if entry.timestamp > cutoff]
        removed = len(entries) - len(retained)
        if not removed:
            return 0
        try:
            await self._save(_newest_first(retained))
        except EventLogStorageError as exc:
            logger.error("event_log_purge_failed", error=str(exc))
            return 0
        logger.info("event_log_purged", removed=removed, retained=len(retained))
        return removed

    async def latest_for_patient(self, patient_id: str) -> datetime | None:
        """Return the timestamp of the newest entry for ``patient_id``."""

        for entry in await self._read_entries():
            if entry.patient_id == patient_id:
                return entry.timestamp
        return None


__all__ = [
    "DEFAULT_CAPACITY",
    "DEFAULT_INITIAL_SLICE",
    "DEFAULT_MAX_AGE",
    "DEFAULT_STORAGE_KEY",
    "DurableEventLog",
    "NotificationChannel",
]
