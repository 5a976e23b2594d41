"""Tests for the durable patient update log."""

from __future__ import annotations

import json
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.patient_sync.event_log import DEFAULT_STORAGE_KEY, DurableEventLog  # noqa: E402
from services.patient_sync.storage import InMemoryKeyValueStore, JsonFileKeyValueStore  # noqa: E402
from shared.http.errors import EventLogStorageError  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class _BrokenStore:
    def __init__(self) -> None:
        self.writes = 0

    async def get_item(self, key: str) -> str | None:
        return None

    async def set_item(self, key: str, value: str) -> None:
        self.writes += 1
        raise EventLogStorageError("disk full")


class _UnavailableStore:
    def __init__(self, *, readable: bool = False) -> None:
        self.readable = readable
        self.value: str | None = None

    async def get_item(self, key: str) -> str | None:
        if not self.readable:
            raise OSError("disk unavailable")
        return self.value

    async def set_item(self, key: str, value: str) -> None:
        raise OSError("disk unavailable")


@pytest.fixture
def clock() -> _Clock:
    return _Clock(datetime(2026, 6, 15, 9, 0, tzinfo=UTC))


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.mark.anyio("asyncio")
async def test_append_keeps_only_the_most_recent_entries(
    store: InMemoryKeyValueStore, clock: _Clock
) -> None:
    log = DurableEventLog(store, capacity=50, clock=clock)

    for index in range(52):
        await log.append(f"p{index}", {"firstName": f"Patient {index}"})
        clock.advance(seconds=1)

    entries = await log.read_all()

    assert len(entries) == 50
    patient_ids = [entry.patient_id for entry in entries]
    assert patient_ids[0] == "p51"
    assert patient_ids[-1] == "p2"
    assert "p0" not in patient_ids
    assert "p1" not in patient_ids


@pytest.mark.anyio("asyncio")
async def test_append_keeps_timestamps_strictly_increasing(
    store: InMemoryKeyValueStore, clock: _Clock
) -> None:
    log = DurableEventLog(store, clock=clock)

    first = await log.append("p1", {"age": 36})
    second = await log.append("p2", {"age": 40})

    assert first is not None and second is not None
    assert second.timestamp > first.timestamp
    assert [entry.patient_id for entry in await log.read_all()] == ["p2", "p1"]


@pytest.mark.anyio("asyncio")
async def test_read_since_none_returns_initial_slice(
    store: InMemoryKeyValueStore, clock: _Clock
) -> None:
    log = DurableEventLog(store, initial_slice=10, clock=clock)
    for index in range(15):
        await log.append(f"p{index}", {})
        clock.advance(seconds=1)

    entries = await log.read_since(None)

    assert [entry.patient_id for entry in entries] == [f"p{i}" for i in range(14, 4, -1)]


@pytest.mark.anyio("asyncio")
async def test_read_since_checkpoint_never_repeats_entries(
    store: InMemoryKeyValueStore, clock: _Clock
) -> None:
    log = DurableEventLog(store, clock=clock)
    start = clock()
    await log.append("p1", {"email": "a@example.com"})
    clock.advance(seconds=5)
    await log.append("p2", {"email": "b@example.com"})

    seen = await log.read_since(start - timedelta(seconds=1))
    checkpoint = max(entry.timestamp for entry in seen)

    assert [entry.patient_id for entry in seen] == ["p2", "p1"]
    assert await log.read_since(checkpoint) == []

    clock.advance(seconds=5)
    await log.append("p3", {})
    assert [entry.patient_id for entry in await log.read_since(checkpoint)] == ["p3"]


@pytest.mark.anyio("asyncio")
async def test_read_since_is_strictly_newer(
    store: InMemoryKeyValueStore, clock: _Clock
) -> None:
    log = DurableEventLog(store, clock=clock)
    entry = await log.append("p1", {})

    assert entry is not None
    assert await log.read_since(entry.timestamp) == []


@pytest.mark.anyio("asyncio")
async def test_purge_removes_entries_older_than_max_age(
    store: InMemoryKeyValueStore, clock: _Clock
) -> None:
    log = DurableEventLog(store, clock=clock)
    await log.append("old-1", {})
    await log.append("old-2", {})
    clock.advance(hours=25)
    await log.append("recent", {})

    removed = await log.purge_older_than(timedelta(hours=24))

    assert removed == 2
    assert [entry.patient_id for entry in await log.read_all()] == ["recent"]
    assert await log.purge_older_than(timedelta(hours=24)) == 0


@pytest.mark.anyio("asyncio")
async def test_latest_for_patient(store: InMemoryKeyValueStore, clock: _Clock) -> None:
    log = DurableEventLog(store, clock=clock)
    await log.append("p1", {})
    clock.advance(minutes=1)
    latest = await log.append("p1", {"age": 37})
    await log.append("p2", {})

    assert latest is not None
    assert await log.latest_for_patient("p1") == latest.timestamp
    assert await log.latest_for_patient("unknown") is None


@pytest.mark.anyio("asyncio")
async def test_corrupt_log_reads_as_empty_and_is_replaced(clock: _Clock) -> None:
    store = InMemoryKeyValueStore({DEFAULT_STORAGE_KEY: "{not json"})
    log = DurableEventLog(store, clock=clock)

    assert await log.read_all() == []
    assert await log.purge_older_than(timedelta(hours=1)) == 0

    entry = await log.append("p1", {"firstName": "Ada"})

    assert entry is not None
    assert [item.patient_id for item in await log.read_all()] == ["p1"]


@pytest.mark.anyio("asyncio")
async def test_malformed_entries_are_skipped(clock: _Clock) -> None:
    raw = json.dumps(
        [
            {"patientId": "p1", "updatedData": {"age": 3}, "timestamp": "2026-06-15T08:00:00Z"},
            {"unexpected": True},
            "garbage",
        ]
    )
    log = DurableEventLog(InMemoryKeyValueStore({DEFAULT_STORAGE_KEY: raw}), clock=clock)

    entries = await log.read_all()

    assert [entry.patient_id for entry in entries] == ["p1"]
    assert entries[0].updated_data == {"age": 3}


@pytest.mark.anyio("asyncio")
async def test_append_failure_is_swallowed(clock: _Clock) -> None:
    store = _BrokenStore()
    log = DurableEventLog(store, clock=clock)

    assert await log.append("p1", {"age": 3}) is None
    assert store.writes == 1


@pytest.mark.anyio("asyncio")
async def test_store_os_errors_never_escape_the_log(clock: _Clock) -> None:
    log = DurableEventLog(_UnavailableStore(), clock=clock)

    assert await log.append("p1", {"age": 3}) is None
    assert await log.read_all() == []
    assert await log.read_since(None) == []
    assert await log.read_since(clock() - timedelta(hours=1)) == []
    assert await log.latest_for_patient("p1") is None
    assert await log.purge_older_than(timedelta(hours=24)) == 0


@pytest.mark.anyio("asyncio")
async def test_purge_write_os_error_is_swallowed(clock: _Clock) -> None:
    store = _UnavailableStore(readable=True)
    store.value = json.dumps(
        [
            {
                "patientId": "p1",
                "timestamp": (clock() - timedelta(hours=30)).isoformat(),
                "updatedData": {"age": 3},
            }
        ]
    )
    log = DurableEventLog(store, clock=clock)

    assert await log.purge_older_than(timedelta(hours=24)) == 0
    assert [entry.patient_id for entry in await log.read_all()] == ["p1"]


@pytest.mark.anyio("asyncio")
async def test_log_is_shared_through_file_store(tmp_path: Path, clock: _Clock) -> None:
    path = tmp_path / "sync.json"
    writer = DurableEventLog(JsonFileKeyValueStore(path), clock=clock)
    reader = DurableEventLog(JsonFileKeyValueStore(path), clock=clock)

    await writer.append("p1", {"phone": "+15551234567"})

    entries = await reader.read_all()
    assert [entry.patient_id for entry in entries] == ["p1"]
    assert entries[0].updated_data == {"phone": "+15551234567"}


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError, match="capacity"):
        DurableEventLog(InMemoryKeyValueStore(), capacity=0)
