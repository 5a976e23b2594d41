"""Tests for publishing patient updates through the durable log."""

from __future__ import annotations

import sys
from datetime import UTC, datetime
from pathlib import Path

import httpx
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.patient_sync.broadcast import PatientUpdateBroadcaster  # noqa: E402
from services.patient_sync.data_source import PatientDataSource  # noqa: E402
from services.patient_sync.event_log import DurableEventLog  # noqa: E402
from services.patient_sync.storage import InMemoryKeyValueStore  # noqa: E402
from shared.models.patient import PatientPatch  # noqa: E402

NOW = datetime(2026, 6, 15, 9, 0, tzinfo=UTC)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/users/p1/profile":
        return httpx.Response(200, json={"id": "p1", "firstName": "Ada"})
    return httpx.Response(404)


@pytest.fixture
def source() -> PatientDataSource:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(_handler), base_url="http://patients.test/api"
    )
    return PatientDataSource(client, clock=lambda: NOW)


@pytest.fixture
def log() -> DurableEventLog:
    return DurableEventLog(InMemoryKeyValueStore(), clock=lambda: NOW)


@pytest.mark.anyio("asyncio")
async def test_broadcast_appends_and_primes_patient_cache(
    log: DurableEventLog, source: PatientDataSource
) -> None:
    broadcaster = PatientUpdateBroadcaster(log, source)

    entry = await broadcaster.broadcast_patient_update(
        "p1", {"role": "patient", "firstName": "Ada", "dateOfBirth": "1990-01-01"}
    )

    assert entry is not None
    assert entry.updated_data["firstName"] == "Ada"
    assert [item.patient_id for item in await log.read_all()] == ["p1"]
    cached = source.get_cached("p1")
    assert cached is not None
    assert cached.age == 36


@pytest.mark.anyio("asyncio")
async def test_broadcast_does_not_prime_cache_for_other_roles(
    log: DurableEventLog, source: PatientDataSource
) -> None:
    broadcaster = PatientUpdateBroadcaster(log, source)

    await broadcaster.broadcast_patient_update("d1", {"role": "doctor", "firstName": "Gregory"})
    await broadcaster.broadcast_patient_update("p2", PatientPatch(first_name="Grace"))

    assert source.get_cached("d1") is None
    assert source.get_cached("p2") is None
    entries = await log.read_all()
    assert entries[0].updated_data == {"firstName": "Grace"}


@pytest.mark.anyio("asyncio")
async def test_force_refresh_all_patients_refetches_logged_patients(
    log: DurableEventLog, source: PatientDataSource
) -> None:
    broadcaster = PatientUpdateBroadcaster(log, source)
    await log.append("p1", {})
    await log.append("p2", {})
    await log.append("p1", {"age": 3})

    refreshed = await broadcaster.force_refresh_all_patients()

    assert refreshed == ["p1"]
    assert source.get_cached("p1").first_name == "Ada"
