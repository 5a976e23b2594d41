"""Tests for the sync coordinator event bus and patient cache."""

from __future__ import annotations

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Sequence

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.patient_sync import validation  # noqa: E402
from services.patient_sync.coordinator import (  # noqa: E402
    BATCH_UPDATE_ACTOR,
    SYSTEM_REFRESH_ACTOR,
    SyncCoordinator,
)
from shared.http.errors import (  # noqa: E402
    PatientDataUnavailableError,
    PatientFetchError,
    PatientIntegrityError,
    PatientValidationError,
)
from shared.models.patient import PatientSyncRecord, SyncEvent, SyncEventType  # noqa: E402


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


class _FakeSource:
    def __init__(
        self,
        records: dict[str, PatientSyncRecord] | None = None,
        *,
        failures: int = 0,
    ) -> None:
        self.records = dict(records or {})
        self.failures = failures
        self.calls: list[str] = []
        self.batch_calls: list[list[str]] = []
        self.batch_error: Exception | None = None
        self.hints: dict[str, datetime | None] = {}
        self.hint_error: Exception | None = None

    async def get_profile(
        self, patient_id: str, *, force_refresh: bool = False
    ) -> PatientSyncRecord | None:
        self.calls.append(patient_id)
        if self.failures:
            self.failures -= 1
            raise PatientFetchError(f"/users/{patient_id}/profile", reason="offline")
        return self.records.get(patient_id)

    async def get_last_updated_hint(self, patient_id: str) -> datetime | None:
        if self.hint_error is not None:
            raise self.hint_error
        return self.hints.get(patient_id)

    async def get_patients_batch_info(
        self, patient_ids: Sequence[str]
    ) -> list[PatientSyncRecord]:
        self.batch_calls.append(list(patient_ids))
        if self.batch_error is not None:
            raise self.batch_error
        return [self.records[pid] for pid in patient_ids if pid in self.records]


class _Recorder:
    def __init__(self) -> None:
        self.events: list[SyncEvent] = []

    def __call__(self, event: SyncEvent) -> None:
        self.events.append(event)


ALWAYS_FAILING = 10**6


@pytest.fixture
def clock() -> _Clock:
    return _Clock(datetime(2026, 6, 15, 9, 0, tzinfo=UTC))


@pytest.fixture
def delays() -> list[float]:
    return []


def _coordinator(
    source: _FakeSource, clock: _Clock, delays: list[float]
) -> SyncCoordinator:
    async def _sleep(delay: float) -> None:
        delays.append(delay)

    return SyncCoordinator(source, clock=clock, sleep=_sleep)


def _subscribe_all(coordinator: SyncCoordinator) -> dict[SyncEventType, _Recorder]:
    recorders = {event_type: _Recorder() for event_type in SyncEventType}
    for event_type, recorder in recorders.items():
        coordinator.subscribe(event_type, recorder)
    return recorders


def _ada(**overrides: object) -> PatientSyncRecord:
    payload: dict[str, object] = {
        "id": "p1",
        "firstName": "Ada",
        "lastName": "Lovelace",
        "email": "ada@example.com",
    }
    payload.update(overrides)
    return PatientSyncRecord.model_validate(payload)


def test_birth_date_update_on_empty_cache_emits_derived_events(
    clock: _Clock, delays: list[float]
) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)
    recorders = _subscribe_all(coordinator)

    result = coordinator.on_patient_profile_updated(
        "p1", {"dateOfBirth": "1990-01-01"}, "doctor-1"
    )

    cached = coordinator.cached_record("p1")
    assert result.accepted
    assert cached is not None
    assert cached.age == 36
    assert cached.date_of_birth == "1990-01-01"
    assert cached.last_updated == clock()
    assert cached.sync_checksum == validation.checksum(cached)
    for event_type in (
        SyncEventType.PATIENT_BIRTH_DATE_UPDATED,
        SyncEventType.PATIENT_AGE_UPDATED,
        SyncEventType.PATIENT_PROFILE_UPDATED,
    ):
        assert len(recorders[event_type].events) == 1
    assert recorders[SyncEventType.PATIENT_CONTACT_UPDATED].events == []

    age_event = recorders[SyncEventType.PATIENT_AGE_UPDATED].events[0]
    assert age_event.data.age == 36
    assert age_event.triggered_by == "doctor-1"
    assert age_event.patient_id == "p1"


@pytest.mark.anyio("asyncio")
async def test_birth_date_update_recomputes_stale_cached_age(
    delays: list[float],
) -> None:
    clock = _Clock(datetime(2025, 6, 1, tzinfo=UTC))
    source = _FakeSource({"p1": PatientSyncRecord(id="p1", date_of_birth="2000-01-01")})
    coordinator = _coordinator(source, clock, delays)
    seeded = await coordinator.get_patient_data("p1")
    assert seeded is not None and seeded.age == 25

    clock.advance(days=730)
    result = coordinator.on_patient_profile_updated(
        "p1", {"dateOfBirth": "2000-01-01"}, "doctor-1"
    )

    assert result.accepted
    assert result.record is not None
    assert result.record.age == 27
    assert coordinator.cached_record("p1").age == 27


def test_bare_age_never_overrides_derived_age(clock: _Clock, delays: list[float]) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)
    coordinator.on_patient_profile_updated(
        "p1", {"dateOfBirth": "1990-01-01"}, "doctor-1"
    )

    result = coordinator.on_patient_profile_updated("p1", {"age": 40}, "doctor-1")

    assert result.accepted
    assert coordinator.cached_record("p1").age == 36
    assert "Age 40 ignored; derived 36 from date of birth" in result.warnings


def test_contact_update_emits_contact_and_profile_events(
    clock: _Clock, delays: list[float]
) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)
    recorders = _subscribe_all(coordinator)

    result = coordinator.on_patient_profile_updated(
        "p1", {"phone": "+1 (555) 123-4567", "email": " Ada@Example.com "}, "doctor-1"
    )

    assert [event.type for event in result.events] == [
        SyncEventType.PATIENT_CONTACT_UPDATED,
        SyncEventType.PATIENT_PROFILE_UPDATED,
    ]
    contact = recorders[SyncEventType.PATIENT_CONTACT_UPDATED].events[0]
    assert contact.data.phone == "+15551234567"
    assert contact.data.email == "ada@example.com"
    assert recorders[SyncEventType.PATIENT_AGE_UPDATED].events == []


def test_invalid_update_is_rejected_without_side_effects(
    clock: _Clock, delays: list[float]
) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)
    recorders = _subscribe_all(coordinator)

    result = coordinator.on_patient_profile_updated(
        "p1", {"firstName": "", "email": "bad"}, "doctor-1"
    )

    assert not result.accepted
    assert "First name cannot be empty" in result.errors
    assert coordinator.cached_record("p1") is None
    assert all(not recorder.events for recorder in recorders.values())
    with pytest.raises(PatientValidationError) as exc_info:
        result.raise_for_rejection()
    assert exc_info.value.status_code == 422


def test_update_without_actor_is_rejected(clock: _Clock, delays: list[float]) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)

    result = coordinator.on_patient_profile_updated("p1", {"firstName": "Ada"}, None)

    assert not result.accepted
    assert result.errors == ["Acting user is required"]
    assert coordinator.cached_record("p1") is None


def test_identity_mismatch_is_rejected(clock: _Clock, delays: list[float]) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)
    coordinator.on_patient_profile_updated("p1", {"firstName": "Ada"}, "doctor-1")
    recorder = _Recorder()
    coordinator.subscribe(SyncEventType.PATIENT_PROFILE_UPDATED, recorder)

    result = coordinator.on_patient_profile_updated(
        "p1", {"id": "p2", "firstName": "Grace"}, "doctor-1"
    )

    assert not result.accepted
    assert result.integrity_failure
    assert result.errors == ["Patient ID mismatch during sync"]
    assert coordinator.cached_record("p1").first_name == "Ada"
    assert recorder.events == []
    with pytest.raises(PatientIntegrityError):
        result.raise_for_rejection()


def test_partial_update_keeps_existing_fields(clock: _Clock, delays: list[float]) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)
    coordinator.on_patient_profile_updated(
        "p1",
        {"firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"},
        "doctor-1",
    )

    result = coordinator.on_patient_profile_updated(
        "p1", {"phone": "+15551234567"}, "pharmacist-1"
    )

    cached = coordinator.cached_record("p1")
    assert result.accepted
    assert cached.first_name == "Ada"
    assert cached.email == "ada@example.com"
    assert cached.phone == "+15551234567"
    assert "Critical field 'firstName' was lost during sync" in result.warnings


def test_last_updated_strictly_increases(clock: _Clock, delays: list[float]) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)

    first = coordinator.on_patient_profile_updated("p1", {"firstName": "Ada"}, "d")
    second = coordinator.on_patient_profile_updated("p1", {"lastName": "Byron"}, "d")

    assert first.record is not None and second.record is not None
    assert second.record.last_updated > first.record.last_updated


def test_failing_subscriber_does_not_block_others(
    clock: _Clock, delays: list[float]
) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)
    received = _Recorder()

    def broken(event: SyncEvent) -> None:
        raise RuntimeError("subscriber crashed")

    coordinator.subscribe(SyncEventType.PATIENT_PROFILE_UPDATED, broken)
    coordinator.subscribe(SyncEventType.PATIENT_PROFILE_UPDATED, received)

    result = coordinator.on_patient_profile_updated("p1", {"firstName": "Ada"}, "d")

    assert result.accepted
    assert len(received.events) == 1


def test_unsubscribe_removes_only_that_callback(
    clock: _Clock, delays: list[float]
) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)
    kept = _Recorder()
    dropped = _Recorder()
    coordinator.subscribe(SyncEventType.PATIENT_PROFILE_UPDATED, kept)
    unsubscribe = coordinator.subscribe(SyncEventType.PATIENT_PROFILE_UPDATED, dropped)

    unsubscribe()
    unsubscribe()
    coordinator.on_patient_profile_updated("p1", {"firstName": "Ada"}, "d")

    assert coordinator.subscriber_count(SyncEventType.PATIENT_PROFILE_UPDATED) == 1
    assert len(kept.events) == 1
    assert dropped.events == []


def test_subscriber_cannot_change_what_later_subscribers_see(
    clock: _Clock, delays: list[float]
) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)
    profile = _Recorder()

    def rewrite_email(event: SyncEvent) -> None:
        event.data.email = "hijacked@example.com"

    coordinator.subscribe(SyncEventType.PATIENT_CONTACT_UPDATED, rewrite_email)
    coordinator.subscribe(SyncEventType.PATIENT_PROFILE_UPDATED, profile)

    result = coordinator.on_patient_profile_updated("p1", {"email": "a@b.co"}, "doctor-1")

    assert result.accepted
    assert [event.data.email for event in profile.events] == ["a@b.co"]
    assert [event.data.email for event in result.events] == ["a@b.co", "a@b.co"]
    assert coordinator.cached_record("p1").email == "a@b.co"


@pytest.mark.anyio("asyncio")
async def test_get_patient_data_uses_cache_within_ttl(
    clock: _Clock, delays: list[float]
) -> None:
    source = _FakeSource({"p1": _ada()})
    coordinator = _coordinator(source, clock, delays)

    first = await coordinator.get_patient_data("p1")
    clock.advance(minutes=4, seconds=59)
    second = await coordinator.get_patient_data("p1")

    assert first == second
    assert source.calls == ["p1"]

    clock.advance(seconds=1)
    await coordinator.get_patient_data("p1")
    assert source.calls == ["p1", "p1"]


@pytest.mark.anyio("asyncio")
async def test_forced_refresh_always_fetches(clock: _Clock, delays: list[float]) -> None:
    source = _FakeSource({"p1": _ada()})
    coordinator = _coordinator(source, clock, delays)

    await coordinator.get_patient_data("p1")
    await coordinator.get_patient_data("p1", True)

    assert source.calls == ["p1", "p1"]


@pytest.mark.anyio("asyncio")
async def test_record_is_cached_under_the_requested_id(
    clock: _Clock, delays: list[float]
) -> None:
    source = _FakeSource({"p1": _ada(id="P-0001")})
    coordinator = _coordinator(source, clock, delays)

    first = await coordinator.get_patient_data("p1")
    second = await coordinator.get_patient_data("p1")

    assert first is not None
    assert first.id == "P-0001"
    assert second == first
    assert source.calls == ["p1"]
    assert coordinator.cached_record("p1") == first


@pytest.mark.anyio("asyncio")
async def test_fetch_failure_without_cache_raises_after_three_attempts(
    clock: _Clock, delays: list[float]
) -> None:
    source = _FakeSource(failures=ALWAYS_FAILING)
    coordinator = _coordinator(source, clock, delays)

    with pytest.raises(PatientDataUnavailableError) as exc_info:
        await coordinator.get_patient_data("p1")

    assert source.calls == ["p1", "p1", "p1"]
    assert delays == [1.0, 2.0]
    assert exc_info.value.patient_id == "p1"
    assert "p1" in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, PatientFetchError)


@pytest.mark.anyio("asyncio")
async def test_fetch_failure_serves_stale_record(clock: _Clock, delays: list[float]) -> None:
    source = _FakeSource({"p1": _ada()})
    coordinator = _coordinator(source, clock, delays)
    cached = await coordinator.get_patient_data("p1")

    source.failures = ALWAYS_FAILING
    clock.advance(hours=2)
    stale = await coordinator.get_patient_data("p1")

    assert stale == cached
    assert len(source.calls) == 4


@pytest.mark.anyio("asyncio")
async def test_fetch_recovers_on_retry(clock: _Clock, delays: list[float]) -> None:
    source = _FakeSource({"p1": _ada(email=" ADA@example.com")}, failures=1)
    coordinator = _coordinator(source, clock, delays)

    record = await coordinator.get_patient_data("p1")

    assert record is not None
    assert record.email == "ada@example.com"
    assert delays == [1.0]


@pytest.mark.anyio("asyncio")
async def test_missing_patient_returns_none(clock: _Clock, delays: list[float]) -> None:
    coordinator = _coordinator(_FakeSource(), clock, delays)

    assert await coordinator.get_patient_data("ghost") is None


@pytest.mark.anyio("asyncio")
async def test_invalidate_and_clear_cache(clock: _Clock, delays: list[float]) -> None:
    source = _FakeSource({"p1": _ada(), "p2": _ada(id="p2")})
    coordinator = _coordinator(source, clock, delays)
    await coordinator.get_patient_data("p1")
    await coordinator.get_patient_data("p2")

    coordinator.invalidate_patient_cache("p1")
    assert coordinator.cached_record("p1") is None
    assert coordinator.cached_record("p2") is not None

    coordinator.clear_cache()
    assert coordinator.cached_record("p2") is None


@pytest.mark.anyio("asyncio")
async def test_should_refresh_fails_toward_freshness(
    clock: _Clock, delays: list[float]
) -> None:
    source = _FakeSource({"p1": _ada()})
    coordinator = _coordinator(source, clock, delays)

    assert await coordinator.should_refresh("p1")

    await coordinator.get_patient_data("p1")
    assert await coordinator.should_refresh("p1")

    source.hints["p1"] = clock() - timedelta(minutes=1)
    assert not await coordinator.should_refresh("p1")

    source.hints["p1"] = clock() + timedelta(minutes=1)
    assert await coordinator.should_refresh("p1")

    source.hint_error = PatientFetchError("/patients/p1/last-updated")
    assert await coordinator.should_refresh("p1")


@pytest.mark.anyio("asyncio")
async def test_force_refresh_announces_fresh_record(
    clock: _Clock, delays: list[float]
) -> None:
    source = _FakeSource({"p1": _ada()})
    coordinator = _coordinator(source, clock, delays)
    recorder = _Recorder()
    coordinator.subscribe(SyncEventType.PATIENT_PROFILE_UPDATED, recorder)
    await coordinator.get_patient_data("p1")

    refreshed = await coordinator.force_refresh_patient_data("p1")

    assert refreshed is not None
    assert source.calls == ["p1", "p1"]
    assert [event.triggered_by for event in recorder.events] == [SYSTEM_REFRESH_ACTOR]
    assert recorder.events[0].data.first_name == "Ada"


@pytest.mark.anyio("asyncio")
async def test_batch_update_caches_and_announces_each_patient(
    clock: _Clock, delays: list[float]
) -> None:
    source = _FakeSource(
        {
            "p1": _ada(dateOfBirth="1990-01-01", age=12),
            "p2": _ada(id="p2", firstName="Grace"),
        }
    )
    coordinator = _coordinator(source, clock, delays)
    recorder = _Recorder()
    coordinator.subscribe(SyncEventType.PATIENT_PROFILE_UPDATED, recorder)

    updated = await coordinator.batch_update_patients(["p1", "p2", "p3"])

    assert updated == ["p1", "p2"]
    assert source.batch_calls == [["p1", "p2", "p3"]]
    assert source.calls == []
    assert coordinator.cached_record("p1").age == 36
    assert [event.patient_id for event in recorder.events] == ["p1", "p2"]
    assert {event.triggered_by for event in recorder.events} == {BATCH_UPDATE_ACTOR}


@pytest.mark.anyio("asyncio")
async def test_batch_update_failure_is_logged_not_raised(
    clock: _Clock, delays: list[float]
) -> None:
    source = _FakeSource()
    source.batch_error = PatientFetchError("/patients/batch-info", reason="status 500")
    coordinator = _coordinator(source, clock, delays)

    assert await coordinator.batch_update_patients(["p1"]) == []


@pytest.mark.anyio("asyncio")
async def test_check_health(clock: _Clock, delays: list[float]) -> None:
    healthy = _coordinator(_FakeSource(), clock, delays)
    broken = _coordinator(_FakeSource(failures=ALWAYS_FAILING), clock, delays)

    assert await healthy.check_health()
    assert not await broken.check_health()
