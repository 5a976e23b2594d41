"""In-process event bus and second-level patient cache.

One :class:`SyncCoordinator` is built at application start and handed to
every consumer that needs patient data. It owns its cache outright: nothing
outside the process mutates it, and every mutation is a synchronous dict
operation that cannot be interleaved by another coroutine.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Mapping, Sequence

from pydantic import ValidationError

from services.patient_sync import validation
from services.patient_sync.data_source import PatientProfileSource
from services.patient_sync.resilience import (
    RetryPolicy,
    SleepFunction,
    call_async_with_retry,
)
from shared.http.errors import (
    PatientDataUnavailableError,
    PatientIntegrityError,
    PatientValidationError,
)
from shared.models.patient import (
    PatientPatch,
    PatientSyncRecord,
    SyncEvent,
    SyncEventType,
    merge_patch,
    utcnow,
)
from shared.observability.logger import get_logger, sync_context

logger = get_logger(__name__)

SyncEventCallback = Callable[[SyncEvent], None]

DEFAULT_TTL = timedelta(minutes=5)
SYSTEM_REFRESH_ACTOR = "system_refresh"
BATCH_UPDATE_ACTOR = "batch_update"
HEALTH_CHECK_PATIENT_ID = "health-check-dummy"

_TIMESTAMP_STEP = timedelta(microseconds=1)


@dataclass(frozen=True)
class SyncWriteResult:
    """Outcome of :meth:`SyncCoordinator.on_patient_profile_updated`."""

    patient_id: str
    accepted: bool
    record: PatientSyncRecord | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    events: list[SyncEvent] = field(default_factory=list)
    integrity_failure: bool = False

    def raise_for_rejection(self) -> None:
        """Raise the matching error when the write was rejected."""

        if self.accepted:
            return
        if self.integrity_failure:
            raise PatientIntegrityError(self.patient_id, self.errors)
        raise PatientValidationError(
            self.patient_id, self.errors, warnings=self.warnings
        )


@dataclass
class _CacheEntry:
    record: PatientSyncRecord
    synced_at: datetime


class SyncCoordinator:
    """Fan patient updates out to subscribers and cache patient records."""

    def __init__(
        self,
        source: PatientProfileSource,
        *,
        ttl: timedelta = DEFAULT_TTL,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFunction | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._source = source
        self._ttl = ttl
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._subscribers: dict[SyncEventType, list[SyncEventCallback]] = (
            defaultdict(list)
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self, event_type: SyncEventType, callback: SyncEventCallback
    ) -> Callable[[], None]:
        """Register ``callback`` for ``event_type`` and return its unsubscriber."""

        bucket = self._subscribers[SyncEventType(event_type)]
        bucket.append(callback)

        def unsubscribe() -> None:
            try:
                bucket.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def subscriber_count(self, event_type: SyncEventType) -> int:
        return len(self._subscribers.get(SyncEventType(event_type), ()))

    def _notify(self, event: SyncEvent) -> None:
        for callback in list(self._subscribers.get(event.type, ())):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "sync_callback_failed",
                    event_type=event.type.value,
                    patient_id=event.patient_id,
                )

    def _emit(
        self,
        event_type: SyncEventType,
        patient_id: str,
        data: PatientPatch,
        triggered_by: str,
    ) -> SyncEvent:
        event = SyncEvent(
            type=event_type,
            patient_id=patient_id,
            data=data,
            timestamp=self._clock(),
            triggered_by=triggered_by,
        )
        self._notify(event)
        return event

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _store(
        self, record: PatientSyncRecord, key: str | None = None
    ) -> PatientSyncRecord:
        cache_key = key or record.id
        now = self._clock()
        previous = self._cache.get(cache_key)
        if (
            previous is not None
            and previous.record.last_updated is not None
            and now <= previous.record.last_updated
        ):
            now = previous.record.last_updated + _TIMESTAMP_STEP
        stored = record.model_copy(
            update={
                "last_updated": now,
                "sync_checksum": validation.checksum(record),
            }
        )
        self._cache[cache_key] = _CacheEntry(record=stored, synced_at=now)
        return stored

    def _is_fresh(self, entry: _CacheEntry) -> bool:
        return self._clock() - entry.synced_at < self._ttl

    def cached_record(self, patient_id: str) -> PatientSyncRecord | None:
        """Return the cached record without fetching, fresh or not."""

        entry = self._cache.get(patient_id)
        return entry.record if entry is not None else None

    def invalidate_patient_cache(self, patient_id: str) -> None:
        self._cache.pop(patient_id, None)

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def _today(self) -> date:
        return self._clock().date()

    def _reject(
        self,
        patient_id: str,
        reason: str,
        errors: list[str],
        warnings: list[str] | None = None,
        *,
        integrity_failure: bool = False,
    ) -> SyncWriteResult:
        logger.error(reason, errors=errors)
        return SyncWriteResult(
            patient_id=patient_id,
            accepted=False,
            errors=errors,
            warnings=list(warnings or []),
            integrity_failure=integrity_failure,
        )

    def on_patient_profile_updated(
        self,
        patient_id: str,
        updated_data: PatientPatch | Mapping[str, Any],
        acting_user: str | None,
    ) -> SyncWriteResult:
        """Validate, cache and fan out an edit of ``patient_id``'s profile.

        Invalid data is rejected without touching the cache or emitting
        anything. Subscribers have been called by the time this returns.
        """

        with sync_context(actor_id=acting_user, patient_id=patient_id):
            if not acting_user:
                return self._reject(
                    patient_id, "profile_update_missing_actor", ["Acting user is required"]
                )
            if not patient_id or not patient_id.strip():
                return self._reject(
                    patient_id, "profile_update_rejected", ["Patient ID cannot be empty"]
                )

            try:
                patch = PatientPatch.from_data(updated_data).with_id(patient_id)
            except ValidationError as exc:
                return self._reject(
                    patient_id,
                    "profile_update_rejected",
                    [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in exc.errors()],
                )

            today = self._today()
            result = validation.validate(patch, today=today)
            warnings = list(result.warnings)
            if not result.is_valid:
                return self._reject(
                    patient_id, "profile_update_rejected", result.errors, warnings
                )

            existing = self.cached_record(patient_id)
            if existing is not None:
                integrity = validation.check_integrity(existing, patch)
                warnings.extend(integrity.warnings)
                if not integrity.is_valid:
                    return self._reject(
                        patient_id,
                        "profile_update_integrity_failed",
                        integrity.errors,
                        warnings,
                        integrity_failure=True,
                    )
            elif patch.id != patient_id:
                return self._reject(
                    patient_id,
                    "profile_update_integrity_failed",
                    ["Patient ID mismatch during sync"],
                    warnings,
                    integrity_failure=True,
                )

            sanitized = validation.sanitize(patch, today=today)
            merged = validation.sanitize(merge_patch(existing, sanitized), today=today)
            if (
                sanitized.age is not None
                and merged.age is not None
                and sanitized.age != merged.age
            ):
                warnings.append(
                    f"Age {sanitized.age} ignored; derived {merged.age} from date of birth"
                )
            if warnings:
                logger.warning("profile_update_warnings", warnings=warnings)

            if existing is not None:
                comparison = validation.compare_records(existing, merged)
                logger.info(
                    "profile_update_changes",
                    changes=comparison.changes,
                    sensitive_changes=comparison.sensitive_changes,
                )

            stored = self._store(merged)
            events = self._fan_out(patient_id, sanitized, stored, acting_user)
            logger.info(
                "profile_updated",
                event_types=[event.type.value for event in events],
                checksum=stored.sync_checksum,
            )
            return SyncWriteResult(
                patient_id=patient_id,
                accepted=True,
                record=stored,
                warnings=warnings,
                events=events,
            )

    def _fan_out(
        self,
        patient_id: str,
        sanitized: PatientPatch,
        stored: PatientSyncRecord,
        acting_user: str,
    ) -> list[SyncEvent]:
        events: list[SyncEvent] = []
        if sanitized.date_of_birth is not None:
            birth_data = PatientPatch.model_validate(
                {**sanitized.provided(), "age": stored.age}
            )
            events.append(
                self._emit(
                    SyncEventType.PATIENT_BIRTH_DATE_UPDATED,
                    patient_id,
                    birth_data,
                    acting_user,
                )
            )
            age_data = PatientPatch(
                age=stored.age, date_of_birth=stored.date_of_birth
            )
            events.append(
                self._emit(
                    SyncEventType.PATIENT_AGE_UPDATED, patient_id, age_data, acting_user
                )
            )
        if sanitized.phone or sanitized.email:
            events.append(
                self._emit(
                    SyncEventType.PATIENT_CONTACT_UPDATED,
                    patient_id,
                    sanitized,
                    acting_user,
                )
            )
        events.append(
            self._emit(
                SyncEventType.PATIENT_PROFILE_UPDATED, patient_id, sanitized, acting_user
            )
        )
        return events

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_patient_data(
        self, patient_id: str, force_refresh: bool = False
    ) -> PatientSyncRecord | None:
        """Return ``patient_id``'s record, fetching when missing, stale or forced.

        Fetches are retried under the coordinator's policy. When every attempt
        fails the last cached record is returned, however old; with nothing
        cached :class:`PatientDataUnavailableError` is raised.
        """

        entry = self._cache.get(patient_id)
        if entry is not None and not force_refresh and self._is_fresh(entry):
            return entry.record

        try:
            fetched = await call_async_with_retry(
                self._source.get_profile,
                patient_id,
                policy=self._retry_policy,
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.error(
                "patient_fetch_failed",
                patient_id=patient_id,
                attempts=self._retry_policy.attempts,
                error=str(exc),
            )
            stale = self.cached_record(patient_id)
            if stale is not None:
                logger.info("serving_stale_patient_data", patient_id=patient_id)
                return stale
            raise PatientDataUnavailableError(
                patient_id, reason=str(exc) or exc.__class__.__name__
            ) from exc

        if fetched is None:
            stale = self.cached_record(patient_id)
            if stale is not None:
                logger.info("serving_stale_patient_data", patient_id=patient_id)
            return stale
        if fetched.id != patient_id:
            logger.debug(
                "patient_id_mismatch", patient_id=patient_id, returned_id=fetched.id
            )
        # keyed by the requested id
        return self._store(
            validation.sanitize(fetched, today=self._today()), key=patient_id
        )

    async def should_refresh(self, patient_id: str) -> bool:
        """Return ``True`` when the server reports a newer version than cached.

        Any missing information or failure answers ``True``.
        """

        entry = self._cache.get(patient_id)
        if entry is None:
            return True
        try:
            server_updated = await self._source.get_last_updated_hint(patient_id)
        except Exception as exc:
            logger.error(
                "patient_freshness_check_failed", patient_id=patient_id, error=str(exc)
            )
            return True
        if server_updated is None:
            return True
        return server_updated > entry.synced_at

    async def force_refresh_patient_data(self, patient_id: str) -> PatientSyncRecord | None:
        """Drop, refetch and announce ``patient_id``'s record."""

        self.invalidate_patient_cache(patient_id)
        fresh = await self.get_patient_data(patient_id, True)
        if fresh is not None:
            self._emit(
                SyncEventType.PATIENT_PROFILE_UPDATED,
                patient_id,
                PatientPatch.from_data(fresh),
                SYSTEM_REFRESH_ACTOR,
            )
        return fresh

    async def batch_update_patients(self, patient_ids: Sequence[str]) -> list[str]:
        """Refresh several patients with one batch call.

        Returns the identifiers that were cached. A failing batch call is
        logged, never raised.
        """

        try:
            records = await self._source.get_patients_batch_info(patient_ids)
        except Exception as exc:
            logger.error(
                "patient_batch_update_failed",
                patient_count=len(patient_ids),
                error=str(exc),
            )
            return []

        updated: list[str] = []
        today = self._today()
        for record in records:
            try:
                stored = self._store(validation.sanitize(record, today=today))
            except ValidationError as exc:
                logger.warning(
                    "patient_batch_entry_failed", patient_id=record.id, error=str(exc)
                )
                continue
            self._emit(
                SyncEventType.PATIENT_PROFILE_UPDATED,
                stored.id,
                PatientPatch.from_data(stored),
                BATCH_UPDATE_ACTOR,
            )
            updated.append(stored.id)
        return updated

    async def check_health(self) -> bool:
        """Call the remote source; ``False`` when the call raises."""

        try:
            await self._source.get_profile(HEALTH_CHECK_PATIENT_ID)
        except Exception as exc:
            logger.warning("sync_health_check_failed", error=str(exc))
            return False
        return True


__all__ = [
    "BATCH_UPDATE_ACTOR",
    "SYSTEM_REFRESH_ACTOR",
    "SyncCoordinator",
    "SyncEventCallback",
    "SyncWriteResult",
]
