"""Observer-side views that keep patient snapshots in step with sync events."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Sequence

from pydantic import ValidationError

from services.patient_sync.coordinator import SyncCoordinator
from shared.http.errors import ProblemDetails, problem_details_from_exception
from shared.models.patient import (
    PatientSyncRecord,
    SyncEvent,
    SyncEventType,
    merge_patch,
    utcnow,
)
from shared.observability.logger import get_logger

logger = get_logger(__name__)

STALE_AFTER = timedelta(minutes=5)

WATCHED_EVENT_TYPES: tuple[SyncEventType, ...] = (
    SyncEventType.PATIENT_PROFILE_UPDATED,
    SyncEventType.PATIENT_AGE_UPDATED,
    SyncEventType.PATIENT_BIRTH_DATE_UPDATED,
    SyncEventType.PATIENT_CONTACT_UPDATED,
)


def _apply_event(
    snapshot: PatientSyncRecord | None, event: SyncEvent
) -> PatientSyncRecord | None:
    """Merge ``event``'s data over ``snapshot``; nothing to merge into stays ``None``."""

    if snapshot is None:
        return None
    merged = merge_patch(snapshot, event.data)
    return merged.model_copy(update={"last_updated": event.timestamp})


class _EventSubscriptions:
    def __init__(
        self, coordinator: SyncCoordinator, callback: Callable[[SyncEvent], None]
    ) -> None:
        self._unsubscribers = [
            coordinator.subscribe(event_type, callback)
            for event_type in WATCHED_EVENT_TYPES
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()


class PatientRecordView:
    """Live snapshot of one patient, merged from every sync event."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        patient_id: str,
        *,
        auto_refresh: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._coordinator = coordinator
        self._patient_id = patient_id
        self._clock = clock
        self.patient_data: PatientSyncRecord | None = None
        self.last_sync_time: datetime | None = None
        self.error: ProblemDetails | None = None
        self.is_loading = False
        self._subscriptions = (
            _EventSubscriptions(coordinator, self._handle_event) if auto_refresh else None
        )

    @property
    def is_stale(self) -> bool:
        if self.patient_data is None or self.last_sync_time is None:
            return False
        return self._clock() - self.last_sync_time > STALE_AFTER

    def _handle_event(self, event: SyncEvent) -> None:
        if event.patient_id != self._patient_id:
            return
        try:
            self.patient_data = _apply_event(self.patient_data, event)
        except ValidationError as exc:
            logger.warning(
                "patient_view_merge_failed",
                patient_id=self._patient_id,
                error_count=exc.error_count(),
            )
            return
        self.last_sync_time = event.timestamp

    async def refresh(self) -> PatientSyncRecord | None:
        """Force a fetch through the coordinator, recording any failure."""

        self.is_loading = True
        self.error = None
        try:
            self.patient_data = await self._coordinator.get_patient_data(
                self._patient_id, True
            )
            self.last_sync_time = self._clock()
        except Exception as exc:
            logger.error(
                "patient_view_refresh_failed", patient_id=self._patient_id, error=str(exc)
            )
            self.error = problem_details_from_exception(exc)
        finally:
            self.is_loading = False
        return self.patient_data

    def close(self) -> None:
        if self._subscriptions is not None:
            self._subscriptions.close()


class BatchPatientView:
    """Snapshots for a list of patients, e.g. a doctor's patient list."""

    def __init__(self, coordinator: SyncCoordinator, patient_ids: Sequence[str]) -> None:
        self._coordinator = coordinator
        self._patient_ids = list(dict.fromkeys(patient_ids))
        self.patients: dict[str, PatientSyncRecord] = {}
        self.error: ProblemDetails | None = None
        self.is_loading = False
        self._subscriptions = _EventSubscriptions(coordinator, self._handle_event)

    def get(self, patient_id: str) -> PatientSyncRecord | None:
        return self.patients.get(patient_id)

    def _handle_event(self, event: SyncEvent) -> None:
        existing = self.patients.get(event.patient_id)
        if event.patient_id not in self._patient_ids or existing is None:
            return
        try:
            merged = _apply_event(existing, event)
        except ValidationError as exc:
            logger.warning(
                "patient_view_merge_failed",
                patient_id=event.patient_id,
                error_count=exc.error_count(),
            )
            return
        if merged is not None:
            self.patients[event.patient_id] = merged

    async def refresh(self) -> dict[str, PatientSyncRecord]:
        """Run a batch update, then read every patient through the coordinator."""

        if not self._patient_ids:
            return {}
        self.is_loading = True
        self.error = None
        try:
            await self._coordinator.batch_update_patients(self._patient_ids)
            refreshed: dict[str, PatientSyncRecord] = {}
            for patient_id in self._patient_ids:
                record = await self._coordinator.get_patient_data(patient_id)
                if record is not None:
                    refreshed[patient_id] = record
            self.patients = refreshed
        except Exception as exc:
            logger.error("patient_batch_view_refresh_failed", error=str(exc))
            self.error = problem_details_from_exception(exc)
        finally:
            self.is_loading = False
        return dict(self.patients)

    def close(self) -> None:
        self._subscriptions.close()


__all__ = ["BatchPatientView", "PatientRecordView", "WATCHED_EVENT_TYPES"]
