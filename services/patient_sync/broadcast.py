"""Publish patient updates to sibling app instances through the event log."""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import ValidationError

from services.patient_sync.data_source import PatientDataSource
from services.patient_sync.event_log import NotificationChannel
from shared.models.patient import PatientPatch, PatientSyncRecord, PatientUpdateLogEntry
from shared.observability.logger import get_logger

logger = get_logger(__name__)

PATIENT_ROLES = frozenset({"patient", "PATIENT"})


class PatientUpdateBroadcaster:
    """Write side of the cross-instance channel."""

    def __init__(self, channel: NotificationChannel, source: PatientDataSource) -> None:
        self._channel = channel
        self._source = source

    async def broadcast_patient_update(
        self, patient_id: str, updated_data: PatientPatch | Mapping[str, Any]
    ) -> PatientUpdateLogEntry | None:
        """Append the update to the log and prime the local source cache.

        The source cache is only primed when the payload describes a patient
        account (``role`` of ``patient``). A failed append returns ``None``.
        """

        if isinstance(updated_data, PatientPatch):
            payload: dict[str, Any] = updated_data.to_payload()
        else:
            payload = dict(updated_data)

        entry = await self._channel.append(patient_id, payload)

        if payload.get("role") in PATIENT_ROLES:
            try:
                record = PatientSyncRecord.model_validate({**payload, "id": patient_id})
            except ValidationError as exc:
                logger.warning(
                    "broadcast_cache_prime_skipped",
                    patient_id=patient_id,
                    error_count=exc.error_count(),
                )
            else:
                self._source.cache_patient_data(record)
        return entry

    async def force_refresh_all_patients(self) -> list[str]:
        """Refetch every patient mentioned in the log, returning those refreshed."""

        entries = await self._channel.read_all()
        patient_ids = list(dict.fromkeys(entry.patient_id for entry in entries))

        refreshed: list[str] = []
        for patient_id in patient_ids:
            try:
                record = await self._source.get_profile(patient_id, force_refresh=True)
            except Exception as exc:
                logger.error(
                    "patient_refresh_failed", patient_id=patient_id, error=str(exc)
                )
                continue
            if record is not None:
                refreshed.append(patient_id)
        logger.info(
            "patients_force_refreshed",
            requested=len(patient_ids),
            refreshed=len(refreshed),
        )
        return refreshed


__all__ = ["PATIENT_ROLES", "PatientUpdateBroadcaster"]
