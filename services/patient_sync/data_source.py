"""Remote patient profile source with a private TTL cache."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Protocol, Sequence
from urllib.parse import quote

import httpx
from pydantic import TypeAdapter, ValidationError

from services.patient_sync.validation import calculate_age, parse_date
from shared.http.errors import PatientFetchError
from shared.models.patient import PatientSyncRecord, ensure_utc, utcnow
from shared.observability.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TTL = timedelta(minutes=5)

_TIMESTAMP_ADAPTER = TypeAdapter(datetime)


class PatientProfileSource(Protocol):
    """Remote lookups the sync coordinator and poll loop depend on."""

    async def get_profile(
        self, patient_id: str, *, force_refresh: bool = False
    ) -> PatientSyncRecord | None: ...

    async def get_last_updated_hint(self, patient_id: str) -> datetime | None: ...

    async def get_patients_batch_info(
        self, patient_ids: Sequence[str]
    ) -> list[PatientSyncRecord]: ...


@dataclass
class _CacheEntry:
    record: PatientSyncRecord
    cached_at: datetime


def _unwrap_envelope(payload: Any) -> Any:
    """Return the ``data`` member of ``{"success": ..., "data": ...}`` envelopes."""

    if isinstance(payload, Mapping) and "success" in payload:
        if not payload.get("success"):
            return None
        return payload.get("data")
    return payload


class PatientDataSource:
    """Fetch patient profiles from the REST backend.

    The backend models the same profile under two routes, so the user route
    is tried first and the patient route only when the first one fails or has
    no data. Results are kept in a private cache for ``ttl``; when both routes
    fail the cached record is returned even if it has expired.
    """

    PROFILE_ENDPOINTS: tuple[str, ...] = (
        "/users/{patient_id}/profile",
        "/patients/{patient_id}/profile",
    )
    BATCH_ENDPOINT = "/patients/batch-info"
    LAST_UPDATED_ENDPOINT = "/patients/{patient_id}/last-updated"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._http = http_client
        self._ttl = ttl
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}

    async def _request_json(
        self, endpoint: str, params: Mapping[str, str] | None = None
    ) -> Any:
        try:
            response = await self._http.get(endpoint, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == httpx.codes.NOT_FOUND:
                return None
            raise PatientFetchError(
                endpoint, reason=f"status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise PatientFetchError(
                endpoint, reason=str(exc) or exc.__class__.__name__
            ) from exc

        if response.status_code != httpx.codes.OK or not response.content:
            return None
        try:
            payload = response.json()
        except ValueError as exc:
            raise PatientFetchError(endpoint, reason="invalid JSON body") from exc
        return _unwrap_envelope(payload)

    def _is_fresh(self, entry: _CacheEntry) -> bool:
        return self._clock() - entry.cached_at < self._ttl

    def cache_patient_data(self, record: PatientSyncRecord) -> PatientSyncRecord:
        """Store ``record`` in the private cache, deriving age from the birth date."""

        born = parse_date(record.date_of_birth)
        if born is not None:
            record = record.model_copy(
                update={"age": calculate_age(born, self._clock().date())}
            )
        self._cache[record.id] = _CacheEntry(record=record, cached_at=self._clock())
        return record

    def get_cached(self, patient_id: str) -> PatientSyncRecord | None:
        entry = self._cache.get(patient_id)
        return entry.record if entry is not None else None

    def cached_at(self, patient_id: str) -> datetime | None:
        entry = self._cache.get(patient_id)
        return entry.cached_at if entry is not None else None

    def clear_patient_cache(self, patient_id: str) -> None:
        self._cache.pop(patient_id, None)

    def clear_all_cache(self) -> None:
        self._cache.clear()

    async def get_profile(
        self, patient_id: str, *, force_refresh: bool = False
    ) -> PatientSyncRecord | None:
        """Return the profile for ``patient_id`` or ``None`` when none exists.

        ``force_refresh`` skips the private cache lookup but keeps the cached
        record as a fallback.
        """

        normalized = patient_id.strip()
        if not normalized:
            raise ValueError("Patient identifier cannot be empty")

        cached = self._cache.get(normalized)
        if cached is not None and not force_refresh and self._is_fresh(cached):
            return cached.record

        for template in self.PROFILE_ENDPOINTS:
            endpoint = template.format(patient_id=quote(normalized, safe=""))
            try:
                payload = await self._request_json(endpoint)
                if not isinstance(payload, Mapping) or not payload:
                    continue
                record = PatientSyncRecord.model_validate(
                    {"id": normalized, **payload}
                )
            except (PatientFetchError, ValidationError) as exc:
                logger.info(
                    "patient_profile_endpoint_failed",
                    patient_id=normalized,
                    endpoint=endpoint,
                    error=str(exc),
                )
                continue
            return self.cache_patient_data(record)

        logger.warning(
            "patient_profile_unavailable",
            patient_id=normalized,
            serving_stale=cached is not None,
        )
        return cached.record if cached is not None else None

    async def get_last_updated_hint(self, patient_id: str) -> datetime | None:
        """Return the server's last-modified time, or the local cache time."""

        endpoint = self.LAST_UPDATED_ENDPOINT.format(
            patient_id=quote(patient_id, safe="")
        )
        try:
            payload = await self._request_json(endpoint)
        except PatientFetchError as exc:
            logger.warning(
                "patient_last_updated_failed", patient_id=patient_id, error=str(exc)
            )
            payload = None

        if isinstance(payload, Mapping) and payload.get("lastUpdated"):
            try:
                return ensure_utc(
                    _TIMESTAMP_ADAPTER.validate_python(payload["lastUpdated"])
                )
            except ValidationError:
                logger.warning(
                    "patient_last_updated_unparseable",
                    patient_id=patient_id,
                    value=str(payload["lastUpdated"]),
                )
        return self.cached_at(patient_id)

    async def get_patients_batch_info(
        self, patient_ids: Sequence[str]
    ) -> list[PatientSyncRecord]:
        """Fetch several patients in one call.

        Raises :class:`PatientFetchError` when the call itself fails; entries
        that do not parse are logged and skipped.
        """

        ids = [pid.strip() for pid in patient_ids if pid and pid.strip()]
        if not ids:
            return []

        payload = await self._request_json(
            self.BATCH_ENDPOINT, params={"ids": ",".join(ids)}
        )
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise PatientFetchError(self.BATCH_ENDPOINT, reason="expected a list")

        records: list[PatientSyncRecord] = []
        for item in payload:
            try:
                record = PatientSyncRecord.model_validate(item)
            except ValidationError as exc:
                logger.warning(
                    "patient_batch_entry_skipped",
                    error_count=exc.error_count(),
                )
                continue
            records.append(self.cache_patient_data(record))
        return records


__all__ = ["DEFAULT_TTL", "PatientDataSource", "PatientProfileSource"]
