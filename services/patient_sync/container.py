"""Construction of the patient sync stack from settings."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

import httpx

from services.patient_sync.broadcast import PatientUpdateBroadcaster
from services.patient_sync.coordinator import SyncCoordinator
from services.patient_sync.data_source import PatientDataSource
from services.patient_sync.event_log import DurableEventLog
from services.patient_sync.listener import (
    AppLifecycle,
    PatientSyncWatcher,
    SyncListener,
)
from services.patient_sync.resilience import RetryPolicy
from services.patient_sync.storage import (
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    KeyValueStore,
)
from shared.config.settings import Settings, get_settings
from shared.observability.logger import configure_logging, get_logger

logger = get_logger(__name__)


def _strip_trailing_slash(url: str) -> str:
    return url[:-1] if url.endswith("/") else url


def _create_http_client(base_url: str, timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=_strip_trailing_slash(base_url), timeout=timeout)


def _create_store(settings: Settings) -> KeyValueStore:
    if settings.event_log.storage_path:
        return JsonFileKeyValueStore(settings.event_log.storage_path)
    return InMemoryKeyValueStore()


@dataclass
class SyncStack:
    """Every sync component for one application instance."""

    settings: Settings
    http_client: httpx.AsyncClient
    store: KeyValueStore
    event_log: DurableEventLog
    source: PatientDataSource
    coordinator: SyncCoordinator
    broadcaster: PatientUpdateBroadcaster
    listener: SyncListener
    lifecycle: AppLifecycle
    owns_http_client: bool = field(default=False)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        store: KeyValueStore | None = None,
        lifecycle: AppLifecycle | None = None,
    ) -> "SyncStack":
        """Build the stack; an ``http_client`` passed in is not closed by it."""

        resolved = settings or get_settings()
        configure_logging(
            service_name=resolved.logging.service_name,
            level=resolved.logging.level,
            json_output=resolved.logging.json_output,
        )

        owns_http_client = http_client is None
        client = http_client or _create_http_client(
            resolved.api.base_url, resolved.api.timeout
        )
        kv_store = store or _create_store(resolved)
        app_lifecycle = lifecycle or AppLifecycle()

        event_log = DurableEventLog(
            kv_store,
            storage_key=resolved.event_log.storage_key,
            capacity=resolved.event_log.capacity,
            initial_slice=resolved.event_log.initial_slice,
        )
        source = PatientDataSource(
            client, ttl=timedelta(seconds=resolved.cache.source_ttl_seconds)
        )
        coordinator = SyncCoordinator(
            source,
            ttl=timedelta(seconds=resolved.cache.coordinator_ttl_seconds),
            retry_policy=RetryPolicy(
                attempts=resolved.retry.attempts,
                backoff_seconds=resolved.retry.backoff_seconds,
            ),
        )
        broadcaster = PatientUpdateBroadcaster(event_log, source)
        listener = SyncListener(
            event_log,
            source,
            lifecycle=app_lifecycle,
            coordinator=coordinator,
            broadcaster=broadcaster,
            poll_interval=timedelta(seconds=resolved.listener.poll_interval_seconds),
            purge_interval=timedelta(seconds=resolved.listener.purge_interval_seconds),
            max_event_age=timedelta(hours=resolved.event_log.max_age_hours),
        )
        logger.info(
            "sync_stack_created",
            base_url=resolved.api.base_url,
            persistent_log=bool(resolved.event_log.storage_path),
        )
        return cls(
            settings=resolved,
            http_client=client,
            store=kv_store,
            event_log=event_log,
            source=source,
            coordinator=coordinator,
            broadcaster=broadcaster,
            listener=listener,
            lifecycle=app_lifecycle,
            owns_http_client=owns_http_client,
        )

    async def watch_patient(self, patient_id: str) -> PatientSyncWatcher:
        """Return a loaded watcher for one patient using the configured freshness window."""

        return await PatientSyncWatcher.create(
            self.listener,
            self.source,
            patient_id,
            freshness_window=timedelta(
                seconds=self.settings.listener.freshness_window_seconds
            ),
        )

    async def aclose(self) -> None:
        """Stop the poll loop and close the HTTP client when owned."""

        await self.listener.stop()
        if self.owns_http_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "SyncStack":
        await self.listener.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


__all__ = ["SyncStack"]
