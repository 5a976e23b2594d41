"""Poll loop consuming the durable patient update log.

The listener checks the log when the host application returns to the
foreground and on a fixed interval while it stays there. Each check resumes
from a checkpoint, force-refetches the patients it finds and hands the batch
to registered observers.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Coroutine

from pydantic import ValidationError

from services.patient_sync.data_source import PatientProfileSource
from services.patient_sync.event_log import DEFAULT_MAX_AGE, NotificationChannel
from shared.models.patient import (
    PatientPatch,
    PatientSyncRecord,
    PatientUpdateLogEntry,
    merge_patch,
    utcnow,
)
from shared.observability.logger import get_logger, sync_context

if TYPE_CHECKING:  # pragma: no cover - import for type checking only
    from services.patient_sync.broadcast import PatientUpdateBroadcaster
    from services.patient_sync.coordinator import SyncCoordinator

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL = timedelta(seconds=30)
DEFAULT_PURGE_INTERVAL = timedelta(hours=1)
DEFAULT_FRESHNESS_WINDOW = timedelta(minutes=5)

UpdatesCallback = Callable[[list[PatientUpdateLogEntry]], None]
LifecycleCallback = Callable[["LifecycleState"], None]


class LifecycleState(str, Enum):
    """Foreground states reported by the host application."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    BACKGROUND = "background"


class AppLifecycle:
    """Observable holder of the host application's foreground state."""

    def __init__(self, state: LifecycleState = LifecycleState.ACTIVE) -> None:
        self._state = LifecycleState(state)
        self._listeners: list[LifecycleCallback] = []

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is LifecycleState.ACTIVE

    def add_listener(self, callback: LifecycleCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def set_state(self, state: LifecycleState) -> None:
        """Record a transition and notify listeners when the state changed."""

        next_state = LifecycleState(state)
        if next_state is self._state:
            return
        self._state = next_state
        for callback in list(self._listeners):
            try:
                callback(next_state)
            except Exception:
                logger.exception("lifecycle_listener_failed", state=next_state.value)


class SyncListener:
    """Detect updates written by other app instances and refresh local data."""

    def __init__(
        self,
        channel: NotificationChannel,
        source: PatientProfileSource,
        *,
        lifecycle: AppLifecycle | None = None,
        coordinator: "SyncCoordinator | None" = None,
        broadcaster: "PatientUpdateBroadcaster | None" = None,
        poll_interval: timedelta = DEFAULT_POLL_INTERVAL,
        purge_interval: timedelta = DEFAULT_PURGE_INTERVAL,
        max_event_age: timedelta = DEFAULT_MAX_AGE,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._channel = channel
        self._source = source
        self._lifecycle = lifecycle or AppLifecycle()
        self._coordinator = coordinator
        self._broadcaster = broadcaster
        self._poll_interval = poll_interval
        self._purge_interval = purge_interval
        self._max_event_age = max_event_age
        self._clock = clock
        self._sleep = sleep

        self._checkpoint: datetime | None = None
        self._recent_updates: list[PatientUpdateLogEntry] = []
        self._watchers: list[UpdatesCallback] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._check_lock = asyncio.Lock()
        self._remove_lifecycle_listener: Callable[[], None] | None = None
        self._started = False

    @property
    def lifecycle(self) -> AppLifecycle:
        return self._lifecycle

    @property
    def recent_updates(self) -> list[PatientUpdateLogEntry]:
        return list(self._recent_updates)

    @property
    def has_updates(self) -> bool:
        return bool(self._recent_updates)

    @property
    def last_check_time(self) -> datetime | None:
        return self._checkpoint

    @property
    def running(self) -> bool:
        return self._started

    def watch(self, callback: UpdatesCallback) -> Callable[[], None]:
        """Call ``callback`` with every non-empty batch of new updates."""

        self._watchers.append(callback)

        def unwatch() -> None:
            if callback in self._watchers:
                self._watchers.remove(callback)

        return unwatch

    def _publish(self, updates: list[PatientUpdateLogEntry]) -> None:
        for callback in list(self._watchers):
            try:
                callback(list(updates))
            except Exception:
                logger.exception("sync_watcher_failed", update_count=len(updates))

    async def check_for_updates(self) -> list[PatientUpdateLogEntry]:
        """Read entries newer than the checkpoint and refresh their patients.

        Concurrent checks run one after another so a batch is only handled once.
        """

        async with self._check_lock:
            with sync_context(trigger="poll"):
                return await self._check_once()

    async def _check_once(self) -> list[PatientUpdateLogEntry]:
        try:
            updates = await self._channel.read_since(self._checkpoint)
        except Exception as exc:
            logger.error("patient_update_check_failed", error=str(exc))
            return []
        if not updates:
            return []

        logger.info("patient_updates_found", update_count=len(updates))
        self._recent_updates = list(updates)
        self._advance_checkpoint(max(entry.timestamp for entry in updates))

        for patient_id in dict.fromkeys(entry.patient_id for entry in updates):
            if self._coordinator is not None:
                self._coordinator.invalidate_patient_cache(patient_id)
            try:
                await self._source.get_profile(patient_id, force_refresh=True)
            except Exception as exc:
                logger.error(
                    "patient_refresh_failed", patient_id=patient_id, error=str(exc)
                )

        self._publish(updates)
        return list(updates)

    def _advance_checkpoint(self, timestamp: datetime) -> None:
        if self._checkpoint is None or timestamp > self._checkpoint:
            self._checkpoint = timestamp

    async def refresh_patient_data(self) -> list[PatientUpdateLogEntry]:
        """Force-refetch every logged patient, then run a regular check."""

        if self._broadcaster is not None:
            await self._broadcaster.force_refresh_all_patients()
        return await self.check_for_updates()

    async def purge_old_events(self) -> int:
        try:
            return await self._channel.purge_older_than(self._max_event_age)
        except Exception:
            logger.exception("event_log_maintenance_failed")
            return 0

    def _on_lifecycle_change(self, state: LifecycleState) -> None:
        if state is not LifecycleState.ACTIVE:
            return
        logger.info("app_active_checking_updates")
        self._spawn(self.check_for_updates())

    def _spawn(self, coro: Coroutine[Any, Any, object]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _poll_loop(self) -> None:
        while True:
            await self._sleep(self._poll_interval.total_seconds())
            if not self._lifecycle.is_active:
                continue
            try:
                await self.check_for_updates()
            except Exception:
                logger.exception("patient_update_poll_failed")

    async def _maintenance_loop(self) -> None:
        while True:
            await self._sleep(self._purge_interval.total_seconds())
            await self.purge_old_events()

    async def start(self) -> None:
        """Run the initial check and purge, then start the periodic tasks."""

        if self._started:
            return
        self._started = True

        await self.check_for_updates()
        self._advance_checkpoint(self._clock())
        await self.purge_old_events()

        self._remove_lifecycle_listener = self._lifecycle.add_listener(
            self._on_lifecycle_change
        )
        self._spawn(self._poll_loop())
        self._spawn(self._maintenance_loop())

    async def stop(self) -> None:
        """Cancel periodic tasks and detach from the lifecycle source."""

        if self._remove_lifecycle_listener is not None:
            self._remove_lifecycle_listener()
            self._remove_lifecycle_listener = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._started = False

    async def __aenter__(self) -> "SyncListener":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()


class PatientSyncWatcher:
    """Single-patient view over a :class:`SyncListener`."""

    def __init__(
        self,
        listener: SyncListener,
        source: PatientProfileSource,
        patient_id: str,
        *,
        freshness_window: timedelta = DEFAULT_FRESHNESS_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._source = source
        self._patient_id = patient_id
        self._freshness_window = freshness_window
        self._clock = clock
        self._patient_data: PatientSyncRecord | None = None
        self._last_update: datetime | None = None
        self._unwatch = listener.watch(self._on_updates)
        self._on_updates(listener.recent_updates)

    @classmethod
    async def create(
        cls,
        listener: SyncListener,
        source: PatientProfileSource,
        patient_id: str,
        **kwargs: Any,
    ) -> "PatientSyncWatcher":
        """Build a watcher and run its initial load."""

        watcher = cls(listener, source, patient_id, **kwargs)
        await watcher.load()
        return watcher

    @property
    def patient_id(self) -> str:
        return self._patient_id

    @property
    def freshness_window(self) -> timedelta:
        return self._freshness_window

    @property
    def patient_data(self) -> PatientSyncRecord | None:
        return self._patient_data

    @property
    def last_update(self) -> datetime | None:
        return self._last_update

    @property
    def is_data_fresh(self) -> bool:
        if self._last_update is None:
            return False
        return self._clock() - self._last_update < self._freshness_window

    def _on_updates(self, updates: list[PatientUpdateLogEntry]) -> None:
        update = next(
            (entry for entry in updates if entry.patient_id == self._patient_id), None
        )
        if update is None:
            return
        try:
            patch = PatientPatch.from_data(update.updated_data).with_id(self._patient_id)
            self._patient_data = merge_patch(self._patient_data, patch)
        except ValidationError as exc:
            logger.warning(
                "patient_update_unusable",
                patient_id=self._patient_id,
                error_count=exc.error_count(),
            )
        self._last_update = update.timestamp

    async def load(self) -> PatientSyncRecord | None:
        """Load the patient once through the source."""

        try:
            record = await self._source.get_profile(self._patient_id)
        except Exception as exc:
            logger.error(
                "patient_load_failed", patient_id=self._patient_id, error=str(exc)
            )
            return self._patient_data
        if record is not None:
            self._patient_data = record
        return self._patient_data

    def close(self) -> None:
        self._unwatch()


__all__ = [
    "AppLifecycle",
    "LifecycleState",
    "PatientSyncWatcher",
    "SyncListener",
]
