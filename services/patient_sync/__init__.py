"""Patient data synchronization: validation, caches, event log and poll loop."""

from .broadcast import PatientUpdateBroadcaster
from .container import SyncStack
from .coordinator import SyncCoordinator, SyncWriteResult
from .data_source import PatientDataSource, PatientProfileSource
from .event_log import DurableEventLog, NotificationChannel
from .listener import AppLifecycle, LifecycleState, PatientSyncWatcher, SyncListener
from .resilience import RetryPolicy, call_async_with_retry
from .storage import InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore
from .views import BatchPatientView, PatientRecordView

__all__ = [
    "AppLifecycle",
    "BatchPatientView",
    "DurableEventLog",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "LifecycleState",
    "NotificationChannel",
    "PatientDataSource",
    "PatientProfileSource",
    "PatientRecordView",
    "PatientSyncWatcher",
    "PatientUpdateBroadcaster",
    "RetryPolicy",
    "SyncCoordinator",
    "SyncListener",
    "SyncStack",
    "SyncWriteResult",
    "call_async_with_retry",
]
