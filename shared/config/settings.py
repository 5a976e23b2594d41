"""Application configuration powered by ``pydantic-settings``."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PatientApiSettings(BaseSettings):
    """Connection details for the remote patient REST backend."""

    base_url: str = Field(
        default="http://localhost:3000/api", description="Base URL of the patient API"
    )
    timeout: float = Field(
        default=30.0, ge=1.0, description="Timeout in seconds for outbound requests"
    )

    model_config = SettingsConfigDict(env_prefix="PATIENT_API_", env_file=".env", extra="ignore")


class CacheSettings(BaseSettings):
    """Time-to-live windows for both patient cache tiers."""

    coordinator_ttl_seconds: float = Field(default=300.0, ge=0.0)
    source_ttl_seconds: float = Field(default=300.0, ge=0.0)

    model_config = SettingsConfigDict(env_prefix="SYNC_CACHE_", env_file=".env", extra="ignore")


class RetrySettings(BaseSettings):
    """Retry behaviour for patient fetches."""

    attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(
        default=1.0, ge=0.0, description="Linear backoff step, multiplied by the attempt number"
    )

    model_config = SettingsConfigDict(env_prefix="SYNC_RETRY_", env_file=".env", extra="ignore")


class EventLogSettings(BaseSettings):
    """Durable patient update log configuration."""

    storage_key: str = Field(default="patient_sync_events")
    capacity: int = Field(default=50, ge=1, description="Maximum retained entries")
    max_age_hours: float = Field(default=24.0, gt=0.0)
    initial_slice: int = Field(
        default=10, ge=1, description="Entries returned when reading without a checkpoint"
    )
    storage_path: Optional[str] = Field(
        default=None, description="JSON file backing the log; in-memory when unset"
    )

    model_config = SettingsConfigDict(env_prefix="SYNC_EVENT_LOG_", env_file=".env", extra="ignore")


class ListenerSettings(BaseSettings):
    """Poll loop cadence and freshness window."""

    poll_interval_seconds: float = Field(default=30.0, gt=0.0)
    purge_interval_seconds: float = Field(default=3600.0, gt=0.0)
    freshness_window_seconds: float = Field(default=300.0, gt=0.0)

    model_config = SettingsConfigDict(env_prefix="SYNC_LISTENER_", env_file=".env", extra="ignore")


class LoggingSettings(BaseSettings):
    """Logging configuration for the sync layer."""

    level: str = Field(default="INFO")
    service_name: str = Field(default="patient_sync")
    json_output: bool = Field(
        default=False, description="Emit loguru records as JSON instead of pipe-separated lines"
    )

    model_config = SettingsConfigDict(env_prefix="SYNC_LOG_", env_file=".env", extra="ignore")


class Settings(BaseSettings):
    """Top-level settings namespace."""

    api: PatientApiSettings = Field(default_factory=PatientApiSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    event_log: EventLogSettings = Field(default_factory=EventLogSettings)
    listener: ListenerSettings = Field(default_factory=ListenerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(env_file=".env", env_nested_delimiter="__", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance for application use."""

    return Settings()


__all__ = [
    "CacheSettings",
    "EventLogSettings",
    "ListenerSettings",
    "LoggingSettings",
    "PatientApiSettings",
    "RetrySettings",
    "Settings",
    "get_settings",
]
