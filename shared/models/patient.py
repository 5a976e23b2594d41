"""Patient synchronization data models shared by the sync services."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_camel(value: str) -> str:
    """Convert ``snake_case`` ``value`` into ``camelCase`` for JSON aliases."""

    components = value.split("_")
    if not components:
        return value
    first, *rest = components
    return first + "".join(token.capitalize() for token in rest)


def utcnow() -> datetime:
    """Return the current timezone-aware UTC timestamp."""

    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC timestamp, assuming UTC when naive."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


_CAMEL_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    coerce_numbers_to_str=True,
    extra="ignore",
)


class PatientSyncRecord(BaseModel):
    """Canonical patient shape held by every cache tier.

    Only ``id`` is mandatory: a record created by a partial update (for
    example a birth date edit on a patient never fetched before) carries
    whatever fields have been observed so far.
    """

    model_config = _CAMEL_CONFIG

    id: str = Field(min_length=1, description="Stable patient identifier")
    first_name: str | None = Field(default=None)
    last_name: str | None = Field(default=None)
    email: str | None = Field(default=None)
    phone: str | None = Field(default=None)
    date_of_birth: str | None = Field(
        default=None, description="ISO-8601 calendar date of birth"
    )
    age: int | None = Field(default=None)
    profile_image: str | None = Field(default=None)
    last_updated: datetime | None = Field(
        default=None, description="Set by the cache on every write"
    )
    sync_checksum: str | None = Field(default=None)

    def to_payload(self) -> dict[str, Any]:
        """Return the camelCase JSON payload for this record."""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PatientPatch(BaseModel):
    """Partial update for a :class:`PatientSyncRecord`.

    A field counts as *provided* when it was explicitly passed. ``None`` for
    an optional field (phone, date of birth, age, profile image) is treated
    the same as omitting it; ``None`` for a name or the email is validated as
    an empty value. Patches are frozen because one instance is shared by
    every event derived from the same update.
    """

    model_config = ConfigDict(**_CAMEL_CONFIG, frozen=True)

    id: str | None = Field(default=None)
    first_name: str | None = Field(default=None)
    last_name: str | None = Field(default=None)
    email: str | None = Field(default=None)
    phone: str | None = Field(default=None)
    date_of_birth: str | None = Field(default=None)
    age: int | float | None = Field(default=None)
    profile_image: str | None = Field(default=None)

    @classmethod
    def from_data(
        cls, data: "PatientPatch | PatientSyncRecord | Mapping[str, Any]"
    ) -> "PatientPatch":
        """Coerce ``data`` into a patch, keeping only the fields it carries."""

        if isinstance(data, PatientPatch):
            return data
        if isinstance(data, PatientSyncRecord):
            payload = data.model_dump(
                exclude_none=True, exclude={"last_updated", "sync_checksum"}
            )
            return cls.model_validate(payload)
        return cls.model_validate(dict(data))

    def is_provided(self, name: str) -> bool:
        """Return ``True`` when ``name`` was explicitly set on the patch."""

        return name in self.model_fields_set

    def provided(self) -> dict[str, Any]:
        """Return the explicitly set, non-``None`` fields keyed by attribute name."""

        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if name in self.model_fields_set and getattr(self, name) is not None
        }

    def with_id(self, patient_id: str) -> "PatientPatch":
        """Return a copy of the patch whose ``id`` defaults to ``patient_id``."""

        if self.is_provided("id") and self.id is not None:
            return self
        payload = self.provided()
        payload["id"] = patient_id
        return type(self).model_validate(payload)

    def to_payload(self) -> dict[str, Any]:
        """Return the camelCase JSON payload of the provided fields."""

        return self.model_dump(
            mode="json", by_alias=True, exclude_unset=True, exclude_none=True
        )


def merge_patch(
    existing: PatientSyncRecord | None, patch: PatientPatch
) -> PatientSyncRecord:
    """Apply ``patch`` on top of ``existing``.

    Provided patch values win; fields the patch does not carry keep the
    existing value. ``existing`` is never mutated.
    """

    merged: dict[str, Any] = (
        existing.model_dump(exclude={"last_updated", "sync_checksum"})
        if existing is not None
        else {}
    )
    merged.update(patch.provided())
    if existing is not None:
        merged["id"] = existing.id
    if "age" in merged and merged["age"] is not None:
        merged["age"] = int(round(merged["age"]))
    return PatientSyncRecord.model_validate(merged)


class SyncEventType(str, Enum):
    """In-process notification categories fanned out by the coordinator."""

    PATIENT_PROFILE_UPDATED = "patient_profile_updated"
    PATIENT_AGE_UPDATED = "patient_age_updated"
    PATIENT_BIRTH_DATE_UPDATED = "patient_birth_date_updated"
    PATIENT_CONTACT_UPDATED = "patient_contact_updated"

    def __str__(self) -> str:  # pragma: no cover - trivial wrapper
        return self.value


class SyncEvent(BaseModel):
    """Immutable notification describing one patient mutation."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    type: SyncEventType
    patient_id: str
    data: PatientPatch
    timestamp: datetime = Field(default_factory=utcnow)
    triggered_by: str


class PatientUpdateLogEntry(BaseModel):
    """Durable record of a broadcast patient update."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    patient_id: str
    updated_data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp", mode="after")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        """Store every timestamp in UTC so entries from any writer compare."""

        return ensure_utc(value)


__all__ = [
    "PatientPatch",
    "PatientSyncRecord",
    "PatientUpdateLogEntry",
    "SyncEvent",
    "SyncEventType",
    "ensure_utc",
    "merge_patch",
    "to_camel",
    "utcnow",
]
