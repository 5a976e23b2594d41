"""Validation, sanitization and checksums for patient sync data.

Every function here is pure: inputs are never mutated and the only ambient
input is the reference date used for age arithmetic, which callers may pin
through ``today``.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, TypeVar, overload

from pydantic import AnyUrl, TypeAdapter, ValidationError

from shared.models.patient import PatientPatch, PatientSyncRecord, to_camel

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{0,15}$")
PHONE_FORMATTING = re.compile(r"[\s\-()]")

MAX_NAME_LENGTH = 50
MAX_AGE_YEARS = 150

CHECKSUM_FIELDS: tuple[str, ...] = (
    "id",
    "first_name",
    "last_name",
    "email",
    "date_of_birth",
    "age",
)
CRITICAL_FIELDS: tuple[str, ...] = ("first_name", "last_name", "email")
COMPARED_FIELDS: tuple[str, ...] = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "date_of_birth",
    "age",
)
SENSITIVE_FIELDS: frozenset[str] = frozenset({"email", "date_of_birth"})

_URL_ADAPTER = TypeAdapter(AnyUrl)

RecordT = TypeVar("RecordT", PatientPatch, PatientSyncRecord)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a validation or integrity check."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class RecordComparison:
    """Fields that differ between a cached record and an update."""

    changes: list[str] = field(default_factory=list)
    sensitive_changes: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)


def parse_date(value: str | date | None) -> date | None:
    """Parse an ISO date or timestamp string, returning ``None`` when unparseable."""

    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = value.strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def calculate_age(date_of_birth: str | date, today: date | None = None) -> int:
    """Return the age in whole years on ``today`` for ``date_of_birth``."""

    born = parse_date(date_of_birth)
    if born is None:
        raise ValueError(f"Invalid date of birth: {date_of_birth!r}")
    reference = today or date.today()
    before_birthday = (reference.month, reference.day) < (born.month, born.day)
    return reference.year - born.year - int(before_birthday)


def validate_date_of_birth(value: str | None, today: date | None = None) -> str | None:
    """Return an error message for ``value``, or ``None`` when it is acceptable."""

    born = parse_date(value)
    if born is None:
        return "Invalid date of birth"
    reference = today or date.today()
    if born > reference:
        return "Date of birth cannot be in the future"
    if calculate_age(born, reference) > MAX_AGE_YEARS:
        return f"Date of birth implies an age over {MAX_AGE_YEARS} years"
    return None


def _check_name(label: str, value: str | None, errors: list[str]) -> None:
    stripped = (value or "").strip()
    if not stripped:
        errors.append(f"{label} cannot be empty")
    elif len(stripped) > MAX_NAME_LENGTH:
        errors.append(f"{label} cannot exceed {MAX_NAME_LENGTH} characters")


def validate(patch: PatientPatch, *, today: date | None = None) -> ValidationResult:
    """Validate the provided fields of ``patch``.

    Fields the patch does not carry are skipped so partial updates pass.
    """

    errors: list[str] = []
    warnings: list[str] = []

    if patch.is_provided("first_name"):
        _check_name("First name", patch.first_name, errors)
    if patch.is_provided("last_name"):
        _check_name("Last name", patch.last_name, errors)

    if patch.is_provided("email"):
        email = (patch.email or "").strip()
        if not EMAIL_PATTERN.match(email):
            errors.append("Invalid email format")

    if patch.phone:
        if not PHONE_PATTERN.match(PHONE_FORMATTING.sub("", patch.phone)):
            warnings.append("Phone number format may be invalid")

    if patch.date_of_birth is not None:
        dob_error = validate_date_of_birth(patch.date_of_birth, today)
        if dob_error:
            errors.append(dob_error)
        elif patch.age is not None:
            calculated = calculate_age(patch.date_of_birth, today)
            difference = abs(patch.age - calculated)
            if difference > 1:
                errors.append(
                    "Age and date of birth are inconsistent: "
                    f"provided {patch.age}, calculated {calculated}"
                )
            elif difference > 0:
                warnings.append(
                    f"Age mismatch: provided {patch.age}, calculated {calculated}"
                )

    if patch.age is not None and not 0 <= patch.age <= MAX_AGE_YEARS:
        errors.append(f"Age must be between 0 and {MAX_AGE_YEARS}")

    if patch.profile_image:
        try:
            _URL_ADAPTER.validate_python(patch.profile_image.strip())
        except ValidationError:
            warnings.append("Profile image URL may be invalid")

    return ValidationResult(errors=errors, warnings=warnings)


def _sanitize_values(values: dict[str, Any], today: date | None) -> dict[str, Any]:
    cleaned = dict(values)
    for name in ("id", "first_name", "last_name", "profile_image"):
        if cleaned.get(name) is not None:
            cleaned[name] = cleaned[name].strip()
    if cleaned.get("email") is not None:
        cleaned["email"] = cleaned["email"].strip().lower()
    if cleaned.get("phone") is not None:
        cleaned["phone"] = PHONE_FORMATTING.sub("", cleaned["phone"])

    born = parse_date(cleaned.get("date_of_birth"))
    if born is not None:
        cleaned["date_of_birth"] = born.isoformat()
        cleaned["age"] = calculate_age(born, today)
    elif cleaned.get("date_of_birth") is not None:
        cleaned["date_of_birth"] = cleaned["date_of_birth"].strip()
    if cleaned.get("age") is not None:
        cleaned["age"] = int(round(cleaned["age"]))
    return cleaned


@overload
def sanitize(data: PatientPatch, *, today: date | None = ...) -> PatientPatch: ...


@overload
def sanitize(
    data: PatientSyncRecord, *, today: date | None = ...
) -> PatientSyncRecord: ...


def sanitize(data: RecordT, *, today: date | None = None) -> RecordT:
    """Return a normalized copy of ``data``.

    Strings are trimmed, the email lower-cased and phone formatting removed.
    When a date of birth is present the age is always recomputed from it.
    """

    if isinstance(data, PatientPatch):
        return PatientPatch.model_validate(_sanitize_values(data.provided(), today))
    values = _sanitize_values(data.model_dump(), today)
    return PatientSyncRecord.model_validate(values)


def checksum(data: PatientSyncRecord | PatientPatch) -> str:
    """Return a stable short digest of the identity, contact and birth fields."""

    parts = []
    for name in CHECKSUM_FIELDS:
        value = getattr(data, name, None)
        parts.append("" if value is None else str(value))
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:16]


def verify_checksum(data: PatientSyncRecord | PatientPatch, expected: str) -> bool:
    """Return ``True`` when ``data`` still hashes to ``expected``."""

    return checksum(data) == expected


def check_integrity(
    original: PatientSyncRecord | PatientPatch,
    replacement: PatientSyncRecord | PatientPatch,
) -> ValidationResult:
    """Check that ``replacement`` may safely overwrite ``original``.

    An identity mismatch is an error. Critical fields present before and
    absent now are reported as warnings since partial updates are expected.
    """

    errors: list[str] = []
    warnings: list[str] = []

    if original.id and replacement.id and original.id != replacement.id:
        errors.append("Patient ID mismatch during sync")

    for name in CRITICAL_FIELDS:
        if getattr(original, name, None) and not getattr(replacement, name, None):
            warnings.append(f"Critical field '{to_camel(name)}' was lost during sync")

    return ValidationResult(errors=errors, warnings=warnings)


def compare_records(
    current: PatientSyncRecord | PatientPatch,
    updated: PatientSyncRecord | PatientPatch,
) -> RecordComparison:
    """Return which compared fields ``updated`` changes relative to ``current``."""

    changes: list[str] = []
    sensitive: list[str] = []
    for name in COMPARED_FIELDS:
        new_value = getattr(updated, name, None)
        if new_value is None or getattr(current, name, None) == new_value:
            continue
        changes.append(to_camel(name))
        if name in SENSITIVE_FIELDS:
            sensitive.append(to_camel(name))
    return RecordComparison(changes=changes, sensitive_changes=sensitive)


__all__ = [
    "RecordComparison",
    "ValidationResult",
    "calculate_age",
    "check_integrity",
    "checksum",
    "compare_records",
    "parse_date",
    "sanitize",
    "validate",
    "validate_date_of_birth",
    "verify_checksum",
]
