"""Problem details and custom exceptions raised by the patient sync layer."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "EventLogStorageError",
    "PatientDataUnavailableError",
    "PatientFetchError",
    "PatientIntegrityError",
    "PatientValidationError",
    "ProblemDetails",
    "ProblemDetailsException",
    "problem_details_from_exception",
]

_PROBLEM_BASE = "https://patientsync.local/problems"


class ProblemDetails(BaseModel):
    """Representation of an RFC 7807 problem details payload."""

    type: str = Field(
        default="about:blank", description="URI identifying the error type"
    )
    title: str = Field(
        default="An error occurred", description="Short human-readable summary"
    )
    status: int = Field(default=HTTPStatus.INTERNAL_SERVER_ERROR.value)
    detail: str | None = Field(
        default=None, description="Detailed description of the error"
    )
    instance: str | None = Field(
        default=None, description="URI identifying the specific occurrence"
    )
    errors: list[Any] | None = Field(
        default=None, description="Detailed validation errors when applicable"
    )

    model_config = ConfigDict(extra="allow")


class ProblemDetailsException(RuntimeError):
    """Base exception carrying structured problem details metadata."""

    default_status_code = HTTPStatus.INTERNAL_SERVER_ERROR.value
    default_title = "Sync Error"
    default_type = "about:blank"

    def __init__(
        self,
        detail: str | None = None,
        *,
        status_code: int | None = None,
        title: str | None = None,
        type_uri: str | None = None,
        instance: str | None = None,
        extensions: Mapping[str, Any] | None = None,
    ) -> None:
        message = detail or title or self.default_title
        super().__init__(message)
        self.detail = detail or message
        self.status_code = status_code or self.default_status_code
        self.title = title or self.default_title
        self.problem_type = type_uri or self.default_type
        self.instance = instance
        self.extensions = dict(extensions or {})

    def to_problem_details(self, *, instance: str | None = None) -> ProblemDetails:
        """Return a :class:`ProblemDetails` representation of the exception."""

        payload: dict[str, Any] = dict(self.extensions)
        return ProblemDetails(
            type=self.problem_type,
            title=self.title,
            status=self.status_code,
            detail=self.detail,
            instance=instance or self.instance,
            **payload,
        )


class PatientValidationError(ProblemDetailsException):
    """Raised when patient data fails structural or semantic checks."""

    default_status_code = HTTPStatus.UNPROCESSABLE_ENTITY.value
    default_title = "Patient Data Invalid"
    default_type = f"{_PROBLEM_BASE}/patient-validation"

    def __init__(
        self,
        patient_id: str,
        errors: Sequence[str],
        *,
        warnings: Sequence[str] = (),
    ) -> None:
        self.patient_id = patient_id
        self.errors = list(errors)
        self.warnings = list(warnings)
        super().__init__(
            detail=f"Patient '{patient_id}' update failed validation.",
            extensions={
                "patientId": patient_id,
                "errors": self.errors,
                "warnings": self.warnings,
            },
        )


class PatientIntegrityError(ProblemDetailsException):
    """Raised when replacement data contradicts the cached predecessor."""

    default_status_code = HTTPStatus.CONFLICT.value
    default_title = "Patient Data Conflict"
    default_type = f"{_PROBLEM_BASE}/patient-integrity"

    def __init__(self, patient_id: str, errors: Sequence[str]) -> None:
        self.patient_id = patient_id
        self.errors = list(errors)
        super().__init__(
            detail=f"Patient '{patient_id}' update is inconsistent with cached data.",
            extensions={"patientId": patient_id, "errors": self.errors},
        )


class PatientFetchError(ProblemDetailsException):
    """Raised when a remote patient request fails."""

    default_status_code = HTTPStatus.BAD_GATEWAY.value
    default_title = "Patient Fetch Failed"
    default_type = f"{_PROBLEM_BASE}/patient-fetch"

    def __init__(self, endpoint: str, *, reason: str | None = None) -> None:
        self.endpoint = endpoint
        self.reason = reason
        extensions: dict[str, Any] = {"endpoint": endpoint}
        if reason:
            extensions["reason"] = reason
        super().__init__(
            detail=f"Request to '{endpoint}' failed.",
            extensions=extensions,
        )


class PatientDataUnavailableError(ProblemDetailsException):
    """Raised when no patient data, fresh or stale, could be obtained."""

    default_status_code = HTTPStatus.SERVICE_UNAVAILABLE.value
    default_title = "Patient Data Unavailable"
    default_type = f"{_PROBLEM_BASE}/patient-data-unavailable"

    def __init__(self, patient_id: str, *, reason: str | None = None) -> None:
        self.patient_id = patient_id
        self.reason = reason
        extensions: dict[str, Any] = {"patientId": patient_id}
        if reason:
            extensions["reason"] = reason
        message = f"Unable to fetch patient data for {patient_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(detail=message, extensions=extensions)


class EventLogStorageError(RuntimeError):
    """Raised by key-value stores when a read or write cannot complete."""


def problem_details_from_exception(exc: BaseException) -> ProblemDetails:
    """Return problem details for ``exc``, wrapping unexpected errors generically."""

    if isinstance(exc, ProblemDetailsException):
        return exc.to_problem_details()
    return ProblemDetails(
        type=f"{_PROBLEM_BASE}/internal-error",
        title=HTTPStatus.INTERNAL_SERVER_ERROR.phrase,
        status=HTTPStatus.INTERNAL_SERVER_ERROR.value,
        detail=str(exc) or exc.__class__.__name__,
    )
