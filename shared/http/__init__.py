"""Error definitions and problem-details helpers used across services."""

from .errors import (
    EventLogStorageError,
    PatientDataUnavailableError,
    PatientFetchError,
    PatientIntegrityError,
    PatientValidationError,
    ProblemDetails,
    ProblemDetailsException,
    problem_details_from_exception,
)

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
