"""Service modules for the patient sync layer."""

__all__ = ["patient_sync"]
