"""Observability utilities shared across the patient sync services."""

from .logger import (
    configure_logging,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    sync_context,
)

__all__ = [
    "configure_logging",
    "generate_correlation_id",
    "get_correlation_id",
    "get_logger",
    "sync_context",
]
