"""Structured logging for the sync layer.

structlog renders every event as JSON and hands it to the standard library,
which forwards to a single loguru sink. Sync operations run inside
:func:`sync_context` so each line carries the correlation id, the acting user
and the patient it concerns.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from types import FrameType
from typing import Any, Iterator, Mapping, MutableMapping

import structlog
from loguru import logger as loguru_logger

__all__ = [
    "configure_logging",
    "generate_correlation_id",
    "get_correlation_id",
    "get_logger",
    "sync_context",
]

_CORRELATION_ID: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_LINE_FIELDS: tuple[str, ...] = ("service", "correlation_id", "actor_id", "patient_id")


@dataclass
class _LoggingState:
    configured: bool = False
    service_name: str | None = None
    sink_id: int | None = None


_STATE = _LoggingState()


def get_correlation_id() -> str | None:
    """Return the correlation id of the sync operation in progress, if any."""

    return _CORRELATION_ID.get()


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def _resolve_level(level: str | int) -> str:
    if isinstance(level, int):
        name = logging.getLevelName(level)
        return name if isinstance(name, str) and not name.startswith("Level ") else "INFO"
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")
    return level.upper()


def _sync_line(record: Mapping[str, Any]) -> str:
    """Loguru format callable: one pipe-separated line per event."""

    extra = record.get("extra") or {}
    columns = [record["time"].isoformat(), f"{record['level'].name:<8}"]
    columns.extend(str(extra.get(name) or "-") for name in _LINE_FIELDS)
    # the returned string is itself a format template
    message = str(record.get("message", "")).replace("{", "{{").replace("}", "}}")
    columns.append(message)
    return " | ".join(columns) + "\n"


def _add_correlation_id(
    _: Any, __: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor filling ``correlation_id`` from the active context."""

    correlation_id = get_correlation_id()
    if correlation_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = correlation_id
    return event_dict


class LoguruInterceptHandler(logging.Handler):
    """Forward standard ``logging`` records, structlog's included, to loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - thin wrapper
        try:
            level: str | int = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame: FrameType | None = logging.currentframe()
        depth = 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        loguru_logger.bind(
            logger=record.name, correlation_id=get_correlation_id()
        ).opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(
    *,
    service_name: str | None = None,
    level: str | int = "INFO",
    json_output: bool = False,
) -> None:
    """Install the loguru sink and the structlog pipeline.

    The sink and processors are installed once per process. Calling again
    only rebinds ``service_name``.
    """

    level_name = _resolve_level(level)

    if not _STATE.configured:
        loguru_logger.remove()
        _STATE.sink_id = loguru_logger.add(
            sys.stderr,
            level=level_name,
            format=_sync_line,
            serialize=json_output,
            enqueue=True,
            backtrace=False,
            diagnose=False,
        )
        logging.basicConfig(
            handlers=[LoguruInterceptHandler()], level=level_name, force=True
        )
        logging.captureWarnings(True)
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                _add_correlation_id,
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        _STATE.configured = True

    if service_name:
        _STATE.service_name = service_name
        loguru_logger.configure(extra={"service": service_name})
        structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name) if name else structlog.get_logger()


@contextmanager
def sync_context(
    correlation_id: str | None = None,
    *,
    actor_id: str | None = None,
    patient_id: str | None = None,
    **extra: Any,
) -> Iterator[str]:
    """Bind a correlation id, the acting user and the patient for the block.

    Values bound by an enclosing context are restored when the block exits.
    """

    cid = correlation_id or generate_correlation_id()
    values: dict[str, Any] = {
        key: value for key, value in extra.items() if key != "correlation_id"
    }
    if actor_id is not None:
        values["actor_id"] = actor_id
    if patient_id is not None:
        values["patient_id"] = patient_id
    if _STATE.service_name:
        values.setdefault("service", _STATE.service_name)
    values["correlation_id"] = cid

    outer = structlog.contextvars.get_contextvars()
    token = _CORRELATION_ID.set(cid)
    structlog.contextvars.bind_contextvars(**values)
    try:
        with loguru_logger.contextualize(**values):
            yield cid
    finally:
        structlog.contextvars.unbind_contextvars(*values)
        restored = {key: outer[key] for key in values if key in outer}
        if restored:
            structlog.contextvars.bind_contextvars(**restored)
        _CORRELATION_ID.reset(token)
