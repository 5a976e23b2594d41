"""Retry orchestration for patient fetches.

Wraps Tenacity so every caller that retries shares one policy object and
the same linear backoff schedule.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from shared.observability.logger import get_logger

T = TypeVar("T")

SleepFunction = Callable[[float], Awaitable[None]]

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration: ``attempts`` tries with a linear backoff.

    The pause after the n-th failed attempt is ``backoff_seconds * n``.
    """

    attempts: int = 3
    backoff_seconds: float = 1.0
    retry_exceptions: tuple[type[BaseException], ...] = (Exception,)

    def delay_for(self, attempt_number: int) -> float:
        """Return the pause that follows failed attempt ``attempt_number``."""

        return self.backoff_seconds * attempt_number


def _log_retry(call_state: RetryCallState) -> None:
    outcome = call_state.outcome
    error = outcome.exception() if outcome is not None else None
    logger.warning(
        "retrying_after_failure",
        attempt=call_state.attempt_number,
        error=str(error) if error is not None else None,
    )


async def call_async_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy | None = None,
    sleep: SleepFunction | None = None,
    **kwargs: Any,
) -> T:
    """Execute async ``func`` under ``policy``, re-raising the final error."""

    resolved_policy = policy or RetryPolicy()
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(resolved_policy.retry_exceptions),
        stop=stop_after_attempt(resolved_policy.attempts),
        wait=wait_incrementing(
            start=resolved_policy.backoff_seconds,
            increment=resolved_policy.backoff_seconds,
        ),
        sleep=sleep or asyncio.sleep,
        before_sleep=_log_retry,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            return await func(*args, **kwargs)

    raise RuntimeError("Async retry loop terminated without executing the function.")


__all__ = ["RetryPolicy", "SleepFunction", "call_async_with_retry"]
