"""Bounded, cancellable retries for backend round trips.

Transient failures (backend unreachable, connection resets, timeouts)
are retried with exponential backoff: 200ms, 400ms, ... capped at 5s,
three attempts in total by default. Everything else, including record
and field lookups that simply failed, is raised on the first attempt.

Backoff sleeps wait on the agent's cancellation event so shutdown is
never held up by a pending retry.

Example:
    >>> cancel = threading.Event()
    >>> records = with_retry(fetcher.list_records, RetryConfig(), cancel)
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import CancelledError
from typing import TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from keeper_injector.errors import BackendUnavailableError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_EXCEPTIONS = (
    BackendUnavailableError,
    ConnectionError,
    TimeoutError,
)


class RetryConfig(BaseModel):
    """Retry policy for backend calls."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=3, ge=1, description="Total attempts, including the first")
    base_delay: float = Field(default=0.2, ge=0, description="First backoff delay in seconds")
    max_delay: float = Field(default=5.0, ge=0, description="Backoff ceiling in seconds")

    def delays(self) -> list[float]:
        """Return the sleeps between attempts."""
        return [
            min(self.base_delay * (2**attempt), self.max_delay)
            for attempt in range(self.max_attempts - 1)
        ]


def _log_retry_attempt(retry_state: RetryCallState) -> None:
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retry.attempt_failed",
        attempt=retry_state.attempt_number,
        error_type=type(exception).__name__ if exception else "unknown",
        error_message=str(exception) if exception else "unknown",
        next_wait_seconds=(retry_state.next_action.sleep if retry_state.next_action else 0),
    )


def _cancellable_sleep(cancel: threading.Event) -> Callable[[float], None]:
    def sleep(seconds: float) -> None:
        if cancel.wait(seconds):
            raise CancelledError("retry cancelled")

    return sleep


def with_retry(
    fn: Callable[[], T],
    config: RetryConfig | None = None,
    cancel: threading.Event | None = None,
) -> T:
    """Call ``fn`` with bounded exponential-backoff retries.

    Args:
        fn: Zero-argument callable performing one backend round trip.
        config: Retry policy; defaults to three attempts from 200ms to 5s.
        cancel: Event that aborts waiting between attempts.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        CancelledError: If ``cancel`` is set before or during a backoff.
        Exception: The last error raised by ``fn`` once attempts run out,
            or the first non-transient one.
    """
    config = config or RetryConfig()
    cancel = cancel or threading.Event()
    if cancel.is_set():
        raise CancelledError("retry cancelled")

    retrying = Retrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(multiplier=config.base_delay, min=0, max=config.max_delay),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        before_sleep=_log_retry_attempt,
        sleep=_cancellable_sleep(cancel),
        reraise=True,
    )
    return retrying(fn)


__all__ = ["CancelledError", "RETRYABLE_EXCEPTIONS", "RetryConfig", "with_retry"]
