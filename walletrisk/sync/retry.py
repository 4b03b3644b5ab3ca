"""Bounded retry for one wallet sync.

``TransientError`` is retried with exponential backoff up to
``max_attempts``; any other exception is fatal on the first attempt.
The outcome is always returned, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from walletrisk.errors import TransientError
from walletrisk.observability.logger import get_logger

log = get_logger(__name__)


class SyncStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_FATAL = "failed_fatal"


@dataclass
class SyncOutcome:
    status: SyncStatus
    attempts: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is SyncStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "attempts": self.attempts, "error": self.error}


async def run_with_retry(
    fn: Callable[[], Awaitable[Any]],
    max_attempts: int = 3,
    backoff_secs: float = 2.0,
    backoff_max_secs: float = 30.0,
) -> SyncOutcome:
    attempts = 0

    def _log_retry(retry_state: Any) -> None:
        log.warning(
            "sync.retrying",
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=backoff_secs, min=backoff_secs, max=backoff_max_secs),
        retry=retry_if_exception_type(TransientError),
        before_sleep=_log_retry,
    )
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                await fn()
    except RetryError as e:
        last = e.last_attempt.exception()
        return SyncOutcome(SyncStatus.FAILED_RETRYABLE, attempts, str(last))
    except Exception as e:
        return SyncOutcome(SyncStatus.FAILED_FATAL, attempts, f"{type(e).__name__}: {e}")
    return SyncOutcome(SyncStatus.SUCCEEDED, attempts)
