"""Shared retry policy for outbound HTTP calls.

Wraps tenacity's AsyncRetrying so the provider client and the artifact
migrator retry transient failures (connect errors, timeouts, 429, 5xx) the
same way, with bounded exponential backoff.

Retry Strategy (defaults):
    - Max attempts: 3
    - Backoff: 1s, 2s, 4s ... capped at 10s
    - Non-retriable errors are re-raised immediately

Usage:
    policy = RetryPolicy(retry_on=(httpx.TransportError, TransientHTTPError))
    response = await policy.call(client.get, url)
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger(__name__)

T = TypeVar("T")

RETRIABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class TransientHTTPError(Exception):
    """Raised for a response whose status code is worth retrying (429, 5xx).

    Attributes:
        status_code: HTTP status of the failed response.
        body: Response body text, kept for diagnostics after exhaustion.
    """

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Transient HTTP error - Status: {status_code}")


def raise_for_transient_status(response: httpx.Response) -> None:
    """Raise TransientHTTPError when the response status is retriable."""
    if response.status_code in RETRIABLE_STATUS_CODES:
        raise TransientHTTPError(response.status_code, response.text)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "retrying_after_transient_error",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else 0,
        error=str(exc) if exc else None,
        error_type=type(exc).__name__ if exc else None,
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential-backoff retry for async callables.

    Attributes:
        max_attempts: Total attempts including the first call.
        initial_wait: Backoff multiplier/minimum in seconds (0 disables waiting).
        max_wait: Upper bound on a single backoff sleep.
        retry_on: Exception types considered transient.
    """

    max_attempts: int = 3
    initial_wait: float = 1.0
    max_wait: float = 10.0
    retry_on: tuple[type[BaseException], ...] = field(
        default=(httpx.TransportError, TransientHTTPError)
    )

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Invoke fn, retrying transient failures.

        Raises:
            The last exception once attempts are exhausted, or any
            non-transient exception immediately.
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(self.retry_on),
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.initial_wait, min=self.initial_wait, max=self.max_wait),
            before_sleep=_log_before_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await fn(*args, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover
