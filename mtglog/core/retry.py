"""Bounded exponential-backoff retries for transient upstream failures.

WHY: Intake talks to Slack and object storage over the public internet.
A dropped connection or a 503 should not lose a meeting video, but a 4xx
(bad token, missing file) will never succeed and must fail at once.

HOW: tenacity AsyncRetrying with stop_after_attempt and wait_exponential
(first wait = base delay, doubling each attempt). The retry predicate
accepts httpx transport errors and UpstreamError with is_transient set.

RULES:
- Default: 3 attempts, 1.0 s initial delay, doubling
- 4xx UpstreamErrors and all other exceptions propagate immediately
- The last exception is re-raised unchanged (reraise=True)
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from mtglog.errors import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_S = 1.0
MAX_DELAY_S = 30.0


def is_transient(exc: BaseException) -> bool:
    """True for failures worth retrying: transport errors and 5xx responses."""
    if isinstance(exc, UpstreamError):
        return exc.is_transient
    return isinstance(exc, httpx.TransportError)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Attempt %d of %s failed (%s), retrying",
        state.attempt_number,
        getattr(state.fn, "__name__", "call"),
        exc,
    )


def retrying(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_S,
) -> AsyncRetrying:
    """Build the shared retry policy."""
    return AsyncRetrying(
        stop=stop_after_attempt(max(max_attempts, 1)),
        wait=wait_exponential(multiplier=base_delay, min=base_delay, max=MAX_DELAY_S),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry,
        reraise=True,
    )


async def with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_S,
    **kwargs: Any,
) -> T:
    """Await fn(*args, **kwargs), retrying transient failures with backoff."""
    return await retrying(max_attempts, base_delay)(fn, *args, **kwargs)
