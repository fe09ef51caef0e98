"""Bounded exponential-backoff retry for any provider call.

Whether a failure is worth retrying is decided by
:func:`~llmchat.providers.errors.classify`, so every call site shares one
definition of "transient".
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog
from prometheus_client import Counter
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from llmchat.providers.errors import classify

T = TypeVar("T")

_log = structlog.get_logger(__name__)

RETRY_ATTEMPTS = Counter(
    "llmchat_retry_attempts_total",
    "Provider calls re-issued after a retryable failure.",
    ["kind"],
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff bounds (delays in seconds)."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, Exception) and classify(exc).retryable


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    on_retry: Callable[[int, BaseException], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` and retry transient failures.

    ``fn`` is attempted at most ``max_retries + 1`` times.  After the
    zero-indexed attempt ``n`` fails with a retryable error the call waits
    ``min(initial_delay * 2**n, max_delay)`` seconds.  Non-retryable errors,
    and the failure of the last attempt, are re-raised unchanged.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt.
        max_retries: Retries after the initial attempt.
        initial_delay: Delay after the first failure, in seconds.
        max_delay: Upper bound on any single delay, in seconds.
        on_retry: Called with ``(attempt_number, error)`` before each wait;
            ``attempt_number`` is 1 for the first retry.
        sleep: Awaitable used to wait; injectable for tests.
    """

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        next_action = retry_state.next_action
        wait_seconds = next_action.sleep if next_action is not None else 0.0
        kind = classify(exc).code
        RETRY_ATTEMPTS.labels(kind=kind).inc()
        _log.warning(
            "llm_request_retry",
            attempt=retry_state.attempt_number,
            wait_seconds=round(wait_seconds, 2),
            error_kind=kind,
            error_type=type(exc).__name__ if exc else None,
            error=str(exc) if exc else None,
        )
        if on_retry is not None and exc is not None:
            on_retry(retry_state.attempt_number, exc)

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        retry=retry_if_exception(_is_retryable),
        wait=wait_exponential(multiplier=initial_delay, min=0, max=max_delay),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    ):
        with attempt:
            return await fn()


async def run_with_policy(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    on_retry: Callable[[int, BaseException], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """:func:`retry_with_backoff` with options taken from a :class:`RetryPolicy`."""
    return await retry_with_backoff(
        fn,
        max_retries=policy.max_retries,
        initial_delay=policy.initial_delay,
        max_delay=policy.max_delay,
        on_retry=on_retry,
        sleep=sleep,
    )
