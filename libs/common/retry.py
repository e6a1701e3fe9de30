"""Exponential-backoff retry wrapper for calls to the completion and search services."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from libs.common.errors import NON_RETRYABLE_ERRORS

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters. Delays are in seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Delay slept after the given (1-based) failed attempt."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_ms / 1000.0,
            max_delay=settings.retry_max_delay_ms / 1000.0,
        )


@dataclass
class RetryState:
    """Snapshot handed to ``on_retry`` before each backoff sleep."""

    attempt: int
    last_error: Optional[BaseException]
    delay: float


class RetryExecutor:
    """
    Runs an async operation with exponential backoff.

    Errors from ``NON_RETRYABLE_ERRORS`` and cancellation are re-raised on
    the first occurrence. Anything else is retried until the policy's
    attempts run out, after which the last error is re-raised unchanged.

    Usage:
        executor = RetryExecutor(RetryPolicy(max_attempts=3))
        answer = await executor.execute(lambda: pipeline.answer(question))
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_retry: Optional[Callable[[RetryState], None]] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._on_retry = on_retry

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Operation failed, retrying",
            attempt=retry_state.attempt_number,
            delay_seconds=delay,
            error=str(error),
        )
        if self._on_retry is not None:
            self._on_retry(RetryState(attempt=retry_state.attempt_number, last_error=error, delay=delay))

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
    ) -> T:
        """Await ``operation()`` until it succeeds or the policy gives up."""
        policy = policy or self.policy
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(multiplier=policy.base_delay, min=0, max=policy.max_delay),
            retry=retry_if_not_exception_type(NON_RETRYABLE_ERRORS + (asyncio.CancelledError,)),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await operation()
        raise AssertionError("unreachable")  # pragma: no cover
