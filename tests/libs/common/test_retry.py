"""
Tests for the retry executor.

Tests verify:
- Transient failures are retried with exponential, capped delays
- Non-retryable errors and cancellation are raised immediately
- The last error is re-raised unchanged once attempts run out
"""

import asyncio

import pytest

from libs.common.errors import (
    ConcurrencyExceeded,
    NoRelevantDocuments,
    RateLimitExceeded,
    ServiceTimeout,
    TransientServiceError,
    ValidationError,
)
from libs.common.retry import RetryExecutor, RetryPolicy


class Recorder:
    def __init__(self):
        self.delays = []
        self.states = []

    async def sleep(self, seconds):
        self.delays.append(seconds)

    def on_retry(self, state):
        self.states.append(state)


def flaky(failures, error_factory=lambda n: TransientServiceError(f"failure {n}"), result="done"):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error_factory(calls["count"])
        return result

    return operation, calls


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def executor(recorder):
    return RetryExecutor(RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0), sleep=recorder.sleep, on_retry=recorder.on_retry)


def test_policy_delays():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0)

    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_policy_from_settings(settings):
    policy = RetryPolicy.from_settings(settings)

    assert policy == RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0)


@pytest.mark.asyncio
async def test_succeeds_after_two_failures(executor, recorder):
    operation, calls = flaky(2)

    assert await executor.execute(operation) == "done"
    assert calls["count"] == 3
    assert recorder.delays == [1.0, 2.0]
    assert all(delay <= 5.0 for delay in recorder.delays)
    assert [s.attempt for s in recorder.states] == [1, 2]
    assert str(recorder.states[-1].last_error) == "failure 2"


@pytest.mark.asyncio
async def test_reraises_last_error_when_exhausted(executor, recorder):
    operation, calls = flaky(10)

    with pytest.raises(TransientServiceError, match="failure 3"):
        await executor.execute(operation)
    assert calls["count"] == 3
    assert len(recorder.delays) == 2


@pytest.mark.asyncio
async def test_delays_capped(recorder):
    executor = RetryExecutor(RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=5.0), sleep=recorder.sleep)
    operation, _ = flaky(4)

    await executor.execute(operation)

    assert recorder.delays == [2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_timeout_is_retried(executor):
    operation, calls = flaky(1, lambda n: ServiceTimeout("slow"))

    assert await executor.execute(operation) == "done"
    assert calls["count"] == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ValidationError("bad"),
        RateLimitExceeded("slow down"),
        ConcurrencyExceeded("busy"),
        NoRelevantDocuments(),
    ],
)
async def test_non_retryable_errors_raised_immediately(executor, recorder, error):
    operation, calls = flaky(5, lambda n: error)

    with pytest.raises(type(error)) as exc_info:
        await executor.execute(operation)
    assert exc_info.value is error
    assert calls["count"] == 1
    assert recorder.delays == []


@pytest.mark.asyncio
async def test_cancellation_not_retried(executor, recorder):
    operation, calls = flaky(5, lambda n: asyncio.CancelledError())

    with pytest.raises(asyncio.CancelledError):
        await executor.execute(operation)
    assert calls["count"] == 1
    assert recorder.delays == []


@pytest.mark.asyncio
async def test_policy_override_per_call(executor, recorder):
    operation, calls = flaky(10)

    with pytest.raises(TransientServiceError):
        await executor.execute(operation, policy=RetryPolicy(max_attempts=1))
    assert calls["count"] == 1
