"""
Tests for the in-memory rate limiter.

Tests verify:
- Per-user fixed window (60 admitted, 61st rejected, new window admits)
- Rejections are not counted
- Concurrency gate and slot release on every exit path
- Stale record cleanup
- Client identification
"""

import asyncio

import pytest
from starlette.requests import Request

from api.middleware.rate_limiter import RateLimiter, client_id
from libs.common.errors import ConcurrencyExceeded


@pytest.fixture
def limiter(clock):
    return RateLimiter(max_requests_per_minute=60, max_concurrent_requests=10, window_seconds=60, clock=clock)


def test_window_limit(limiter, clock):
    results = [limiter.admit("user-1") for _ in range(60)]

    assert all(results)
    assert limiter.admit("user-1") is False

    clock.advance(61)
    assert limiter.admit("user-1") is True


def test_rejection_not_counted(limiter):
    for _ in range(60):
        limiter.admit("user-1")
    limiter.admit("user-1")
    limiter.admit("user-1")

    assert limiter._records["user-1"].count == 60


def test_users_are_independent(limiter):
    for _ in range(60):
        limiter.admit("user-1")

    assert limiter.admit("user-1") is False
    assert limiter.admit("user-2") is True


def test_anonymous_users_share_a_record(limiter):
    for _ in range(60):
        limiter.admit(None)

    assert limiter.admit(None) is False


def test_retry_after(limiter, clock):
    limiter.admit("user-1")
    clock.advance(20)

    assert limiter.retry_after("user-1") == 41
    assert limiter.retry_after("unknown") == 1


@pytest.mark.asyncio
async def test_admit_false_when_gate_full(clock):
    limiter = RateLimiter(max_concurrent_requests=1, clock=clock)

    async with limiter.slot():
        assert limiter.admit("user-1") is False

    assert limiter.admit("user-1") is True


@pytest.mark.asyncio
async def test_slot_raises_when_full(clock):
    limiter = RateLimiter(max_concurrent_requests=2, clock=clock)

    async with limiter.slot():
        async with limiter.slot():
            assert limiter.active_requests == 2
            with pytest.raises(ConcurrencyExceeded):
                async with limiter.slot():
                    pass

    assert limiter.active_requests == 0


@pytest.mark.asyncio
async def test_slot_released_on_exception(limiter):
    with pytest.raises(RuntimeError):
        async with limiter.slot():
            assert limiter.active_requests == 1
            raise RuntimeError("pipeline failed")

    assert limiter.active_requests == 0


@pytest.mark.asyncio
async def test_slot_released_on_cancellation(limiter):
    entered = asyncio.Event()

    async def hold():
        async with limiter.slot():
            entered.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(hold())
    await entered.wait()
    assert limiter.active_requests == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert limiter.active_requests == 0


def test_cleanup_drops_stale_records(limiter, clock):
    limiter.admit("old")
    clock.advance(100)
    limiter.admit("recent")
    clock.advance(30)

    removed = limiter.cleanup()

    assert removed == 1
    assert "old" not in limiter._records
    assert "recent" in limiter._records


def test_cleanup_runs_from_admit(clock):
    limiter = RateLimiter(window_seconds=60, cleanup_interval=300, clock=clock)
    limiter.admit("old")
    clock.advance(301)

    limiter.admit("new")

    assert "old" not in limiter._records


def make_request(headers=None, client=("10.0.0.1", 1234)):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_client_id_prefers_user_id():
    assert client_id(make_request(), "abc") == "user:abc"


def test_client_id_uses_forwarded_for():
    request = make_request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})

    assert client_id(request) == "ip:203.0.113.5"


def test_client_id_falls_back_to_client_host():
    assert client_id(make_request()) == "ip:10.0.0.1"
