"""License validation throttle."""
import asyncio

import pytest

from entitlement_engine.features.ratelimit.service import RATE_LIMIT_KEY, RateLimiter
from entitlement_engine.tests.mocks import HOUR_MS, MINUTE_MS, T0


def _limiter(store, clock):
    return RateLimiter(store, max_attempts=5, window_ms=HOUR_MS, clock=clock)


@pytest.mark.asyncio
async def test_not_blocked_without_record(store, clock):
    status = await _limiter(store, clock).check_rate_limit()
    assert status.blocked is False
    assert status.remaining_ms is None


@pytest.mark.asyncio
async def test_blocks_after_five_failures(store, clock):
    limiter = _limiter(store, clock)
    for _ in range(4):
        await limiter.record_failed_attempt()
    assert (await limiter.check_rate_limit()).blocked is False

    record = await limiter.record_failed_attempt()
    assert record.attempts == 5
    assert record.first_attempt_time == T0

    clock.advance(10 * MINUTE_MS)
    status = await limiter.check_rate_limit()
    assert status.blocked is True
    assert status.remaining_ms == 50 * MINUTE_MS


@pytest.mark.asyncio
async def test_window_expiry_drops_record(store, clock):
    limiter = _limiter(store, clock)
    for _ in range(5):
        await limiter.record_failed_attempt()

    clock.advance(HOUR_MS)
    assert (await limiter.check_rate_limit()).blocked is False
    assert await store.get([RATE_LIMIT_KEY]) == {}

    record = await limiter.record_failed_attempt()
    assert record.attempts == 1
    assert record.first_attempt_time == T0 + HOUR_MS


@pytest.mark.asyncio
async def test_window_is_anchored_at_first_failure(store, clock):
    limiter = _limiter(store, clock)
    await limiter.record_failed_attempt()
    clock.advance(59 * MINUTE_MS)
    record = await limiter.record_failed_attempt()
    assert record.attempts == 2
    assert record.first_attempt_time == T0


@pytest.mark.asyncio
async def test_clear_removes_record(store, clock):
    limiter = _limiter(store, clock)
    for _ in range(5):
        await limiter.record_failed_attempt()
    await limiter.clear_rate_limit()
    assert (await limiter.check_rate_limit()).blocked is False


@pytest.mark.asyncio
async def test_guarded_attempt_success_clears_counter(store, clock):
    limiter = _limiter(store, clock)
    await limiter.record_failed_attempt()
    status, ok = await limiter.guarded_attempt(lambda: True)
    assert status.blocked is False
    assert ok is True
    assert await store.get([RATE_LIMIT_KEY]) == {}


@pytest.mark.asyncio
async def test_guarded_attempt_skips_validation_when_blocked(store, clock):
    limiter = _limiter(store, clock)
    for _ in range(5):
        await limiter.record_failed_attempt()

    calls = []
    status, ok = await limiter.guarded_attempt(lambda: calls.append(1) or True)
    assert status.blocked is True
    assert ok is False
    assert calls == []


@pytest.mark.asyncio
async def test_parallel_attempts_cannot_exceed_cap(store, clock):
    limiter = _limiter(store, clock)
    calls = []

    def attempt():
        calls.append(1)
        return False

    results = await asyncio.gather(*[limiter.guarded_attempt(attempt) for _ in range(20)])
    blocked = [status for status, _ in results if status.blocked]
    assert len(calls) == 5
    assert len(blocked) == 15


@pytest.mark.asyncio
async def test_parallel_attempts_across_limiters_on_sql_store(sql_store, clock):
    # Two limiters model two independent processes sharing one database.
    first = _limiter(sql_store, clock)
    second = _limiter(sql_store, clock)
    calls = []

    def attempt():
        calls.append(1)
        return False

    tasks = [first.guarded_attempt(attempt) for _ in range(6)] + [second.guarded_attempt(attempt) for _ in range(6)]
    results = await asyncio.gather(*tasks)

    data = await sql_store.get([RATE_LIMIT_KEY])
    assert data[RATE_LIMIT_KEY]["attempts"] == 5
    assert sum(1 for status, _ in results if not status.blocked) == 5
