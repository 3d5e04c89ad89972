import asyncio

import pytest

from tessera_analytics.core.errors import CircuitOpenError
from tessera_analytics.features.resilience.circuit_breaker import CircuitBreaker, CircuitState


async def _fail():
    raise ConnectionError("down")


async def _ok():
    return "ok"


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("analytics_source", max_failures=3, reset_timeout=60, time_fn=clock)


async def _trip(breaker, times):
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.execute(_fail)


@pytest.mark.asyncio
async def test_opens_after_max_consecutive_failures(breaker):
    await _trip(breaker, 2)
    assert breaker.state == CircuitState.CLOSED

    await _trip(breaker, 1)
    assert breaker.state == CircuitState.OPEN
    assert breaker.failures == 3


@pytest.mark.asyncio
async def test_success_resets_failure_count(breaker):
    await _trip(breaker, 2)
    assert await breaker.execute(_ok) == "ok"
    assert breaker.failures == 0

    await _trip(breaker, 2)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_open_breaker_rejects_without_calling(breaker, clock):
    await _trip(breaker, 3)
    calls = []

    async def op():
        calls.append(1)
        return "ok"

    clock.advance(59.9)
    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.execute(op)

    assert exc_info.value.code == "CIRCUIT_OPEN"
    assert calls == []


@pytest.mark.asyncio
async def test_half_open_trial_success_closes(breaker, clock):
    await _trip(breaker, 3)
    clock.advance(60)

    assert await breaker.execute(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failures == 0


@pytest.mark.asyncio
async def test_half_open_trial_failure_reopens(breaker, clock):
    await _trip(breaker, 3)
    clock.advance(60)

    with pytest.raises(ConnectionError):
        await breaker.execute(_fail)
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        await breaker.execute(_ok)


@pytest.mark.asyncio
async def test_half_open_allows_single_trial(breaker, clock):
    await _trip(breaker, 3)
    clock.advance(60)
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "trial"

    trial = asyncio.ensure_future(breaker.execute(slow))
    await asyncio.sleep(0)
    assert breaker.state == CircuitState.HALF_OPEN

    with pytest.raises(CircuitOpenError):
        await breaker.execute(_ok)

    release.set()
    assert await trial == "trial"
    assert breaker.state == CircuitState.CLOSED


def test_reset_and_snapshot(breaker):
    breaker.reset()
    snapshot = breaker.snapshot()
    assert snapshot["name"] == "analytics_source"
    assert snapshot["state"] == "closed"
    assert snapshot["max_failures"] == 3
