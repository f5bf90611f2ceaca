"""
Tests for the provider circuit breaker.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from astropal.infrastructure.ai.circuit_breaker import CircuitBreaker, CircuitState
from astropal.infrastructure.exceptions import CircuitOpenError, ProviderError


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("grok", failure_threshold=3, reset_timeout=300.0, clock=clock)


async def fail():
    raise ProviderError("provider down", provider="grok")


async def succeed():
    return "ok"


async def trip(breaker, times=3):
    for _ in range(times):
        with pytest.raises(ProviderError):
            await breaker.call(fail)


class TestCircuitBreaker:

    async def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.call(succeed) == "ok"

    async def test_opens_after_threshold(self, breaker):
        await trip(breaker, times=2)
        assert breaker.state == CircuitState.CLOSED

        await trip(breaker, times=1)

        assert breaker.state == CircuitState.OPEN
        assert breaker.failures == 3

    async def test_open_circuit_refuses_without_calling(self, breaker):
        await trip(breaker)
        func = AsyncMock(return_value="ok")

        with pytest.raises(CircuitOpenError):
            await breaker.call(func)

        func.assert_not_awaited()

    async def test_success_resets_failure_count(self, breaker):
        await trip(breaker, times=2)

        await breaker.call(succeed)
        await trip(breaker, times=2)

        assert breaker.state == CircuitState.CLOSED

    async def test_call_after_timeout_closes_on_success(self, breaker, clock):
        await trip(breaker)
        clock.advance(300)

        assert await breaker.call(succeed) == "ok"

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failures == 0

    async def test_still_open_just_before_timeout(self, breaker, clock):
        await trip(breaker)
        clock.advance(299)

        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)

    async def test_failed_half_open_call_reopens(self, breaker, clock):
        await trip(breaker)
        clock.advance(301)

        with pytest.raises(ProviderError):
            await breaker.call(fail)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)

        # The timeout restarts from the failed half-open call
        clock.advance(301)
        assert await breaker.call(succeed) == "ok"

    async def test_single_call_in_half_open(self, breaker, clock):
        await trip(breaker)
        clock.advance(301)

        release = asyncio.Event()

        async def slow_call():
            await release.wait()
            return "half-open"

        pending = asyncio.create_task(breaker.call(slow_call))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)

        release.set()
        assert await pending == "half-open"
        assert breaker.state == CircuitState.CLOSED

    async def test_cancelled_half_open_call_frees_the_slot(self, breaker, clock):
        await trip(breaker)
        clock.advance(301)

        pending = asyncio.create_task(breaker.call(asyncio.Event().wait))
        await asyncio.sleep(0)
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

        assert await breaker.call(succeed) == "ok"
