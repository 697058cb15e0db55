"""
Unit tests for the outbound circuit breaker.
"""

import asyncio

import pytest

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException, CircuitBreakerState


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


async def _fail():
    raise RuntimeError("down")


async def _ok():
    return "ok"


class TestCircuitBreaker:

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def changes(self):
        return []

    @pytest.fixture
    def breaker(self, clock, changes):
        return CircuitBreaker(
            failure_threshold=2,
            recovery_timeout=30.0,
            name="test",
            clock=clock,
            on_state_change=lambda name, state: changes.append(state),
        )

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self, breaker, changes):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)

        assert breaker.is_open()
        assert changes == [CircuitBreakerState.OPEN]
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(_ok)

    @pytest.mark.asyncio
    async def test_success_resets_failure_streak(self, breaker):
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
        assert await breaker.call(_ok) == "ok"
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)

        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_trial_call_after_recovery_timeout_closes(self, breaker, clock, changes):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)

        clock.now += 30.0
        assert await breaker.call(_ok) == "ok"

        assert breaker.state == CircuitBreakerState.CLOSED
        assert changes == [
            CircuitBreakerState.OPEN,
            CircuitBreakerState.HALF_OPEN,
            CircuitBreakerState.CLOSED,
        ]

    @pytest.mark.asyncio
    async def test_failed_trial_call_reopens(self, breaker, clock):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)

        clock.now += 30.0
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)

        assert breaker.is_open()
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(_ok)

    @pytest.mark.asyncio
    async def test_only_one_trial_call_in_flight(self, breaker, clock):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)
        clock.now += 30.0

        release = asyncio.Event()

        async def _slow():
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(_slow))
        await asyncio.sleep(0)

        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(_ok)

        release.set()
        assert await trial == "trial"
        assert breaker.state == CircuitBreakerState.CLOSED
