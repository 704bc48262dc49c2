"""
Unit tests for the async circuit breaker.

Run: pytest backend/tests/test_circuit_breaker.py -v
"""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from shared.utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, CircuitState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(
        "test",
        failure_threshold=2,
        recovery_timeout_s=30.0,
        trips_on=(ConnectionError,),
        clock=clock,
    )


async def _trip(breaker: CircuitBreaker) -> None:
    failing = AsyncMock(side_effect=ConnectionError("down"))
    for _ in range(breaker.failure_threshold):
        with pytest.raises(ConnectionError):
            await breaker.call(failing)


@pytest.mark.asyncio
async def test_opens_after_threshold_and_rejects(breaker) -> None:
    await _trip(breaker)
    assert breaker.state == CircuitState.OPEN

    probe = AsyncMock(return_value="ok")
    with pytest.raises(CircuitBreakerOpen, match="OPEN") as exc_info:
        await breaker.call(probe)
    assert exc_info.value.retry_after == pytest.approx(30.0)
    probe.assert_not_awaited()


@pytest.mark.asyncio
async def test_success_resets_failure_count(breaker) -> None:
    with pytest.raises(ConnectionError):
        await breaker.call(AsyncMock(side_effect=ConnectionError("blip")))
    assert breaker.failures == 1

    assert await breaker.call(AsyncMock(return_value=5)) == 5
    assert breaker.failures == 0
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_non_tripping_errors_pass_through(breaker) -> None:
    for _ in range(3):
        with pytest.raises(ValueError):
            await breaker.call(AsyncMock(side_effect=ValueError("bad payload")))
    assert breaker.failures == 0
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_successful_probe_closes(breaker, clock) -> None:
    await _trip(breaker)
    clock.now += 31.0

    assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_failed_probe_reopens_with_fresh_window(breaker, clock) -> None:
    await _trip(breaker)
    clock.now += 31.0

    with pytest.raises(ConnectionError):
        await breaker.call(AsyncMock(side_effect=ConnectionError("still down")))
    assert breaker.state == CircuitState.OPEN

    clock.now += 10.0
    with pytest.raises(CircuitBreakerOpen) as exc_info:
        await breaker.call(AsyncMock())
    assert exc_info.value.retry_after == pytest.approx(20.0)
