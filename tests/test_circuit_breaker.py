import asyncio
from unittest.mock import AsyncMock

import pytest

from voicenotes.processing.circuit_breaker import OPEN_MESSAGE, CircuitBreaker
from voicenotes.processing.errors import CircuitOpenError, ServiceTimeoutError


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


async def _fail_times(breaker: CircuitBreaker, times: int, error: Exception) -> None:
    for _ in range(times):
        with pytest.raises(type(error)):
            await breaker.execute(AsyncMock(side_effect=error))


@pytest.mark.asyncio
async def test_success_passes_result_through():
    breaker = CircuitBreaker("test", failure_threshold=3)

    result = await breaker.execute(AsyncMock(return_value="ok"))

    assert result == "ok"
    assert breaker.is_open is False


@pytest.mark.asyncio
async def test_opens_after_threshold_and_rejects_without_calling():
    breaker = CircuitBreaker("test", failure_threshold=3, clock=FakeClock())
    await _fail_times(breaker, 3, RuntimeError("502 bad gateway"))

    assert breaker.is_open is True

    operation = AsyncMock(return_value="ok")
    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.execute(operation)

    operation.assert_not_called()
    assert str(exc_info.value) == OPEN_MESSAGE


@pytest.mark.asyncio
async def test_attempts_again_after_reset_timeout():
    clock = FakeClock()
    breaker = CircuitBreaker("test", failure_threshold=2, reset_timeout_ms=30000, clock=clock)
    await _fail_times(breaker, 2, RuntimeError("network error"))

    clock.now += 29
    with pytest.raises(CircuitOpenError):
        await breaker.execute(AsyncMock(return_value="ok"))

    clock.now += 1
    operation = AsyncMock(return_value="ok")
    assert await breaker.execute(operation) == "ok"
    operation.assert_awaited_once()
    assert breaker.is_open is False
    assert breaker.failures == 0


@pytest.mark.asyncio
async def test_reopens_only_after_a_full_threshold_after_reset():
    clock = FakeClock()
    breaker = CircuitBreaker("test", failure_threshold=2, reset_timeout_ms=30000, clock=clock)
    await _fail_times(breaker, 2, RuntimeError("network error"))

    clock.now += 30
    await _fail_times(breaker, 1, RuntimeError("network error"))
    assert breaker.is_open is False
    assert breaker.failures == 1

    await _fail_times(breaker, 1, RuntimeError("network error"))
    assert breaker.is_open is True


@pytest.mark.asyncio
async def test_success_resets_failure_count():
    breaker = CircuitBreaker("test", failure_threshold=3)
    await _fail_times(breaker, 2, RuntimeError("network error"))

    await breaker.execute(AsyncMock(return_value="ok"))
    await _fail_times(breaker, 2, RuntimeError("network error"))

    assert breaker.is_open is False


@pytest.mark.asyncio
async def test_timeout_counts_as_failure():
    breaker = CircuitBreaker("test", failure_threshold=1, timeout_ms=20)

    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(ServiceTimeoutError, match="Operation timed out after 20ms"):
        await breaker.execute(slow)

    assert breaker.is_open is True
    assert breaker.error_counts["timeout"] == 1


@pytest.mark.asyncio
async def test_error_categories_are_tracked():
    breaker = CircuitBreaker("test", failure_threshold=10)
    await _fail_times(breaker, 1, RuntimeError("Rate limit reached (429)"))
    await _fail_times(breaker, 2, RuntimeError("Invalid API key"))

    stats = breaker.get_statistics()

    assert stats["error_counts"]["rate_limit"] == 1
    assert stats["error_counts"]["authentication"] == 2
    assert stats["total_failures"] == 3


def test_health_status_and_manual_control():
    breaker = CircuitBreaker("test", failure_threshold=10)
    assert breaker.get_health_status() == "healthy"

    breaker.failures = 8
    assert breaker.get_health_status() == "degraded"

    breaker.force_open()
    assert breaker.get_health_status() == "unhealthy"
    assert breaker.time_until_reset() > 0

    breaker.force_close()
    assert breaker.get_health_status() == "healthy"
    assert breaker.get_status()["failures"] == 0
