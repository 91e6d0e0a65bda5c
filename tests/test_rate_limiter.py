from unittest.mock import AsyncMock, MagicMock

import pytest

from voicenotes.processing.rate_limiter import (
    DatabaseRateLimitBackend,
    MemoryRateLimitBackend,
    RateLimiter,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_memory_window_denies_after_limit_and_recovers():
    clock = FakeClock()
    backend = MemoryRateLimitBackend(clock=clock)

    for _ in range(3):
        assert await backend.try_acquire("transcription", 3) is True
    assert await backend.try_acquire("transcription", 3) is False

    clock.now += 59
    assert await backend.try_acquire("transcription", 3) is False

    clock.now += 1
    assert await backend.try_acquire("transcription", 3) is True


@pytest.mark.asyncio
async def test_memory_window_is_per_service():
    backend = MemoryRateLimitBackend(clock=FakeClock())

    assert await backend.try_acquire("transcription", 1) is True
    assert await backend.try_acquire("transcription", 1) is False
    assert await backend.try_acquire("analysis", 1) is True


@pytest.mark.asyncio
async def test_limiter_without_shared_backend_uses_memory():
    limiter = RateLimiter()

    assert await limiter.try_acquire("analysis", 2) is True
    assert limiter.backend_name == "memory"


@pytest.mark.asyncio
async def test_unavailable_shared_backend_falls_back_to_memory():
    shared = MagicMock(spec=DatabaseRateLimitBackend)
    shared.is_available = AsyncMock(return_value=False)
    shared.try_acquire = AsyncMock()
    limiter = RateLimiter(shared=shared)

    assert await limiter.try_acquire("analysis", 5) is True

    shared.try_acquire.assert_not_called()
    assert limiter.backend_name == "memory"


@pytest.mark.asyncio
async def test_shared_backend_error_never_reaches_caller():
    shared = MagicMock(spec=DatabaseRateLimitBackend)
    shared.is_available = AsyncMock(return_value=True)
    shared.try_acquire = AsyncMock(side_effect=RuntimeError("connection refused"))
    limiter = RateLimiter(shared=shared)

    assert await limiter.try_acquire("analysis", 5) is True
    assert limiter.backend_name == "memory"

    # Demoted until the next health check
    assert await limiter.try_acquire("analysis", 5) is True
    assert shared.try_acquire.call_count == 1


@pytest.mark.asyncio
async def test_health_probe_is_rechecked_after_interval():
    clock = FakeClock()
    shared = MagicMock(spec=DatabaseRateLimitBackend)
    shared.is_available = AsyncMock(side_effect=[False, True])
    shared.try_acquire = AsyncMock(return_value=True)
    limiter = RateLimiter(shared=shared, health_check_interval=300, clock=clock)

    await limiter.try_acquire("analysis", 5)
    assert limiter.backend_name == "memory"

    clock.now += 299
    await limiter.try_acquire("analysis", 5)
    assert shared.is_available.call_count == 1

    clock.now += 1
    await limiter.try_acquire("analysis", 5)
    assert limiter.backend_name == "database"
    shared.try_acquire.assert_awaited_once_with("analysis", 5)


@pytest.mark.asyncio
async def test_database_backend_shares_window(session_factory):
    clock = FakeClock()
    worker_a = DatabaseRateLimitBackend(session_factory, clock=clock)
    worker_b = DatabaseRateLimitBackend(session_factory, clock=clock)

    assert await worker_a.is_available() is True
    assert await worker_a.try_acquire("transcription", 2) is True
    assert await worker_b.try_acquire("transcription", 2) is True
    assert await worker_a.try_acquire("transcription", 2) is False

    clock.now += 60
    assert await worker_b.try_acquire("transcription", 2) is True
