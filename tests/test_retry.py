from unittest.mock import AsyncMock, patch

import httpx
import pytest

from voicenotes.processing.errors import (
    CircuitOpenError,
    ErrorCategory,
    FileTooLargeError,
    classify_error,
    get_retry_delay,
)
from voicenotes.processing.retry import with_retry


@pytest.mark.asyncio
async def test_returns_first_success():
    operation = AsyncMock(return_value="text")
    sleep = AsyncMock()

    assert await with_retry(operation, max_attempts=3, sleep=sleep) == "text"
    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately():
    operation = AsyncMock(side_effect=FileTooLargeError("file_too_large: 30MB"))
    sleep = AsyncMock()

    with pytest.raises(FileTooLargeError):
        await with_retry(operation, max_attempts=5, sleep=sleep)

    assert operation.await_count == 1
    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_non_retryable_detected_from_message():
    operation = AsyncMock(side_effect=RuntimeError("This model's maximum context length is 8192 tokens"))
    sleep = AsyncMock()

    with pytest.raises(RuntimeError):
        await with_retry(operation, max_attempts=5, sleep=sleep)

    assert operation.await_count == 1


@pytest.mark.asyncio
async def test_circuit_open_is_not_retried():
    operation = AsyncMock(side_effect=CircuitOpenError("Circuit breaker is open"))
    sleep = AsyncMock()

    with pytest.raises(CircuitOpenError):
        await with_retry(operation, max_attempts=5, sleep=sleep)

    sleep.assert_not_called()


@pytest.mark.asyncio
@patch("voicenotes.processing.errors.random.random", return_value=0.5)
async def test_retryable_error_retries_with_increasing_delays(_mock_random):
    operation = AsyncMock(side_effect=RuntimeError("503 service unavailable"))
    sleep = AsyncMock()

    with pytest.raises(RuntimeError):
        await with_retry(operation, max_attempts=4, base_delay_ms=1000, max_delay_ms=30000, sleep=sleep)

    assert operation.await_count == 4
    delays = [c.args[0] for c in sleep.await_args_list]
    assert delays == [1.5, 2.5, 4.5]


@pytest.mark.asyncio
async def test_recovers_after_transient_failure():
    operation = AsyncMock(side_effect=[RuntimeError("connection reset"), "text"])
    sleep = AsyncMock()

    assert await with_retry(operation, max_attempts=3, sleep=sleep) == "text"
    assert sleep.await_count == 1


@patch("voicenotes.processing.errors.random.random", return_value=0.99)
def test_retry_delay_is_capped(_mock_random):
    assert get_retry_delay(10, base_delay_ms=2000, max_delay_ms=30000) == 30.0
    assert get_retry_delay(1, base_delay_ms=2000, max_delay_ms=30000) == pytest.approx(2.99)


def test_classify_http_status_errors():
    request = httpx.Request("POST", "https://api.example.com/v1/audio/transcriptions")

    too_large = httpx.HTTPStatusError(
        "too large", request=request, response=httpx.Response(413, request=request)
    )
    throttled = httpx.HTTPStatusError(
        "throttled", request=request, response=httpx.Response(429, request=request)
    )

    assert classify_error(too_large).category == ErrorCategory.FILE_TOO_LARGE
    assert classify_error(too_large).retryable is False
    assert classify_error(throttled).category == ErrorCategory.RATE_LIMIT
    assert classify_error(throttled).retryable is True


def test_classify_by_message():
    assert classify_error(RuntimeError("insufficient_quota")).category == ErrorCategory.QUOTA
    assert classify_error(RuntimeError("Request timed out")).category == ErrorCategory.TIMEOUT
    assert classify_error(RuntimeError("something odd")).category == ErrorCategory.UNKNOWN
