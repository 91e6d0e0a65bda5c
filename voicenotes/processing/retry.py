"""Exponential-backoff retry wrapper for external calls."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from voicenotes.config import settings
from voicenotes.processing.errors import classify_error, get_retry_delay

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: Optional[int] = None,
    base_delay_ms: Optional[int] = None,
    max_delay_ms: Optional[int] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or attempts run out.

    Non-retryable errors (invalid file, file too large, context length,
    open circuit) propagate on the first attempt without any delay.

    Args:
        operation: Zero-argument coroutine factory
        max_attempts: Total attempts including the first (default from settings)
        base_delay_ms: Backoff base
        max_delay_ms: Backoff cap
        sleep: Awaitable sleep, replaceable in tests
        label: Name used in log messages

    Returns:
        The operation's result
    """
    if max_attempts is None:
        max_attempts = settings.RETRY_MAX_ATTEMPTS
    max_attempts = max(1, max_attempts)

    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            info = classify_error(e)
            if not info.retryable:
                logger.warning(f"{label}: non-retryable {info.category.value} error: {info.message}")
                raise
            if attempt >= max_attempts:
                logger.error(f"{label}: giving up after {attempt} attempts: {info.message}")
                raise

            delay = get_retry_delay(attempt, base_delay_ms, max_delay_ms)
            logger.warning(
                f"{label}: attempt {attempt}/{max_attempts} failed "
                f"({info.category.value}), retrying in {delay:.1f}s"
            )
            await sleep(delay)
            attempt += 1
