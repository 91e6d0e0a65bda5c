"""Circuit breaker protecting calls to external AI services.

Closed: calls pass through, failures are counted. Once the count reaches
``failure_threshold`` the breaker opens and rejects calls immediately. After
``reset_timeout_ms`` has passed since the last failure the next call is let
through optimistically and the breaker closes with its counter cleared, so
it reopens only after ``failure_threshold`` further failures.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from voicenotes.config import settings
from voicenotes.processing.errors import (
    CircuitOpenError,
    ErrorCategory,
    ServiceTimeoutError,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPEN_MESSAGE = "Circuit breaker is open - External API temporarily unavailable"


class CircuitBreaker:
    """Failure-counting breaker with a hard per-call timeout."""

    def __init__(
        self,
        name: str = "external",
        failure_threshold: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        reset_timeout_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold or settings.CIRCUIT_FAILURE_THRESHOLD
        self.timeout_ms = timeout_ms or settings.CIRCUIT_TIMEOUT_MS
        self.reset_timeout_ms = reset_timeout_ms or settings.CIRCUIT_RESET_TIMEOUT_MS
        self._clock = clock

        self.failures = 0
        self.last_failure_time: Optional[float] = None
        self.is_open = False
        self.error_counts: dict[str, int] = {c.value: 0 for c in ErrorCategory}
        self._stats = {
            "total_calls": 0,
            "total_failures": 0,
            "total_rejections": 0,
            "times_opened": 0,
        }

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under the breaker and its hard timeout."""
        if self.is_open:
            if self._reset_due():
                logger.info(f"Circuit breaker '{self.name}' cooldown elapsed, retrying")
                self._reset()
            else:
                self._stats["total_rejections"] += 1
                raise CircuitOpenError(OPEN_MESSAGE)

        self._stats["total_calls"] += 1
        try:
            async with asyncio.timeout(self.timeout_ms / 1000):
                result = await operation()
        except asyncio.TimeoutError:
            error = ServiceTimeoutError(f"Operation timed out after {self.timeout_ms}ms")
            self._on_failure(error)
            raise error
        except Exception as e:
            self._on_failure(e)
            raise

        self._on_success()
        return result

    def _reset_due(self) -> bool:
        if self.last_failure_time is None:
            return True
        return (self._clock() - self.last_failure_time) * 1000 >= self.reset_timeout_ms

    def _reset(self) -> None:
        self.is_open = False
        self.failures = 0

    def _on_success(self) -> None:
        if self.failures:
            logger.debug(f"Circuit breaker '{self.name}' recovered after {self.failures} failures")
        self.failures = 0

    def _on_failure(self, error: BaseException) -> None:
        self.failures += 1
        self.last_failure_time = self._clock()
        self._stats["total_failures"] += 1

        category = classify_error(error).category
        self.error_counts[category.value] += 1

        if self.failures >= self.failure_threshold and not self.is_open:
            self.is_open = True
            self._stats["times_opened"] += 1
            logger.warning(
                f"Circuit breaker '{self.name}' opened after {self.failures} failures "
                f"(last: {category.value})"
            )

    def time_until_reset(self) -> float:
        """Seconds until an open breaker lets a call through (0 if closed)."""
        if not self.is_open or self.last_failure_time is None:
            return 0.0
        elapsed_ms = (self._clock() - self.last_failure_time) * 1000
        return max(0.0, (self.reset_timeout_ms - elapsed_ms) / 1000)

    def force_open(self) -> None:
        """Open the breaker manually."""
        self.is_open = True
        self.last_failure_time = self._clock()
        logger.warning(f"Circuit breaker '{self.name}' forced open")

    def force_close(self) -> None:
        """Close the breaker manually and clear the failure count."""
        self._reset()
        logger.info(f"Circuit breaker '{self.name}' forced closed")

    def update_config(
        self,
        failure_threshold: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        reset_timeout_ms: Optional[int] = None,
    ) -> None:
        if failure_threshold is not None:
            self.failure_threshold = failure_threshold
        if timeout_ms is not None:
            self.timeout_ms = timeout_ms
        if reset_timeout_ms is not None:
            self.reset_timeout_ms = reset_timeout_ms

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "is_open": self.is_open,
            "failures": self.failures,
            "failure_threshold": self.failure_threshold,
            "time_until_reset": round(self.time_until_reset(), 1),
            "error_counts": {k: v for k, v in self.error_counts.items() if v},
        }

    def get_health_status(self) -> str:
        """healthy, degraded (failures above 70% of threshold) or unhealthy (open)."""
        if self.is_open:
            return "unhealthy"
        if self.failures > self.failure_threshold * 0.7:
            return "degraded"
        return "healthy"

    def get_statistics(self) -> dict:
        return {
            **self._stats,
            "error_counts": dict(self.error_counts),
            "config": {
                "failure_threshold": self.failure_threshold,
                "timeout_ms": self.timeout_ms,
                "reset_timeout_ms": self.reset_timeout_ms,
            },
        }
