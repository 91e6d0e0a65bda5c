"""Sliding-window admission control for external services.

Two backends implement ``RateLimitBackend``:
- ``MemoryRateLimitBackend``: per-process map of request timestamps
- ``DatabaseRateLimitBackend``: one row per service in ``rate_limit_windows``,
  shared by every worker

``RateLimiter`` picks the shared backend only while its health probe passes.
The probe is re-run every ``RATE_LIMIT_HEALTH_CHECK_SECONDS``; a failing
shared backend is demoted and the in-memory window answers instead, so
admission control never fails the caller.
"""

import asyncio
import logging
import time
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voicenotes.config import settings
from voicenotes.db.repositories.rate_limits import RateLimitRepository

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class RateLimitBackend(Protocol):
    """Strategy interface for sliding-window counters."""

    async def try_acquire(self, service_name: str, requests_per_minute: int) -> bool:
        ...


def _prune(timestamps: list, now: float) -> list:
    return [t for t in timestamps if now - t < WINDOW_SECONDS]


class MemoryRateLimitBackend:
    """In-process sliding window."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._requests: dict[str, list[float]] = {}

    async def try_acquire(self, service_name: str, requests_per_minute: int) -> bool:
        now = self._clock()
        window = _prune(self._requests.get(service_name, []), now)
        if len(window) >= requests_per_minute:
            self._requests[service_name] = window
            return False
        window.append(now)
        self._requests[service_name] = window
        return True

    def current_usage(self, service_name: str) -> int:
        return len(_prune(self._requests.get(service_name, []), self._clock()))


class DatabaseRateLimitBackend:
    """Sliding window stored in the shared database."""

    MAX_WRITE_ATTEMPTS = 3

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def is_available(self) -> bool:
        """Health probe: the table exists and the database answers."""
        try:
            async with self._session_factory() as session:
                await RateLimitRepository(session).probe()
            return True
        except Exception as e:
            logger.warning(f"Shared rate-limit store unavailable: {e}")
            return False

    async def try_acquire(self, service_name: str, requests_per_minute: int) -> bool:
        for attempt in range(1, self.MAX_WRITE_ATTEMPTS + 1):
            try:
                return await self._try_acquire_once(service_name, requests_per_minute)
            except IntegrityError:
                # Another worker created the row first
                if attempt == self.MAX_WRITE_ATTEMPTS:
                    raise
                logger.debug(f"Rate-limit row conflict for {service_name}, retry {attempt}")
                await asyncio.sleep(0.05 * attempt)
        return False

    async def _try_acquire_once(self, service_name: str, requests_per_minute: int) -> bool:
        async with self._session_factory() as session:
            repo = RateLimitRepository(session)
            window = await repo.get_for_update(service_name)
            now = self._clock()
            requests = _prune(list(window.requests or []) if window else [], now)

            allowed = len(requests) < requests_per_minute
            if allowed:
                requests.append(now)
            await repo.save_window(window, service_name, requests)
            await session.commit()
            return allowed


class RateLimiter:
    """Admission control front-end with health-probed backend selection."""

    def __init__(
        self,
        memory: Optional[MemoryRateLimitBackend] = None,
        shared: Optional[DatabaseRateLimitBackend] = None,
        health_check_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.memory = memory or MemoryRateLimitBackend()
        self.shared = shared
        self.health_check_interval = (
            settings.RATE_LIMIT_HEALTH_CHECK_SECONDS
            if health_check_interval is None else health_check_interval
        )
        self._clock = clock
        self._shared_healthy = False
        self._last_check: Optional[float] = None
        self._probe_lock = asyncio.Lock()

    async def _select_backend(self) -> RateLimitBackend:
        if self.shared is None:
            return self.memory

        now = self._clock()
        if self._last_check is None or now - self._last_check >= self.health_check_interval:
            async with self._probe_lock:
                if self._last_check is None or now - self._last_check >= self.health_check_interval:
                    healthy = await self.shared.is_available()
                    if healthy != self._shared_healthy:
                        logger.info(
                            f"Rate limiter backend: {'database' if healthy else 'memory'}"
                        )
                    self._shared_healthy = healthy
                    self._last_check = self._clock()

        return self.shared if self._shared_healthy else self.memory

    async def try_acquire(self, service_name: str, requests_per_minute: int) -> bool:
        """Admit one request for ``service_name`` if the 60s window has room."""
        backend = await self._select_backend()
        if backend is self.memory:
            return await self.memory.try_acquire(service_name, requests_per_minute)

        try:
            return await backend.try_acquire(service_name, requests_per_minute)
        except Exception as e:
            logger.warning(f"Shared rate limiter failed, using in-memory window: {e}")
            self._shared_healthy = False
            self._last_check = self._clock()
            return await self.memory.try_acquire(service_name, requests_per_minute)

    @property
    def backend_name(self) -> str:
        return "database" if self.shared is not None and self._shared_healthy else "memory"

    def get_status(self) -> dict:
        return {
            "backend": self.backend_name,
            "shared_configured": self.shared is not None,
        }
