"""Per-note processing lease backed by the notes table.

Mutual exclusion is enforced by the database: acquiring is a single
conditional UPDATE, so of two workers racing on the same note exactly one
sees a changed row.

Usage:
    locks = ProcessingLockManager(async_session_factory)
    if await locks.acquire(note_id):
        try:
            ...
            await locks.release(note_id)
        except Exception as e:
            await locks.release_with_error(note_id, str(e))
"""

import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voicenotes.config import settings
from voicenotes.db.repositories.notes import NoteRepository

logger = logging.getLogger(__name__)


class ProcessingLockManager:
    """Acquire, release and reclaim note leases.

    Each operation runs in its own short transaction so the lease is visible
    to other workers as soon as the call returns.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._session_factory = session_factory
        self.timeout_minutes = timeout_minutes or settings.LOCK_TIMEOUT_MINUTES
        self._clock = clock

    async def acquire(
        self,
        note_id: UUID,
        timeout_minutes: Optional[int] = None,
        force: bool = False,
    ) -> bool:
        """Take the lease if it is unset or older than the timeout.

        Without ``force`` completed notes and notes that have used every
        attempt are refused.

        Args:
            note_id: Note to lock
            timeout_minutes: Lease lifetime (defaults to the manager's)
            force: Also lock completed or exhausted notes (forced reprocess)

        Returns:
            True if the caller now holds the lease
        """
        timeout = timeout_minutes or self.timeout_minutes
        async with self._session_factory() as session:
            repo = NoteRepository(session)
            acquired = await repo.acquire_lock(
                note_id,
                timeout,
                now=self._clock(),
                include_processed=force,
                max_attempts=None if force else settings.MAX_PROCESSING_ATTEMPTS,
            )
            await session.commit()

        if acquired:
            logger.debug(f"Acquired processing lock for note {note_id}")
        else:
            logger.info(f"Could not acquire processing lock for note {note_id}, skipping")
        return acquired

    async def release(self, note_id: UUID) -> None:
        async with self._session_factory() as session:
            await NoteRepository(session).release_lock(note_id)
            await session.commit()
        logger.debug(f"Released processing lock for note {note_id}")

    async def release_with_error(
        self,
        note_id: UUID,
        message: str,
        terminal: bool = False,
        refund_attempt: bool = False,
    ) -> None:
        """Clear the lease and persist the error together.

        A terminal error also raises the attempt count to the maximum so the
        note is no longer picked up by batches. ``refund_attempt`` undoes the
        increment made by ``acquire`` for failures that never reached a service.
        """
        async with self._session_factory() as session:
            await NoteRepository(session).release_lock_with_error(
                note_id,
                message[:2000],
                now=self._clock(),
                terminal_attempts=settings.MAX_PROCESSING_ATTEMPTS if terminal else None,
                refund_attempt=refund_attempt,
            )
            await session.commit()
        logger.warning(f"Released lock for note {note_id} with error: {message}")

    async def reclaim_abandoned(self, timeout_minutes: Optional[int] = None) -> int:
        """Clear every lease older than the timeout.

        Returns:
            Number of notes reclaimed
        """
        timeout = timeout_minutes or self.timeout_minutes
        async with self._session_factory() as session:
            count = await NoteRepository(session).reclaim_abandoned_locks(timeout, now=self._clock())
            await session.commit()

        if count:
            logger.info(f"Reclaimed {count} abandoned processing locks (older than {timeout} min)")
        return count

    async def validate_lock_status(self, note_id: UUID) -> bool:
        """Check that the caller's lease is still alive.

        An expired lease is released with a timeout error.
        """
        async with self._session_factory() as session:
            note = await NoteRepository(session).get_by_id(note_id)

        if note is None or note.processing_started_at is None:
            return False

        elapsed = (self._clock() - note.processing_started_at).total_seconds()
        if elapsed > self.timeout_minutes * 60:
            await self.release_with_error(
                note_id, f"Processing timeout exceeded after {int(elapsed)}s"
            )
            return False
        return True
