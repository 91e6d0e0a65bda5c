"""Repository for notes and their processing lease."""

from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from voicenotes.config import settings
from voicenotes.db.models import Note
from voicenotes.db.repositories.base import BaseRepository


def _lock_cutoff(timeout_minutes: int, now: datetime) -> datetime:
    if timeout_minutes is None or timeout_minutes <= 0:
        timeout_minutes = settings.LOCK_TIMEOUT_MINUTES
    return now - timedelta(minutes=timeout_minutes)


def _lock_free(cutoff: datetime):
    return or_(
        Note.processing_started_at.is_(None),
        Note.processing_started_at < cutoff,
    )


def _lock_expired(cutoff: datetime):
    return and_(
        Note.processed_at.is_(None),
        Note.processing_started_at.isnot(None),
        Note.processing_started_at < cutoff,
    )


class NoteRepository(BaseRepository[Note]):
    """Repository for note processing operations.

    Every lease transition is a single conditional UPDATE so that two
    workers can never both observe the note as free.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(session, Note)

    async def acquire_lock(
        self,
        note_id: UUID,
        timeout_minutes: int,
        now: Optional[datetime] = None,
        include_processed: bool = False,
        max_attempts: Optional[int] = None,
    ) -> bool:
        """Take the lease if it is free or expired.

        Args:
            note_id: Note to lock
            timeout_minutes: Age after which an existing lease is abandoned
            now: Current time (defaults to datetime.now())
            include_processed: Also lock completed notes (forced reprocessing)
            max_attempts: If given, refuse notes that have used this many attempts

        Returns:
            True if this caller now holds the lease
        """
        now = now or datetime.now()
        conditions = [Note.id == note_id, _lock_free(_lock_cutoff(timeout_minutes, now))]
        if not include_processed:
            conditions.append(Note.processed_at.is_(None))
        if max_attempts is not None:
            conditions.append(func.coalesce(Note.processing_attempts, 0) < max_attempts)

        changed = await self.update_where(
            *conditions,
            processing_started_at=now,
            processing_attempts=func.coalesce(Note.processing_attempts, 0) + 1,
            last_error_at=None,
            error_message=None,
        )
        return changed > 0

    async def release_lock(self, note_id: UUID) -> bool:
        """Clear the lease."""
        return await self.update_where(Note.id == note_id, processing_started_at=None) > 0

    async def release_lock_with_error(
        self,
        note_id: UUID,
        message: str,
        now: Optional[datetime] = None,
        terminal_attempts: Optional[int] = None,
        refund_attempt: bool = False,
    ) -> bool:
        """Clear the lease and record the error in one statement.

        Passing ``terminal_attempts`` raises the attempt count to at least
        that value, which takes the note out of batch selection.
        ``refund_attempt`` gives back the attempt taken by ``acquire_lock``.
        """
        values = {
            "processing_started_at": None,
            "error_message": message,
            "last_error_at": now or datetime.now(),
        }
        if terminal_attempts is not None:
            values["processing_attempts"] = case(
                (func.coalesce(Note.processing_attempts, 0) < terminal_attempts, terminal_attempts),
                else_=Note.processing_attempts,
            )
        elif refund_attempt:
            values["processing_attempts"] = case(
                (func.coalesce(Note.processing_attempts, 0) > 0, Note.processing_attempts - 1),
                else_=0,
            )
        return await self.update_where(Note.id == note_id, **values) > 0

    async def reclaim_abandoned_locks(
        self,
        timeout_minutes: int,
        now: Optional[datetime] = None,
    ) -> int:
        """Clear every unprocessed lease older than the timeout.

        Returns:
            Number of leases reclaimed
        """
        now = now or datetime.now()
        return await self.update_where(
            _lock_expired(_lock_cutoff(timeout_minutes, now)),
            processing_started_at=None,
            error_message="Processing lock expired - reclaimed",
            last_error_at=now,
        )

    async def get_eligible_notes(
        self,
        limit: int,
        timeout_minutes: int,
        max_attempts: int,
        now: Optional[datetime] = None,
    ) -> List[Note]:
        """Get unprocessed notes with audio whose lease is free or expired.

        Rows already locked by another transaction are skipped on PostgreSQL.
        """
        cutoff = _lock_cutoff(timeout_minutes, now or datetime.now())
        stmt = (
            select(Note)
            .where(
                and_(
                    Note.processed_at.is_(None),
                    Note.audio_url.isnot(None),
                    _lock_free(cutoff),
                    func.coalesce(Note.processing_attempts, 0) < max_attempts,
                )
            )
            .order_by(Note.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def save_transcription(self, note_id: UUID, transcription: str) -> None:
        """Persist the transcript as partial progress."""
        await self.update_where(Note.id == note_id, transcription=transcription)

    async def complete(
        self,
        note_id: UUID,
        transcription: str,
        analysis: dict,
        now: Optional[datetime] = None,
    ) -> None:
        """Store results, set the terminal marker and clear lease and error."""
        await self.update_where(
            Note.id == note_id,
            transcription=transcription,
            analysis=analysis,
            processed_at=now or datetime.now(),
            processing_started_at=None,
            error_message=None,
            last_error_at=None,
        )

    async def count_expired_locks(
        self,
        timeout_minutes: int,
        now: Optional[datetime] = None,
    ) -> int:
        """Count unprocessed notes whose lease has outlived the timeout."""
        cutoff = _lock_cutoff(timeout_minutes, now or datetime.now())
        stmt = select(func.count(Note.id)).where(_lock_expired(cutoff))
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def force_reset_unprocessed(self) -> int:
        """Clear lease, results and errors on every unprocessed note with audio.

        Returns:
            Number of notes reset
        """
        return await self.update_where(
            Note.processed_at.is_(None),
            Note.audio_url.isnot(None),
            processing_started_at=None,
            transcription=None,
            analysis=None,
            error_message=None,
            last_error_at=None,
            processing_attempts=0,
        )
