"""Explicit processing state of a note, derived from its fields."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from voicenotes.config import settings
from voicenotes.db.models import Note


class NoteState(Enum):
    """Where a note is in the processing lifecycle."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


def note_state(
    note: Note,
    now: Optional[datetime] = None,
    lock_timeout_minutes: Optional[int] = None,
    max_attempts: Optional[int] = None,
) -> NoteState:
    """Compute the state of a note.

    This is the only place the field combination is interpreted. An expired
    lease counts as no lease at all.

    Args:
        note: Note record
        now: Current time (defaults to datetime.now())
        lock_timeout_minutes: Lease lifetime (defaults to settings)
        max_attempts: Attempts after which an error is terminal (defaults to settings)

    Returns:
        NoteState
    """
    now = now or datetime.now()
    if lock_timeout_minutes is None:
        lock_timeout_minutes = settings.LOCK_TIMEOUT_MINUTES
    if max_attempts is None:
        max_attempts = settings.MAX_PROCESSING_ATTEMPTS

    if note.processed_at is not None:
        return NoteState.COMPLETED

    started = note.processing_started_at
    if started is not None and now - started < timedelta(minutes=lock_timeout_minutes):
        return NoteState.PROCESSING

    if note.error_message:
        if (note.processing_attempts or 0) >= max_attempts:
            return NoteState.FAILED_TERMINAL
        return NoteState.FAILED_RETRYABLE

    return NoteState.PENDING


def is_eligible(note: Note, now: Optional[datetime] = None) -> bool:
    """Whether the batch processor may pick this note up."""
    if not note.audio_url:
        return False
    return note_state(note, now) in (NoteState.PENDING, NoteState.FAILED_RETRYABLE)
