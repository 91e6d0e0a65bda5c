import asyncio
from datetime import datetime, timedelta

import pytest

from voicenotes.config import settings
from voicenotes.processing.lock_manager import ProcessingLockManager


@pytest.fixture
def locks(session_factory):
    return ProcessingLockManager(session_factory)


@pytest.mark.asyncio
async def test_acquire_free_note(locks, make_note, load_note):
    note = await make_note()

    assert await locks.acquire(note.id, 15) is True

    stored = await load_note(note.id)
    assert stored.processing_started_at is not None
    assert stored.processing_attempts == 1


@pytest.mark.asyncio
async def test_second_acquire_fails_without_mutating_lock(locks, make_note, load_note):
    note = await make_note()
    assert await locks.acquire(note.id, 15) is True
    first = await load_note(note.id)

    assert await locks.acquire(note.id, 15) is False

    second = await load_note(note.id)
    assert second.processing_started_at == first.processing_started_at
    assert second.processing_attempts == 1


@pytest.mark.asyncio
async def test_concurrent_acquire_has_exactly_one_winner(session_factory, make_note):
    note = await make_note()
    worker_a = ProcessingLockManager(session_factory)
    worker_b = ProcessingLockManager(session_factory)

    results = await asyncio.gather(
        worker_a.acquire(note.id, 15),
        worker_b.acquire(note.id, 15),
    )

    assert sorted(results) == [False, True]


@pytest.mark.asyncio
async def test_expired_lock_can_be_taken_over(locks, make_note):
    note = await make_note(processing_started_at=datetime.now() - timedelta(minutes=20))

    assert await locks.acquire(note.id, 15) is True


@pytest.mark.asyncio
async def test_young_lock_cannot_be_taken_over(locks, make_note):
    note = await make_note(processing_started_at=datetime.now() - timedelta(minutes=10))

    assert await locks.acquire(note.id, 15) is False


@pytest.mark.asyncio
async def test_processed_note_is_not_locked_unless_forced(locks, make_note):
    note = await make_note(processed_at=datetime.now())

    assert await locks.acquire(note.id, 15) is False
    assert await locks.acquire(note.id, 15, force=True) is True


@pytest.mark.asyncio
async def test_release_clears_lock(locks, make_note, load_note):
    note = await make_note()
    await locks.acquire(note.id)

    await locks.release(note.id)

    stored = await load_note(note.id)
    assert stored.processing_started_at is None
    assert await locks.acquire(note.id) is True


@pytest.mark.asyncio
async def test_release_with_error_records_error(locks, make_note, load_note):
    note = await make_note()
    await locks.acquire(note.id)

    await locks.release_with_error(note.id, "Rate limit exceeded")

    stored = await load_note(note.id)
    assert stored.processing_started_at is None
    assert stored.error_message == "Rate limit exceeded"
    assert stored.last_error_at is not None
    assert stored.processing_attempts == 1


@pytest.mark.asyncio
async def test_terminal_error_exhausts_attempts(locks, make_note, load_note):
    note = await make_note()
    await locks.acquire(note.id)

    await locks.release_with_error(note.id, "file_too_large", terminal=True)

    stored = await load_note(note.id)
    assert stored.processing_attempts == settings.MAX_PROCESSING_ATTEMPTS


@pytest.mark.asyncio
async def test_exhausted_note_is_not_locked_unless_forced(locks, make_note, load_note):
    note = await make_note(
        processing_attempts=settings.MAX_PROCESSING_ATTEMPTS, error_message="invalid_file: corrupt"
    )

    assert await locks.acquire(note.id) is False
    assert (await load_note(note.id)).error_message == "invalid_file: corrupt"

    assert await locks.acquire(note.id, force=True) is True


@pytest.mark.asyncio
async def test_refunded_error_keeps_attempt_budget(locks, make_note, load_note):
    note = await make_note(processing_attempts=1)
    await locks.acquire(note.id)

    await locks.release_with_error(note.id, "circuit breaker is open", refund_attempt=True)

    stored = await load_note(note.id)
    assert stored.processing_started_at is None
    assert stored.processing_attempts == 1
    assert stored.error_message == "circuit breaker is open"


@pytest.mark.asyncio
async def test_acquire_clears_previous_error(locks, make_note, load_note):
    note = await make_note(error_message="network error", last_error_at=datetime.now())

    assert await locks.acquire(note.id) is True

    stored = await load_note(note.id)
    assert stored.error_message is None
    assert stored.last_error_at is None


@pytest.mark.asyncio
async def test_reclaim_abandoned_only_touches_expired_locks(locks, make_note, load_note):
    stale = await make_note(processing_started_at=datetime.now() - timedelta(minutes=30))
    fresh = await make_note(processing_started_at=datetime.now() - timedelta(minutes=2))
    done = await make_note(
        processing_started_at=datetime.now() - timedelta(minutes=30),
        processed_at=datetime.now(),
    )

    count = await locks.reclaim_abandoned(15)

    assert count == 1
    assert (await load_note(stale.id)).processing_started_at is None
    assert (await load_note(stale.id)).error_message == "Processing lock expired - reclaimed"
    assert (await load_note(fresh.id)).processing_started_at is not None
    assert (await load_note(done.id)).processing_started_at is not None


@pytest.mark.asyncio
async def test_validate_lock_status(locks, make_note, load_note):
    held = await make_note(processing_started_at=datetime.now())
    expired = await make_note(processing_started_at=datetime.now() - timedelta(minutes=30))
    free = await make_note()

    assert await locks.validate_lock_status(held.id) is True
    assert await locks.validate_lock_status(free.id) is False
    assert await locks.validate_lock_status(expired.id) is False

    stored = await load_note(expired.id)
    assert stored.processing_started_at is None
    assert stored.error_message.startswith("Processing timeout exceeded")
