"""Shared fixtures: a throwaway SQLite database and note factory."""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from voicenotes.db.models import Base, Note


@pytest.fixture
async def engine(tmp_path):
    # A single pooled connection serialises access so SQLite never reports "database is locked"
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        pool_size=1,
        max_overflow=0,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def make_note(session_factory):
    """Insert a note and return it."""

    async def _make_note(**overrides) -> Note:
        values = {
            "user_id": uuid4(),
            "audio_url": "audio/note.mp3",
            "recorded_at": datetime.now() - timedelta(hours=1),
            "created_at": datetime.now() - timedelta(hours=1),
            "processing_attempts": 0,
        }
        values.update(overrides)
        async with session_factory() as session:
            note = Note(**values)
            session.add(note)
            await session.commit()
            return note

    return _make_note


@pytest.fixture
def load_note(session_factory):
    """Re-read a note from the database."""

    async def _load_note(note_id) -> Note:
        async with session_factory() as session:
            return await session.get(Note, note_id)

    return _load_note


def mp3_bytes(size: int) -> bytes:
    """An ID3-tagged payload of the given size."""
    return b"ID3" + b"\x00" * (size - 3)


def wav_bytes(seconds: int) -> bytes:
    """A RIFF/WAVE payload sized for ``seconds`` of 16-bit stereo audio."""
    size = seconds * 1411 * 1024 // 8
    return b"RIFF\x24\x00\x00\x00WAVEfmt " + b"\x00" * (size - 16)
