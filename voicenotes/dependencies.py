"""FastAPI dependencies for database repositories and the coordinator."""

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from voicenotes.db.connection import get_session
from voicenotes.db.repositories.notes import NoteRepository
from voicenotes.processing.coordinator import ProcessingCoordinator, get_coordinator


# Session dependency
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async for session in get_session():
        yield session


# Type alias for session dependency
DbSession = Annotated[AsyncSession, Depends(get_db)]


async def get_note_repo(session: DbSession) -> NoteRepository:
    """Get note repository."""
    return NoteRepository(session)


def get_processing_coordinator() -> ProcessingCoordinator:
    """Get the process-wide coordinator."""
    return get_coordinator()


NoteRepoDep = Annotated[NoteRepository, Depends(get_note_repo)]
CoordinatorDep = Annotated[ProcessingCoordinator, Depends(get_processing_coordinator)]
