"""Base repository with the operations shared by all repositories."""

from typing import Generic, Optional, Type, TypeVar
from uuid import UUID

from sqlalchemy import and_, update
from sqlalchemy.ext.asyncio import AsyncSession

from voicenotes.db.models import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Base repository bound to one model and one session."""

    def __init__(self, session: AsyncSession, model: Type[ModelType]):
        self.session = session
        self.model = model

    async def get_by_id(self, id: int | UUID | str) -> Optional[ModelType]:
        """Get entity by primary key."""
        return await self.session.get(self.model, id)

    async def update_where(self, *conditions, **values) -> int:
        """Single conditional UPDATE, bypassing the identity map.

        Returns:
            Number of rows changed
        """
        stmt = (
            update(self.model)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount
