"""Repository for per-user project knowledge."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voicenotes.db.models import ProjectKnowledge
from voicenotes.db.repositories.base import BaseRepository


class ProjectKnowledgeRepository(BaseRepository[ProjectKnowledge]):
    """Repository for project knowledge operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, ProjectKnowledge)

    async def get_by_user(self, user_id: UUID) -> Optional[ProjectKnowledge]:
        """Get knowledge record for a user."""
        stmt = select(ProjectKnowledge).where(ProjectKnowledge.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def append_insight(
        self,
        user_id: UUID,
        insight: dict,
        max_insights: int = 50,
    ) -> ProjectKnowledge:
        """Append an insight, keeping only the most recent ``max_insights``.

        The row is locked for the rest of the transaction. Creating the first
        row can still race with another writer and raise IntegrityError on
        the unique ``user_id``; callers retry in a fresh session.
        """
        stmt = (
            select(ProjectKnowledge)
            .where(ProjectKnowledge.user_id == user_id)
            .with_for_update()
        )
        knowledge = (await self.session.execute(stmt)).scalar_one_or_none()
        if knowledge is None:
            knowledge = ProjectKnowledge(user_id=user_id, content={})
            self.session.add(knowledge)

        content = dict(knowledge.content or {})
        insights = list(content.get("recent_insights", []))
        insights.append(insight)
        content["recent_insights"] = insights[-max_insights:]
        content["last_updated"] = datetime.now().isoformat()
        knowledge.content = content

        await self.session.flush()
        return knowledge
