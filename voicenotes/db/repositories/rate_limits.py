"""Repository for the shared rate-limit windows."""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voicenotes.db.models import RateLimitWindow
from voicenotes.db.repositories.base import BaseRepository


class RateLimitRepository(BaseRepository[RateLimitWindow]):
    """Repository for per-service request windows."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, RateLimitWindow)

    async def probe(self) -> None:
        """Touch the table; raises if it is missing or unreachable."""
        await self.session.execute(select(RateLimitWindow.service_name).limit(1))

    async def get_for_update(self, service_name: str) -> Optional[RateLimitWindow]:
        """Get a service window, row-locked until the transaction ends."""
        stmt = (
            select(RateLimitWindow)
            .where(RateLimitWindow.service_name == service_name)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def save_window(
        self,
        window: Optional[RateLimitWindow],
        service_name: str,
        requests: List[float],
    ) -> RateLimitWindow:
        """Store the pruned request list, creating the row if needed."""
        if window is None:
            window = RateLimitWindow(service_name=service_name, requests=requests)
            self.session.add(window)
        else:
            # Assign a new list so the JSON column is flagged dirty
            window.requests = list(requests)
        await self.session.flush()
        return window
