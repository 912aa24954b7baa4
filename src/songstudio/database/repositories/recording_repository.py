"""
Recording Repository
Finished songs linked to completed projects
"""

import uuid
from typing import List
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Recording
from ..schemas import RecordingCreate
from .base import BaseRepository, RepositoryError


class RecordingRepository(BaseRepository[Recording, RecordingCreate, RecordingCreate]):
    """Repository for Recording operations"""

    def __init__(self, session: AsyncSession):
        super().__init__(Recording, session)

    async def get_by_project(self, project_id: uuid.UUID) -> List[Recording]:
        """Get recordings produced by a project"""
        try:
            result = await self.session.execute(
                select(self.model)
                .where(self.model.project_id == project_id)
                .order_by(self.model.created_at.desc())
            )
            return list(result.scalars().all())
        except Exception as e:
            raise RepositoryError(f"Error getting project recordings: {str(e)}")
