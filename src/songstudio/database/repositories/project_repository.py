"""
Project Repository
Specialized repository for Project model operations
"""

import uuid
from typing import List, Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Project
from ..schemas import ProjectCreate, ProjectUpdate
from .base import BaseRepository, RepositoryError


class ProjectRepository(BaseRepository[Project, ProjectCreate, ProjectUpdate]):
    """Repository for Project operations"""

    def __init__(self, session: AsyncSession):
        super().__init__(Project, session)

    async def get_by_user(
        self,
        user_id: uuid.UUID,
        skip: int = 0,
        limit: int = 100
    ) -> List[Project]:
        """Get all projects for a user"""
        try:
            result = await self.session.execute(
                select(self.model)
                .where(self.model.user_id == user_id)
                .order_by(self.model.updated_at.desc())
                .offset(skip)
                .limit(limit)
            )
            return list(result.scalars().all())
        except Exception as e:
            raise RepositoryError(f"Error getting user projects: {str(e)}")

    async def get_open_drafts(
        self,
        user_id: uuid.UUID,
        limit: int = 100
    ) -> List[Project]:
        """Get a user's open projects, most recently updated first"""
        try:
            result = await self.session.execute(
                select(self.model)
                .where(
                    (self.model.user_id == user_id) &
                    (self.model.status == "open")
                )
                .order_by(self.model.updated_at.desc(), self.model.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
        except Exception as e:
            raise RepositoryError(f"Error getting draft projects: {str(e)}")

    async def get_owned(self, project_id: uuid.UUID, user_id: Optional[uuid.UUID]) -> Optional[Project]:
        """Get a project, restricted to its owner when a user is given"""
        try:
            query = select(self.model).where(self.model.id == project_id)
            if user_id is not None:
                query = query.where(self.model.user_id == user_id)

            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except Exception as e:
            raise RepositoryError(f"Error getting project: {str(e)}")

    async def check_ownership(self, project_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        """Check if user owns the project"""
        try:
            result = await self.session.execute(
                select(func.count(self.model.id))
                .where(
                    (self.model.id == project_id) &
                    (self.model.user_id == user_id)
                )
            )
            return result.scalar() > 0
        except Exception as e:
            raise RepositoryError(f"Error checking project ownership: {str(e)}")
