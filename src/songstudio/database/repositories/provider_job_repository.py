"""
Provider Job Repository
Audit trail for external jobs and lookup of late results
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ProviderJob
from ..schemas import ProviderJobCreate, ProviderJobUpdate
from .base import BaseRepository, RepositoryError

TERMINAL_STATUSES = {"succeeded", "failed", "timed_out", "cancelled", "recovered", "consumed"}


class ProviderJobRepository(BaseRepository[ProviderJob, ProviderJobCreate, ProviderJobUpdate]):
    """Repository for ProviderJob operations"""

    def __init__(self, session: AsyncSession):
        super().__init__(ProviderJob, session)

    async def get_by_job_id(self, provider: str, job_id: str) -> Optional[ProviderJob]:
        """Get the audit row for a provider-assigned id"""
        try:
            result = await self.session.execute(
                select(self.model).where(
                    (self.model.provider == provider) &
                    (self.model.job_id == job_id)
                )
            )
            return result.scalar_one_or_none()
        except Exception as e:
            raise RepositoryError(f"Error getting provider job: {str(e)}")

    async def mark(
        self,
        provider: str,
        job_id: str,
        status: str,
        attempts: Optional[int] = None,
        output_url: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> Optional[ProviderJob]:
        """Record a status change; unknown jobs are ignored"""
        job = await self.get_by_job_id(provider, job_id)
        if job is None:
            return None

        job.status = status
        if attempts is not None:
            job.attempts = attempts
        if output_url is not None:
            job.output_url = output_url
        if error_message is not None:
            job.error_message = error_message
        if status in TERMINAL_STATUSES:
            job.completed_at = datetime.now(timezone.utc)

        await self.session.flush()
        return job

    async def find_recovered(
        self,
        project_id: uuid.UUID,
        role: Optional[str] = None
    ) -> List[ProviderJob]:
        """Jobs whose results arrived after the local poll loop gave up"""
        try:
            query = select(self.model).where(
                (self.model.project_id == project_id) &
                (self.model.status == "recovered")
            )
            if role is not None:
                query = query.where(self.model.role == role)

            result = await self.session.execute(query.order_by(self.model.created_at.desc()))
            return list(result.scalars().all())
        except Exception as e:
            raise RepositoryError(f"Error finding recovered jobs: {str(e)}")
