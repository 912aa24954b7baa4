"""
SongStudio Repository Layer
Data access layer with async CRUD operations
"""

from .base import BaseRepository, RepositoryError, NotFoundError, ConflictError
from .project_repository import ProjectRepository
from .recording_repository import RecordingRepository
from .provider_job_repository import ProviderJobRepository

__all__ = [
    "BaseRepository",
    "RepositoryError",
    "NotFoundError",
    "ConflictError",
    "ProjectRepository",
    "RecordingRepository",
    "ProviderJobRepository"
]
