"""
Project State Store
Persists the serialized pipeline document so any stage can be resumed
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..core.logging import pipeline_logger
from ..core.result import Result, ErrorKind
from ..database.connection import DatabaseManager, database_manager
from ..database.models import Project
from ..database.repositories import (
    ProjectRepository,
    RecordingRepository,
    RepositoryError
)
from ..database.schemas import ProjectCreate, ProjectResponse, RecordingCreate, RecordingResponse
from .state import ProjectData, ProjectStatus, resolve_stage

IDENTITY_FIELDS = {"project_id", "user_id"}


def format_duration(seconds: Optional[float]) -> Optional[str]:
    """Seconds as m:ss"""
    if seconds is None or seconds < 0:
        return None
    total = int(round(seconds))
    return f"{total // 60}:{total % 60:02d}"


def pick_final_audio(project: ProjectData) -> Optional[str]:
    """Best available asset to link as the finished song"""
    candidates = [project.generated_song_url, project.generated_playback_url, project.vocals_url]
    candidates.extend(
        section.recordings[0].audio_url for section in project.sections if section.recordings
    )
    candidates.extend(section.audio_url for section in project.sections)
    return next((url for url in candidates if url), None)


class ProjectStateStore:
    """Save/load of `ProjectData` against the projects table"""

    def __init__(self, db: DatabaseManager = None):
        self.db = db or database_manager

    async def save(
        self,
        project: ProjectData,
        status: ProjectStatus = None
    ) -> Result[uuid.UUID]:
        """
        Insert or overwrite the project row with the full document.

        Sets `project.project_id` on first save. There is no version
        check; the latest write wins.
        """
        if project.user_id is None:
            return Result.err("Project has no owner", ErrorKind.INPUT)

        if status is not None:
            project.status = ProjectStatus(status)

        try:
            async with self.db.get_session() as session:
                repo = ProjectRepository(session)
                row = None
                if project.project_id is not None:
                    row = await repo.get_owned(project.project_id, project.user_id)

                if row is None:
                    create = ProjectCreate(
                        user_id=project.user_id,
                        song_name=project.project_name,
                        project_type=project.mode.value,
                        playback_id=project.playback_id,
                        status=project.status.value,
                        current_stage=project.stage,
                        verses=project.to_document()
                    )
                    extra = {"id": project.project_id} if project.project_id else {}
                    row = await repo.create(create, **extra)
                    operation = "create"
                else:
                    self._apply(row, project)
                    await session.flush()
                    operation = "update"

                project.project_id = row.id

        except (RepositoryError, SQLAlchemyError) as e:
            return Result.err(f"Failed to save project: {str(e)}", ErrorKind.STORAGE)

        pipeline_logger.log_state_saved(
            str(project.project_id), operation, project.stage, project.status.value
        )
        return Result.ok(project.project_id)

    async def update(
        self,
        project_id: uuid.UUID,
        changes: Dict[str, Any],
        user_id: Optional[uuid.UUID] = None
    ) -> Result[ProjectData]:
        """Apply a partial change to the stored document and persist it"""
        try:
            async with self.db.get_session() as session:
                repo = ProjectRepository(session)
                row = await repo.get_owned(project_id, user_id)
                if row is None:
                    return Result.err(f"Project {project_id} not found", ErrorKind.NOT_FOUND)

                current = self._to_project(row)
                merged = current.model_dump()
                merged.update({k: v for k, v in changes.items() if k not in IDENTITY_FIELDS})

                try:
                    project = ProjectData.model_validate(merged)
                except ValidationError as e:
                    return Result.err(f"Invalid project update: {e.error_count()} errors", ErrorKind.INPUT)

                self._apply(row, project)
                await session.flush()

        except (RepositoryError, SQLAlchemyError) as e:
            return Result.err(f"Failed to update project: {str(e)}", ErrorKind.STORAGE)

        pipeline_logger.log_state_saved(str(project_id), "update", project.stage, project.status.value)
        return Result.ok(project)

    async def load(
        self,
        project_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None
    ) -> Result[ProjectData]:
        """Rebuild the in-memory project, restricted to its owner when given"""
        try:
            async with self.db.get_session() as session:
                row = await ProjectRepository(session).get_owned(project_id, user_id)
                if row is None:
                    return Result.err(f"Project {project_id} not found", ErrorKind.NOT_FOUND)
                project = self._to_project(row)

        except ValidationError as e:
            return Result.err(f"Stored project state is invalid: {e.error_count()} errors", ErrorKind.INPUT)
        except (RepositoryError, SQLAlchemyError) as e:
            return Result.err(f"Failed to load project: {str(e)}", ErrorKind.STORAGE)

        resolved = resolve_stage(project)
        if resolved != project.flow.stage:
            pipeline_logger.log_stage_step_back(str(project_id), project.stage, resolved.value)
            project.flow.stage = resolved

        return Result.ok(project)

    async def list_open_drafts(self, user_id: uuid.UUID, limit: int = 50) -> Result[List[ProjectResponse]]:
        """Open projects for a user, most recently touched first"""
        try:
            async with self.db.get_session() as session:
                rows = await ProjectRepository(session).get_open_drafts(user_id, limit)
                return Result.ok([ProjectResponse.model_validate(row) for row in rows])
        except (RepositoryError, SQLAlchemyError) as e:
            return Result.err(f"Failed to list drafts: {str(e)}", ErrorKind.STORAGE)

    async def complete(
        self,
        project_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
        audio_url: Optional[str] = None,
        duration_seconds: Optional[float] = None
    ) -> Result[RecordingResponse]:
        """
        Link the finished song as a Recording and mark the project completed.

        Both writes share one transaction. Completing an already completed
        project with the same audio returns the existing recording.
        """
        try:
            async with self.db.get_session() as session:
                projects = ProjectRepository(session)
                recordings = RecordingRepository(session)

                row = await projects.get_owned(project_id, user_id)
                if row is None:
                    return Result.err(f"Project {project_id} not found", ErrorKind.NOT_FOUND)

                project = self._to_project(row)
                final_url = audio_url or pick_final_audio(project)
                if not final_url:
                    return Result.err("No audio available to complete the project", ErrorKind.INPUT)

                for existing in await recordings.get_by_project(row.id):
                    if existing.audio_url == final_url:
                        return Result.ok(RecordingResponse.model_validate(existing))

                recording = await recordings.create(RecordingCreate(
                    user_id=row.user_id,
                    project_id=row.id,
                    song_name=row.song_name,
                    audio_url=final_url,
                    duration=format_duration(duration_seconds)
                ))

                project.status = ProjectStatus.COMPLETED
                self._apply(row, project)
                await session.flush()
                response = RecordingResponse.model_validate(recording)

        except ValidationError as e:
            return Result.err(f"Stored project state is invalid: {e.error_count()} errors", ErrorKind.INPUT)
        except (RepositoryError, SQLAlchemyError) as e:
            return Result.err(f"Failed to complete project: {str(e)}", ErrorKind.STORAGE)

        pipeline_logger.log_state_saved(str(project_id), "complete", project.stage, ProjectStatus.COMPLETED.value)
        return Result.ok(response)

    @staticmethod
    def _apply(row: Project, project: ProjectData) -> None:
        row.song_name = project.project_name
        row.project_type = project.mode.value
        row.playback_id = project.playback_id
        row.status = project.status.value
        row.current_stage = project.stage
        row.verses = project.to_document()
        row.updated_at = datetime.now(timezone.utc)

    @staticmethod
    def _to_project(row: Project) -> ProjectData:
        document = dict(row.verses or {})
        if "flow" not in document and row.project_type:
            document["flow"] = {"mode": row.project_type}
        document.update(
            project_id=row.id,
            user_id=row.user_id,
            status=row.status,
            project_name=row.song_name,
            playback_id=row.playback_id
        )
        return ProjectData.model_validate(document)
