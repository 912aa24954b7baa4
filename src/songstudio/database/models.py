"""
SongStudio Database Models
SQLAlchemy ORM models for projects, finished recordings and provider jobs
"""

import uuid
from datetime import datetime
from typing import Optional, List
from sqlalchemy import (
    JSON,
    String,
    Integer,
    Text,
    TIMESTAMP,
    ForeignKey,
    Index,
    Uuid
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship, Mapped, mapped_column

from .connection import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Project(Base):
    """Song assembly project - `verses` holds the full serialized pipeline state"""
    __tablename__ = "projects"

    # Primary key
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )

    # User and ownership
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # Project metadata
    song_name: Mapped[str] = mapped_column(String(255), nullable=False, default="פרויקט חדש")
    project_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # search, upload, ai, narration
    playback_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        default="open",
        nullable=False
    )  # "open", "recording", "processing", "completed"
    current_stage: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Serialized pipeline state
    verses: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now()
    )

    # Relationships
    recordings: Mapped[List["Recording"]] = relationship(
        "Recording",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Project(id={self.id}, song_name='{self.song_name}', status='{self.status}')>"


class Recording(Base):
    """Finished song linked to the project that produced it"""
    __tablename__ = "recordings"

    # Primary key
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True
    )

    song_name: Mapped[str] = mapped_column(String(255), nullable=False)
    audio_url: Mapped[str] = mapped_column(Text, nullable=False)
    duration: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # "m:ss"

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now()
    )

    project: Mapped[Optional["Project"]] = relationship("Project", back_populates="recordings")

    def __repr__(self) -> str:
        return f"<Recording(id={self.id}, song_name='{self.song_name}')>"


class ProviderJob(Base):
    """Audit trail of external provider jobs, also used for late-result reconciliation"""
    __tablename__ = "provider_jobs"

    # Primary key
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )

    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    job_id: Mapped[str] = mapped_column(String(255), nullable=False)

    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    role: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # e.g. "intro", "section:2"

    status: Mapped[str] = mapped_column(
        String(20),
        default="processing",
        nullable=False
    )  # "processing", "succeeded", "failed", "timed_out", "cancelled", "recovered", "consumed"
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    input_parameters: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    output_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<ProviderJob(provider='{self.provider}', job_id='{self.job_id}', status='{self.status}')>"


# Performance indexes
Index("ix_projects_user_id", Project.user_id)
Index("ix_projects_user_status", Project.user_id, Project.status, Project.updated_at)
Index("ix_recordings_user_id", Recording.user_id)
Index("ix_recordings_project_id", Recording.project_id)
Index("ix_provider_jobs_job_id", ProviderJob.provider, ProviderJob.job_id, unique=True)
Index("ix_provider_jobs_project_role", ProviderJob.project_id, ProviderJob.role)
