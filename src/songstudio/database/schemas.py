"""
SongStudio Pydantic Schemas
Request/response models for persistence and webhook payloads
"""

import uuid
from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, ConfigDict


# Base configuration for all schemas
class BaseSchema(BaseModel):
    """Base schema with common configuration"""
    model_config = ConfigDict(
        from_attributes=True,
        use_enum_values=True,
        validate_assignment=True,
        arbitrary_types_allowed=True
    )


# Project Schemas
class ProjectBase(BaseSchema):
    """Base project fields"""
    song_name: str = Field(default="פרויקט חדש", min_length=1, max_length=255, description="Display name")
    project_type: Optional[str] = Field(None, pattern=r"^(search|upload|ai|narration)$", description="Background music mode")
    playback_id: Optional[str] = Field(None, max_length=255, description="Catalog playback id")
    status: str = Field(default="open", pattern=r"^(open|recording|processing|completed)$")
    current_stage: Optional[str] = Field(None, max_length=50, description="Persisted stage tag")
    verses: Optional[Dict[str, Any]] = Field(None, description="Serialized pipeline state")


class ProjectCreate(ProjectBase):
    """Schema for creating a project"""
    user_id: uuid.UUID = Field(..., description="ID of the owning user")


class ProjectUpdate(BaseSchema):
    """Schema for updating a project"""
    song_name: Optional[str] = Field(None, min_length=1, max_length=255)
    project_type: Optional[str] = Field(None, pattern=r"^(search|upload|ai|narration)$")
    playback_id: Optional[str] = Field(None, max_length=255)
    status: Optional[str] = Field(None, pattern=r"^(open|recording|processing|completed)$")
    current_stage: Optional[str] = Field(None, max_length=50)
    verses: Optional[Dict[str, Any]] = None


class ProjectResponse(ProjectBase):
    """Schema for project responses"""
    id: uuid.UUID
    user_id: uuid.UUID
    created_at: datetime
    updated_at: datetime


# Recording Schemas
class RecordingCreate(BaseSchema):
    """Schema for linking a finished song"""
    user_id: uuid.UUID
    project_id: Optional[uuid.UUID] = None
    song_name: str = Field(..., min_length=1, max_length=255)
    audio_url: str = Field(..., min_length=1)
    duration: Optional[str] = Field(None, pattern=r"^\d+:\d{2}$", description="Duration as m:ss")


class RecordingResponse(RecordingCreate):
    """Schema for recording responses"""
    id: uuid.UUID
    created_at: datetime


# Provider Job Schemas
class ProviderJobCreate(BaseSchema):
    """Schema for recording a started provider job"""
    provider: str = Field(..., max_length=20)
    kind: str = Field(..., max_length=50)
    job_id: str = Field(..., min_length=1, max_length=255)
    project_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    role: Optional[str] = Field(None, max_length=50)
    status: str = Field(default="processing")
    input_parameters: Optional[Dict[str, Any]] = None


class ProviderJobUpdate(BaseSchema):
    """Schema for updating a provider job"""
    status: Optional[str] = None
    attempts: Optional[int] = Field(None, ge=0)
    output_url: Optional[str] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None


class ProviderJobResponse(ProviderJobCreate):
    """Schema for provider job responses"""
    id: uuid.UUID
    attempts: int
    output_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


# Webhook Schemas
class WebhookAck(BaseSchema):
    """Schema for webhook acknowledgements"""
    received: bool = True
    job_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


# Error Schemas
class ErrorResponse(BaseSchema):
    """Schema for error responses"""
    success: bool = Field(default=False, description="Operation success status")
    error: str = Field(..., description="Error message")
    kind: Optional[str] = Field(None, description="Error class")
