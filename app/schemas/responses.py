"""
Response schemas for the job API.

These define the JSON format consumed by the browser client.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class JobAcceptedResponse(BaseModel):
    """Returned as soon as a job has been accepted."""

    message: str
    correlationId: str = Field(..., description="Id carried by every event of this job")
    videoId: Optional[int] = None


class VideoResponse(BaseModel):
    """One stored job row plus its public URL."""

    id: int
    kind: str
    title: Optional[str] = None
    status: str
    filename: str
    extension: Optional[str] = None
    original_url: str
    external_job_id: str
    file_size: Optional[int] = None
    parent_id: Optional[int] = None
    clip_start: Optional[float] = None
    clip_end: Optional[float] = None
    error_message: Optional[str] = None
    has_captions: bool = False
    url: Optional[str] = Field(default=None, description="Public URL of the artifact, once completed")
    created_at: datetime
    updated_at: datetime


class KeyframeResponse(BaseModel):
    """One extracted keyframe."""

    id: int
    filename: str
    timestamp: Optional[str] = None
    url: Optional[str] = None


class VideoDetailResponse(BaseModel):
    """A video, its keyframes and the other versions sharing its directory."""

    video: VideoResponse
    keyframes: list[KeyframeResponse]
    versions: list[VideoResponse]


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")


class ReadinessResponse(BaseModel):
    """Response for readiness check endpoint."""

    ready: bool = Field(..., description="Whether the service can accept jobs")
    database: str = Field(..., description="Database status")
    tools: dict[str, bool] = Field(..., description="Availability of each external tool")
    active_jobs: int = Field(default=0, description="Jobs currently running")
    subscribers: int = Field(default=0, description="Connected event subscribers")
