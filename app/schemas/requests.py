"""
Request schemas for the job API.

Field names follow the JSON the browser client sends (camelCase).
"""

from typing import Optional

from pydantic import BaseModel, Field


class DownloadRequest(BaseModel):
    """Request body for POST /api/download-video."""

    url: Optional[str] = Field(default=None, description="Video URL to download")
    socketId: Optional[str] = Field(
        default=None,
        description="Subscriber id of the event connection that should receive progress",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
                "socketId": "3f1c9a0e5b7d4e2f8a6c1b0d9e8f7a6b",
            }
        }


class ConvertRequest(BaseModel):
    """Request body for POST /api/videos/{id}/convert."""

    format: Optional[str] = Field(default=None, description="Target container, e.g. mp4 or webm")
    socketId: Optional[str] = None


class ClipRequest(BaseModel):
    """Request body for POST /api/videos/{id}/clip."""

    startTime: Optional[float] = Field(default=None, description="Clip start in seconds")
    endTime: Optional[float] = Field(default=None, description="Clip end in seconds")
    socketId: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {"startTime": 30, "endTime": 45, "socketId": None}
        }


class SubscriberRequest(BaseModel):
    """Request body for jobs that only need a subscriber id (keyframes, captions)."""

    socketId: Optional[str] = None
