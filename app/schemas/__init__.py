"""
Pydantic schemas for request/response models.
"""

from app.schemas.requests import ClipRequest, ConvertRequest, DownloadRequest, SubscriberRequest
from app.schemas.responses import (
    HealthResponse,
    JobAcceptedResponse,
    KeyframeResponse,
    ReadinessResponse,
    VideoDetailResponse,
    VideoResponse,
)

__all__ = [
    "DownloadRequest",
    "ConvertRequest",
    "ClipRequest",
    "SubscriberRequest",
    "JobAcceptedResponse",
    "VideoResponse",
    "KeyframeResponse",
    "VideoDetailResponse",
    "HealthResponse",
    "ReadinessResponse",
]
