"""
Video API Router - job creation and queries over stored videos.

Job creation endpoints answer 202 with a correlation id as soon as the job
row exists; progress and the outcome arrive over the event stream.
"""

import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import PlainTextResponse

from app.auth import VerifiedUser, verify_request
from app.config import get_settings
from app.models import Job, JobStatus, Keyframe
from app.routers.dependencies import get_job_store, get_orchestrator
from app.schemas.requests import ClipRequest, ConvertRequest, DownloadRequest, SubscriberRequest
from app.schemas.responses import (
    JobAcceptedResponse,
    KeyframeResponse,
    VideoDetailResponse,
    VideoResponse,
)
from app.services.job_orchestrator import JobOrchestrator, JobTicket
from app.services.job_store import JobStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Videos"])


def _accepted(ticket: JobTicket) -> JobAcceptedResponse:
    return JobAcceptedResponse(
        message=ticket.message,
        correlationId=ticket.correlation_id,
        videoId=ticket.video_id,
    )


def _video_response(job: Job) -> VideoResponse:
    settings = get_settings()
    url = settings.public_url_for(job.file_path) if job.status == JobStatus.COMPLETED.value else None
    return VideoResponse(
        id=job.id,
        kind=job.kind,
        title=job.title,
        status=job.status,
        filename=job.filename,
        extension=job.extension,
        original_url=job.original_url,
        external_job_id=job.external_job_id,
        file_size=job.file_size,
        parent_id=job.parent_id,
        clip_start=job.clip_start,
        clip_end=job.clip_end,
        error_message=job.error_message,
        has_captions=bool(job.captions_path),
        url=url,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


def _keyframe_response(keyframe: Keyframe) -> KeyframeResponse:
    return KeyframeResponse(
        id=keyframe.id,
        filename=keyframe.filename,
        timestamp=keyframe.timestamp,
        url=get_settings().public_url_for(keyframe.file_path),
    )


def _owned_or_404(store: JobStore, video_id: int, user: VerifiedUser) -> Job:
    job = store.get(video_id, user.user_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    return job


# ============================================================================
# Job creation
# ============================================================================


@router.post("/download-video", response_model=JobAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def download_video(
    request: DownloadRequest,
    user: VerifiedUser = Depends(verify_request),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobAcceptedResponse:
    """Start downloading a video. Progress is reported as download_* events."""
    ticket = await orchestrator.start_download(user.user_id, request.url, request.socketId)
    return _accepted(ticket)


@router.post(
    "/videos/{video_id}/convert",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def convert_video(
    video_id: int,
    request: Optional[ConvertRequest] = None,
    user: VerifiedUser = Depends(verify_request),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobAcceptedResponse:
    request = request or ConvertRequest()
    ticket = await orchestrator.start_conversion(user.user_id, video_id, request.format, request.socketId)
    return _accepted(ticket)


@router.post(
    "/videos/{video_id}/clip",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def clip_video(
    video_id: int,
    request: ClipRequest,
    user: VerifiedUser = Depends(verify_request),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobAcceptedResponse:
    ticket = await orchestrator.start_clip(
        user.user_id, video_id, request.startTime, request.endTime, request.socketId
    )
    return _accepted(ticket)


@router.post(
    "/videos/{video_id}/keyframes",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def extract_keyframes(
    video_id: int,
    request: Optional[SubscriberRequest] = None,
    user: VerifiedUser = Depends(verify_request),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobAcceptedResponse:
    socket_id = request.socketId if request else None
    ticket = await orchestrator.start_keyframe_extraction(user.user_id, video_id, socket_id)
    return _accepted(ticket)


@router.post(
    "/videos/{video_id}/captions",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def fetch_captions(
    video_id: int,
    request: Optional[SubscriberRequest] = None,
    user: VerifiedUser = Depends(verify_request),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobAcceptedResponse:
    socket_id = request.socketId if request else None
    ticket = await orchestrator.start_caption_fetch(user.user_id, video_id, socket_id)
    return _accepted(ticket)


# ============================================================================
# Queries
# ============================================================================


@router.get("/videos", response_model=list[VideoResponse])
async def list_videos(
    user: VerifiedUser = Depends(verify_request),
    store: JobStore = Depends(get_job_store),
) -> list[VideoResponse]:
    """List the caller's videos, newest first."""
    return [_video_response(job) for job in store.list_by_owner(user.user_id)]


@router.get("/videos/{video_id}", response_model=VideoDetailResponse)
async def get_video(
    video_id: int,
    user: VerifiedUser = Depends(verify_request),
    store: JobStore = Depends(get_job_store),
) -> VideoDetailResponse:
    """A video with its keyframes and the other versions in its directory."""
    job = _owned_or_404(store, video_id, user)
    versions = [
        version
        for version in store.list_by_directory(job.directory_path, exclude_id=job.id)
        if version.user_id == user.user_id
    ]
    return VideoDetailResponse(
        video=_video_response(job),
        keyframes=[_keyframe_response(keyframe) for keyframe in store.list_keyframes(job.id)],
        versions=[_video_response(version) for version in versions],
    )


@router.get("/videos/{video_id}/captions", response_class=PlainTextResponse)
async def get_captions(
    video_id: int,
    user: VerifiedUser = Depends(verify_request),
    store: JobStore = Depends(get_job_store),
) -> PlainTextResponse:
    job = _owned_or_404(store, video_id, user)
    if not job.captions_path or not os.path.isfile(job.captions_path):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Captions not available")

    with open(job.captions_path, encoding="utf-8", errors="replace") as f:
        content = f.read()
    media_type = "text/vtt" if job.captions_path.endswith(".vtt") else "text/plain"
    return PlainTextResponse(content, media_type=media_type)
