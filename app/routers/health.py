"""
Health check endpoints.
"""

import shutil

from fastapi import APIRouter, Request
from sqlalchemy import text

from app.config import get_settings
from app.schemas.responses import HealthResponse, ReadinessResponse

router = APIRouter()

SERVICE_VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(status="healthy", version=SERVICE_VERSION)


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    Ready when the database answers and both yt-dlp and ffmpeg are on PATH.
    """
    settings = get_settings()
    tools = {
        "yt-dlp": shutil.which(settings.ytdlp_path) is not None,
        "ffmpeg": shutil.which(settings.ffmpeg_path) is not None,
    }

    database = "not_initialized"
    store = getattr(request.app.state, "job_store", None)
    session_factory = getattr(request.app.state, "session_factory", None)
    if session_factory is not None:
        try:
            with session_factory() as session:
                session.execute(text("SELECT 1"))
            database = "ready"
        except Exception as e:
            database = f"error: {e}"

    orchestrator = getattr(request.app.state, "orchestrator", None)
    relay = getattr(request.app.state, "event_relay", None)

    return ReadinessResponse(
        ready=database == "ready" and store is not None and all(tools.values()),
        database=database,
        tools=tools,
        active_jobs=orchestrator.active_jobs if orchestrator else 0,
        subscribers=len(relay.subscriber_ids) if relay else 0,
    )
