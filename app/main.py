"""
FastAPI application entry point for vidtrack.

vidtrack fetches videos with yt-dlp and derives new artifacts from them with
ffmpeg, providing:
1. Downloads with live progress (yt-dlp)
2. Format conversion and clip extraction (ffmpeg)
3. Keyframe extraction and caption fetching
"""

import logging
import os
import shutil
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import sessionmaker

from app.config import get_settings
from app.database import get_sessionmaker, init_db
from app.errors import register_exception_handlers
from app.routers import events, health, videos
from app.services.event_relay import EventRelay
from app.services.job_orchestrator import JobOrchestrator
from app.services.job_store import JobStore
from app.services.process_runner import ProcessRunner

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _verify_external_tools():
    """Verify that required external tools are available."""
    settings = get_settings()
    tools = {
        settings.ytdlp_path: "yt-dlp for downloads and captions",
        settings.ffmpeg_path: "FFmpeg for conversion, clips and keyframes",
    }

    for tool, description in tools.items():
        if shutil.which(tool):
            logger.info(f"✓ {description} available")
        else:
            logger.warning(f"✗ {description} NOT FOUND - jobs using it will fail")


def create_app(
    session_factory: Optional[sessionmaker] = None,
    runner: Optional[ProcessRunner] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        session_factory: Session factory for the job store; the configured
            database is used when omitted
        runner: Process runner handed to the orchestrator
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Create storage and wire the job services on startup."""
        logger.info(f"Starting {settings.app_name}...")

        os.makedirs(settings.videos_root, exist_ok=True)
        logger.info(f"Videos directory: {settings.videos_root}")

        factory = session_factory
        if factory is None:
            init_db()
            factory = get_sessionmaker()

        relay = EventRelay()
        store = JobStore(factory)
        orchestrator = JobOrchestrator(store, relay, runner=runner, settings=settings)

        # Store in app state for dependency injection
        app.state.session_factory = factory
        app.state.event_relay = relay
        app.state.job_store = store
        app.state.orchestrator = orchestrator

        _verify_external_tools()

        logger.info(f"{settings.app_name} ready to accept requests.")

        yield

        logger.info(f"Shutting down {settings.app_name}...")
        if orchestrator.active_jobs:
            # Jobs are not resumed after a restart; their rows stay non-terminal.
            logger.warning(f"Abandoning {orchestrator.active_jobs} in-flight jobs")
        logger.info("Shutdown complete")

    app = FastAPI(
        title="vidtrack",
        description="""
Video download and processing service.

## Usage

1. Open the event stream: `WS /ws` and keep the `socketId` it announces
2. Submit a job: `POST /api/download-video` with `{url, socketId}`
3. Follow `download_status` / `download_progress` events for the returned `correlationId`
4. Derive artifacts: `POST /api/videos/{id}/convert`, `/clip`, `/keyframes`, `/captions`
        """,
        version=health.SERVICE_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(videos.router)
    app.include_router(events.router)

    # The directory is created during startup
    app.mount(
        settings.public_videos_path,
        StaticFiles(directory=settings.videos_root, check_dir=False),
        name="videos",
    )

    @app.get("/")
    async def root():
        """Root endpoint with basic info."""
        return {
            "service": settings.app_name,
            "version": health.SERVICE_VERSION,
            "status": "running",
            "docs": "/docs",
        }

    return app


app = create_app()
