"""
FastAPI routers for the video service.
"""

from app.routers import events, health, videos

__all__ = ["health", "videos", "events"]
