"""
Configuration module using Pydantic Settings for environment variable management.

Only deployment-specific values are exposed as environment variables. Tool
invocation details that must stay consistent across installs are hardcoded
as properties.
"""

import os
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings.

    Values are read from the environment (case-insensitive) or a local .env file.
    """

    # ============================================================
    # ENVIRONMENT VARIABLES
    # ============================================================

    # Application
    app_name: str = "vidtrack"
    debug: bool = False
    log_level: str = "INFO"

    # Persistence
    database_url: str = "sqlite:///./vidtrack.db"

    # Artifact storage
    videos_directory: str = "./videos"
    public_videos_path: str = "/videos"  # URL prefix under which artifacts are served

    # Security - bearer token verification
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_expires_minutes: int = 60 * 24

    # CORS (comma separated)
    cors_origins: str = "http://localhost:5173"

    # External tools
    ytdlp_path: str = "yt-dlp"
    ffmpeg_path: str = "ffmpeg"

    # Only URLs matching this pattern are accepted for download
    allowed_url_pattern: str = r"^(https?://)?(www\.|m\.)?(youtube\.com|youtu\.?be)/.+$"

    # Captions
    caption_languages: str = "en.*,en"
    caption_format: str = "vtt"

    # Conversion
    default_convert_format: str = "mp4"

    # ============================================================
    # HARDCODED SETTINGS (not configurable via env vars)
    # ============================================================

    @property
    def read_chunk_size(self) -> int:
        return 4096  # Bytes read per subprocess stream read

    @property
    def keyframes_subdirectory(self) -> str:
        return "keyframes"

    @property
    def keyframe_filename_pattern(self) -> str:
        return "keyframe-%04d.jpg"

    @property
    def captions_basename(self) -> str:
        return "captions"

    @property
    def original_basename(self) -> str:
        return "original"

    @property
    def allowed_convert_formats(self) -> tuple[str, ...]:
        return ("mp4", "webm", "mkv", "mov", "mp3", "m4a")

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def videos_root(self) -> str:
        return os.path.abspath(self.videos_directory)

    def public_url_for(self, file_path: str) -> Optional[str]:
        """Map an artifact path under the videos root to its public URL."""
        root = self.videos_root
        absolute = os.path.abspath(file_path)
        if os.path.commonpath([root, absolute]) != root:
            return None
        relative = os.path.relpath(absolute, root).replace(os.sep, "/")
        return f"{self.public_videos_path.rstrip('/')}/{relative}"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
