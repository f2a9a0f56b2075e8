"""
Command lines for the external tools (yt-dlp and ffmpeg).

Kept separate from the orchestration so the exact arguments can be checked
without spawning anything.
"""

import os
from dataclasses import dataclass
from typing import Optional

from app.config import Settings, get_settings


def format_seconds(value: float) -> str:
    """Render seconds without a trailing ``.0`` (``30.0`` -> ``"30"``)."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.3f}".rstrip("0").rstrip(".")


@dataclass
class ToolCommand:
    """An executable plus its argument list."""

    command: str
    args: list[str]


class ToolCommands:
    """Builds yt-dlp and ffmpeg invocations from settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # yt-dlp
    # ------------------------------------------------------------------

    def _ytdlp(self, *args: str) -> ToolCommand:
        return ToolCommand(self.settings.ytdlp_path, ["--no-playlist", "--no-warnings", *args])

    def fetch_title(self, url: str) -> ToolCommand:
        return self._ytdlp("--get-title", url)

    def fetch_extension(self, url: str) -> ToolCommand:
        return self._ytdlp("--print", "filename", "-o", "%(ext)s", url)

    def download(self, url: str, output_path: str) -> ToolCommand:
        # --newline prints every progress update on its own line
        return self._ytdlp("--newline", "-o", output_path, url)

    def fetch_captions(self, url: str, directory: str) -> ToolCommand:
        template = os.path.join(directory, f"{self.settings.captions_basename}.%(ext)s")
        return self._ytdlp(
            "--skip-download",
            "--write-subs",
            "--write-auto-subs",
            "--sub-langs", self.settings.caption_languages,
            "--sub-format", self.settings.caption_format,
            "-o", template,
            url,
        )

    # ------------------------------------------------------------------
    # ffmpeg
    # ------------------------------------------------------------------

    def convert(self, source_path: str, output_path: str) -> ToolCommand:
        return ToolCommand(
            self.settings.ffmpeg_path,
            [
                "-y",
                "-i", source_path,
                "-progress", "pipe:1",
                "-nostats",
                output_path,
            ],
        )

    def clip(self, source_path: str, output_path: str, start: float, duration: float) -> ToolCommand:
        return ToolCommand(
            self.settings.ffmpeg_path,
            [
                "-y",
                "-i", source_path,
                "-ss", format_seconds(start),
                "-t", format_seconds(duration),
                "-progress", "pipe:1",
                "-nostats",
                output_path,
            ],
        )

    def extract_keyframes(self, source_path: str, output_directory: str) -> ToolCommand:
        pattern = os.path.join(output_directory, self.settings.keyframe_filename_pattern)
        return ToolCommand(
            self.settings.ffmpeg_path,
            [
                "-y",
                "-i", source_path,
                "-vf", "select='eq(pict_type,I)'",
                "-vsync", "vfr",
                "-q:v", "2",
                pattern,
            ],
        )
