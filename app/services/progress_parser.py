"""
Progress Parser - turns external tool output into structured progress records.

One translator per output dialect:
- yt-dlp download lines (``[download]  45.2% of 10.5MiB at 1.2MiB/s ETA 00:30``)
- ffmpeg ``-progress`` blocks (one ``key=value`` pair per line)
- ffmpeg ``Duration: HH:MM:SS.ms`` announcements on stderr
- ffmpeg ``frame=N`` counters during keyframe extraction

Tool output arrives in arbitrary chunks, so callers feed chunks through a
LineBuffer and hand complete lines to the parsers. Lines that do not match
a dialect yield None.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

# [download]  45.2% of 10.5MiB at 1.2MiB/s ETA 00:30
# yt-dlp may prefix the size with "~" when it is an estimate, and prints
# "Unknown B/s" before it can measure the speed.
DOWNLOAD_PROGRESS_RE = re.compile(
    r"\[download\]\s+(?P<percent>\d+(?:\.\d+)?)%\s+of\s+~?\s*(?P<size>\S+)"
    r"\s+at\s+(?P<speed>Unknown B/s|\S+)\s+ETA\s+(?P<eta>\S+)"
)
# Any bare percentage, used when the structured form does not match
PERCENT_RE = re.compile(r"(\d+\.\d+)%")
DURATION_RE = re.compile(r"Duration:\s*(\d+:\d{2}:\d{2}(?:\.\d+)?)")
FRAME_RE = re.compile(r"frame=\s*(\d+)")
TIME_RE = re.compile(r"^(\d+):(\d{1,2}):(\d{1,2}(?:\.\d+)?)$")

UNKNOWN_DURATION = "unknown"


@dataclass
class DownloadProgress:
    """Progress of a yt-dlp download."""

    percent: float
    file_size: Optional[str] = None
    speed: Optional[str] = None
    eta: Optional[str] = None

    @property
    def has_details(self) -> bool:
        return self.file_size is not None

    def details(self) -> Optional[dict[str, str]]:
        if not self.has_details:
            return None
        return {"fileSize": self.file_size, "speed": self.speed, "eta": self.eta}


@dataclass
class TranscodeProgress:
    """Progress of an ffmpeg transcode, computed from one ``-progress`` block."""

    percent: int
    current_time: str
    total_time: str
    speed: Optional[str] = None

    def details(self) -> dict[str, Optional[str]]:
        return {
            "currentTime": self.current_time,
            "speed": self.speed,
            "totalTime": self.total_time,
        }


@dataclass
class FrameProgress:
    """Frame counter reported during keyframe extraction."""

    frame: int


def parse_download_progress(line: str) -> Optional[DownloadProgress]:
    """
    Parse a yt-dlp progress line.

    The structured form is tried first; any bare ``NN.N%`` is accepted as a
    fallback so that tool versions printing a different layout still report
    a percentage.
    """
    match = DOWNLOAD_PROGRESS_RE.search(line)
    if match:
        return DownloadProgress(
            percent=float(match.group("percent")),
            file_size=match.group("size"),
            speed=match.group("speed"),
            eta=match.group("eta"),
        )

    match = PERCENT_RE.search(line)
    if match:
        return DownloadProgress(percent=float(match.group(1)))
    return None


def parse_time_to_ms(value: str) -> Optional[int]:
    """
    Convert ``HH:MM:SS[.fraction]`` to milliseconds.

    Returns None for anything that is not a timestamp (ffmpeg prints
    ``N/A`` before the first frame is encoded).
    """
    match = TIME_RE.match(value.strip())
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(round((int(hours) * 3600 + int(minutes) * 60 + float(seconds)) * 1000))


def parse_duration_ms(line: str) -> Optional[int]:
    """Extract the total duration from an ffmpeg ``Duration:`` line."""
    match = DURATION_RE.search(line)
    if not match:
        return None
    return parse_time_to_ms(match.group(1))


def parse_frame_progress(line: str) -> Optional[FrameProgress]:
    match = FRAME_RE.search(line)
    if not match:
        return None
    return FrameProgress(frame=int(match.group(1)))


def format_ms(value_ms: int) -> str:
    """Render milliseconds as ``HH:MM:SS.cc``."""
    value_ms = max(0, int(value_ms))
    hours, remainder = divmod(value_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    seconds, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis // 10:02d}"


def compute_transcode_percent(current_ms: int, total_duration_ms: Optional[int]) -> int:
    """Percentage of ``total_duration_ms`` covered, clamped to [0, 100]."""
    if not total_duration_ms or total_duration_ms <= 0:
        return 0
    percent = current_ms / total_duration_ms * 100
    return int(round(min(100.0, max(0.0, percent))))


def parse_transcode_progress(
    fields: dict[str, str],
    total_duration_ms: Optional[int],
) -> Optional[TranscodeProgress]:
    """
    Build a progress record from one accumulated ``-progress`` block.

    A record is produced only once both ``out_time_ms`` and ``total_size``
    are present. The current position comes from ``out_time`` when ffmpeg
    supplies it and from the numeric ``out_time_ms`` value otherwise.
    """
    if "out_time_ms" not in fields or "total_size" not in fields:
        return None

    current_ms = parse_time_to_ms(fields["out_time"]) if "out_time" in fields else None
    if current_ms is None:
        try:
            current_ms = int(fields["out_time_ms"])
        except ValueError:
            return None

    if total_duration_ms:
        percent = compute_transcode_percent(current_ms, total_duration_ms)
        total_time = format_ms(total_duration_ms)
    else:
        percent = 0
        total_time = UNKNOWN_DURATION

    return TranscodeProgress(
        percent=percent,
        current_time=format_ms(current_ms),
        total_time=total_time,
        speed=fields.get("speed"),
    )


@dataclass
class TranscodeProgressTracker:
    """
    Accumulates ffmpeg output for one transcode.

    stderr lines are scanned for the ``Duration:`` announcement; stdout
    ``key=value`` lines are collected into a block that is evaluated when
    ffmpeg closes it with ``progress=continue`` or ``progress=end``.
    A known duration (e.g. a clip window) can be given up front and then
    takes precedence over announcements.

    A percentage is computed once per block, when the closing ``progress=``
    line arrives, rather than as soon as ``out_time_ms`` and ``total_size``
    have both been seen. ffmpeg ends every block with that line, and
    evaluating the whole block uses ``out_time`` and ``speed`` even when
    they follow ``total_size``. A block that is never closed yields nothing.
    """

    total_duration_ms: Optional[int] = None
    fixed_duration: bool = False
    _block: dict[str, str] = field(default_factory=dict, init=False, repr=False)

    def feed_stderr(self, line: str) -> None:
        if self.fixed_duration and self.total_duration_ms:
            return
        duration = parse_duration_ms(line)
        if duration is not None and self.total_duration_ms is None:
            self.total_duration_ms = duration

    def feed_stdout(self, line: str) -> Optional[TranscodeProgress]:
        if "=" not in line:
            return None
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if key != "progress":
            self._block[key] = value
            return None

        block, self._block = self._block, {}
        return parse_transcode_progress(block, self.total_duration_ms)


class LineBuffer:
    """
    Reassembles lines from arbitrarily split text chunks.

    Both ``\\n`` and ``\\r`` terminate a line (yt-dlp and ffmpeg redraw
    progress with carriage returns). The incomplete tail is held until
    more text arrives or flush() is called.
    """

    _SPLIT_RE = re.compile(r"\r\n|\r|\n")

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        text = self._pending + chunk
        # A trailing "\r" may be the first half of "\r\n"; hold it back.
        held = ""
        if text.endswith("\r"):
            text, held = text[:-1], "\r"
        parts = self._SPLIT_RE.split(text)
        self._pending = parts.pop() + held
        return [line for line in parts if line]

    def flush(self) -> list[str]:
        pending, self._pending = self._pending.rstrip("\r"), ""
        return [pending] if pending else []
