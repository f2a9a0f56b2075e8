"""
Job Orchestrator - runs download, conversion, clip, keyframe and caption jobs.

For every job kind the orchestrator:
1. Validates the request synchronously (no row is written on rejection)
2. Creates the job row and hands a correlation id back to the caller
3. Runs the external tool chain in a background task, parsing output into
   progress events as it arrives
4. Finalizes the row (completed or error) and only then emits the terminal event

Every subprocess failure is terminal for its job; nothing is retried.
In-memory job state lives only as long as the background task.
"""

import asyncio
import logging
import os
import re
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from app.config import Settings, get_settings
from app.errors import (
    ConsistencyError,
    InvalidTransitionError,
    OwnershipError,
    PreconditionError,
    SubprocessError,
    ValidationError,
)
from app.models import Job, JobKind, JobStatus
from app.services.event_relay import EventRelay
from app.services.job_store import JobStore
from app.services.process_runner import ProcessOutcome, ProcessRunner
from app.services.progress_parser import (
    LineBuffer,
    TranscodeProgressTracker,
    parse_download_progress,
    parse_frame_progress,
)
from app.services.tool_commands import ToolCommand, ToolCommands, format_seconds

logger = logging.getLogger(__name__)

LineHandler = Callable[[str, str], Awaitable[None]]

SUBTITLE_EXTENSIONS = frozenset({"vtt", "srt", "ass", "ssa", "ttml", "srv1", "srv2", "srv3", "json3", "lrc"})
EXTENSION_RE = re.compile(r"^[A-Za-z0-9]{1,10}$")


class EventType:
    """Event names sent through the relay."""

    DOWNLOAD_STATUS = "download_status"
    DOWNLOAD_PROGRESS = "download_progress"
    CONVERSION_STATUS = "conversion_status"
    CONVERSION_PROGRESS = "conversion_progress"
    KEYFRAME_STATUS = "keyframe_status"
    KEYFRAME_PROGRESS = "keyframe_progress"
    CAPTIONS_STATUS = "captions_status"


@dataclass
class JobTicket:
    """Synchronous answer to a job request."""

    message: str
    correlation_id: str
    video_id: Optional[int] = None


@dataclass
class JobContext:
    """In-memory state of one running job."""

    correlation_id: str
    status_event: str
    progress_event: Optional[str]
    subscriber_id: Optional[str] = None
    # Row updated on failure; None for jobs that do not own a row
    row_correlation_id: Optional[str] = None
    video_id: Optional[int] = None
    finished: bool = False


class JobOrchestrator:
    """Wires ProcessRunner, ProgressParser, JobStore and EventRelay together."""

    def __init__(
        self,
        store: JobStore,
        relay: EventRelay,
        runner: Optional[ProcessRunner] = None,
        commands: Optional[ToolCommands] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.relay = relay
        self.runner = runner or ProcessRunner()
        self.commands = commands or ToolCommands(self.settings)
        self._tasks: set[asyncio.Task] = set()

    # ==================================================================
    # Request intake
    # ==================================================================

    async def start_download(self, user_id: str, url: Optional[str], subscriber_id: Optional[str] = None) -> JobTicket:
        """Create a download job for ``url`` and start fetching it."""
        url = self._validate_url(url)

        correlation_id = str(uuid.uuid4())
        directory = os.path.join(self.settings.videos_root, correlation_id)
        job = self.store.create(
            user_id=user_id,
            kind=JobKind.DOWNLOAD,
            external_job_id=correlation_id,
            original_url=url,
            status=JobStatus.STARTED,
            filename=f"{correlation_id}.pending",
            file_path=directory,
            directory_path=directory,
        )
        logger.info(f"Download {correlation_id} accepted for user {user_id}: {url}")

        ctx = JobContext(
            correlation_id=correlation_id,
            status_event=EventType.DOWNLOAD_STATUS,
            progress_event=EventType.DOWNLOAD_PROGRESS,
            subscriber_id=subscriber_id,
            row_correlation_id=correlation_id,
            video_id=job.id,
        )
        self._spawn(ctx, self._download_pipeline(ctx, url, directory))
        return JobTicket("Download started", correlation_id, job.id)

    async def start_conversion(
        self,
        user_id: str,
        video_id: int,
        target_format: Optional[str] = None,
        subscriber_id: Optional[str] = None,
    ) -> JobTicket:
        """Transcode a completed video into ``target_format``."""
        target_format = (target_format or self.settings.default_convert_format).lower().lstrip(".")
        if target_format not in self.settings.allowed_convert_formats:
            raise ValidationError(
                f"Unsupported format: {target_format}. "
                f"Valid formats: {list(self.settings.allowed_convert_formats)}"
            )
        source = self._require_completed_source(user_id, video_id)

        correlation_id = str(uuid.uuid4())
        filename = f"converted_{correlation_id[:8]}.{target_format}"
        job = self._create_derivative(source, correlation_id, JobKind.CONVERT, filename, target_format)

        command = self.commands.convert(source.file_path, job.file_path)
        tracker = TranscodeProgressTracker()
        ctx = self._derivative_context(job, subscriber_id)
        self._spawn(ctx, self._transcode_pipeline(ctx, job, command, tracker))
        return JobTicket("Conversion started", correlation_id, job.id)

    async def start_clip(
        self,
        user_id: str,
        video_id: int,
        start_time: Optional[float],
        end_time: Optional[float],
        subscriber_id: Optional[str] = None,
    ) -> JobTicket:
        """Cut the ``[start_time, end_time)`` window out of a completed video."""
        if start_time is None or end_time is None:
            raise ValidationError("startTime and endTime are required")
        if start_time < 0 or end_time <= start_time:
            raise ValidationError("endTime must be greater than startTime and startTime must not be negative")
        source = self._require_completed_source(user_id, video_id)

        duration = end_time - start_time
        extension = source.extension or os.path.splitext(source.file_path)[1].lstrip(".")
        extension = extension or self.settings.default_convert_format
        correlation_id = str(uuid.uuid4())
        filename = (
            f"clip_{format_seconds(start_time)}_{format_seconds(end_time)}_{correlation_id[:8]}.{extension}"
        )
        job = self._create_derivative(
            source,
            correlation_id,
            JobKind.CLIP,
            filename,
            extension,
            clip_start=start_time,
            clip_end=end_time,
        )

        command = self.commands.clip(source.file_path, job.file_path, start_time, duration)
        # Progress is measured against the clip window, not the source duration.
        tracker = TranscodeProgressTracker(total_duration_ms=int(duration * 1000), fixed_duration=True)
        ctx = self._derivative_context(job, subscriber_id)
        self._spawn(ctx, self._transcode_pipeline(ctx, job, command, tracker))
        return JobTicket("Clip extraction started", correlation_id, job.id)

    async def start_keyframe_extraction(
        self, user_id: str, video_id: int, subscriber_id: Optional[str] = None
    ) -> JobTicket:
        """Extract I-frames of a completed video as numbered images."""
        source = self._require_completed_source(user_id, video_id)

        correlation_id = str(uuid.uuid4())
        # One folder per video; versions sharing a directory must not share frames.
        output_directory = os.path.join(
            source.directory_path, self.settings.keyframes_subdirectory, str(source.id)
        )
        ctx = JobContext(
            correlation_id=correlation_id,
            status_event=EventType.KEYFRAME_STATUS,
            progress_event=EventType.KEYFRAME_PROGRESS,
            subscriber_id=subscriber_id,
            video_id=source.id,
        )
        logger.info(f"Keyframe extraction {correlation_id} accepted for video {source.id}")
        self._spawn(ctx, self._keyframe_pipeline(ctx, source, output_directory))
        return JobTicket("Keyframe extraction started", correlation_id, source.id)

    async def start_caption_fetch(
        self, user_id: str, video_id: int, subscriber_id: Optional[str] = None
    ) -> JobTicket:
        """
        Fetch captions for a video's source URL into its directory.

        Only ownership is checked: captions come from the original URL, so
        they can be fetched whatever state the local artifact is in.
        """
        source = self._require_owned(user_id, video_id)

        correlation_id = str(uuid.uuid4())
        ctx = JobContext(
            correlation_id=correlation_id,
            status_event=EventType.CAPTIONS_STATUS,
            progress_event=None,
            subscriber_id=subscriber_id,
            video_id=source.id,
        )
        logger.info(f"Caption fetch {correlation_id} accepted for video {source.id}")
        self._spawn(ctx, self._caption_pipeline(ctx, source))
        return JobTicket("Caption download started", correlation_id, source.id)

    # ==================================================================
    # Pipelines
    # ==================================================================

    async def _download_pipeline(self, ctx: JobContext, url: str, directory: str) -> None:
        await self._emit_status(ctx, JobStatus.STARTED.value, "Download started...")
        os.makedirs(directory, exist_ok=True)

        # Step 1: title
        outcome = await self._run_tool(self.commands.fetch_title(url))
        title = _first_line(outcome.stdout)
        self.store.update(ctx.correlation_id, title=title)
        await self._emit_status(ctx, JobStatus.STARTED.value, "Fetching video information...", title=title)

        # Step 2: extension, which fixes the artifact path
        outcome = await self._run_tool(self.commands.fetch_extension(url))
        extension = _last_line(outcome.stdout)
        if not extension or not EXTENSION_RE.match(extension):
            raise ConsistencyError(f"Could not determine file extension (got {extension!r})")
        filename = f"{self.settings.original_basename}.{extension}"
        output_path = os.path.join(directory, filename)
        self.store.update(ctx.correlation_id, filename=filename, extension=extension, file_path=output_path)

        # Step 3: the download itself
        async def on_line(stream: str, line: str) -> None:
            progress = parse_download_progress(line)
            if progress is None:
                return
            await self._emit_progress(
                ctx,
                progress=progress.percent,
                message=f"Downloaded {progress.percent}%",
                details=progress.details(),
            )

        await self._run_tool(self.commands.download(url, output_path), on_line)

        if not os.path.isfile(output_path):
            raise ConsistencyError(f"Download completed but output file not found: {output_path}")
        file_size = os.path.getsize(output_path)
        self.store.update(ctx.correlation_id, file_size=file_size, status=JobStatus.COMPLETED)
        logger.info(f"Download {ctx.correlation_id} complete: {output_path} ({file_size / 1024 / 1024:.1f} MB)")

        await self._emit_status(
            ctx,
            JobStatus.COMPLETED.value,
            "Download complete!",
            filename=filename,
            title=title,
            directoryId=os.path.basename(directory),
            videoId=ctx.video_id,
        )

    async def _transcode_pipeline(
        self,
        ctx: JobContext,
        job: Job,
        command: ToolCommand,
        tracker: TranscodeProgressTracker,
    ) -> None:
        await self._emit_status(
            ctx,
            JobStatus.CONVERTING.value,
            "Conversion started...",
            filename=job.filename,
            title=job.title,
            videoId=job.id,
        )

        async def on_line(stream: str, line: str) -> None:
            if stream == "stderr":
                tracker.feed_stderr(line)
                return
            progress = tracker.feed_stdout(line)
            if progress is None:
                return
            await self._emit_progress(
                ctx,
                progress=progress.percent,
                message=f"Converting: {progress.percent}%",
                details=progress.details(),
            )

        await self._run_tool(command, on_line)

        if not os.path.isfile(job.file_path):
            raise ConsistencyError(f"Conversion completed but output file not found: {job.file_path}")
        file_size = os.path.getsize(job.file_path)
        self.store.update(ctx.correlation_id, file_size=file_size, status=JobStatus.COMPLETED)
        logger.info(f"{job.kind.capitalize()} {ctx.correlation_id} complete: {job.file_path}")

        await self._emit_status(
            ctx,
            JobStatus.COMPLETED.value,
            "Conversion complete!",
            filename=job.filename,
            title=job.title,
            videoId=job.id,
        )

    async def _keyframe_pipeline(self, ctx: JobContext, source: Job, output_directory: str) -> None:
        await self._emit_status(ctx, JobStatus.STARTED.value, "Keyframe extraction started...", videoId=source.id)
        os.makedirs(output_directory, exist_ok=True)

        async def on_line(stream: str, line: str) -> None:
            progress = parse_frame_progress(line)
            if progress is None:
                return
            await self._emit_progress(
                ctx,
                videoId=source.id,
                frame=progress.frame,
                message=f"Extracted {progress.frame} frames",
            )

        await self._run_tool(self.commands.extract_keyframes(source.file_path, output_directory), on_line)

        files = self._list_keyframe_files(output_directory)
        known = {keyframe.filename for keyframe in self.store.list_keyframes(source.id)}
        self.store.add_keyframes(source.id, [path for path in files if os.path.basename(path) not in known])
        urls = [self.settings.public_url_for(path) for path in files]
        logger.info(f"Keyframe extraction {ctx.correlation_id} complete: {len(files)} keyframes")

        await self._emit_status(
            ctx,
            JobStatus.COMPLETED.value,
            f"Extracted {len(files)} keyframes",
            videoId=source.id,
            keyframeCount=len(files),
            keyframes=urls,
        )

    async def _caption_pipeline(self, ctx: JobContext, source: Job) -> None:
        await self._emit_status(ctx, JobStatus.STARTED.value, "Caption download started...", videoId=source.id)
        directory = source.directory_path
        os.makedirs(directory, exist_ok=True)

        before = self._caption_candidates(directory)
        await self._run_tool(self.commands.fetch_captions(source.original_url, directory))

        # yt-dlp appends its own language suffix, so the file has to be found.
        after = self._caption_candidates(directory)
        produced = [name for name, mtime in after.items() if name not in before or mtime > before[name]]
        if not produced:
            raise ConsistencyError("Caption download reported success but no captions file was found")

        chosen = max(produced, key=lambda name: (after[name], -len(name)))
        extension = chosen.rsplit(".", 1)[1].lower()
        canonical_path = os.path.join(directory, f"{self.settings.captions_basename}.{extension}")
        found_path = os.path.join(directory, chosen)
        if found_path != canonical_path:
            os.replace(found_path, canonical_path)

        self.store.update(source.external_job_id, captions_path=canonical_path)
        logger.info(f"Caption fetch {ctx.correlation_id} complete: {canonical_path}")

        await self._emit_status(
            ctx,
            JobStatus.COMPLETED.value,
            "Captions downloaded!",
            videoId=source.id,
            filename=os.path.basename(canonical_path),
        )

    # ==================================================================
    # Execution helpers
    # ==================================================================

    def _spawn(self, ctx: JobContext, pipeline: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(ctx, pipeline), name=f"job-{ctx.correlation_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, ctx: JobContext, pipeline: Awaitable[None]) -> None:
        """Shared failure handling for every pipeline."""
        try:
            await pipeline
        except (SubprocessError, ConsistencyError) as e:
            logger.error(f"Job {ctx.correlation_id} failed: {e.message}")
            await self._fail(ctx, e.message)
        except Exception as e:
            logger.exception(f"Job {ctx.correlation_id} failed unexpectedly: {e}")
            await self._fail(ctx, str(e))

    async def _fail(self, ctx: JobContext, message: str) -> None:
        if ctx.row_correlation_id:
            try:
                self.store.update(ctx.row_correlation_id, status=JobStatus.ERROR, error_message=message)
            except InvalidTransitionError as e:
                logger.warning(f"Could not record failure of {ctx.correlation_id}: {e.message}")
            except Exception as e:
                # The terminal event still goes out when the store is unavailable.
                logger.exception(f"Could not record failure of {ctx.correlation_id}: {e}")
        await self._emit_status(ctx, JobStatus.ERROR.value, message, videoId=ctx.video_id)

    async def _run_tool(self, command: ToolCommand, on_line: Optional[LineHandler] = None) -> ProcessOutcome:
        """
        Run one tool to completion, feeding complete lines to ``on_line``.

        Without ``on_line`` the output is only collected, which is all the
        title and extension probes need.

        Raises:
            SubprocessError: If the tool could not be started or did not succeed
        """
        if on_line is None:
            outcome = await self.runner.run_to_completion(command.command, command.args)
            if not outcome.success:
                raise SubprocessError(outcome.message)
            return outcome

        handle = await self.runner.run(command.command, command.args)
        buffers = {"stdout": LineBuffer(), "stderr": LineBuffer()}

        async for chunk in handle.chunks():
            for line in buffers[chunk.stream].feed(chunk.text):
                await on_line(chunk.stream, line)

        for stream, buffer in buffers.items():
            for line in buffer.flush():
                await on_line(stream, line)

        outcome = await handle.wait()
        if not outcome.success:
            raise SubprocessError(outcome.message)
        return outcome

    async def _emit_status(self, ctx: JobContext, status: str, message: str, **extra) -> None:
        if ctx.finished:
            logger.debug(f"Suppressed {status} event for finished job {ctx.correlation_id}")
            return
        if status in (JobStatus.COMPLETED.value, JobStatus.ERROR.value):
            ctx.finished = True
        payload = {"status": status, "message": message}
        payload.update({key: value for key, value in extra.items() if value is not None})
        await self.relay.publish(ctx.correlation_id, ctx.status_event, payload, ctx.subscriber_id)

    async def _emit_progress(self, ctx: JobContext, **payload) -> None:
        if ctx.finished or ctx.progress_event is None:
            return
        payload = {key: value for key, value in payload.items() if value is not None}
        logger.debug(f"Job {ctx.correlation_id} progress: {payload.get('message')}")
        await self.relay.publish(ctx.correlation_id, ctx.progress_event, payload, ctx.subscriber_id)

    async def wait_idle(self) -> None:
        """Wait until every running job task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    # ==================================================================
    # Validation and lookups
    # ==================================================================

    def _validate_url(self, url: Optional[str]) -> str:
        url = (url or "").strip()
        if not url:
            raise ValidationError("URL is required")
        if not re.match(self.settings.allowed_url_pattern, url):
            raise ValidationError("Invalid video URL")
        return url

    def _require_owned(self, user_id: str, video_id: int) -> Job:
        job = self.store.get(video_id, user_id)
        if job is None:
            raise OwnershipError("Video not found")
        return job

    def _require_completed_source(self, user_id: str, video_id: int) -> Job:
        job = self._require_owned(user_id, video_id)
        if job.status != JobStatus.COMPLETED.value:
            raise PreconditionError(f"Video is not ready (status: {job.status})")
        if not os.path.isfile(job.file_path):
            raise PreconditionError("Video file is missing on disk")
        return job

    def _create_derivative(
        self,
        source: Job,
        correlation_id: str,
        kind: JobKind,
        filename: str,
        extension: str,
        **fields,
    ) -> Job:
        job = self.store.create(
            user_id=source.user_id,
            kind=kind,
            external_job_id=correlation_id,
            original_url=source.original_url,
            title=source.title,
            status=JobStatus.CONVERTING,
            filename=filename,
            extension=extension,
            file_path=os.path.join(source.directory_path, filename),
            directory_path=source.directory_path,
            parent_id=source.id,
            **fields,
        )
        logger.info(f"{kind.value.capitalize()} {correlation_id} accepted for video {source.id}: {filename}")
        return job

    def _derivative_context(self, job: Job, subscriber_id: Optional[str]) -> JobContext:
        return JobContext(
            correlation_id=job.external_job_id,
            status_event=EventType.CONVERSION_STATUS,
            progress_event=EventType.CONVERSION_PROGRESS,
            subscriber_id=subscriber_id,
            row_correlation_id=job.external_job_id,
            video_id=job.id,
        )

    def _list_keyframe_files(self, output_directory: str) -> list[str]:
        prefix, _, suffix = self.settings.keyframe_filename_pattern.partition("%04d")
        return [
            os.path.join(output_directory, name)
            for name in sorted(os.listdir(output_directory))
            if name.startswith(prefix) and name.endswith(suffix)
        ]

    def _caption_candidates(self, directory: str) -> dict[str, float]:
        """Subtitle files named ``captions.*`` in ``directory`` with their mtimes."""
        prefix = f"{self.settings.captions_basename}."
        candidates = {}
        for name in os.listdir(directory):
            if not name.startswith(prefix):
                continue
            extension = name.rsplit(".", 1)[-1].lower()
            path = os.path.join(directory, name)
            if extension in SUBTITLE_EXTENSIONS and os.path.isfile(path):
                candidates[name] = os.path.getmtime(path)
        return candidates


def _first_line(text: str) -> Optional[str]:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return None


def _last_line(text: str) -> Optional[str]:
    for line in reversed(text.splitlines()):
        if line.strip():
            return line.strip()
    return None
