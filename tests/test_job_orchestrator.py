"""
Tests for JobOrchestrator with scripted tool output.
"""

import asyncio
import os

import pytest
from sqlalchemy.exc import OperationalError

from app.errors import OwnershipError, PreconditionError, ValidationError
from app.models import JobKind, JobStatus
from app.services.job_orchestrator import EventType, JobContext
from tests.fakes import FakeConnection, FakeResult, arg_after, write_file

URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def run_job(orchestrator, start):
    """Start a job and wait for its background work to finish."""

    async def scenario():
        ticket = await start()
        await orchestrator.wait_idle()
        return ticket

    return asyncio.run(scenario())


def statuses(connection, event_type):
    return [event["status"] for event in connection.events(event_type)]


class StoreCheckingConnection(FakeConnection):
    """Records the stored status of a job at the moment its terminal event arrives."""

    def __init__(self, store):
        super().__init__()
        self.store = store
        self.status_at_terminal_event = []

    async def send_json(self, data):
        await super().send_json(data)
        payload = data["data"]
        if payload.get("status") in ("completed", "error"):
            job = self.store.get_by_external_id(payload["id"])
            self.status_at_terminal_event.append(job.status if job else None)


# ============================================================================
# Download
# ============================================================================


class TestDownload:
    """Tests for the title -> extension -> download chain."""

    @pytest.fixture
    def download_script(self):
        def _script(size=2048):
            return [
                FakeResult(stdout=["My Video\n"]),
                FakeResult(stdout=["mp4\n"]),
                FakeResult(
                    stdout=[
                        "[download] Destination: original.mp4\n[download]  45.2% of 10.5MiB at 1.2MiB/s ETA 00:30\n[down",
                        "load] 100.0% of 10.5MiB at 2.0MiB/s ETA 00:00\n",
                    ],
                    stderr=["WARNING: throttled, 12.5% so far\n"],
                    on_run=lambda args: write_file(arg_after(args, "-o"), size),
                ),
            ]

        return _script

    def test_download_success(self, orchestrator, runner, store, connection, download_script):
        """Test a full download updates the row and reports progress."""
        runner.add(*download_script(size=2048))

        ticket = run_job(
            orchestrator,
            lambda: orchestrator.start_download("user-1", URL, connection.subscriber_id),
        )

        job = store.get_by_external_id(ticket.correlation_id)
        assert job.status == "completed"
        assert job.title == "My Video"
        assert job.filename == "original.mp4"
        assert job.extension == "mp4"
        assert job.file_path.endswith(os.path.join(ticket.correlation_id, "original.mp4"))
        assert job.file_size == os.path.getsize(job.file_path) == 2048

        assert statuses(connection, EventType.DOWNLOAD_STATUS) == ["started", "started", "completed"]
        progress = [event["progress"] for event in connection.events(EventType.DOWNLOAD_PROGRESS)]
        assert progress == [12.5, 45.2, 100.0]
        structured = connection.events(EventType.DOWNLOAD_PROGRESS)[1]
        assert structured["details"] == {"fileSize": "10.5MiB", "speed": "1.2MiB/s", "eta": "00:30"}
        assert "details" not in connection.events(EventType.DOWNLOAD_PROGRESS)[0]

        completed = connection.events(EventType.DOWNLOAD_STATUS)[-1]
        assert completed["id"] == ticket.correlation_id
        assert completed["title"] == "My Video"
        assert completed["filename"] == "original.mp4"
        assert completed["directoryId"] == ticket.correlation_id
        # The terminal event is the last one sent
        assert connection.messages[-1] == {"event": EventType.DOWNLOAD_STATUS, "data": completed}

    def test_tool_invocations(self, orchestrator, runner, connection, download_script):
        runner.add(*download_script())

        run_job(orchestrator, lambda: orchestrator.start_download("user-1", URL, connection.subscriber_id))

        assert [command for command, _ in runner.calls] == ["yt-dlp"] * 3
        assert "--get-title" in runner.calls[0][1]
        assert arg_after(runner.calls[1][1], "--print") == "filename"
        assert "--newline" in runner.calls[2][1]
        assert runner.calls[2][1][-1] == URL

    def test_info_steps_run_to_completion(self, orchestrator, runner, connection, download_script, mocker):
        """Test title and extension lookups collect output without streaming it."""
        runner.add(*download_script())
        spy = mocker.spy(runner, "run_to_completion")

        run_job(orchestrator, lambda: orchestrator.start_download("user-1", URL, connection.subscriber_id))

        assert spy.call_count == 2
        assert "--get-title" in spy.call_args_list[0].args[1]
        assert "--print" in spy.call_args_list[1].args[1]

    def test_row_updated_before_terminal_event(self, orchestrator, runner, store, relay, download_script):
        watcher = StoreCheckingConnection(store)
        subscriber_id = relay.register(watcher)
        runner.add(*download_script())

        run_job(orchestrator, lambda: orchestrator.start_download("user-1", URL, subscriber_id))

        assert watcher.status_at_terminal_event == ["completed"]

    def test_failure_stops_the_chain(self, orchestrator, runner, store, connection):
        """Test a failed step marks the row as error and skips later steps."""
        runner.add(
            FakeResult(stdout=["My Video\n"]),
            FakeResult(stderr=["ERROR: Video unavailable\n"], returncode=1),
        )

        ticket = run_job(
            orchestrator,
            lambda: orchestrator.start_download("user-1", URL, connection.subscriber_id),
        )

        assert len(runner.calls) == 2
        job = store.get_by_external_id(ticket.correlation_id)
        assert job.status == "error"
        assert "exited with code 1" in job.error_message
        assert "ERROR: Video unavailable" in job.error_message

        assert statuses(connection, EventType.DOWNLOAD_STATUS) == ["started", "started", "error"]
        assert connection.events(EventType.DOWNLOAD_STATUS)[-1]["message"] == job.error_message

    def test_missing_output_is_an_error(self, orchestrator, runner, store, connection):
        runner.add(
            FakeResult(stdout=["My Video\n"]),
            FakeResult(stdout=["webm\n"]),
            FakeResult(stdout=["[download] 100.0% of 1.00MiB at 1.00MiB/s ETA 00:00\n"]),
        )

        ticket = run_job(
            orchestrator,
            lambda: orchestrator.start_download("user-1", URL, connection.subscriber_id),
        )

        job = store.get_by_external_id(ticket.correlation_id)
        assert job.status == "error"
        assert "output file not found" in job.error_message
        assert statuses(connection, EventType.DOWNLOAD_STATUS)[-1] == "error"

    def test_unexpected_extension(self, orchestrator, runner, store, connection):
        runner.add(FakeResult(stdout=["My Video\n"]), FakeResult(stdout=["\n"]))

        ticket = run_job(
            orchestrator,
            lambda: orchestrator.start_download("user-1", URL, connection.subscriber_id),
        )

        assert store.get_by_external_id(ticket.correlation_id).status == "error"
        assert len(runner.calls) == 2

    @pytest.mark.parametrize("url", [None, "", "   ", "https://example.com/video.mp4", "ftp://youtube.com/x"])
    def test_invalid_url_rejected(self, orchestrator, runner, store, url):
        """Test invalid URLs are rejected before a row is written."""
        with pytest.raises(ValidationError):
            asyncio.run(orchestrator.start_download("user-1", url))
        assert store.count() == 0
        assert runner.calls == []

    def test_short_url_accepted(self, orchestrator, runner, store, connection, download_script):
        runner.add(*download_script())
        ticket = run_job(
            orchestrator,
            lambda: orchestrator.start_download("user-1", "https://youtu.be/dQw4w9WgXcQ", connection.subscriber_id),
        )
        assert store.get_by_external_id(ticket.correlation_id).status == "completed"


# ============================================================================
# Conversion and clips
# ============================================================================


def transcode_result(progress_time="00:00:50.000000", duration_line="  Duration: 00:01:40.00, start: 0.000000"):
    return FakeResult(
        stderr=[duration_line + "\n"],
        stdout=[
            f"frame=100\nout_time_ms=1\nout_time={progress_time}\ntotal_size=1024\nspeed=2.0x\npro",
            "gress=continue\nout_time_ms=2\nprogress=end\n",
        ],
        on_run=lambda args: write_file(args[-1], 512),
    )


class TestConversion:
    """Tests for full-file transcodes."""

    def test_conversion_success(self, orchestrator, runner, store, connection, make_video):
        source = make_video()
        runner.add(transcode_result())

        ticket = run_job(
            orchestrator,
            lambda: orchestrator.start_conversion("user-1", source.id, "webm", connection.subscriber_id),
        )

        job = store.get_by_external_id(ticket.correlation_id)
        assert job.kind == "convert"
        assert job.parent_id == source.id
        assert job.directory_path == source.directory_path
        assert job.filename.startswith("converted_")
        assert job.filename.endswith(".webm")
        assert job.status == "completed"
        assert job.file_size == 512

        command, args = runner.calls[0]
        assert command == "ffmpeg"
        assert arg_after(args, "-i") == source.file_path
        assert arg_after(args, "-progress") == "pipe:1"
        assert args[-1] == job.file_path

        assert statuses(connection, EventType.CONVERSION_STATUS) == ["converting", "completed"]
        progress = connection.events(EventType.CONVERSION_PROGRESS)
        assert [event["progress"] for event in progress] == [50]
        assert progress[0]["details"] == {
            "currentTime": "00:00:50.00",
            "speed": "2.0x",
            "totalTime": "00:01:40.00",
        }

    def test_default_format(self, orchestrator, runner, store, make_video):
        source = make_video()
        runner.add(transcode_result())
        ticket = run_job(orchestrator, lambda: orchestrator.start_conversion("user-1", source.id))
        assert store.get_by_external_id(ticket.correlation_id).filename.endswith(".mp4")

    def test_source_not_completed(self, orchestrator, runner, store, make_video):
        """Test conversion of an unfinished download is rejected without a new row."""
        source = make_video(status=JobStatus.STARTED)
        before = store.count()

        with pytest.raises(PreconditionError):
            asyncio.run(orchestrator.start_conversion("user-1", source.id, "mp4"))

        assert store.count() == before
        assert runner.calls == []

    def test_other_users_video(self, orchestrator, store, make_video):
        source = make_video(user_id="alice")
        with pytest.raises(OwnershipError):
            asyncio.run(orchestrator.start_conversion("bob", source.id, "mp4"))
        assert store.count() == 1

    def test_unknown_video(self, orchestrator):
        with pytest.raises(OwnershipError):
            asyncio.run(orchestrator.start_conversion("user-1", 999, "mp4"))

    def test_unsupported_format(self, orchestrator, store, make_video):
        source = make_video()
        with pytest.raises(ValidationError):
            asyncio.run(orchestrator.start_conversion("user-1", source.id, "exe"))
        assert store.count() == 1

    def test_conversion_failure(self, orchestrator, runner, store, connection, make_video):
        source = make_video()
        runner.add(FakeResult(stderr=["Invalid data found when processing input\n"], returncode=1))

        ticket = run_job(
            orchestrator,
            lambda: orchestrator.start_conversion("user-1", source.id, "mp4", connection.subscriber_id),
        )

        job = store.get_by_external_id(ticket.correlation_id)
        assert job.status == "error"
        assert "Invalid data found" in job.error_message
        assert store.get_by_external_id(source.external_job_id).status == "completed"
        assert statuses(connection, EventType.CONVERSION_STATUS) == ["converting", "error"]


class TestClip:
    """Tests for clip extraction."""

    def test_clip_window(self, orchestrator, runner, store, connection, make_video):
        """Test a 30 -> 45 clip is named after its window and lasts 15 seconds."""
        source = make_video()
        runner.add(transcode_result(progress_time="00:00:07.500000"))

        ticket = run_job(
            orchestrator,
            lambda: orchestrator.start_clip("user-1", source.id, 30, 45, connection.subscriber_id),
        )

        job = store.get_by_external_id(ticket.correlation_id)
        assert job.kind == "clip"
        assert "clip_30_45" in job.filename
        assert job.filename.endswith(".mp4")
        assert job.clip_start == 30
        assert job.clip_end == 45
        assert job.status == "completed"

        _, args = runner.calls[0]
        assert arg_after(args, "-ss") == "30"
        assert arg_after(args, "-t") == "15"

        # Progress is measured against the 15 second window, not the source's duration
        progress = connection.events(EventType.CONVERSION_PROGRESS)
        assert [event["progress"] for event in progress] == [50]
        assert progress[0]["details"]["totalTime"] == "00:00:15.00"

    def test_fractional_window(self, orchestrator, runner, store, make_video):
        source = make_video()
        runner.add(transcode_result())
        ticket = run_job(orchestrator, lambda: orchestrator.start_clip("user-1", source.id, 1.5, 4))

        job = store.get_by_external_id(ticket.correlation_id)
        assert "clip_1.5_4_" in job.filename
        assert arg_after(runner.calls[0][1], "-t") == "2.5"

    @pytest.mark.parametrize(
        "start, end",
        [(45, 30), (10, 10), (-1, 5), (None, 5), (5, None)],
    )
    def test_invalid_window(self, orchestrator, runner, store, make_video, start, end):
        source = make_video()
        with pytest.raises(ValidationError):
            asyncio.run(orchestrator.start_clip("user-1", source.id, start, end))
        assert store.count() == 1
        assert runner.calls == []

    def test_clip_of_unfinished_video(self, orchestrator, make_video):
        source = make_video(status=JobStatus.CONVERTING)
        with pytest.raises(PreconditionError):
            asyncio.run(orchestrator.start_clip("user-1", source.id, 0, 5))


# ============================================================================
# Keyframes
# ============================================================================


def keyframe_result(count=5, returncode=0):
    def create(args):
        directory = os.path.dirname(args[-1])
        for n in range(1, count + 1):
            write_file(os.path.join(directory, f"keyframe-{n:04d}.jpg"), 100)

    return FakeResult(
        stderr=["Input #0, mov,mp4 from 'original.mp4':\n", "frame=    2 fps=0.0\rframe=    5 fps=0.0\n"],
        returncode=returncode,
        on_run=create,
    )


class TestKeyframes:
    """Tests for keyframe extraction."""

    def test_five_keyframes(self, orchestrator, runner, store, connection, make_video):
        source = make_video()
        runner.add(keyframe_result(5))
        rows_before = store.count()

        run_job(
            orchestrator,
            lambda: orchestrator.start_keyframe_extraction("user-1", source.id, connection.subscriber_id),
        )

        keyframes = store.list_keyframes(source.id)
        assert [k.filename for k in keyframes] == [f"keyframe-{n:04d}.jpg" for n in range(1, 6)]
        # Keyframe runs do not create job rows
        assert store.count() == rows_before

        assert statuses(connection, EventType.KEYFRAME_STATUS) == ["started", "completed"]
        completed = connection.events(EventType.KEYFRAME_STATUS)[-1]
        assert completed["keyframeCount"] == 5
        assert completed["videoId"] == source.id
        assert completed["keyframes"] == [
            f"/videos/source-job/keyframes/{source.id}/keyframe-{n:04d}.jpg" for n in range(1, 6)
        ]

        frames = [event["frame"] for event in connection.events(EventType.KEYFRAME_PROGRESS)]
        assert frames == [2, 5]

    def test_output_pattern(self, orchestrator, runner, make_video):
        source = make_video()
        runner.add(keyframe_result(1))
        run_job(orchestrator, lambda: orchestrator.start_keyframe_extraction("user-1", source.id))

        _, args = runner.calls[0]
        assert args[-1] == os.path.join(
            source.directory_path, "keyframes", str(source.id), "keyframe-%04d.jpg"
        )
        assert arg_after(args, "-vf") == "select='eq(pict_type,I)'"

    def test_rerun_does_not_duplicate_rows(self, orchestrator, runner, store, make_video):
        source = make_video()
        runner.add(keyframe_result(3), keyframe_result(3))

        run_job(orchestrator, lambda: orchestrator.start_keyframe_extraction("user-1", source.id))
        run_job(orchestrator, lambda: orchestrator.start_keyframe_extraction("user-1", source.id))

        assert len(store.list_keyframes(source.id)) == 3

    def test_versions_in_one_directory_keep_separate_frames(
        self, orchestrator, runner, store, connection, make_video
    ):
        """Test a clip's keyframes are not mixed with its source's in the shared directory."""
        source = make_video()
        clip_path = os.path.join(source.directory_path, "original_clip_0_5_1.mp4")
        write_file(clip_path)
        clip = store.create(
            user_id="user-1",
            kind=JobKind.CLIP,
            external_job_id="clip-job",
            status=JobStatus.COMPLETED,
            filename=os.path.basename(clip_path),
            extension="mp4",
            file_path=clip_path,
            directory_path=source.directory_path,
            file_size=1024,
            parent_id=source.id,
            clip_start=0,
            clip_end=5,
        )
        runner.add(keyframe_result(5), keyframe_result(2))

        run_job(
            orchestrator,
            lambda: orchestrator.start_keyframe_extraction("user-1", source.id, connection.subscriber_id),
        )
        run_job(
            orchestrator,
            lambda: orchestrator.start_keyframe_extraction("user-1", clip.id, connection.subscriber_id),
        )

        assert len(store.list_keyframes(source.id)) == 5
        assert len(store.list_keyframes(clip.id)) == 2
        completed = [e for e in connection.events(EventType.KEYFRAME_STATUS) if e["status"] == "completed"]
        assert [e["keyframeCount"] for e in completed] == [5, 2]
        assert completed[1]["keyframes"] == [
            f"/videos/source-job/keyframes/{clip.id}/keyframe-{n:04d}.jpg" for n in (1, 2)
        ]
        assert os.path.dirname(runner.calls[0][1][-1]) != os.path.dirname(runner.calls[1][1][-1])

    def test_failure_inserts_nothing(self, orchestrator, runner, store, connection, make_video):
        source = make_video()
        runner.add(keyframe_result(2, returncode=1))

        run_job(
            orchestrator,
            lambda: orchestrator.start_keyframe_extraction("user-1", source.id, connection.subscriber_id),
        )

        assert store.list_keyframes(source.id) == []
        assert statuses(connection, EventType.KEYFRAME_STATUS) == ["started", "error"]
        assert connection.events(EventType.KEYFRAME_STATUS)[-1]["videoId"] == source.id
        assert store.get_by_external_id(source.external_job_id).status == "completed"
        # Partial output is left in place
        assert os.path.isfile(os.path.join(
            source.directory_path, "keyframes", str(source.id), "keyframe-0001.jpg"
        ))


# ============================================================================
# Captions
# ============================================================================


def caption_result(*names):
    def create(args):
        directory = os.path.dirname(arg_after(args, "-o"))
        for name in names:
            with open(os.path.join(directory, name), "w") as f:
                f.write("WEBVTT\n\n00:00.000 --> 00:01.000\nHello\n")

    return FakeResult(stdout=["[info] Writing video subtitles\n"], on_run=create)


class TestCaptions:
    """Tests for caption fetching."""

    def test_captions_normalized(self, orchestrator, runner, store, connection, make_video):
        source = make_video()
        runner.add(caption_result("captions.en.vtt"))

        run_job(
            orchestrator,
            lambda: orchestrator.start_caption_fetch("user-1", source.id, connection.subscriber_id),
        )

        expected = os.path.join(source.directory_path, "captions.vtt")
        job = store.get_by_external_id(source.external_job_id)
        assert job.captions_path == expected
        assert os.path.isfile(expected)
        assert not os.path.exists(os.path.join(source.directory_path, "captions.en.vtt"))
        assert job.status == "completed"

        assert statuses(connection, EventType.CAPTIONS_STATUS) == ["started", "completed"]
        assert connection.events(EventType.CAPTIONS_STATUS)[-1]["filename"] == "captions.vtt"

        _, args = runner.calls[0]
        assert "--skip-download" in args
        assert args[-1] == source.original_url

    def test_no_captions_file_is_an_error(self, orchestrator, runner, store, connection, make_video):
        """Test a successful exit without a captions file is reported as an error."""
        source = make_video()
        runner.add(caption_result())

        run_job(
            orchestrator,
            lambda: orchestrator.start_caption_fetch("user-1", source.id, connection.subscriber_id),
        )

        assert statuses(connection, EventType.CAPTIONS_STATUS) == ["started", "error"]
        assert store.get_by_external_id(source.external_job_id).captions_path is None

    def test_stale_captions_file_is_ignored(self, orchestrator, runner, store, connection, make_video):
        source = make_video()
        with open(os.path.join(source.directory_path, "captions.vtt"), "w") as f:
            f.write("WEBVTT\n")
        runner.add(caption_result())

        run_job(
            orchestrator,
            lambda: orchestrator.start_caption_fetch("user-1", source.id, connection.subscriber_id),
        )

        assert statuses(connection, EventType.CAPTIONS_STATUS)[-1] == "error"

    def test_unfinished_video_allowed(self, orchestrator, runner, store, make_video):
        source = make_video(status=JobStatus.STARTED)
        runner.add(caption_result("captions.en-US.vtt"))

        run_job(orchestrator, lambda: orchestrator.start_caption_fetch("user-1", source.id))

        assert store.get_by_external_id(source.external_job_id).captions_path.endswith("captions.vtt")

    def test_other_users_video(self, orchestrator, make_video):
        source = make_video(user_id="alice")
        with pytest.raises(OwnershipError):
            asyncio.run(orchestrator.start_caption_fetch("bob", source.id))


# ============================================================================
# Event ordering
# ============================================================================


class TestTerminalEvents:
    def test_nothing_after_terminal_event(self, orchestrator, connection):
        ctx = JobContext(
            correlation_id="job-1",
            status_event=EventType.DOWNLOAD_STATUS,
            progress_event=EventType.DOWNLOAD_PROGRESS,
            subscriber_id=connection.subscriber_id,
        )

        async def scenario():
            await orchestrator._emit_status(ctx, "completed", "Download complete!")
            await orchestrator._emit_progress(ctx, progress=99.0, message="late")
            await orchestrator._emit_status(ctx, "error", "late failure")

        asyncio.run(scenario())

        assert len(connection.messages) == 1
        assert connection.messages[0]["data"]["status"] == "completed"

    def test_unexpected_exception_becomes_error(self, orchestrator, runner, store, connection, mocker):
        mocker.patch.object(
            orchestrator.commands, "fetch_title", side_effect=RuntimeError("boom")
        )

        ticket = run_job(
            orchestrator,
            lambda: orchestrator.start_download("user-1", URL, connection.subscriber_id),
        )

        job = store.get_by_external_id(ticket.correlation_id)
        assert job.status == "error"
        assert job.error_message == "boom"
        assert statuses(connection, EventType.DOWNLOAD_STATUS) == ["started", "error"]

    def test_store_failure_still_ends_with_error(self, orchestrator, runner, store, connection, mocker):
        """Test the terminal error event goes out when recording the failure fails too."""
        mocker.patch.object(
            orchestrator.commands, "fetch_title", side_effect=RuntimeError("boom")
        )
        mocker.patch.object(
            orchestrator.store,
            "update",
            side_effect=OperationalError("UPDATE videos", {}, Exception("disk I/O error")),
        )

        ticket = run_job(
            orchestrator,
            lambda: orchestrator.start_download("user-1", URL, connection.subscriber_id),
        )

        assert statuses(connection, EventType.DOWNLOAD_STATUS) == ["started", "error"]
        assert connection.events(EventType.DOWNLOAD_STATUS)[-1]["message"] == "boom"
        assert store.get_by_external_id(ticket.correlation_id).status == "started"
