"""
Pytest configuration and fixtures.
"""

import os
import sys

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add app directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from app.auth import create_access_token  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.database import Base  # noqa: E402
from app.models import JobKind, JobStatus  # noqa: E402
from app.services.event_relay import EventRelay  # noqa: E402
from app.services.job_orchestrator import JobOrchestrator  # noqa: E402
from app.services.job_store import JobStore  # noqa: E402
from tests.fakes import FakeConnection, FakeRunner, write_file  # noqa: E402

TEST_SECRET = "test-secret"


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Settings pointing at a temporary videos directory."""
    monkeypatch.setenv("VIDEOS_DIRECTORY", str(tmp_path / "videos"))
    monkeypatch.setenv("JWT_SECRET", TEST_SECRET)
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def session_factory():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def relay():
    return EventRelay()


@pytest.fixture
def connection(relay):
    """A connected subscriber."""
    conn = FakeConnection()
    conn.subscriber_id = relay.register(conn)
    return conn


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def orchestrator(settings, store, relay, runner):
    return JobOrchestrator(store, relay, runner=runner, settings=settings)


@pytest.fixture
def make_video(settings, store):
    """Create a stored video row, with its file on disk when completed."""

    def _make(
        user_id: str = "user-1",
        status: JobStatus = JobStatus.COMPLETED,
        correlation_id: str = "source-job",
        size: int = 4096,
    ):
        directory = os.path.join(settings.videos_root, correlation_id)
        file_path = os.path.join(directory, "original.mp4")
        if status == JobStatus.COMPLETED:
            write_file(file_path, size)
        return store.create(
            user_id=user_id,
            kind=JobKind.DOWNLOAD,
            external_job_id=correlation_id,
            original_url="https://www.youtube.com/watch?v=abc123",
            title="Sample Video",
            status=status,
            filename="original.mp4",
            extension="mp4",
            file_path=file_path,
            directory_path=directory,
            file_size=size if status == JobStatus.COMPLETED else None,
        )

    return _make


@pytest.fixture
def auth_headers(settings):
    """Bearer headers for a given user id."""

    def _headers(user_id: str = "user-1") -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers
