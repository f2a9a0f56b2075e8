"""SQLAlchemy models for tracked jobs and their extracted keyframes."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class JobKind(str, Enum):
    """Which operation produced a job row."""

    DOWNLOAD = "download"
    CONVERT = "convert"
    CLIP = "clip"


class JobStatus(str, Enum):
    """Lifecycle status of a job row."""

    STARTED = "started"
    CONVERTING = "converting"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


class Job(Base):
    """One download, conversion or clip, plus its resulting artifact."""

    __tablename__ = "videos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default=JobKind.DOWNLOAD.value)
    external_job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    original_url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JobStatus.STARTED.value)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    extension: Mapped[Optional[str]] = mapped_column(String(16))
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    directory_path: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    file_size: Mapped[Optional[int]] = mapped_column(Integer)
    captions_path: Mapped[Optional[str]] = mapped_column(Text)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("videos.id"))
    clip_start: Mapped[Optional[float]] = mapped_column(Float)
    clip_end: Mapped[Optional[float]] = mapped_column(Float)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    keyframes: Mapped[list["Keyframe"]] = relationship(
        back_populates="video", order_by="Keyframe.filename"
    )

    def __repr__(self) -> str:
        return f"<Job id={self.id} kind={self.kind} status={self.status} external_job_id={self.external_job_id}>"


class Keyframe(Base):
    """A still image extracted from a job's artifact."""

    __tablename__ = "keyframes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    video_id: Mapped[int] = mapped_column(ForeignKey("videos.id"), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[Optional[str]] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    video: Mapped[Job] = relationship(back_populates="keyframes")
