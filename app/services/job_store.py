"""
Job Store - persistent record of every tracked job and its keyframes.

All updates are keyed by the correlation id (``external_job_id``) handed to
the client, since progress events only carry that id. Every call opens and
closes its own short session; returned rows are detached snapshots.
"""

import logging
import os
from typing import Any, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from app.errors import InvalidTransitionError
from app.models import Job, JobStatus, Keyframe

logger = logging.getLogger(__name__)


# Position of each status in the lifecycle; status may only move forward.
_STATUS_ORDER = {
    JobStatus.STARTED: 0,
    JobStatus.CONVERTING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.ERROR: 2,
}

_UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "status",
        "filename",
        "extension",
        "file_path",
        "file_size",
        "captions_path",
        "error_message",
    }
)


class JobNotFoundError(LookupError):
    """Raised when an update targets a correlation id with no row."""


class JobStore:
    """Row store for Job and Keyframe records."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    def create(self, **fields: Any) -> Job:
        """Insert a new job row and return it."""
        status = fields.get("status", JobStatus.STARTED)
        fields["status"] = JobStatus(status).value
        if "kind" in fields:
            fields["kind"] = getattr(fields["kind"], "value", fields["kind"])

        with self._session() as session:
            job = Job(**fields)
            session.add(job)
            session.commit()
            session.refresh(job)
            logger.debug(f"Created job {job.id} ({job.kind}) as {job.external_job_id}")
            return job

    def update(self, external_job_id: str, **fields: Any) -> Job:
        """
        Apply a partial update to the job with the given correlation id.

        Raises:
            JobNotFoundError: If no row carries the correlation id
            InvalidTransitionError: If the status change would move backwards
                or re-open a terminal job
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")

        with self._session() as session:
            job = session.scalars(
                select(Job).where(Job.external_job_id == external_job_id)
            ).one_or_none()
            if job is None:
                raise JobNotFoundError(f"No job with correlation id {external_job_id}")

            if "status" in fields:
                new_status = JobStatus(fields["status"])
                self._check_transition(job, new_status)
                fields["status"] = new_status.value

            for name, value in fields.items():
                setattr(job, name, value)
            session.commit()
            session.refresh(job)
            return job

    @staticmethod
    def _check_transition(job: Job, new_status: JobStatus) -> None:
        current = JobStatus(job.status)
        if current == new_status:
            if current.is_terminal:
                raise InvalidTransitionError(
                    f"Job {job.external_job_id} is already {current.value}"
                )
            return
        if current.is_terminal or _STATUS_ORDER[new_status] < _STATUS_ORDER[current]:
            raise InvalidTransitionError(
                f"Job {job.external_job_id} cannot move from {current.value} to {new_status.value}"
            )

    def get(self, job_id: int, owner: str) -> Optional[Job]:
        """Return the job if it exists and belongs to ``owner``."""
        with self._session() as session:
            return session.scalars(
                select(Job).where(Job.id == job_id, Job.user_id == owner)
            ).one_or_none()

    def get_by_external_id(self, external_job_id: str) -> Optional[Job]:
        with self._session() as session:
            return session.scalars(
                select(Job).where(Job.external_job_id == external_job_id)
            ).one_or_none()

    def list_by_owner(self, owner: str) -> list[Job]:
        """All jobs of one user, newest first."""
        with self._session() as session:
            return list(
                session.scalars(
                    select(Job)
                    .where(Job.user_id == owner)
                    .order_by(Job.created_at.desc(), Job.id.desc())
                )
            )

    def list_by_directory(self, directory_path: str, exclude_id: Optional[int] = None) -> list[Job]:
        """Other versions of the same logical video (shared directory)."""
        with self._session() as session:
            query = select(Job).where(Job.directory_path == directory_path)
            if exclude_id is not None:
                query = query.where(Job.id != exclude_id)
            return list(session.scalars(query.order_by(Job.created_at, Job.id)))

    def count(self) -> int:
        with self._session() as session:
            return session.scalar(select(func.count()).select_from(Job)) or 0

    def add_keyframes(self, video_id: int, file_paths: Iterable[str]) -> list[Keyframe]:
        """Bulk-insert one keyframe row per file, in filename order."""
        ordered = sorted(file_paths, key=os.path.basename)
        with self._session() as session:
            rows = [
                Keyframe(
                    video_id=video_id,
                    filename=os.path.basename(path),
                    file_path=path,
                )
                for path in ordered
            ]
            session.add_all(rows)
            session.commit()
            for row in rows:
                session.refresh(row)
            logger.debug(f"Inserted {len(rows)} keyframes for video {video_id}")
            return rows

    def list_keyframes(self, video_id: int) -> list[Keyframe]:
        with self._session() as session:
            return list(
                session.scalars(
                    select(Keyframe)
                    .where(Keyframe.video_id == video_id)
                    .order_by(Keyframe.filename, Keyframe.id)
                )
            )
