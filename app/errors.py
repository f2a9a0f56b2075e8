"""
Error taxonomy for job requests and job execution.

Synchronous errors (validation, ownership, precondition) are raised while a
request is being handled and are turned into HTTP responses by the handlers
registered in app.main. Asynchronous errors (subprocess, consistency) never
reach the caller directly; they end up as a job's terminal ``error`` status.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class VidtrackError(Exception):
    """Base class for all service errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(VidtrackError):
    """Malformed or missing request input. No job is created."""

    status_code = status.HTTP_400_BAD_REQUEST


class OwnershipError(VidtrackError):
    """The job does not exist or belongs to another user."""

    status_code = status.HTTP_404_NOT_FOUND


class PreconditionError(VidtrackError):
    """The source job is not in a state that allows the operation."""

    status_code = status.HTTP_409_CONFLICT


class SubprocessError(VidtrackError):
    """An external tool was missing, exited non-zero or was killed."""


class ConsistencyError(VidtrackError):
    """An external tool reported success but its output is not where expected."""


class InvalidTransitionError(VidtrackError):
    """A status update would re-open a job that already reached a terminal state."""

    status_code = status.HTTP_409_CONFLICT


async def vidtrack_error_handler(request: Request, exc: VidtrackError) -> JSONResponse:
    """Render a synchronous service error as a JSON response."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the service error handlers to an application."""
    app.add_exception_handler(VidtrackError, vidtrack_error_handler)
