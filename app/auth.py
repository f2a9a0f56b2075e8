"""
Bearer token authentication.

Every job and video endpoint is scoped to the user named by the ``sub``
claim of a JWT signed with JWT_SECRET. Tokens are issued elsewhere;
create_access_token exists for tooling and tests.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Header, HTTPException, status
from jose import JWTError, jwt

from app.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class VerifiedUser:
    """Identity extracted from a valid token."""

    user_id: str


def create_access_token(subject: str, expires_minutes: Optional[int] = None) -> str:
    settings = get_settings()
    expire = datetime.utcnow() + timedelta(minutes=expires_minutes or settings.jwt_expires_minutes)
    to_encode = {"sub": subject, "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[str]:
    """Return the subject of a valid token, or None."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.debug(f"Rejected token: {e}")
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def verify_request(
    authorization: Optional[str] = Header(None),
) -> VerifiedUser:
    """
    FastAPI dependency resolving the calling user.

    Args:
        authorization: ``Authorization: Bearer <token>`` header

    Raises:
        HTTPException: 401 if the header is missing or the token is invalid
    """
    if not authorization:
        logger.warning("Request missing Authorization header")
        raise _unauthorized("Missing bearer token")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized("Invalid authorization header")

    user_id = decode_access_token(token.strip())
    if user_id is None:
        logger.warning("Invalid bearer token received")
        raise _unauthorized("Invalid token")

    return VerifiedUser(user_id=user_id)
