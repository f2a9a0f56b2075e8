"""
SQLAlchemy engine and session management.

The store is accessed through short synchronous sessions; SQLite is the
default backend.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""


_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def create_engine_for_url(database_url: str) -> Engine:
    """Create an engine, allowing SQLite connections to be shared across threads."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, future=True)


def get_engine() -> Engine:
    """Return a singleton engine bound to the configured database."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for_url(settings.database_url)
    return _engine


def get_sessionmaker() -> sessionmaker:
    """Return a lazily initialised session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)
    return _session_factory


def init_db(engine: Optional[Engine] = None) -> None:
    """Create tables for all registered models if they do not exist."""
    # Import models to ensure metadata is populated before create_all.
    from app import models  # noqa: F401

    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialised: {engine.url.render_as_string(hide_password=True)}")
