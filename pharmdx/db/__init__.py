"""Database helpers for pharmdx."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseSettings, get_database_settings
from .models import create_tables, metadata


def build_engine(settings: Optional[DatabaseSettings] = None) -> Engine:
    """Create an engine for ``settings`` (defaults to the environment)."""

    settings = settings or get_database_settings()
    return create_engine(settings.url, future=True, **settings.engine_options())


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "DatabaseSettings",
    "build_engine",
    "create_tables",
    "get_database_settings",
    "metadata",
    "session_scope",
]
