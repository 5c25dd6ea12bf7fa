"""Database engine and session management utilities.

This module provides centralized database connection management including
engine creation, session handling, and database initialization.

Example:
    >>> from osu_complete.data.db import session_scope, init_db
    >>> init_db()  # Create all tables
    >>> with session_scope() as session:
    ...     session.add(some_model)
"""
from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from osu_complete.config import get_settings
from osu_complete.data.schema import Base

logger = logging.getLogger(__name__)

_engine: Engine | None = None
_session_factory: scoped_session[Session] | None = None


def _set_sqlite_pragmas(
    dbapi_connection: Any,
    connection_record: Any,
) -> None:
    """Set SQLite pragmas on every new connection.

    Args:
        dbapi_connection: Raw DBAPI connection object.
        connection_record: Connection pool record (unused).
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    # WAL lets the read API query while the worker writes
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()
    logger.debug("SQLite pragmas applied: foreign_keys=ON, journal_mode=WAL")


def get_engine() -> Engine:
    """Get or create the SQLAlchemy engine for ``settings.db_path``.

    Returns:
        SQLAlchemy Engine instance.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        db_path = Path(settings.db_path)

        db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensuring database directory exists: {db_path.parent}")

        db_url = f"sqlite:///{db_path}"
        _engine = create_engine(
            db_url,
            echo=False,
            pool_pre_ping=True,
        )

        event.listen(_engine, "connect", _set_sqlite_pragmas)
        logger.debug(f"Created database engine: {db_url}")

    return _engine


def get_session() -> Session:
    """Get the database session for the current thread.

    Returns:
        SQLAlchemy Session instance.
    """
    global _session_factory
    if _session_factory is None:
        engine = get_engine()
        factory = sessionmaker(bind=engine)
        _session_factory = scoped_session(factory)
        logger.debug("Created scoped session factory")

    return _session_factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager for database sessions with auto-commit/rollback.

    Yields:
        SQLAlchemy Session instance.

    Raises:
        Exception: Re-raises any exception after rollback.

    Example:
        >>> with session_scope() as session:
        ...     session.add(Player(id=2, name="peppy"))
        ... # Auto-commits on exit
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        logger.debug("Session rolling back due to exception")
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def transaction(session: Session) -> Generator[Session, None, None]:
    """Commit the work done inside the block as one unit.

    Components share one long-lived session and call this at each
    transaction boundary, so a failure rolls back only the current batch.

    Example:
        >>> with transaction(session):
        ...     session.add(Pass(...))
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def init_db() -> None:
    """Create all tables. Safe to call multiple times."""
    # Register models with Base
    from osu_complete.data import models  # noqa: F401

    engine = get_engine()
    Base.metadata.create_all(engine)
    logger.info("Database initialized - all tables created")


def reset_engine() -> None:
    """Reset the engine and session factory (for testing)."""
    global _engine, _session_factory
    if _session_factory is not None:
        _session_factory.remove()
        _session_factory = None
    if _engine is not None:
        _engine.dispose()
        _engine = None
    logger.debug("Database engine and session factory reset")


def verify_foreign_keys_enabled() -> bool:
    """Verify that foreign key constraints are enabled.

    Returns:
        True if foreign keys are enabled, False otherwise.
    """
    engine = get_engine()
    with engine.connect() as conn:
        result = conn.execute(text("PRAGMA foreign_keys"))
        row = result.fetchone()
        return row is not None and row[0] == 1
