"""
Database connection management for lorekeep.

Provides the engine, session factory, and transactional session helpers.
The engine is created lazily from settings.database_url and can be rebound
with configure() (the scan command's --db option, tests).
"""

import logging
import threading
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from lorekeep.config import settings

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def _create_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
            pool_pre_ping=True,
        )

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):  # pragma: no cover
            # Take transaction control away from pysqlite so SAVEPOINT works
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if ":memory:" not in database_url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):  # pragma: no cover
            # Writers queue on the busy timeout instead of failing on lock upgrade
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


def configure(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    (Re)bind the module-level engine and session factory.

    Args:
        database_url: Database URL; defaults to settings.database_url
        echo: Log SQL statements; defaults to settings.db_echo

    Returns:
        The new engine
    """
    global _engine, _session_factory

    url = database_url or settings.database_url
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if url.startswith("sqlite:///") and ":memory:" not in url:
            from pathlib import Path

            Path(url.removeprefix("sqlite:///")).expanduser().parent.mkdir(
                parents=True, exist_ok=True
            )
        _engine = _create_engine(url, echo=settings.db_echo if echo is None else echo)
        _session_factory = sessionmaker(
            bind=_engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
    logger.debug(f"Database configured: {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def get_engine() -> Engine:
    """Return the engine, creating it from settings on first use."""
    if _engine is None:
        configure()
    assert _engine is not None
    return _engine


def get_session() -> Session:
    """
    Get a new database session.

    The caller owns the session and must commit/rollback and close it.
    """
    if _session_factory is None:
        configure()
    assert _session_factory is not None
    return _session_factory()


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions with automatic cleanup.

    Commits on success, rolls back and re-raises on any exception.

    Example:
        >>> with db_session() as db:
        >>>     conversation = db.query(Conversation).first()
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """Create all tables that do not exist yet."""
    from lorekeep.models.db import Base

    Base.metadata.create_all(bind=get_engine())
