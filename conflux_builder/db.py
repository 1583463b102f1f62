"""Database engine and session management for conflux_builder.

Build records are written from three places at once: request handlers,
webhook deliveries and the background poller. The engine is shared by
all of them, so file-backed SQLite databases run in WAL mode with a busy
timeout, letting a writer wait for the lock instead of failing.

Sessions never expire loaded attributes on commit; records returned from
a committed transaction stay readable by the caller.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from conflux_builder.config import get_settings

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    """Base class for all ORM models."""


def _is_file_sqlite(db_url: str) -> bool:
    url = make_url(db_url)
    return url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:")


def _enable_sqlite_concurrency(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    finally:
        cursor.close()


def get_engine(db_url: str | None = None) -> Engine:
    """Create the engine shared by request, webhook and poller threads.

    The parent directory of a SQLite database file is created if needed.

    Args:
        db_url: Database URL. If not provided, uses the settings default.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        db_url = get_settings().db_url

    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(db_url, connect_args=connect_args)

    if _is_file_sqlite(db_url):
        database = Path(str(make_url(db_url).database))
        database.parent.mkdir(parents=True, exist_ok=True)
        event.listen(engine, "connect", _enable_sqlite_concurrency)
        logger.debug("Using SQLite database %s", database)

    return engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Create a session factory bound to an engine.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.

    Returns:
        Session factory (sessionmaker).
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Run a unit of work in one transaction.

    Commits when the block exits normally and rolls back when it raises.
    A submit that records a failed dispatch exits normally, so the failed
    record is committed.

    Args:
        session_factory: Optional session factory. Creates one if not provided.

    Yields:
        SQLAlchemy Session instance.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the build_records and tags tables if they do not exist.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.
    """
    # Models register themselves on Base.metadata when imported
    from conflux_builder.builds import models as builds_models  # noqa: F401
    from conflux_builder.tags import models as tags_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine | None = None) -> None:
    """Drop all tables. Used by tests."""
    if engine is None:
        engine = get_engine()
    Base.metadata.drop_all(bind=engine)


__all__ = [
    "Base",
    "SQLITE_BUSY_TIMEOUT_MS",
    "create_all_tables",
    "drop_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
