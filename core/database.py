"""
core/database.py -- Engine factory and connection scopes for every store.

Pool policy (non-SQLite URLs):
  pool_size / max_overflow bound the number of open connections.
  pool_timeout bounds how long a request waits for a pooled connection;
      when it elapses the request fails with StoreUnavailable instead of
      hanging.
  pool_recycle retires a connection once it reaches a maximum age.
  pool_pre_ping drops connections the server closed while they sat idle.

SQLite gets check_same_thread=False (route handlers run in a thread pool and
the audit worker runs in its own thread) plus WAL so readers do not block on
the audit writer.

Connection scopes:
  connect(engine)      -- read scope. Released on every exit path.
  transaction(engine)  -- write scope. Commits on normal exit, rolls back on
                          any exception, then releases the connection.

Store failures other than "could not get a connection" propagate unchanged
and become a generic 500 at the API layer. Nothing here retries.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from core.config import Settings, get_settings
from core.errors import StoreUnavailable

logger = logging.getLogger("coopportal.db")


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys. SQLite PRAGMAs are per-connection."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(db_url: str | None = None, settings: Settings | None = None) -> Engine:
    settings = settings or get_settings()
    db_url = db_url or settings.database_url
    if db_url.startswith("sqlite"):
        engine = create_engine(
            db_url,
            connect_args={"check_same_thread": False, "timeout": settings.db_pool_timeout},
        )
        event.listen(engine, "connect", _set_sqlite_pragmas)
        return engine
    return create_engine(
        db_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
    )


@contextmanager
def connect(engine: Engine) -> Iterator[Connection]:
    try:
        conn = engine.connect()
    except (PoolTimeoutError, OperationalError) as exc:
        logger.error("Could not acquire a database connection: %s", exc)
        raise StoreUnavailable() from exc
    with conn:
        yield conn


@contextmanager
def transaction(engine: Engine) -> Iterator[Connection]:
    with connect(engine) as conn:
        with conn.begin():
            yield conn
