"""
Database session management with connection pooling.

Provides a shared FastAPI dependency for database sessions across all routes
and a synchronous generator for workers.

Usage:
    from entitlement_engine.database.session import get_db_session

    @router.get("/api/credits")
    def get_credits(db: Session = Depends(get_db_session)):
        ...

Configuration:
- DATABASE_URL: SQLAlchemy URL (postgres:// is normalised to postgresql://)
- ENTITLEMENT_DB_STATEMENT_TIMEOUT_MS: PostgreSQL statement timeout applied
  to every connection (default: 2000). Timeouts surface as
  STORAGE_UNAVAILABLE denials, never as an allow.
"""

import os
import logging
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.exc import DBAPIError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)

DEFAULT_STATEMENT_TIMEOUT_MS = 2000

# Module-level engine singleton
_engine = None
_SessionLocal = None


def _get_database_url() -> str:
    """
    Get and normalize the database URL from environment.

    Handles the postgres:// URL format by converting to postgresql://.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def _get_statement_timeout_ms() -> int:
    return int(os.getenv("ENTITLEMENT_DB_STATEMENT_TIMEOUT_MS", str(DEFAULT_STATEMENT_TIMEOUT_MS)))


def _sqlite_on_connect(dbapi_connection, connection_record) -> None:
    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    # Let SQLAlchemy emit BEGIN itself (see _sqlite_on_begin)
    dbapi_connection.isolation_level = None


def _sqlite_on_begin(conn) -> None:
    # Take the write lock up front so concurrent writers queue on the busy
    # timeout instead of failing a lock upgrade with "database is locked".
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def configure_sqlite_engine(engine) -> None:
    """Foreign keys on, and every transaction starts with BEGIN IMMEDIATE."""
    event.listen(engine, "connect", _sqlite_on_connect)
    event.listen(engine, "begin", _sqlite_on_begin)


def get_engine():
    """
    Get or create the database engine singleton.

    PostgreSQL gets a QueuePool (5 + 10 overflow, pre-ping, 5 s checkout
    timeout) and the statement timeout; SQLite gets configure_sqlite_engine.
    A pool checkout timeout surfaces as STORAGE_UNAVAILABLE.
    """
    global _engine
    if _engine is None:
        try:
            database_url = _get_database_url()
            if database_url.startswith("sqlite"):
                _engine = create_engine(
                    database_url,
                    connect_args={"check_same_thread": False, "timeout": 30},
                )
                configure_sqlite_engine(_engine)
            else:
                _engine = create_engine(
                    database_url,
                    poolclass=QueuePool,
                    pool_size=5,
                    max_overflow=10,
                    pool_pre_ping=True,
                    pool_recycle=1800,
                    pool_timeout=5,
                    connect_args={
                        "options": f"-c statement_timeout={_get_statement_timeout_ms()}",
                    },
                )
            logger.info("Database engine created", extra={"dialect": _engine.dialect.name})
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        engine = get_engine()
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=engine
        )
    return _SessionLocal


def reset_engine() -> None:
    """
    Dispose the engine and forget the session factory (for testing).

    WARNING: Only use in tests!
    """
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def is_storage_error(exc: BaseException) -> bool:
    """
    True if an exception means the storage layer is unavailable.

    Covers lost connections, lock/statement timeouts and pool exhaustion.
    Constraint violations are NOT storage errors.
    """
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


def get_db_session() -> Generator[Session, None, None]:
    """
    Request-scoped session dependency, closed after the response.

    503 when DATABASE_URL is missing.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_db_session_sync() -> Generator[Session, None, None]:
    """
    Synchronous session generator for workers and scripts.

    Usage:
        for session in get_db_session_sync():
            # use session
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}")

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
