"""Database engine and session management."""

from entitlement_engine.database.session import (
    configure_sqlite_engine,
    get_engine,
    get_session_factory,
    get_db_session,
    get_db_session_sync,
    is_storage_error,
    reset_engine,
)

__all__ = [
    "configure_sqlite_engine",
    "get_engine",
    "get_session_factory",
    "get_db_session",
    "get_db_session_sync",
    "is_storage_error",
    "reset_engine",
]
