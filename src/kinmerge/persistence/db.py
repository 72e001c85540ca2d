"""Database connectivity and transaction helpers for kinmerge.

Provides engine creation from the environment.

Environment Variables:
    KINMERGE_DATABASE_URL: Connection string for the backing store. PostgreSQL in
        production; SQLite URLs are accepted for development and tests.

Design Requirements:
    - Every public merge operation runs inside one transaction
    - Fail closed on missing configuration
    - SQLite connections use explicit BEGIN so SAVEPOINT and rollback behave as on
      PostgreSQL
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)

KINMERGE_DATABASE_URL_ENV = "KINMERGE_DATABASE_URL"

_engine: Engine | None = None


class DatabaseConfigError(Exception):
    """Raised when database configuration is missing or invalid.

    This is a fail-closed error - operations requiring the database
    should not proceed without valid configuration.
    """

    pass


def _normalize_url(url: str) -> str:
    """Rewrite legacy postgres:// URLs to the scheme SQLAlchemy expects."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def get_database_url() -> str:
    """Get the database URL from environment.

    Returns:
        Database connection string.

    Raises:
        DatabaseConfigError: If KINMERGE_DATABASE_URL is not set.
    """
    url = os.environ.get(KINMERGE_DATABASE_URL_ENV)

    if not url:
        raise DatabaseConfigError(
            f"Database URL not configured. Set {KINMERGE_DATABASE_URL_ENV} environment variable."
        )

    return _normalize_url(url)


def _enable_sqlite_transactions(engine: Engine) -> None:
    """Take over transaction control from pysqlite.

    pysqlite defers BEGIN until the first DML statement, which breaks SAVEPOINT and
    makes rollback skip earlier reads. Disabling its implicit handling and emitting
    BEGIN ourselves gives the same semantics as PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN")


def create_engine_for_url(url: str, **kwargs: Any) -> Engine:
    """Create an engine for url with dialect-appropriate settings.

    In-memory SQLite URLs get a StaticPool so every connection sees the same
    database.

    Args:
        url: SQLAlchemy database URL.
        **kwargs: Extra keyword arguments forwarded to create_engine.

    Returns:
        Configured SQLAlchemy Engine.
    """
    url = _normalize_url(url)

    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)
        engine = create_engine(url, connect_args=connect_args, echo=False, **kwargs)
        _enable_sqlite_transactions(engine)
        return engine

    kwargs.setdefault("pool_size", 5)
    kwargs.setdefault("max_overflow", 10)
    return create_engine(url, pool_pre_ping=True, echo=False, **kwargs)


def get_engine() -> Engine:
    """Get or create the process-wide database engine.

    Returns:
        SQLAlchemy Engine for application use.

    Raises:
        DatabaseConfigError: If KINMERGE_DATABASE_URL is not set.
    """
    global _engine

    if _engine is None:
        _engine = create_engine_for_url(get_database_url())
        logger.info("Created database engine")

    return _engine


def reset_engine() -> None:
    """Dispose the process-wide engine.

    Used for testing to ensure fresh engine creation.
    """
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
