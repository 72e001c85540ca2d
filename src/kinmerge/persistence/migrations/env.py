"""Alembic environment configuration for kinmerge migrations.

Run by alembic; kinmerge.persistence.migrate drives it programmatically.
Uses KINMERGE_DATABASE_URL for migration connections unless a connection is
handed in through config.attributes["connection"].
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from alembic import context

from kinmerge.persistence.db import get_database_url, get_engine

if TYPE_CHECKING:
    from sqlalchemy import Connection

target_metadata = None


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Configures the context with just a URL; context.execute() emits SQL to stdout.
    """
    context.configure(
        url=get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_with_connection(connection: Connection) -> None:
    """Run migrations using an existing connection.

    Args:
        connection: SQLAlchemy connection to use for migrations.
    """
    context.configure(connection=connection, target_metadata=target_metadata)

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode.

    Reuses the connection passed by run_upgrade/run_downgrade when present.
    """
    connection = context.config.attributes.get("connection")
    if connection is not None:
        run_migrations_with_connection(connection)
        return

    with get_engine().connect() as connection:
        run_migrations_with_connection(connection)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
