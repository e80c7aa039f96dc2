"""Alembic environment for the fieldsync tables.

The sync tables usually live in the reservation system's own database, so
the revision history is kept in ``fieldsync_alembic_version`` rather than
the default ``alembic_version`` table. Revisions are raw ``op.execute()``
SQL; there is no SQLAlchemy metadata to autogenerate from.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, pool

from alembic import context

VERSION_TABLE = "fieldsync_alembic_version"
CHAIN_DIR = Path(__file__).parent / "versions" / "fieldsync"


def database_url() -> str:
    """``sqlalchemy.url`` when set by the caller, else the environment's DSN."""
    url = context.config.get_main_option("sqlalchemy.url")
    if url:
        return url
    from fieldsync.db import ConnectionParams

    return ConnectionParams.from_env().dsn


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=None,
        version_table=VERSION_TABLE,
        version_locations=[str(CHAIN_DIR)],
        **kwargs,
    )


def run_offline() -> None:
    """Emit the upgrade SQL without connecting (``alembic upgrade --sql``)."""
    _configure(url=database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_engine(database_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
