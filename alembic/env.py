"""
Alembic environment for the retention engine's tables.

The retained tables live in the owning application's database, so the
engine tracks its own revisions in a separate version table
(``version_table`` in alembic.ini) and never touches ``alembic_version``.
Connection settings come from DatabaseConfig unless a caller has already
set ``sqlalchemy.url``.
"""

import os
import sys
from logging.config import fileConfig

from sqlalchemy import create_engine, pool, text
from alembic import context

# Project root on the path so config imports resolve
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

VERSION_TABLE = config.get_main_option("version_table") or "retention_alembic_version"

# Fail a DDL step instead of queueing behind application traffic
LOCK_TIMEOUT = "10s"


def get_database_url() -> str:
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url

    from config import get_config
    return get_config().database.connection_string


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    context.configure(
        url=get_database_url(),
        target_metadata=None,
        literal_binds=True,
        version_table=VERSION_TABLE,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a single AUTOCOMMIT connection.

    Migrations are raw-SQL and idempotent (IF NOT EXISTS), so each one
    runs as a plain multi-statement execute.
    """
    engine = create_engine(get_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as connection:
            connection.execute(text(f"SET lock_timeout = '{LOCK_TIMEOUT}'"))
            context.configure(
                connection=connection,
                target_metadata=None,
                version_table=VERSION_TABLE,
            )
            context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
