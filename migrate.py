"""
Schema migrations for the retained tables.

Brings ``notifications`` and ``integration_logs`` (with the ranking indexes
the cap rule scans) up to the newest revision shipped in alembic/versions.
Revisions are recorded in the engine's own version table, so running this
against a database whose application also uses Alembic is safe.

Usage:
    python migrate.py
    retention migrate
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.resolve()

DEFAULT_VERSION_TABLE = "retention_alembic_version"


def _get_alembic_config(db_url: Optional[str] = None) -> Config:
    cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    if db_url:
        cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def _get_database_url() -> str:
    from config import get_config
    return get_config().database.connection_string


def _version_table(cfg: Config) -> str:
    return cfg.get_main_option("version_table") or DEFAULT_VERSION_TABLE


def get_head_revision() -> str:
    """Return the newest revision shipped with the code."""
    return ScriptDirectory.from_config(_get_alembic_config()).get_current_head()


def get_current_revision(db_url: str, cfg: Optional[Config] = None) -> Optional[str]:
    """Return the revision the database is at, or None before the first migration."""
    cfg = cfg or _get_alembic_config()
    engine = create_engine(db_url)
    try:
        with engine.connect() as conn:
            context = MigrationContext.configure(conn, opts={"version_table": _version_table(cfg)})
            return context.get_current_revision()
    finally:
        engine.dispose()


def _get_pending_migrations(db_url: str, cfg: Config) -> List[str]:
    """Revisions between the database's current revision and head, newest first."""
    current = get_current_revision(db_url, cfg)
    script = ScriptDirectory.from_config(cfg)
    pending = []
    for rev in script.walk_revisions():
        if rev.revision == current:
            break
        pending.append(rev.revision)
    return pending


def run_migrations() -> bool:
    """Apply pending migrations.

    Returns:
        True when the schema is at head afterwards, False if anything failed.
    """
    try:
        db_url = _get_database_url()
        cfg = _get_alembic_config(db_url)

        pending = _get_pending_migrations(db_url, cfg)
        if not pending:
            logger.info("Retention schema is up to date")
            return True

        logger.info("Applying %d retention migration(s): %s", len(pending), ", ".join(reversed(pending)))
        command.upgrade(cfg, "head")
        logger.info("Retention schema migrated to %s", pending[0])
        return True

    except Exception as e:
        logger.error("Retention schema migration failed: %s", e)
        return False


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    sys.exit(0 if run_migrations() else 1)
