"""Programmatic Alembic migration runner.

Lets ``fieldsync migrate`` and deployments upgrade the schema without
shelling out to the Alembic CLI.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CHAIN = "fieldsync"


def _build_alembic_config(db_url: str) -> Config:
    """Build an in-memory Alembic Config for the fieldsync environment."""
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; percent-encoded DB URLs
    # must escape '%' as '%%'.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    return config


async def run_migrations(db_url: str, revision: str = "head") -> None:
    """Upgrade the fieldsync chain to *revision* (default: head).

    Alembic's engine is synchronous, so the upgrade runs in a worker thread.
    """
    config = _build_alembic_config(db_url)
    logger.info("Running migration chain %s to %s", CHAIN, revision)
    await asyncio.to_thread(command.upgrade, config, f"{CHAIN}@{revision}")
