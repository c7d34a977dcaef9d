"""Apply the courier Alembic revisions from inside the process."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from courier.db import _check_identifier

logger = logging.getLogger(__name__)

# The alembic/ directory sits next to src/ in the repository.
ALEMBIC_DIR = Path(__file__).resolve().parents[2] / "alembic"

SCHEMA_OPTION = "courier.target_schema"
HEAD = "core@head"


def build_alembic_config(db_url: str, schema: str | None = None) -> Config:
    """Alembic ``Config`` for the ``core`` chain against ``db_url``.

    ``schema``, when given, is handed to ``env.py`` which creates it and keeps
    ``alembic_version`` inside it.
    """
    cfg = Config(str(ALEMBIC_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(ALEMBIC_DIR))
    cfg.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / "core"))
    # configparser interpolation treats '%' specially.
    cfg.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    checked = _check_identifier(schema, "migration schema name")
    if checked is not None:
        cfg.set_main_option(SCHEMA_OPTION, checked)
    return cfg


async def run_migrations(db_url: str, schema: str | None = None) -> None:
    cfg = build_alembic_config(db_url, schema)
    logger.info("Upgrading courier tables to %s (schema=%s)", HEAD, schema or "public")
    # Alembic blocks; keep it off the event loop.
    await asyncio.to_thread(command.upgrade, cfg, HEAD)
