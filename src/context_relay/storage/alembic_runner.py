"""Programmatic Alembic entry points for the plan ledger schema."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def ledger_config(db_path: Path) -> Config:
    """Alembic config bound to the bundled migrations and one SQLite file."""

    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision(config: Config) -> str | None:
    return ScriptDirectory.from_config(config).get_current_head()


def upgrade_head(db_path: Path) -> None:
    """Create or migrate the ledger database at ``db_path``."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    config = ledger_config(db_path)
    logger.debug("Migrating plan ledger schema at %s to %s", db_path, head_revision(config))
    command.upgrade(config, "head")
