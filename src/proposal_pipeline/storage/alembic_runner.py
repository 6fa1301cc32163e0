"""Schema migrations for the shared job and runtime database."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import create_engine

logger = logging.getLogger(__name__)

# Job and runtime repositories migrate the same file; serialize them within one process.
_UPGRADE_LOCK = threading.Lock()
_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _migration_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring ``db_path`` up to the newest schema revision."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    with _UPGRADE_LOCK:
        command.upgrade(_migration_config(db_path), "head")
    logger.debug("Schema upgraded: db=%s", db_path)


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in ``db_path``, or None before the first upgrade."""

    engine = create_engine(f"sqlite:///{db_path}")
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()
