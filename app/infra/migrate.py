from __future__ import annotations

import logging
import sys

from alembic import command
from alembic.config import Config

from app.infra.db import DATABASE_URL

logger = logging.getLogger(__name__)


def run_upgrade(revision: str = "head") -> None:
    config = Config("alembic.ini")
    config.set_main_option("sqlalchemy.url", DATABASE_URL)
    logger.info("applying migrations", extra={"revision": revision})
    command.upgrade(config, revision)


if __name__ == "__main__":
    run_upgrade(sys.argv[1] if len(sys.argv) > 1 else "head")
