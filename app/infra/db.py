from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import create_engine

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://maint:maint@db:5432/maintenance",
)


def build_engine(database_url: str | None = None) -> Engine:
    url = database_url or DATABASE_URL
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        # Request handlers run in the threadpool.
        connect_args["check_same_thread"] = False
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def check_db_ready(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        logger.warning("database readiness check failed", exc_info=True)
        return False
