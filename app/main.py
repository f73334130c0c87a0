from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from app.api.routers import evidence, identity, registry, tasks
from app.infra.audit import AuditMiddleware
from app.infra.db import build_engine, check_db_ready, get_engine
from app.infra.events import EventBus
from app.infra.logging import setup_logging
from app.services.evidence_storage import EvidenceStoreError, build_evidence_store

SERVICE_NAME = "maintenance-service"

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    setup_logging(os.getenv("LOG_LEVEL", "INFO"), SERVICE_NAME, os.getenv("LOG_DIRECTORY") or None)
    engine = build_engine()
    app.state.engine = engine
    app.state.event_bus = EventBus(engine)
    try:
        app.state.evidence_store = build_evidence_store()
    except EvidenceStoreError:
        logger.exception("evidence store configuration failed")
        app.state.evidence_store = None
    logger.info("service started", extra={"service": SERVICE_NAME})
    try:
        yield
    finally:
        store = getattr(app.state, "evidence_store", None)
        if store is not None:
            store.close()
        engine.dispose()
        logger.info("service stopped", extra={"service": SERVICE_NAME})


app = FastAPI(
    title="maintenance-service",
    description="Multi-tenant maintenance task tracking with photo-verified completion.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(registry.router, prefix="/api/registry", tags=["registry"])
app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"])
app.include_router(evidence.router, prefix="/api/evidence", tags=["evidence"])


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    principal = getattr(request.state, "principal", None)
    logger.error(
        "unhandled error",
        exc_info=exc,
        extra={
            "method": request.method,
            "path": request.url.path,
            "actor_id": principal.id if principal is not None else None,
        },
    )
    return JSONResponse(status_code=500, content={"detail": "internal server error"})


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz(engine: Annotated[Engine, Depends(get_engine)]) -> dict[str, object]:
    db_ok = check_db_ready(engine)
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
