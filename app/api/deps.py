from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.engine import Engine

from app.domain.permissions import PrincipalRole
from app.domain.principal import Principal, resolve_tenant_scope
from app.infra.auth import decode_access_token
from app.infra.db import get_engine
from app.infra.events import EventBus, get_event_bus
from app.services.evidence_storage import EvidenceStore
from app.services.identity_service import IdentityService

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/login", auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_principal(
    request: Request,
    engine: Annotated[Engine, Depends(get_engine)],
    event_bus: Annotated[EventBus, Depends(get_event_bus)],
    token: Annotated[str | None, Depends(oauth2_scheme)],
) -> Principal:
    if not token:
        raise _unauthorized("Not authenticated")
    try:
        claims = decode_access_token(token)
    except jwt.ExpiredSignatureError as exc:
        raise _unauthorized("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("Invalid token") from exc

    principal = IdentityService(engine, event_bus).load_principal(claims["sub"])
    if principal is None:
        raise _unauthorized("User not found or inactive")
    request.state.principal = principal
    logger.debug(
        "principal resolved",
        extra={"actor_id": principal.id, "tenant_scope": resolve_tenant_scope(principal)},
    )
    return principal


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]


def require_role(*roles: PrincipalRole) -> Callable[[Principal], Principal]:
    allowed = frozenset(roles)

    def _checker(principal: CurrentPrincipal) -> Principal:
        if principal.role not in allowed:
            required = ", ".join(sorted(role.value for role in allowed))
            logger.warning(
                "role check denied",
                extra={"actor_id": principal.id, "role": principal.role.value, "required": required},
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"access denied: required role(s) {required}, current role {principal.role.value}",
            )
        return principal

    return _checker


def get_evidence_store(request: Request) -> EvidenceStore:
    store = getattr(request.app.state, "evidence_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="evidence storage unavailable",
        )
    return store


def get_optional_evidence_store(request: Request) -> EvidenceStore | None:
    return getattr(request.app.state, "evidence_store", None)
