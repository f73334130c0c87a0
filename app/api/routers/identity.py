from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.engine import Engine

from app.api.deps import CurrentPrincipal, require_role
from app.api.errors import handle_domain_error
from app.domain.errors import MaintenanceError
from app.domain.models import LoginRequest, OperatorCreate, OwnerRegisterRequest, TokenResponse, UserRead
from app.domain.permissions import PrincipalRole
from app.domain.principal import OwnerPrincipal, Principal
from app.infra.audit import set_audit_context
from app.infra.db import get_engine
from app.infra.events import EventBus, get_event_bus
from app.services.identity_service import IdentityService

router = APIRouter()


def get_identity_service(
    engine: Annotated[Engine, Depends(get_engine)],
    event_bus: Annotated[EventBus, Depends(get_event_bus)],
) -> IdentityService:
    return IdentityService(engine, event_bus)


Service = Annotated[IdentityService, Depends(get_identity_service)]
Owner = Annotated[Principal, Depends(require_role(PrincipalRole.OWNER))]


def _as_owner(principal: Principal) -> OwnerPrincipal:
    assert isinstance(principal, OwnerPrincipal)
    return principal


@router.post("/owners", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def register_owner(payload: OwnerRegisterRequest, request: Request, service: Service) -> UserRead:
    set_audit_context(request, action="identity.owner.register", detail={"what": {"email": payload.email}})
    try:
        return UserRead.model_validate(service.register_owner(payload))
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, request: Request, service: Service) -> TokenResponse:
    set_audit_context(request, action="identity.login", detail={"what": {"email": payload.email}})
    try:
        user, token = service.authenticate(payload)
    except MaintenanceError as exc:
        handle_domain_error(exc)
    return TokenResponse(access_token=token, role=user.role)


@router.get("/me", response_model=UserRead)
def me(principal: CurrentPrincipal, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.get_user(principal.id))
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.post("/operators", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_operator(payload: OperatorCreate, request: Request, owner: Owner, service: Service) -> UserRead:
    set_audit_context(request, action="identity.operator.create", detail={"what": {"email": payload.email}})
    try:
        return UserRead.model_validate(service.create_operator(_as_owner(owner), payload))
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.get("/operators", response_model=list[UserRead])
def list_operators(owner: Owner, service: Service, include_inactive: bool = False) -> list[UserRead]:
    rows = service.list_operators(_as_owner(owner), include_inactive=include_inactive)
    return [UserRead.model_validate(item) for item in rows]


@router.post("/operators/{operator_id}/deactivate", response_model=UserRead)
def deactivate_operator(operator_id: str, request: Request, owner: Owner, service: Service) -> UserRead:
    set_audit_context(
        request,
        action="identity.operator.deactivate",
        detail={"what": {"operator_id": operator_id}},
    )
    try:
        return UserRead.model_validate(service.deactivate_operator(_as_owner(owner), operator_id))
    except MaintenanceError as exc:
        handle_domain_error(exc)
