from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.engine import Engine

from app.api.deps import CurrentPrincipal, require_role
from app.api.errors import handle_domain_error
from app.domain.errors import MaintenanceError
from app.domain.models import AssetCreate, AssetRead, PropertyCreate, PropertyRead
from app.domain.permissions import PrincipalRole
from app.domain.principal import Principal
from app.infra.audit import set_audit_context
from app.infra.db import get_engine
from app.infra.events import EventBus, get_event_bus
from app.services.registry_service import RegistryService

router = APIRouter()


def get_registry_service(
    engine: Annotated[Engine, Depends(get_engine)],
    event_bus: Annotated[EventBus, Depends(get_event_bus)],
) -> RegistryService:
    return RegistryService(engine, event_bus)


Service = Annotated[RegistryService, Depends(get_registry_service)]
Owner = Annotated[Principal, Depends(require_role(PrincipalRole.OWNER))]


@router.post("/properties", response_model=PropertyRead, status_code=status.HTTP_201_CREATED)
def create_property(payload: PropertyCreate, request: Request, owner: Owner, service: Service) -> PropertyRead:
    set_audit_context(request, action="registry.property.create", detail={"what": {"name": payload.name}})
    try:
        return PropertyRead.model_validate(service.create_property(owner, payload))
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.get("/properties", response_model=list[PropertyRead])
def list_properties(principal: CurrentPrincipal, service: Service) -> list[PropertyRead]:
    try:
        rows = service.list_properties(principal)
    except MaintenanceError as exc:
        handle_domain_error(exc)
    return [PropertyRead.model_validate(item) for item in rows]


@router.post("/assets", response_model=AssetRead, status_code=status.HTTP_201_CREATED)
def create_asset(payload: AssetCreate, request: Request, owner: Owner, service: Service) -> AssetRead:
    set_audit_context(
        request,
        action="registry.asset.create",
        detail={"what": {"property_id": payload.property_id, "name": payload.name}},
    )
    try:
        return AssetRead.model_validate(service.create_asset(owner, payload))
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.get("/assets", response_model=list[AssetRead])
def list_assets(
    principal: CurrentPrincipal,
    service: Service,
    property_id: str | None = None,
) -> list[AssetRead]:
    try:
        rows = service.list_assets(principal, property_id=property_id)
    except MaintenanceError as exc:
        handle_domain_error(exc)
    return [AssetRead.model_validate(item) for item in rows]
