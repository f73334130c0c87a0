from __future__ import annotations

import math
from typing import Annotated

from fastapi import APIRouter, Depends, File, Query, Request, Response, UploadFile, status
from sqlalchemy.engine import Engine

from app.api.deps import CurrentPrincipal, get_evidence_store, get_optional_evidence_store
from app.api.errors import handle_domain_error
from app.domain.errors import MaintenanceError
from app.domain.models import (
    EvidenceUploadRead,
    PaginationRead,
    TaskCreate,
    TaskPageRead,
    TaskPriority,
    TaskRead,
    TaskStatsRead,
    TaskSubmitRequest,
    TaskUpdate,
    TaskVerifyRequest,
    UploadSlotRead,
    UploadSlotRequest,
)
from app.domain.state_machine import TaskStatus
from app.infra.audit import set_audit_context
from app.infra.db import get_engine
from app.infra.events import EventBus, get_event_bus
from app.services.evidence_service import MAX_EVIDENCE_BYTES, EvidenceService
from app.services.evidence_storage import EvidenceStore
from app.services.task_service import MAX_PAGE_LIMIT, TaskService

router = APIRouter()


def get_task_service(
    engine: Annotated[Engine, Depends(get_engine)],
    event_bus: Annotated[EventBus, Depends(get_event_bus)],
    store: Annotated[EvidenceStore | None, Depends(get_optional_evidence_store)],
) -> TaskService:
    return TaskService(engine, event_bus, store)


def get_evidence_service(
    engine: Annotated[Engine, Depends(get_engine)],
    event_bus: Annotated[EventBus, Depends(get_event_bus)],
    store: Annotated[EvidenceStore, Depends(get_evidence_store)],
) -> EvidenceService:
    return EvidenceService(engine, event_bus, store)


Service = Annotated[TaskService, Depends(get_task_service)]
Evidence = Annotated[EvidenceService, Depends(get_evidence_service)]


@router.get("", response_model=TaskPageRead)
def list_tasks(
    principal: CurrentPrincipal,
    service: Service,
    status_filter: Annotated[TaskStatus | None, Query(alias="status")] = None,
    priority: TaskPriority | None = None,
    property_id: str | None = None,
    asset_id: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_LIMIT)] = 20,
) -> TaskPageRead:
    try:
        rows, total = service.list_tasks(
            principal,
            status=status_filter,
            priority=priority,
            property_id=property_id,
            asset_id=asset_id,
            page=page,
            limit=limit,
        )
    except MaintenanceError as exc:
        handle_domain_error(exc)
    total_pages = math.ceil(total / limit)
    return TaskPageRead(
        tasks=[TaskRead.model_validate(item) for item in rows],
        pagination=PaginationRead(
            current_page=page,
            total_pages=total_pages,
            total_tasks=total,
            has_next=page < total_pages,
            has_prev=page > 1,
        ),
    )


@router.get("/stats", response_model=TaskStatsRead)
def task_stats(principal: CurrentPrincipal, service: Service) -> TaskStatsRead:
    try:
        return service.task_stats(principal)
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreate, request: Request, principal: CurrentPrincipal, service: Service) -> TaskRead:
    set_audit_context(
        request,
        action="task.create",
        detail={"what": {"asset_id": payload.asset_id, "assigned_operator_id": payload.assigned_operator_id}},
    )
    try:
        return TaskRead.model_validate(service.create_task(principal, payload))
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.post("/upload-url", response_model=UploadSlotRead)
def request_upload_url(
    payload: UploadSlotRequest,
    request: Request,
    principal: CurrentPrincipal,
    evidence: Evidence,
) -> UploadSlotRead:
    set_audit_context(request, action="evidence.upload_slot", detail={"what": {"file_name": payload.file_name}})
    try:
        return evidence.request_upload_slot(principal, payload.file_name, payload.file_type)
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.get("/{task_id}", response_model=TaskRead)
def get_task(task_id: str, principal: CurrentPrincipal, service: Service) -> TaskRead:
    try:
        return TaskRead.model_validate(service.get_task(principal, task_id))
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.patch("/{task_id}", response_model=TaskRead)
def update_task(
    task_id: str,
    payload: TaskUpdate,
    request: Request,
    principal: CurrentPrincipal,
    service: Service,
) -> TaskRead:
    set_audit_context(
        request,
        action="task.update",
        detail={"what": {"task_id": task_id, "fields": sorted(payload.model_fields_set)}},
    )
    try:
        return TaskRead.model_validate(service.update_task(principal, task_id, payload))
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: str, request: Request, principal: CurrentPrincipal, service: Service) -> Response:
    set_audit_context(request, action="task.delete", detail={"what": {"task_id": task_id}})
    try:
        service.delete_task(principal, task_id)
    except MaintenanceError as exc:
        handle_domain_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{task_id}/start", response_model=TaskRead)
def start_task(task_id: str, request: Request, principal: CurrentPrincipal, service: Service) -> TaskRead:
    set_audit_context(request, action="task.start", detail={"what": {"task_id": task_id}})
    try:
        return TaskRead.model_validate(service.start(principal, task_id))
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.post("/{task_id}/submit-for-verification", response_model=TaskRead)
def submit_for_verification(
    task_id: str,
    payload: TaskSubmitRequest,
    request: Request,
    principal: CurrentPrincipal,
    service: Service,
) -> TaskRead:
    set_audit_context(request, action="task.submit_for_verification", detail={"what": {"task_id": task_id}})
    try:
        return TaskRead.model_validate(service.submit_for_verification(principal, task_id, payload))
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.post("/{task_id}/verify", response_model=TaskRead)
def verify_task(
    task_id: str,
    payload: TaskVerifyRequest,
    request: Request,
    principal: CurrentPrincipal,
    service: Service,
) -> TaskRead:
    set_audit_context(
        request,
        action="task.verify",
        detail={"what": {"task_id": task_id, "action": payload.action.value}},
    )
    try:
        return TaskRead.model_validate(service.verify(principal, task_id, payload))
    except MaintenanceError as exc:
        handle_domain_error(exc)


@router.post("/{task_id}/upload-photo", response_model=EvidenceUploadRead, status_code=status.HTTP_201_CREATED)
def upload_photo(
    task_id: str,
    request: Request,
    principal: CurrentPrincipal,
    evidence: Evidence,
    photo: Annotated[UploadFile, File()],
) -> EvidenceUploadRead:
    set_audit_context(
        request,
        action="evidence.upload",
        detail={"what": {"task_id": task_id, "file_name": photo.filename}},
    )
    # One byte past the limit is enough to reject oversize uploads.
    content = photo.file.read(MAX_EVIDENCE_BYTES + 1)
    try:
        return evidence.upload_evidence(principal, task_id, content, photo.content_type, photo.filename)
    except MaintenanceError as exc:
        handle_domain_error(exc)
