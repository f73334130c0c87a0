from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, computed_field
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.domain.permissions import PrincipalRole
from app.domain.state_machine import TaskStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class TaskPriority(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class VerificationAction(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    tenant_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (Index("ix_users_employer_role", "employer_id", "role"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    role: PrincipalRole = Field(index=True)
    employer_id: str | None = Field(default=None, foreign_key="users.id", index=True)
    first_name: str
    last_name: str
    phone: str | None = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Property(SQLModel, table=True):
    __tablename__ = "properties"
    __table_args__ = (UniqueConstraint("tenant_id", "id", name="uq_properties_tenant_id_id"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="users.id", index=True)
    name: str = Field(max_length=200, index=True)
    address: str | None = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Asset(SQLModel, table=True):
    __tablename__ = "assets"
    __table_args__ = (
        UniqueConstraint("tenant_id", "id", name="uq_assets_tenant_id_id"),
        Index("ix_assets_tenant_property", "tenant_id", "property_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="users.id", index=True)
    property_id: str = Field(foreign_key="properties.id", index=True)
    name: str = Field(max_length=200, index=True)
    location: str | None = None
    serial_number: str | None = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_tenant_status", "tenant_id", "status"),
        Index("ix_tasks_tenant_operator", "tenant_id", "assigned_operator_id"),
        Index("ix_tasks_priority_status", "priority", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="users.id", index=True)
    title: str = Field(max_length=200)
    description: str = Field(max_length=1000)
    asset_id: str = Field(foreign_key="assets.id", index=True)
    property_id: str = Field(foreign_key="properties.id", index=True)
    assigned_operator_id: str = Field(foreign_key="users.id", index=True)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, index=True)
    status: TaskStatus = Field(default=TaskStatus.PENDING, index=True)
    scheduled_date: datetime = Field(index=True)
    estimated_duration: int = Field(default=60)
    actual_start: datetime | None = None
    actual_end: datetime | None = None
    verification_photo_url: str | None = None
    completion_notes: str | None = None
    owner_notes: str | None = None
    verified_by: str | None = Field(default=None, foreign_key="users.id")
    verified_at: datetime | None = None
    verification_notes: str | None = None
    rejection_reason: str | None = None
    issue_id: str | None = Field(default=None, index=True)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    tenant_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class OwnerRegisterRequest(BaseModel):
    email: str = PydanticField(min_length=3, max_length=254)
    password: str = PydanticField(min_length=6)
    first_name: str = PydanticField(min_length=1, max_length=100)
    last_name: str = PydanticField(min_length=1, max_length=100)
    phone: str | None = None


class OperatorCreate(BaseModel):
    email: str = PydanticField(min_length=3, max_length=254)
    password: str = PydanticField(min_length=6)
    first_name: str = PydanticField(min_length=1, max_length=100)
    last_name: str = PydanticField(min_length=1, max_length=100)
    phone: str | None = None


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: PrincipalRole


class UserRead(ORMReadModel):
    id: str
    email: str
    role: PrincipalRole
    employer_id: str | None
    first_name: str
    last_name: str
    phone: str | None
    is_active: bool
    created_at: datetime


class PropertyCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=200)
    address: str | None = None


class PropertyRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    address: str | None
    is_active: bool
    created_at: datetime


class AssetCreate(BaseModel):
    property_id: str
    name: str = PydanticField(min_length=1, max_length=200)
    location: str | None = None
    serial_number: str | None = None


class AssetRead(ORMReadModel):
    id: str
    tenant_id: str
    property_id: str
    name: str
    location: str | None
    serial_number: str | None
    is_active: bool
    created_at: datetime


class TaskCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = PydanticField(min_length=5, max_length=200)
    description: str = PydanticField(min_length=10, max_length=1000)
    asset_id: str
    assigned_operator_id: str
    priority: TaskPriority = TaskPriority.MEDIUM
    scheduled_date: datetime
    estimated_duration: int = PydanticField(default=60, ge=15, le=1440)
    owner_notes: str | None = PydanticField(default=None, max_length=1000)
    issue_id: str | None = None


class TaskUpdate(BaseModel):
    # No status field: lifecycle changes go through the transition endpoints.
    model_config = ConfigDict(extra="forbid")

    title: str | None = PydanticField(default=None, min_length=5, max_length=200)
    description: str | None = PydanticField(default=None, min_length=10, max_length=1000)
    assigned_operator_id: str | None = None
    priority: TaskPriority | None = None
    scheduled_date: datetime | None = None
    estimated_duration: int | None = PydanticField(default=None, ge=15, le=1440)
    owner_notes: str | None = PydanticField(default=None, max_length=1000)


class TaskSubmitRequest(BaseModel):
    photo_url: str = PydanticField(min_length=1)
    completion_notes: str | None = PydanticField(default=None, max_length=1000)


class TaskVerifyRequest(BaseModel):
    action: VerificationAction
    verification_notes: str | None = PydanticField(default=None, max_length=1000)
    rejection_reason: str | None = PydanticField(default=None, max_length=500)


class TaskRead(ORMReadModel):
    id: str
    tenant_id: str
    title: str
    description: str
    asset_id: str
    property_id: str
    assigned_operator_id: str
    priority: TaskPriority
    status: TaskStatus
    scheduled_date: datetime
    estimated_duration: int
    actual_start: datetime | None
    actual_end: datetime | None
    verification_photo_url: str | None
    completion_notes: str | None
    owner_notes: str | None
    verified_by: str | None
    verified_at: datetime | None
    verification_notes: str | None
    rejection_reason: str | None
    issue_id: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def actual_duration(self) -> int | None:
        if self.actual_start is None or self.actual_end is None:
            return None
        delta = as_utc(self.actual_end) - as_utc(self.actual_start)
        return round(delta.total_seconds() / 60)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_overdue(self) -> bool:
        if self.status == TaskStatus.COMPLETED:
            return False
        return as_utc(self.scheduled_date) < now_utc()


class PaginationRead(BaseModel):
    current_page: int
    total_pages: int
    total_tasks: int
    has_next: bool
    has_prev: bool


class TaskPageRead(BaseModel):
    tasks: list[TaskRead]
    pagination: PaginationRead


class TaskStatsSummaryRead(BaseModel):
    total_tasks: int
    overdue_count: int
    completed_tasks: int
    pending_tasks: int
    awaiting_verification: int
    requires_attention: int


class TaskStatsRead(BaseModel):
    summary: TaskStatsSummaryRead
    status_distribution: dict[str, int]
    priority_distribution: dict[str, int]


class UploadSlotRequest(BaseModel):
    file_name: str = PydanticField(min_length=1, max_length=255)
    file_type: str | None = None


class UploadInstructionsRead(BaseModel):
    method: str
    content_type: str | None
    note: str


class UploadSlotRead(BaseModel):
    upload_url: str
    public_url: str
    file_path: str
    expires_at: datetime
    instructions: UploadInstructionsRead


class EvidenceUploadRead(BaseModel):
    photo_url: str
    file_path: str
    size_bytes: int
    mime_type: str
