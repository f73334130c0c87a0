from __future__ import annotations

import logging
from typing import Any, Protocol

from sqlalchemy import case, func, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from app.domain.errors import (
    InvalidPayloadError,
    InvalidReferenceError,
    NotFoundError,
    StateConflictError,
    StorageUnavailableError,
)
from app.domain.models import (
    Asset,
    Task,
    TaskCreate,
    TaskPriority,
    TaskStatsRead,
    TaskStatsSummaryRead,
    TaskSubmitRequest,
    TaskUpdate,
    TaskVerifyRequest,
    User,
    VerificationAction,
    as_utc,
    now_utc,
)
from app.domain.permissions import OWNER_ONLY, OWNER_OR_OPERATOR, PrincipalRole
from app.domain.principal import OwnerPrincipal, Principal
from app.domain.state_machine import TaskStatus, TaskTrigger, conflict_message, transition_for
from app.infra.events import EventBus
from app.services.access_gate import require_assignment, require_role, task_visibility, tenant_predicate

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 100

_TRIGGER_VERBS: dict[TaskTrigger, str] = {
    TaskTrigger.START: "start",
    TaskTrigger.SUBMIT_FOR_VERIFICATION: "submit",
    TaskTrigger.APPROVE: "approve",
    TaskTrigger.REJECT: "reject",
}

_TRIGGER_EVENTS: dict[TaskTrigger, str] = {
    TaskTrigger.START: "task.started",
    TaskTrigger.SUBMIT_FOR_VERIFICATION: "task.submitted",
    TaskTrigger.APPROVE: "task.verified",
    TaskTrigger.REJECT: "task.verified",
}

_PRIORITY_ORDER = case(
    (col(Task.priority) == TaskPriority.CRITICAL, 3),
    (col(Task.priority) == TaskPriority.HIGH, 2),
    (col(Task.priority) == TaskPriority.MEDIUM, 1),
    else_=0,
)

# Required columns that an explicit null in a partial update must not clear.
_NON_NULLABLE_UPDATE_FIELDS = frozenset(
    {"title", "description", "assigned_operator_id", "priority", "scheduled_date", "estimated_duration"}
)


class TrustedUrlChecker(Protocol):
    def is_trusted_url(self, url: str) -> bool: ...


class TaskService:
    def __init__(
        self,
        engine: Engine,
        event_bus: EventBus,
        evidence_store: TrustedUrlChecker | None = None,
    ) -> None:
        self._engine = engine
        self._events = event_bus
        self._evidence_store = evidence_store

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _get_visible_task(self, session: Session, principal: Principal, task_id: str) -> Task:
        row = session.exec(select(Task).where(Task.id == task_id).where(task_visibility(principal))).first()
        if row is None:
            raise NotFoundError("task not found")
        return require_assignment(principal, row)

    def _ensure_scoped_asset(self, session: Session, owner: OwnerPrincipal, asset_id: str) -> Asset:
        asset = session.exec(
            select(Asset)
            .where(Asset.id == asset_id)
            .where(tenant_predicate(Asset.tenant_id, owner))
            .where(col(Asset.is_active).is_(True))
        ).first()
        if asset is None:
            raise InvalidReferenceError("invalid asset id or asset not found")
        return asset

    def _ensure_scoped_operator(self, session: Session, owner: OwnerPrincipal, operator_id: str) -> User:
        operator = session.exec(
            select(User)
            .where(User.id == operator_id)
            .where(User.role == PrincipalRole.OPERATOR)
            .where(User.employer_id == owner.id)
            .where(col(User.is_active).is_(True))
        ).first()
        if operator is None:
            raise InvalidReferenceError("invalid operator id or operator not employed by you")
        return operator

    def create_task(self, principal: Principal, payload: TaskCreate) -> Task:
        owner = require_role(principal, OWNER_ONLY)
        assert isinstance(owner, OwnerPrincipal)
        with self._session() as session:
            asset = self._ensure_scoped_asset(session, owner, payload.asset_id)
            self._ensure_scoped_operator(session, owner, payload.assigned_operator_id)
            row = Task(
                tenant_id=owner.id,
                title=payload.title.strip(),
                description=payload.description.strip(),
                asset_id=asset.id,
                property_id=asset.property_id,
                assigned_operator_id=payload.assigned_operator_id,
                priority=payload.priority,
                status=TaskStatus.PENDING,
                scheduled_date=as_utc(payload.scheduled_date),
                estimated_duration=payload.estimated_duration,
                owner_notes=payload.owner_notes,
                issue_id=payload.issue_id,
            )
            session.add(row)
            self._events.publish_dict(
                "task.created",
                owner.id,
                {
                    "task_id": row.id,
                    "asset_id": row.asset_id,
                    "assigned_operator_id": row.assigned_operator_id,
                    "priority": row.priority.value,
                },
                actor_id=owner.id,
                session=session,
            )
            session.commit()
            session.refresh(row)

        logger.info("task created", extra={"task_id": row.id, "actor_id": owner.id})
        return row

    def list_tasks(
        self,
        principal: Principal,
        *,
        status: TaskStatus | None = None,
        priority: TaskPriority | None = None,
        property_id: str | None = None,
        asset_id: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Task], int]:
        require_role(principal, OWNER_OR_OPERATOR)
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_LIMIT)

        filters: list[Any] = [task_visibility(principal)]
        if status is not None:
            filters.append(col(Task.status) == status)
        if priority is not None:
            filters.append(col(Task.priority) == priority)
        if property_id is not None:
            filters.append(col(Task.property_id) == property_id)
        if asset_id is not None:
            filters.append(col(Task.asset_id) == asset_id)

        with self._session() as session:
            total = session.exec(select(func.count()).select_from(Task).where(*filters)).one()
            statement = (
                select(Task)
                .where(*filters)
                .order_by(col(Task.scheduled_date).asc(), _PRIORITY_ORDER.desc(), col(Task.created_at).asc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = list(session.exec(statement).all())
        return rows, int(total)

    def get_task(self, principal: Principal, task_id: str) -> Task:
        require_role(principal, OWNER_OR_OPERATOR)
        with self._session() as session:
            return self._get_visible_task(session, principal, task_id)

    def update_task(self, principal: Principal, task_id: str, payload: TaskUpdate) -> Task:
        owner = require_role(principal, OWNER_ONLY)
        assert isinstance(owner, OwnerPrincipal)
        changes = payload.model_dump(exclude_unset=True)
        with self._session() as session:
            row = self._get_visible_task(session, owner, task_id)
            operator_id = changes.get("assigned_operator_id")
            if operator_id is not None and operator_id != row.assigned_operator_id:
                self._ensure_scoped_operator(session, owner, operator_id)

            applied: list[str] = []
            for field_name, value in changes.items():
                if value is None and field_name in _NON_NULLABLE_UPDATE_FIELDS:
                    continue
                if field_name == "scheduled_date":
                    value = as_utc(value)
                setattr(row, field_name, value)
                applied.append(field_name)
            row.updated_at = now_utc()
            session.add(row)
            self._events.publish_dict(
                "task.updated",
                owner.id,
                {"task_id": row.id, "fields": sorted(applied)},
                actor_id=owner.id,
                session=session,
            )
            session.commit()
            session.refresh(row)
        return row

    def delete_task(self, principal: Principal, task_id: str) -> None:
        owner = require_role(principal, OWNER_ONLY)
        statement = (
            update(Task)
            .where(col(Task.id) == task_id)
            .where(task_visibility(owner))
            .values(is_active=False, updated_at=now_utc())
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            result = session.execute(statement)
            if getattr(result, "rowcount", 0) == 0:
                session.rollback()
                raise NotFoundError("task not found")
            self._events.publish_dict(
                "task.deleted",
                owner.id,
                {"task_id": task_id},
                actor_id=owner.id,
                session=session,
            )
            session.commit()

        logger.info("task deleted", extra={"task_id": task_id, "actor_id": owner.id})

    def _transition(
        self,
        principal: Principal,
        task_id: str,
        trigger: TaskTrigger,
        values: dict[str, Any],
        event_payload: dict[str, Any] | None = None,
    ) -> Task:
        """Apply one lifecycle edge as a single compare-and-swap update.

        The conditional update matches only when the task is still in the
        edge's source status and visible to ``principal``. A miss re-reads the
        row to tell a missing task from a conflicting status.
        """
        transition = transition_for(trigger)
        require_role(principal, transition.actors)
        now = now_utc()
        statement = (
            update(Task)
            .where(col(Task.id) == task_id)
            .where(col(Task.status) == transition.source)
            .where(task_visibility(principal))
            .values(status=transition.target, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        verb = _TRIGGER_VERBS[trigger]
        with self._session() as session:
            result = session.execute(statement)
            if getattr(result, "rowcount", 0) == 0:
                session.rollback()
                current = self._get_visible_task(session, principal, task_id)
                logger.warning(
                    "task transition rejected",
                    extra={
                        "task_id": task_id,
                        "trigger": trigger.value,
                        "actor_id": principal.id,
                        "from_status": current.status.value,
                    },
                )
                raise StateConflictError(conflict_message(verb, current.status), current.status.value)
            row = self._get_visible_task(session, principal, task_id)
            self._events.publish_dict(
                _TRIGGER_EVENTS[trigger],
                row.tenant_id,
                {
                    "task_id": row.id,
                    "from_status": transition.source.value,
                    "to_status": transition.target.value,
                    **(event_payload or {}),
                },
                actor_id=principal.id,
                session=session,
            )
            session.commit()

        logger.info(
            "task transition applied",
            extra={
                "task_id": row.id,
                "trigger": trigger.value,
                "actor_id": principal.id,
                "from_status": transition.source.value,
                "to_status": transition.target.value,
            },
        )
        return row

    def start(self, principal: Principal, task_id: str) -> Task:
        return self._transition(
            principal,
            task_id,
            TaskTrigger.START,
            {"actual_start": func.coalesce(Task.actual_start, now_utc())},
        )

    def submit_for_verification(self, principal: Principal, task_id: str, payload: TaskSubmitRequest) -> Task:
        require_role(principal, transition_for(TaskTrigger.SUBMIT_FOR_VERIFICATION).actors)
        photo_url = payload.photo_url.strip()
        if self._evidence_store is None:
            raise StorageUnavailableError("evidence storage unavailable")
        if not self._evidence_store.is_trusted_url(photo_url):
            raise InvalidPayloadError("photo_url must reference an object in the evidence store")
        return self._transition(
            principal,
            task_id,
            TaskTrigger.SUBMIT_FOR_VERIFICATION,
            {
                "verification_photo_url": photo_url,
                "completion_notes": payload.completion_notes,
                "actual_end": func.coalesce(Task.actual_end, now_utc()),
            },
        )

    def verify(self, principal: Principal, task_id: str, payload: TaskVerifyRequest) -> Task:
        now = now_utc()
        if payload.action == VerificationAction.APPROVE:
            return self._transition(
                principal,
                task_id,
                TaskTrigger.APPROVE,
                {
                    "verified_by": principal.id,
                    "verified_at": now,
                    "verification_notes": payload.verification_notes,
                    "rejection_reason": None,
                },
                {"action": payload.action.value},
            )

        require_role(principal, transition_for(TaskTrigger.REJECT).actors)
        reason = (payload.rejection_reason or "").strip()
        if not reason:
            raise InvalidPayloadError("rejection_reason is required when rejecting a task")
        return self._transition(
            principal,
            task_id,
            TaskTrigger.REJECT,
            {
                "verified_by": principal.id,
                "verified_at": now,
                "verification_notes": payload.verification_notes,
                "rejection_reason": reason,
            },
            {"action": payload.action.value, "rejection_reason": reason},
        )

    def task_stats(self, principal: Principal) -> TaskStatsRead:
        require_role(principal, OWNER_OR_OPERATOR)
        visible = task_visibility(principal)
        with self._session() as session:
            status_rows = session.exec(
                select(Task.status, func.count()).where(visible).group_by(col(Task.status))
            ).all()
            priority_rows = session.exec(
                select(Task.priority, func.count()).where(visible).group_by(col(Task.priority))
            ).all()
            overdue = session.exec(
                select(func.count())
                .select_from(Task)
                .where(visible)
                .where(col(Task.status) != TaskStatus.COMPLETED)
                .where(col(Task.scheduled_date) < now_utc())
            ).one()

        status_distribution = {item.value: 0 for item in TaskStatus}
        for task_status, count in status_rows:
            status_distribution[TaskStatus(task_status).value] = int(count)
        priority_distribution = {item.value: 0 for item in TaskPriority}
        for task_priority, count in priority_rows:
            priority_distribution[TaskPriority(task_priority).value] = int(count)

        summary = TaskStatsSummaryRead(
            total_tasks=sum(status_distribution.values()),
            overdue_count=int(overdue),
            completed_tasks=status_distribution[TaskStatus.COMPLETED.value],
            pending_tasks=status_distribution[TaskStatus.PENDING.value],
            awaiting_verification=status_distribution[TaskStatus.PENDING_VERIFICATION.value],
            requires_attention=status_distribution[TaskStatus.REQUIRES_ATTENTION.value],
        )
        return TaskStatsRead(
            summary=summary,
            status_distribution=status_distribution,
            priority_distribution=priority_distribution,
        )
