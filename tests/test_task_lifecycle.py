from __future__ import annotations

import threading
from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.errors import ForbiddenError, InvalidPayloadError, NotFoundError, StateConflictError
from app.domain.models import (
    AssetCreate,
    EventRecord,
    OperatorCreate,
    OwnerRegisterRequest,
    PropertyCreate,
    TaskCreate,
    TaskSubmitRequest,
    TaskVerifyRequest,
    User,
    VerificationAction,
)
from app.domain.permissions import PrincipalRole
from app.domain.principal import OperatorPrincipal, OwnerPrincipal
from app.domain.state_machine import (
    TERMINAL_STATUSES,
    TaskStatus,
    TaskTrigger,
    allowed_targets,
    conflict_message,
    transition_for,
)
from app.infra.events import EventBus
from app.services.identity_service import IdentityService
from app.services.registry_service import RegistryService
from app.services.task_service import TaskService

TRUSTED_PREFIX = "https://evidence.example.com/objects/"


class PrefixTrust:
    def is_trusted_url(self, url: str) -> bool:
        return url.startswith(TRUSTED_PREFIX) and len(url) > len(TRUSTED_PREFIX)


@pytest.fixture()
def lifecycle_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "lifecycle_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


def _seed(engine: Engine) -> tuple[OwnerPrincipal, OperatorPrincipal, str]:
    identity = IdentityService(engine, EventBus(engine))
    owner_row = identity.register_owner(
        OwnerRegisterRequest(email="owner@example.com", password="owner-pass", first_name="O", last_name="W")
    )
    owner = OwnerPrincipal(id=owner_row.id, email=owner_row.email)
    operator_row = identity.create_operator(
        owner,
        OperatorCreate(email="op@example.com", password="op-pass", first_name="O", last_name="P"),
    )
    operator = OperatorPrincipal(id=operator_row.id, email=operator_row.email, employer_id=owner.id)

    registry = RegistryService(engine, EventBus(engine))
    prop = registry.create_property(owner, PropertyCreate(name="Elm Gardens"))
    asset = registry.create_asset(owner, AssetCreate(property_id=prop.id, name="Fire alarm panel"))
    return owner, operator, asset.id


def _new_task(service: TaskService, owner: OwnerPrincipal, operator: OperatorPrincipal, asset_id: str) -> str:
    task = service.create_task(
        owner,
        TaskCreate(
            title="Test the fire alarm",
            description="Trigger every zone and log response times.",
            asset_id=asset_id,
            assigned_operator_id=operator.id,
            scheduled_date=datetime(2030, 5, 1, 9, 0, tzinfo=UTC),
        ),
    )
    return task.id


def test_transition_table() -> None:
    assert allowed_targets(TaskStatus.PENDING) == {TaskStatus.IN_PROGRESS}
    assert allowed_targets(TaskStatus.IN_PROGRESS) == {TaskStatus.PENDING_VERIFICATION}
    assert allowed_targets(TaskStatus.PENDING_VERIFICATION) == {
        TaskStatus.COMPLETED,
        TaskStatus.REQUIRES_ATTENTION,
    }
    for status in TERMINAL_STATUSES:
        assert allowed_targets(status) == set()
    assert transition_for(TaskTrigger.SUBMIT_FOR_VERIFICATION).actors == frozenset({PrincipalRole.OPERATOR})
    assert transition_for(TaskTrigger.APPROVE).actors == frozenset({PrincipalRole.OWNER})
    assert conflict_message("start", TaskStatus.IN_PROGRESS) == (
        "cannot start task in status InProgress; next allowed status: PendingVerification"
    )
    assert conflict_message("start", TaskStatus.COMPLETED) == "cannot start task in terminal status Completed"


def test_full_lifecycle_and_rejection_reason_invariant(lifecycle_engine: Engine) -> None:
    owner, operator, asset_id = _seed(lifecycle_engine)
    service = TaskService(lifecycle_engine, EventBus(lifecycle_engine), PrefixTrust())

    approved_id = _new_task(service, owner, operator, asset_id)
    started = service.start(operator, approved_id)
    assert started.status == TaskStatus.IN_PROGRESS
    first_start = started.actual_start

    submitted = service.submit_for_verification(
        operator,
        approved_id,
        TaskSubmitRequest(photo_url=f"{TRUSTED_PREFIX}a.jpg", completion_notes="All zones fine"),
    )
    assert submitted.status == TaskStatus.PENDING_VERIFICATION
    assert submitted.actual_start == first_start
    assert submitted.actual_end is not None

    approved = service.verify(owner, approved_id, TaskVerifyRequest(action=VerificationAction.APPROVE))
    assert approved.status == TaskStatus.COMPLETED
    assert approved.rejection_reason is None
    assert approved.verified_by == owner.id

    rejected_id = _new_task(service, owner, operator, asset_id)
    service.start(owner, rejected_id)
    service.submit_for_verification(operator, rejected_id, TaskSubmitRequest(photo_url=f"{TRUSTED_PREFIX}b.jpg"))
    rejected = service.verify(
        owner,
        rejected_id,
        TaskVerifyRequest(action=VerificationAction.REJECT, rejection_reason="  zone 3 silent  "),
    )
    assert rejected.status == TaskStatus.REQUIRES_ATTENTION
    assert rejected.rejection_reason == "zone 3 silent"

    with pytest.raises(StateConflictError) as conflict:
        service.start(owner, rejected_id)
    assert conflict.value.current_status == "RequiresAttention"


def test_guards_leave_status_unchanged(lifecycle_engine: Engine) -> None:
    owner, operator, asset_id = _seed(lifecycle_engine)
    service = TaskService(lifecycle_engine, EventBus(lifecycle_engine), PrefixTrust())
    task_id = _new_task(service, owner, operator, asset_id)

    with pytest.raises(StateConflictError):
        service.verify(owner, task_id, TaskVerifyRequest(action=VerificationAction.APPROVE))
    with pytest.raises(ForbiddenError):
        service.verify(operator, task_id, TaskVerifyRequest(action=VerificationAction.APPROVE))
    with pytest.raises(ForbiddenError):
        service.submit_for_verification(owner, task_id, TaskSubmitRequest(photo_url=f"{TRUSTED_PREFIX}c.jpg"))

    service.start(operator, task_id)
    with pytest.raises(InvalidPayloadError):
        service.submit_for_verification(
            operator,
            task_id,
            TaskSubmitRequest(photo_url="https://elsewhere.example.com/c.jpg"),
        )
    assert service.get_task(owner, task_id).status == TaskStatus.IN_PROGRESS

    service.submit_for_verification(operator, task_id, TaskSubmitRequest(photo_url=f"{TRUSTED_PREFIX}c.jpg"))
    with pytest.raises(InvalidPayloadError):
        service.verify(owner, task_id, TaskVerifyRequest(action=VerificationAction.REJECT, rejection_reason=""))
    assert service.get_task(owner, task_id).status == TaskStatus.PENDING_VERIFICATION


def test_unknown_task_is_not_found(lifecycle_engine: Engine) -> None:
    owner, operator, _ = _seed(lifecycle_engine)
    service = TaskService(lifecycle_engine, EventBus(lifecycle_engine), PrefixTrust())
    with pytest.raises(NotFoundError):
        service.start(owner, "missing-task")
    with pytest.raises(NotFoundError):
        service.get_task(operator, "missing-task")


def test_operator_without_employer_sees_nothing(lifecycle_engine: Engine) -> None:
    owner, operator, asset_id = _seed(lifecycle_engine)
    service = TaskService(lifecycle_engine, EventBus(lifecycle_engine), PrefixTrust())
    task_id = _new_task(service, owner, operator, asset_id)
    orphan = OperatorPrincipal(id=operator.id, email=operator.email, employer_id=None)

    rows, total = service.list_tasks(orphan)
    assert (rows, total) == ([], 0)
    with pytest.raises(NotFoundError):
        service.start(orphan, task_id)


def test_concurrent_start_has_exactly_one_winner(lifecycle_engine: Engine) -> None:
    owner, operator, asset_id = _seed(lifecycle_engine)
    service = TaskService(lifecycle_engine, EventBus(lifecycle_engine), PrefixTrust())
    task_id = _new_task(service, owner, operator, asset_id)

    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _attempt(principal: OwnerPrincipal | OperatorPrincipal) -> None:
        barrier.wait()
        try:
            service.start(principal, task_id)
            result = "ok"
        except StateConflictError:
            result = "conflict"
        with lock:
            outcomes.append(result)

    threads = [
        threading.Thread(target=_attempt, args=(owner,)),
        threading.Thread(target=_attempt, args=(operator,)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert sorted(outcomes) == ["conflict", "ok"]
    assert service.get_task(owner, task_id).status == TaskStatus.IN_PROGRESS


def test_transition_events_land_in_the_service_engine(lifecycle_engine: Engine) -> None:
    owner, operator, asset_id = _seed(lifecycle_engine)
    service = TaskService(lifecycle_engine, EventBus(lifecycle_engine), PrefixTrust())
    task_id = _new_task(service, owner, operator, asset_id)
    service.start(operator, task_id)

    with Session(lifecycle_engine) as session:
        rows = session.exec(select(EventRecord)).all()
    by_type = {row.event_type: row for row in rows}
    expected = {"identity.owner.registered", "identity.operator.created", "task.created", "task.started"}
    assert expected <= set(by_type)
    assert by_type["task.started"].payload == {
        "task_id": task_id,
        "from_status": "Pending",
        "to_status": "InProgress",
    }


def test_failed_event_write_rolls_back_the_transition(lifecycle_engine: Engine) -> None:
    owner, operator, asset_id = _seed(lifecycle_engine)
    service = TaskService(lifecycle_engine, EventBus(lifecycle_engine), PrefixTrust())
    task_id = _new_task(service, owner, operator, asset_id)
    SQLModel.metadata.tables["events"].drop(lifecycle_engine)

    with pytest.raises(OperationalError):
        service.start(operator, task_id)

    task = service.get_task(owner, task_id)
    assert task.status == TaskStatus.PENDING
    assert task.actual_start is None


def test_failed_event_write_rolls_back_registration(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'no_events.db'}")
    SQLModel.metadata.create_all(engine, tables=[SQLModel.metadata.tables["users"]])
    identity = IdentityService(engine, EventBus(engine))

    with pytest.raises(OperationalError):
        identity.register_owner(
            OwnerRegisterRequest(email="owner@example.com", password="owner-pass", first_name="O", last_name="W")
        )

    with Session(engine) as session:
        assert session.exec(select(User)).all() == []
    engine.dispose()
