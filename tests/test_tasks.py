from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, col, create_engine, select

from app import main as app_main
from app.domain.models import EventRecord, Task
from app.services import task_service
from app.services.evidence_storage import LocalEvidenceStore


@pytest.fixture()
def task_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "tasks_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    store = LocalEvidenceStore(
        tmp_path / "evidence",
        public_base_url="http://testserver",
        signing_secret="test-signing-secret",
    )
    monkeypatch.setattr(app_main, "build_engine", lambda: test_engine)
    monkeypatch.setattr(app_main, "build_evidence_store", lambda: store)
    with TestClient(app_main.app) as client:
        yield client


@dataclass
class Tenant:
    owner_id: str
    owner_token: str
    operator_id: str
    operator_token: str
    property_id: str
    asset_id: str


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, email: str, password: str) -> str:
    response = client.post("/api/identity/login", json={"email": email, "password": password})
    assert response.status_code == 200
    return response.json()["access_token"]


def _create_operator(client: TestClient, owner_token: str, email: str) -> tuple[str, str]:
    created = client.post(
        "/api/identity/operators",
        json={"email": email, "password": "op-pass", "first_name": "Oscar", "last_name": "Operator"},
        headers=_auth_header(owner_token),
    )
    assert created.status_code == 201
    return created.json()["id"], _login(client, email, "op-pass")


def _bootstrap_tenant(client: TestClient, prefix: str) -> Tenant:
    owner = client.post(
        "/api/identity/owners",
        json={
            "email": f"{prefix}-owner@example.com",
            "password": "owner-pass",
            "first_name": "Olga",
            "last_name": "Owner",
        },
    )
    assert owner.status_code == 201
    owner_token = _login(client, f"{prefix}-owner@example.com", "owner-pass")
    operator_id, operator_token = _create_operator(client, owner_token, f"{prefix}-op@example.com")

    prop = client.post(
        "/api/registry/properties",
        json={"name": f"{prefix} residences"},
        headers=_auth_header(owner_token),
    )
    assert prop.status_code == 201
    asset = client.post(
        "/api/registry/assets",
        json={"property_id": prop.json()["id"], "name": "Water pump"},
        headers=_auth_header(owner_token),
    )
    assert asset.status_code == 201
    return Tenant(
        owner_id=owner.json()["id"],
        owner_token=owner_token,
        operator_id=operator_id,
        operator_token=operator_token,
        property_id=prop.json()["id"],
        asset_id=asset.json()["id"],
    )


def _create_task(client: TestClient, tenant: Tenant, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": "Service the water pump",
        "description": "Replace the seals and check pressure.",
        "asset_id": tenant.asset_id,
        "assigned_operator_id": tenant.operator_id,
        "scheduled_date": "2030-01-15T09:00:00Z",
    }
    payload.update(overrides)
    response = client.post("/api/tasks", json=payload, headers=_auth_header(tenant.owner_token))
    assert response.status_code == 201, response.text
    return response.json()


def _upload_photo(client: TestClient, tenant: Tenant, task_id: str) -> str:
    response = client.post(
        f"/api/tasks/{task_id}/upload-photo",
        files={"photo": ("pump.jpg", b"\xff\xd8\xff\xe0fake-jpeg", "image/jpeg")},
        headers=_auth_header(tenant.operator_token),
    )
    assert response.status_code == 201, response.text
    return response.json()["photo_url"]


def _task_to_pending_verification(client: TestClient, tenant: Tenant) -> str:
    task = _create_task(client, tenant)
    started = client.post(f"/api/tasks/{task['id']}/start", headers=_auth_header(tenant.operator_token))
    assert started.status_code == 200
    photo_url = _upload_photo(client, tenant, task["id"])
    submitted = client.post(
        f"/api/tasks/{task['id']}/submit-for-verification",
        json={"photo_url": photo_url, "completion_notes": "Seals replaced."},
        headers=_auth_header(tenant.operator_token),
    )
    assert submitted.status_code == 200
    return task["id"]


def test_create_task_defaults(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    task = _create_task(task_client, tenant)

    assert task["status"] == "Pending"
    assert task["priority"] == "Medium"
    assert task["estimated_duration"] == 60
    assert task["tenant_id"] == tenant.owner_id
    assert task["property_id"] == tenant.property_id
    assert task["actual_duration"] is None
    assert task["is_overdue"] is False
    assert task["rejection_reason"] is None


def test_create_task_validates_payload(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    base = {
        "title": "Service the water pump",
        "description": "Replace the seals and check pressure.",
        "asset_id": tenant.asset_id,
        "assigned_operator_id": tenant.operator_id,
        "scheduled_date": "2030-01-15T09:00:00Z",
    }
    for override in ({"title": "Fix"}, {"estimated_duration": 5}, {"status": "Completed"}):
        response = task_client.post("/api/tasks", json={**base, **override}, headers=_auth_header(tenant.owner_token))
        assert response.status_code == 422, override

    operator_attempt = task_client.post("/api/tasks", json=base, headers=_auth_header(tenant.operator_token))
    assert operator_attempt.status_code == 403


def test_start_twice_conflicts(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    task = _create_task(task_client, tenant)

    first = task_client.post(f"/api/tasks/{task['id']}/start", headers=_auth_header(tenant.operator_token))
    assert first.status_code == 200
    assert first.json()["status"] == "InProgress"
    assert first.json()["actual_start"] is not None

    second = task_client.post(f"/api/tasks/{task['id']}/start", headers=_auth_header(tenant.operator_token))
    assert second.status_code == 409
    assert "InProgress" in second.json()["detail"]


def test_owner_may_start_task(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    task = _create_task(task_client, tenant)
    response = task_client.post(f"/api/tasks/{task['id']}/start", headers=_auth_header(tenant.owner_token))
    assert response.status_code == 200
    assert response.json()["status"] == "InProgress"


def test_submit_requires_trusted_photo_url(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    task = _create_task(task_client, tenant)
    task_client.post(f"/api/tasks/{task['id']}/start", headers=_auth_header(tenant.operator_token))

    untrusted = task_client.post(
        f"/api/tasks/{task['id']}/submit-for-verification",
        json={"photo_url": "https://evil.example.com/pump.jpg"},
        headers=_auth_header(tenant.operator_token),
    )
    assert untrusted.status_code == 422
    current = task_client.get(f"/api/tasks/{task['id']}", headers=_auth_header(tenant.operator_token)).json()
    assert current["status"] == "InProgress"
    assert current["verification_photo_url"] is None

    photo_url = _upload_photo(task_client, tenant, task["id"])
    submitted = task_client.post(
        f"/api/tasks/{task['id']}/submit-for-verification",
        json={"photo_url": photo_url, "completion_notes": "Done."},
        headers=_auth_header(tenant.operator_token),
    )
    assert submitted.status_code == 200
    body = submitted.json()
    assert body["status"] == "PendingVerification"
    assert body["verification_photo_url"] == photo_url
    assert body["completion_notes"] == "Done."
    assert body["actual_end"] is not None
    assert body["actual_duration"] is not None


def test_submit_from_pending_conflicts(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    task = _create_task(task_client, tenant)
    photo_url = _upload_photo(task_client, tenant, task["id"])
    response = task_client.post(
        f"/api/tasks/{task['id']}/submit-for-verification",
        json={"photo_url": photo_url},
        headers=_auth_header(tenant.operator_token),
    )
    assert response.status_code == 409
    assert "Pending" in response.json()["detail"]


def test_owner_cannot_submit_for_verification(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    task = _create_task(task_client, tenant)
    task_client.post(f"/api/tasks/{task['id']}/start", headers=_auth_header(tenant.owner_token))
    response = task_client.post(
        f"/api/tasks/{task['id']}/submit-for-verification",
        json={"photo_url": "http://testserver/api/evidence/objects/x.jpg"},
        headers=_auth_header(tenant.owner_token),
    )
    assert response.status_code == 403


def test_reject_requires_reason(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    task_id = _task_to_pending_verification(task_client, tenant)

    blank = task_client.post(
        f"/api/tasks/{task_id}/verify",
        json={"action": "reject", "rejection_reason": "   "},
        headers=_auth_header(tenant.owner_token),
    )
    assert blank.status_code == 422
    current = task_client.get(f"/api/tasks/{task_id}", headers=_auth_header(tenant.owner_token)).json()
    assert current["status"] == "PendingVerification"

    rejected = task_client.post(
        f"/api/tasks/{task_id}/verify",
        json={"action": "reject", "rejection_reason": "Photo is blurry", "verification_notes": "Retake"},
        headers=_auth_header(tenant.owner_token),
    )
    assert rejected.status_code == 200
    body = rejected.json()
    assert body["status"] == "RequiresAttention"
    assert body["rejection_reason"] == "Photo is blurry"
    assert body["verified_by"] == tenant.owner_id
    assert body["verified_at"] is not None

    again = task_client.post(
        f"/api/tasks/{task_id}/verify",
        json={"action": "approve"},
        headers=_auth_header(tenant.owner_token),
    )
    assert again.status_code == 409
    assert "RequiresAttention" in again.json()["detail"]


def test_approve_completes_without_rejection_reason(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    task_id = _task_to_pending_verification(task_client, tenant)

    operator_attempt = task_client.post(
        f"/api/tasks/{task_id}/verify",
        json={"action": "approve"},
        headers=_auth_header(tenant.operator_token),
    )
    assert operator_attempt.status_code == 403

    approved = task_client.post(
        f"/api/tasks/{task_id}/verify",
        json={"action": "approve", "verification_notes": "Looks good", "rejection_reason": "ignored"},
        headers=_auth_header(tenant.owner_token),
    )
    assert approved.status_code == 200
    body = approved.json()
    assert body["status"] == "Completed"
    assert body["rejection_reason"] is None
    assert body["verification_notes"] == "Looks good"
    assert body["is_overdue"] is False


def test_cross_tenant_references_rejected(task_client: TestClient) -> None:
    tenant_a = _bootstrap_tenant(task_client, "a")
    tenant_b = _bootstrap_tenant(task_client, "b")

    payload = {
        "title": "Service the water pump",
        "description": "Replace the seals and check pressure.",
        "asset_id": tenant_b.asset_id,
        "assigned_operator_id": tenant_a.operator_id,
        "scheduled_date": "2030-01-15T09:00:00Z",
    }
    foreign_asset = task_client.post("/api/tasks", json=payload, headers=_auth_header(tenant_a.owner_token))
    assert foreign_asset.status_code == 400

    payload.update(asset_id=tenant_a.asset_id, assigned_operator_id=tenant_b.operator_id)
    foreign_operator = task_client.post("/api/tasks", json=payload, headers=_auth_header(tenant_a.owner_token))
    assert foreign_operator.status_code == 400

    with Session(app_main.app.state.engine) as session:
        assert session.exec(select(Task)).all() == []


def test_operator_sees_only_assigned_tasks(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    other_operator_id, other_operator_token = _create_operator(task_client, tenant.owner_token, "a-op2@example.com")
    mine = _create_task(task_client, tenant)
    theirs = _create_task(task_client, tenant, assigned_operator_id=other_operator_id)

    listed = task_client.get("/api/tasks", headers=_auth_header(tenant.operator_token))
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()["tasks"]] == [mine["id"]]

    for method, path in (
        ("GET", f"/api/tasks/{theirs['id']}"),
        ("POST", f"/api/tasks/{theirs['id']}/start"),
    ):
        response = task_client.request(method, path, headers=_auth_header(tenant.operator_token))
        assert response.status_code == 404, path

    photo = task_client.post(
        f"/api/tasks/{theirs['id']}/upload-photo",
        files={"photo": ("pump.jpg", b"\xff\xd8data", "image/jpeg")},
        headers=_auth_header(tenant.operator_token),
    )
    assert photo.status_code == 404

    allowed = task_client.get(f"/api/tasks/{theirs['id']}", headers=_auth_header(other_operator_token))
    assert allowed.status_code == 200


def test_other_tenant_cannot_see_task(task_client: TestClient) -> None:
    tenant_a = _bootstrap_tenant(task_client, "a")
    tenant_b = _bootstrap_tenant(task_client, "b")
    task = _create_task(task_client, tenant_a)

    assert task_client.get(f"/api/tasks/{task['id']}", headers=_auth_header(tenant_b.owner_token)).status_code == 404
    assert task_client.get("/api/tasks", headers=_auth_header(tenant_b.owner_token)).json()["tasks"] == []
    start = task_client.post(f"/api/tasks/{task['id']}/start", headers=_auth_header(tenant_b.owner_token))
    assert start.status_code == 404


def test_list_orders_by_schedule_then_priority_and_paginates(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    early = _create_task(task_client, tenant, priority="Low", scheduled_date="2030-01-10T09:00:00Z")
    low = _create_task(task_client, tenant, priority="Low")
    critical = _create_task(task_client, tenant, priority="Critical")
    high = _create_task(task_client, tenant, priority="High")

    listed = task_client.get("/api/tasks", headers=_auth_header(tenant.owner_token)).json()
    assert [item["id"] for item in listed["tasks"]] == [early["id"], critical["id"], high["id"], low["id"]]
    assert listed["pagination"] == {
        "current_page": 1,
        "total_pages": 1,
        "total_tasks": 4,
        "has_next": False,
        "has_prev": False,
    }

    page_two = task_client.get(
        "/api/tasks",
        params={"page": 2, "limit": 3},
        headers=_auth_header(tenant.owner_token),
    ).json()
    assert [item["id"] for item in page_two["tasks"]] == [low["id"]]
    assert page_two["pagination"]["total_pages"] == 2
    assert page_two["pagination"]["has_prev"] is True
    assert page_two["pagination"]["has_next"] is False

    filtered = task_client.get(
        "/api/tasks",
        params={"priority": "Critical"},
        headers=_auth_header(tenant.owner_token),
    ).json()
    assert [item["id"] for item in filtered["tasks"]] == [critical["id"]]

    bad_limit = task_client.get("/api/tasks", params={"limit": 101}, headers=_auth_header(tenant.owner_token))
    assert bad_limit.status_code == 422


def test_status_filter(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    started = _create_task(task_client, tenant)
    _create_task(task_client, tenant)
    task_client.post(f"/api/tasks/{started['id']}/start", headers=_auth_header(tenant.operator_token))

    listed = task_client.get(
        "/api/tasks",
        params={"status": "InProgress"},
        headers=_auth_header(tenant.owner_token),
    ).json()
    assert [item["id"] for item in listed["tasks"]] == [started["id"]]


def test_update_task_fields_but_never_status(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    other_tenant = _bootstrap_tenant(task_client, "b")
    task = _create_task(task_client, tenant)

    with_status = task_client.patch(
        f"/api/tasks/{task['id']}",
        json={"status": "Completed"},
        headers=_auth_header(tenant.owner_token),
    )
    assert with_status.status_code == 422

    updated = task_client.patch(
        f"/api/tasks/{task['id']}",
        json={"title": "Service both pumps", "priority": "High", "owner_notes": "Bring spare seals"},
        headers=_auth_header(tenant.owner_token),
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["title"] == "Service both pumps"
    assert body["priority"] == "High"
    assert body["owner_notes"] == "Bring spare seals"
    assert body["status"] == "Pending"

    foreign_operator = task_client.patch(
        f"/api/tasks/{task['id']}",
        json={"assigned_operator_id": other_tenant.operator_id},
        headers=_auth_header(tenant.owner_token),
    )
    assert foreign_operator.status_code == 400

    operator_edit = task_client.patch(
        f"/api/tasks/{task['id']}",
        json={"title": "Operator rewrote this"},
        headers=_auth_header(tenant.operator_token),
    )
    assert operator_edit.status_code == 403


def test_soft_delete_hides_task(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    task = _create_task(task_client, tenant)

    deleted = task_client.delete(f"/api/tasks/{task['id']}", headers=_auth_header(tenant.owner_token))
    assert deleted.status_code == 204
    assert task_client.get(f"/api/tasks/{task['id']}", headers=_auth_header(tenant.owner_token)).status_code == 404
    again = task_client.delete(f"/api/tasks/{task['id']}", headers=_auth_header(tenant.owner_token))
    assert again.status_code == 404

    with Session(app_main.app.state.engine) as session:
        row = session.get(Task, task["id"])
    assert row is not None
    assert row.is_active is False


def test_task_stats(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    _create_task(task_client, tenant, priority="Critical", scheduled_date="2020-01-01T09:00:00Z")
    started = _create_task(task_client, tenant, priority="High")
    task_client.post(f"/api/tasks/{started['id']}/start", headers=_auth_header(tenant.operator_token))

    stats = task_client.get("/api/tasks/stats", headers=_auth_header(tenant.owner_token))
    assert stats.status_code == 200
    body = stats.json()
    assert body["summary"]["total_tasks"] == 2
    assert body["summary"]["overdue_count"] == 1
    assert body["summary"]["pending_tasks"] == 1
    assert body["status_distribution"]["InProgress"] == 1
    assert body["status_distribution"]["Completed"] == 0
    assert body["priority_distribution"] == {"Low": 0, "Medium": 0, "High": 1, "Critical": 1}


def test_overdue_flag_on_past_schedule(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    task = _create_task(task_client, tenant, scheduled_date="2020-01-01T09:00:00Z")
    assert task["is_overdue"] is True


def test_transitions_publish_events(task_client: TestClient) -> None:
    tenant = _bootstrap_tenant(task_client, "a")
    task_id = _task_to_pending_verification(task_client, tenant)
    task_client.post(
        f"/api/tasks/{task_id}/verify",
        json={"action": "approve"},
        headers=_auth_header(tenant.owner_token),
    )

    with Session(app_main.app.state.engine) as session:
        rows = session.exec(
            select(EventRecord).where(EventRecord.tenant_id == tenant.owner_id).order_by(col(EventRecord.ts))
        ).all()
    task_events = [row.event_type for row in rows if row.payload.get("task_id") == task_id]
    assert task_events == ["task.created", "task.started", "evidence.uploaded", "task.submitted", "task.verified"]


def test_unexpected_errors_return_generic_500(
    task_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    tenant = _bootstrap_tenant(task_client, "a")

    def _boom(self: object, principal: object) -> None:
        raise RuntimeError("database exploded with secrets")

    monkeypatch.setattr(task_service.TaskService, "task_stats", _boom)
    client = TestClient(app_main.app, raise_server_exceptions=False)
    response = client.get("/api/tasks/stats", headers=_auth_header(tenant.owner_token))
    assert response.status_code == 500
    assert response.json() == {"detail": "internal server error"}
