"""
HTTP-level tests: authentication, error payloads and the main routes.
"""

import logging
from datetime import timedelta

from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import Session

import config
import models
from auth.security import TokenClaims, decode_access_token
from tests.conftest import auth_headers_for, create_auth_token, make_edge, make_task

logger = logging.getLogger(__name__)


def test_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


# ============== Authentication ==============


def test_missing_token_is_401(client: TestClient, test_db: Session, regular_user: models.User):
    task = make_task(test_db, regular_user, "Task")

    response = client.get(f"/api/tasks/{task.id}")

    assert response.status_code == 401


def test_expired_token_is_401(client: TestClient, regular_user: models.User):
    token = create_auth_token(regular_user, expires_delta=timedelta(minutes=-1))

    response = client.get("/api/tasks/1", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_non_access_token_is_401(client: TestClient, regular_user: models.User):
    token = create_auth_token(regular_user, token_type="refresh")

    response = client.get("/api/tasks/1", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_decode_access_token_claims(regular_user: models.User):
    claims = decode_access_token(create_auth_token(regular_user))
    assert claims == TokenClaims(user_id=regular_user.id)

    bad_sub = jwt.encode(
        {"sub": "not-a-number", "type": "access"}, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM
    )
    assert decode_access_token(bad_sub) is None
    assert decode_access_token("garbage") is None


def test_inactive_user_is_403(client: TestClient, test_db: Session, regular_user: models.User):
    headers = auth_headers_for(regular_user)
    regular_user.is_active = False
    test_db.commit()

    response = client.get("/api/tasks/1", headers=headers)

    assert response.status_code == 403


# ============== Tasks ==============


def test_create_and_get_task(client: TestClient, regular_user: models.User):
    headers = auth_headers_for(regular_user)

    response = client.post("/api/tasks", json={"title": "From API", "priority": "HIGH"}, headers=headers)
    assert response.status_code == 200, response.text
    created = response.json()
    assert created["title"] == "From API"
    assert created["creator_id"] == regular_user.id
    assert created["is_blocked"] is False
    assert created["creator"]["email"] == regular_user.email
    assert created["assignee"] is None

    response = client.get(f"/api/tasks/{created['id']}", headers=headers)
    assert response.status_code == 200
    assert response.json()["priority"] == "HIGH"
    logger.info("✓ Task created and read back over HTTP")


def test_create_team_task_without_team_is_validation_error(client: TestClient, regular_user: models.User):
    response = client.post(
        "/api/tasks", json={"title": "Team task", "type": "TEAM"}, headers=auth_headers_for(regular_user)
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert "team_id" in body["detail"]
    assert body["errors"] == []


def test_null_priority_update_is_validation_error(
    client: TestClient, test_db: Session, regular_user: models.User
):
    task = make_task(test_db, regular_user, "Task")

    response = client.put(f"/api/tasks/{task.id}", json={"priority": None}, headers=auth_headers_for(regular_user))

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    test_db.refresh(task)
    assert task.priority == models.TaskPriority.MEDIUM


def test_not_found_payload(client: TestClient, regular_user: models.User):
    response = client.get("/api/tasks/9999", headers=auth_headers_for(regular_user))

    assert response.status_code == 404
    assert response.json() == {"detail": "Task not found", "code": "NOT_FOUND", "errors": []}


def test_forbidden_payload(
    client: TestClient, test_db: Session, regular_user: models.User, another_user: models.User
):
    task = make_task(test_db, another_user, "Private")

    response = client.get(f"/api/tasks/{task.id}", headers=auth_headers_for(regular_user))

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


def test_status_change_and_activity(client: TestClient, test_db: Session, regular_user: models.User):
    task = make_task(test_db, regular_user, "Task")
    headers = auth_headers_for(regular_user)

    response = client.patch(f"/api/tasks/{task.id}/status", json={"status": "IN_PROGRESS"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["status"] == "IN_PROGRESS"

    response = client.get(f"/api/tasks/{task.id}/activity", headers=headers)
    assert response.status_code == 200
    assert [a["action"] for a in response.json()] == ["status_changed"]


def test_delete_task(client: TestClient, test_db: Session, regular_user: models.User):
    task = make_task(test_db, regular_user, "Doomed")
    headers = auth_headers_for(regular_user)

    response = client.delete(f"/api/tasks/{task.id}", headers=headers)
    assert response.status_code == 200

    response = client.get(f"/api/tasks/{task.id}", headers=headers)
    assert response.status_code == 404


# ============== Subtasks & Dependencies ==============


def test_subtasks_and_progress(client: TestClient, test_db: Session, regular_user: models.User):
    parent = make_task(test_db, regular_user, "Parent")
    child = make_task(test_db, regular_user, "Child", status=models.TaskStatus.DONE)
    headers = auth_headers_for(regular_user)

    response = client.post(f"/api/tasks/{parent.id}/subtasks", json={"child_task_id": child.id}, headers=headers)
    assert response.status_code == 200
    assert response.json()["parent_task_id"] == parent.id

    response = client.get(f"/api/tasks/{parent.id}/subtasks", headers=headers)
    assert [t["id"] for t in response.json()] == [child.id]

    response = client.get(f"/api/tasks/{parent.id}/progress", headers=headers)
    assert response.json() == {"task_id": parent.id, "completed": 1, "total": 1, "percent": 100}

    response = client.post(f"/api/tasks/{child.id}/subtasks", json={"child_task_id": parent.id}, headers=headers)
    assert response.status_code == 409
    assert response.json()["code"] == "CYCLE_DETECTED"

    response = client.delete(f"/api/tasks/{child.id}/parent", headers=headers)
    assert response.status_code == 200
    assert response.json()["parent_task_id"] is None


def test_dependencies_round_trip(client: TestClient, test_db: Session, regular_user: models.User):
    a = make_task(test_db, regular_user, "A")
    b = make_task(test_db, regular_user, "B")
    headers = auth_headers_for(regular_user)

    response = client.post(f"/api/tasks/{a.id}/dependencies", json={"blocking_task_id": b.id}, headers=headers)
    assert response.status_code == 200
    edge = response.json()
    assert (edge["dependent_task_id"], edge["blocking_task_id"]) == (a.id, b.id)

    response = client.get(f"/api/tasks/{a.id}/dependencies", headers=headers)
    body = response.json()
    assert [t["id"] for t in body["blocking"]] == [b.id]
    assert body["dependents"] == []
    assert body["is_blocked"] is True
    assert client.get(f"/api/tasks/{a.id}", headers=headers).json()["is_blocked"] is True

    response = client.post(f"/api/tasks/{b.id}/dependencies", json={"blocking_task_id": a.id}, headers=headers)
    assert response.status_code == 409
    assert response.json()["code"] == "CYCLE_DETECTED"

    response = client.post(f"/api/tasks/{a.id}/dependencies", json={"blocking_task_id": a.id}, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "SELF_DEPENDENCY"

    response = client.delete(f"/api/tasks/{a.id}/dependencies/{b.id}", headers=headers)
    assert response.status_code == 200
    assert client.get(f"/api/tasks/{a.id}/dependencies", headers=headers).json()["blocking"] == []
    logger.info("✓ Dependency added, rejected as cycle, and removed over HTTP")


def test_remove_dependency_by_edge_id(client: TestClient, test_db: Session, regular_user: models.User):
    a = make_task(test_db, regular_user, "A")
    b = make_task(test_db, regular_user, "B")
    edge = make_edge(test_db, a, b)

    response = client.delete(f"/api/dependencies/{edge.id}", headers=auth_headers_for(regular_user))

    assert response.status_code == 200
    assert test_db.query(models.TaskDependency).count() == 0


# ============== Bulk ==============


def test_bulk_status_partial_failure_payload(
    client: TestClient, test_db: Session, regular_user: models.User, another_user: models.User
):
    mine = make_task(test_db, regular_user, "Mine")
    theirs = make_task(test_db, another_user, "Theirs")

    response = client.post(
        "/api/tasks/bulk/status",
        json={"task_ids": [mine.id, theirs.id], "status": "DONE"},
        headers=auth_headers_for(regular_user),
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "PARTIAL_FAILURE"
    assert body["errors"] == [{
        "task_id": theirs.id,
        "error": f"Insufficient permissions to status task {theirs.id}",
        "error_code": "FORBIDDEN",
    }]


def test_bulk_status_success(client: TestClient, test_db: Session, admin_user: models.User):
    tasks = [make_task(test_db, admin_user, f"Task {i}") for i in range(3)]

    response = client.post(
        "/api/tasks/bulk/status",
        json={"task_ids": [t.id for t in tasks], "status": "DONE"},
        headers=auth_headers_for(admin_user),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["updated_count"] == 3


def test_bulk_assign_by_regular_user_is_forbidden(
    client: TestClient, test_db: Session, regular_user: models.User
):
    task = make_task(test_db, regular_user, "Task")

    response = client.post(
        "/api/tasks/bulk/assign",
        json={"task_ids": [task.id], "assignee_id": regular_user.id},
        headers=auth_headers_for(regular_user),
    )

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


def test_bulk_delete_by_leader(
    client: TestClient, test_db: Session, leader_user: models.User, team: models.Team
):
    parent = make_task(test_db, leader_user, "Team parent", type=models.TaskType.TEAM, team_id=team.id)
    make_task(test_db, leader_user, "Team child", type=models.TaskType.TEAM, team_id=team.id,
              parent_task_id=parent.id)

    response = client.post(
        "/api/tasks/bulk/delete", json={"task_ids": [parent.id]}, headers=auth_headers_for(leader_user)
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["deleted_task_ids"] == [parent.id]
    assert body["cascade_deleted_count"] == 1
    assert body["affected_tasks"] == []
