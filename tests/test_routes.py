import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.main import app

TEACHER_A = {"X-Actor-Id": "teacher-a", "X-Actor-Role": "teacher"}
TEACHER_B = {"X-Actor-Id": "teacher-b", "X-Actor-Role": "teacher"}
ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}

RANGE = {"from_surah": 2, "from_ayah": 1, "to_surah": 2, "to_ayah": 5}
MISTAKE = {"type": "madd", "category": "tajweed", "page": 4, "surah": 2, "ayah": 3}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_path", str(tmp_path / "tickets.db"))
    with TestClient(app) as client:
        yield client


@pytest.fixture
def ticket_id(client):
    resp = client.post(
        "/api/tickets", json={"student_id": "student-1", "workflow_step": "sabq"}, headers=ADMIN
    )
    assert resp.status_code == 201
    return resp.json()["id"]


def started(client, ticket_id):
    resp = client.post(
        f"/api/tickets/{ticket_id}/start", json={"ayah_range": RANGE}, headers=TEACHER_A
    )
    assert resp.status_code == 200
    return resp.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_and_get(client, ticket_id):
    resp = client.get(f"/api/tickets/{ticket_id}", headers=ADMIN)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "pending"
    assert body["range_locked"] is False
    assert body["mistakes"] == []
    assert body["stale"] is False


def test_missing_ticket_is_404(client):
    resp = client.post("/api/tickets/999/start", headers=TEACHER_A)
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


def test_missing_actor_headers_rejected(client, ticket_id):
    assert client.post(f"/api/tickets/{ticket_id}/start").status_code == 422


def test_start_twice_is_409(client, ticket_id):
    started(client, ticket_id)
    resp = client.post(f"/api/tickets/{ticket_id}/start", headers=TEACHER_B)
    assert resp.status_code == 409
    assert resp.json()["error"] == "state_conflict"


def test_other_teacher_cannot_pause(client, ticket_id):
    started(client, ticket_id)
    resp = client.post(f"/api/tickets/{ticket_id}/pause", headers=TEACHER_B)
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"


def test_range_change_during_session_is_423(client, ticket_id):
    started(client, ticket_id)
    resp = client.patch(
        f"/api/tickets/{ticket_id}",
        json={"ayah_range": {"from_surah": 3, "from_ayah": 1, "to_surah": 3, "to_ayah": 4}},
        headers=TEACHER_A,
    )
    assert resp.status_code == 423
    assert resp.json()["error"] == "locked"


def test_invalid_range_is_422(client, ticket_id):
    resp = client.patch(
        f"/api/tickets/{ticket_id}",
        json={"ayah_range": {"from_surah": 115, "from_ayah": 1, "to_surah": 115, "to_ayah": 2}},
        headers=ADMIN,
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_failed"


def test_teacher_cannot_approve(client, ticket_id):
    started(client, ticket_id)
    client.post(f"/api/tickets/{ticket_id}/submit", headers=TEACHER_A)
    resp = client.post(f"/api/tickets/{ticket_id}/approve", headers=TEACHER_A)
    assert resp.status_code == 403


def test_heartbeat_reports_acceptance(client, ticket_id):
    started(client, ticket_id)
    resp = client.post(f"/api/tickets/{ticket_id}/heartbeat", headers=TEACHER_A)
    assert resp.status_code == 200
    assert resp.json()["accepted"] is True
    assert resp.json()["status"] == "in-progress"

    client.post(f"/api/tickets/{ticket_id}/pause", headers=TEACHER_A)
    resp = client.post(f"/api/tickets/{ticket_id}/heartbeat", headers=TEACHER_A)
    assert resp.status_code == 200
    assert resp.json()["accepted"] is False
    assert resp.json()["status"] == "paused"


def test_listing_scopes_teachers_to_own_tickets(client, ticket_id):
    client.post(
        "/api/tickets", json={"student_id": "student-2", "workflow_step": "manzil"}, headers=ADMIN
    )
    started(client, ticket_id)

    mine = client.get("/api/tickets", headers=TEACHER_A).json()
    assert [t["id"] for t in mine["tickets"]] == [ticket_id]

    everything = client.get("/api/tickets", headers=ADMIN).json()
    assert everything["pagination"]["total"] == 2

    pending = client.get("/api/tickets", params={"status": "pending"}, headers=ADMIN).json()
    assert [t["student_id"] for t in pending["tickets"]] == ["student-2"]


def test_full_review_flow(client, ticket_id):
    started(client, ticket_id)

    resp = client.post(f"/api/tickets/{ticket_id}/mistakes", json=MISTAKE, headers=TEACHER_A)
    assert resp.status_code == 200
    assert len(resp.json()["mistakes"]) == 1

    assert client.post(f"/api/tickets/{ticket_id}/pause", headers=TEACHER_A).json()["status"] == "paused"
    assert client.post(f"/api/tickets/{ticket_id}/resume", headers=TEACHER_A).json()["status"] == "in-progress"

    resp = client.post(
        f"/api/tickets/{ticket_id}/submit", json={"session_notes": "solid"}, headers=TEACHER_A
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "submitted"
    assert resp.json()["listening_duration_seconds"] is not None

    resp = client.post(f"/api/tickets/{ticket_id}/mistakes", json=MISTAKE, headers=TEACHER_A)
    assert resp.status_code == 409

    queue = client.get("/api/tickets/pending-review", headers=ADMIN).json()
    assert [t["id"] for t in queue["tickets"]] == [ticket_id]

    resp = client.post(f"/api/tickets/{ticket_id}/reject", json={"review_notes": ""}, headers=ADMIN)
    assert resp.status_code == 422

    resp = client.post(
        f"/api/tickets/{ticket_id}/approve",
        json={
            "review_notes": "well done",
            "homework_assignment_data": {"title": "Revise", "instructions": "Recite twice"},
        },
        headers=ADMIN,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "approved"
    assert body["homework_assigned"] is not None

    resp = client.post(f"/api/tickets/{ticket_id}/approve", headers=ADMIN)
    assert resp.status_code == 409

    history = client.get("/api/students/student-1/mistakes", headers=ADMIN).json()
    assert len(history) == 1
    assert history[0]["type"] == "madd"
    assert history[0]["ticket_id"] == ticket_id


def test_reject_then_reassign(client, ticket_id):
    started(client, ticket_id)
    client.post(f"/api/tickets/{ticket_id}/mistakes", json=MISTAKE, headers=TEACHER_A)
    client.post(f"/api/tickets/{ticket_id}/submit", headers=TEACHER_A)
    resp = client.post(
        f"/api/tickets/{ticket_id}/reject", json={"review_notes": "retry range"}, headers=ADMIN
    )
    assert resp.json()["status"] == "rejected"

    resp = client.post(
        f"/api/tickets/{ticket_id}/reassign",
        json={"from_teacher_id": "teacher-a", "to_teacher_id": "teacher-b", "reason": "leave"},
        headers=ADMIN,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "pending"
    assert body["teacher_id"] == "teacher-b"
    assert body["range_locked"] is False
    assert body["mistakes"] == []
    assert len(body["previous_mistakes"]) == 1

    resp = client.post(f"/api/tickets/{ticket_id}/start", headers=TEACHER_A)
    assert resp.status_code == 403
    resp = client.post(f"/api/tickets/{ticket_id}/start", headers=TEACHER_B)
    assert resp.status_code == 200


def test_close(client, ticket_id):
    assert client.post(f"/api/tickets/{ticket_id}/close", headers=ADMIN).status_code == 409
    started(client, ticket_id)
    resp = client.post(f"/api/tickets/{ticket_id}/close", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["status"] == "closed"
    resp = client.delete(f"/api/tickets/{ticket_id}/mistakes/0", headers=TEACHER_A)
    assert resp.status_code == 409


def test_delete_is_admin_only(client, ticket_id):
    assert client.delete(f"/api/tickets/{ticket_id}", headers=TEACHER_A).status_code == 403
    resp = client.delete(f"/api/tickets/{ticket_id}", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json() == {"id": ticket_id, "deleted": True}
    assert client.get(f"/api/tickets/{ticket_id}", headers=ADMIN).status_code == 404
