"""Tests for the Flask dashboard API."""

from __future__ import annotations

import queue
from datetime import datetime, timedelta

import pytest

from src.ui import app as dashboard
from src.workflow.engine import WorkflowEngine


STAFF = {"X-Role": "role_staff", "X-User": "Officer Park"}
APPLICANT = {"X-Role": "student", "X-User": "Student One"}
ADMIN = {"X-Role": "role_admin", "X-User": "Admin"}


@pytest.fixture
def api_engine(store, clock, sink):
    engine = WorkflowEngine(store, roles=dashboard.HeaderRoleProvider(), clock=clock, sink=sink)
    dashboard.set_engine(engine)
    yield engine
    dashboard.set_engine(None)


@pytest.fixture
def client(api_engine):
    dashboard.app.config["TESTING"] = True
    with dashboard.app.test_client() as c:
        yield c


def _create(client, **fields):
    payload = {"student_id": "S0001", "name": "Support Award", "amount": 5000}
    payload.update(fields)
    resp = client.post("/api/applications", json=payload, headers=ADMIN)
    assert resp.status_code == 201
    return resp.get_json()["id"]


def _move(client, app_id, target, headers, comment=None):
    body = {"target": target}
    if comment is not None:
        body["comment"] = comment
    return client.post(f"/api/applications/{app_id}/transition", json=body, headers=headers)


def test_create_returns_draft_with_audit(client):
    resp = client.post("/api/applications", json={"student_id": "S1"}, headers=ADMIN)
    data = resp.get_json()

    assert resp.status_code == 201
    assert data["status"] == "DRAFT"
    assert data["audit_history"][0]["to_status"] == "DRAFT"
    assert data["audit_history"][0]["actor"] == "Admin"


def test_create_without_student_is_422(client):
    resp = client.post("/api/applications", json={"amount": 10}, headers=ADMIN)
    assert resp.status_code == 422
    assert resp.get_json()["kind"] == "ApplicationValidationError"


def test_detail_lists_next_actions_for_role(client):
    app_id = _create(client)

    data = client.get(f"/api/applications/{app_id}", headers=APPLICANT).get_json()
    assert [a["target"] for a in data["next_actions"]] == ["SUBMITTED"]

    data = client.get(f"/api/applications/{app_id}", headers=STAFF).get_json()
    assert data["next_actions"] == []


def test_unknown_application_is_404(client):
    resp = client.get("/api/applications/APP_MISSING", headers=ADMIN)
    assert resp.status_code == 404
    assert resp.get_json()["kind"] == "ApplicationNotFoundError"


def test_transition_happy_path(client):
    app_id = _create(client)

    resp = _move(client, app_id, "SUBMITTED", APPLICANT)
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["status"] == "SUBMITTED"
    assert data["status_updated_by"] == "Student One"
    assert data["strike_applied"] is False


def test_transition_requires_target(client):
    app_id = _create(client)
    resp = client.post(f"/api/applications/{app_id}/transition", json={}, headers=ADMIN)
    assert resp.status_code == 422


def test_unknown_target_is_422(client):
    app_id = _create(client)
    assert _move(client, app_id, "LOST", ADMIN).status_code == 422


def test_invalid_edge_is_409(client):
    app_id = _create(client)
    resp = _move(client, app_id, "HOURS_VERIFICATION", ADMIN)

    assert resp.status_code == 409
    body = resp.get_json()
    assert body["kind"] == "InvalidTransitionError"
    assert body["current"] == "DRAFT"
    assert body["target"] == "HOURS_VERIFICATION"


def test_wrong_role_is_403(client):
    app_id = _create(client)
    _move(client, app_id, "SUBMITTED", APPLICANT)
    assert _move(client, app_id, "HOURS_VERIFICATION", APPLICANT).status_code == 403


def test_missing_role_header_is_403(client):
    app_id = _create(client)
    resp = client.post(f"/api/applications/{app_id}/transition", json={"target": "SUBMITTED"})
    assert resp.status_code == 403


def test_missing_comment_is_422(client):
    app_id = _create(client)
    _move(client, app_id, "SUBMITTED", APPLICANT)
    _move(client, app_id, "HOURS_VERIFICATION", STAFF)

    resp = _move(client, app_id, "HOURS_REJECTED", STAFF, comment=" ")
    assert resp.status_code == 422
    assert resp.get_json()["kind"] == "MissingCommentError"


def test_rejection_reports_countdown(client):
    app_id = _create(client)
    _move(client, app_id, "SUBMITTED", APPLICANT)
    _move(client, app_id, "HOURS_VERIFICATION", STAFF)

    data = _move(client, app_id, "HOURS_REJECTED", STAFF, comment="Unsigned sheet").get_json()

    assert data["status"] == "HOURS_REJECTED"
    assert data["rejection_count"] == 1
    assert data["time_remaining"]["label"] == "3d 0h 0m"
    assert data["time_remaining"]["is_expired"] is False
    assert data["priority"] == "P2"


def test_fourth_rejection_reports_cancellation(client):
    app_id = _create(client)
    _move(client, app_id, "SUBMITTED", APPLICANT)
    _move(client, app_id, "HOURS_VERIFICATION", STAFF)
    for i in range(3):
        _move(client, app_id, "HOURS_REJECTED", STAFF, comment=f"Round {i + 1}")
        _move(client, app_id, "RESUBMITTED", APPLICANT)
        _move(client, app_id, "HOURS_VERIFICATION", STAFF)

    resp = _move(client, app_id, "HOURS_REJECTED", STAFF, comment="Again")
    data = resp.get_json()

    assert resp.status_code == 200
    assert data["requested_status"] == "HOURS_REJECTED"
    assert data["status"] == "CANCELLED"
    assert data["strike_applied"] is True
    assert data["rejection_count"] == 3
    assert data["priority"] is None


def test_queue_has_all_buckets(client, api_engine, clock):
    app_id = _create(client)
    _move(client, app_id, "SUBMITTED", APPLICANT)
    _move(client, app_id, "HOURS_VERIFICATION", STAFF)
    _move(client, app_id, "HOURS_REJECTED", STAFF, comment="Fix")
    _create(client, student_id="S0002")
    clock.advance(days=2, hours=12)

    data = client.get("/api/queue", headers=ADMIN).get_json()
    buckets = {b["priority"]: b for b in data["buckets"]}

    assert list(buckets) == ["P0", "P1", "P2", "P3"]
    assert [a["id"] for a in buckets["P0"]["applications"]] == [app_id]
    assert buckets["P3"]["count"] == 1
    assert buckets["P1"]["count"] == 0


def test_sweep_endpoint_expires_overdue(client, api_engine, clock):
    app_id = _create(client)
    _move(client, app_id, "SUBMITTED", APPLICANT)
    _move(client, app_id, "HOURS_VERIFICATION", STAFF)
    _move(client, app_id, "HOURS_REJECTED", STAFF, comment="Fix")
    clock.advance(days=3, minutes=1)

    data = client.post("/api/sweep", headers=ADMIN).get_json()
    assert data["expired_ids"] == [app_id]
    assert data["expired_count"] == 1

    detail = client.get(f"/api/applications/{app_id}", headers=ADMIN).get_json()
    assert detail["status"] == "HOURS_REJECTION_EXPIRED"
    assert detail["status_deadline"] is None
    assert detail["audit_history"][-1]["actor"] == "System"

    again = client.post("/api/sweep", headers=ADMIN).get_json()
    assert again["expired_count"] == 0


def test_list_applications(client, api_engine, clock):
    _create(client)
    clock.advance(timedelta(minutes=5))
    _create(client, student_id="S0002")

    data = client.get("/api/applications", headers=ADMIN).get_json()
    assert [a["student_id"] for a in data] == ["S0001", "S0002"]


def test_sse_events_carry_utc_timestamps():
    while True:
        try:
            dashboard.event_queue.get_nowait()
        except queue.Empty:
            break

    dashboard.emit_event("sweep", {"expired": []})
    event = dashboard.event_queue.get_nowait()

    stamp = datetime.fromisoformat(event["timestamp"])
    assert stamp.utcoffset() == timedelta(0)
    assert event["type"] == "sweep"
