from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI
from fastapi.testclient import TestClient

from reassignment.controllers.analytics_controller import router as analytics_router
from reassignment.controllers.policy_controller import router as policy_router
from reassignment.controllers.reassignment_controller import router as reassignment_router
from reassignment.repository.reassignment_repository import ReassignmentRepository
from reassignment.services.history_service import HistoryService
from reassignment.services.notification_service import NotificationService
from reassignment.services.policy_service import PolicyService
from reassignment.services.reassignment_service import ReassignmentWorkflowService
from reassignment.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        availability_check_timeout_seconds=1.0,
    )


def _build_test_app(tmp_path) -> tuple[FastAPI, ReassignmentRepository, int]:
    settings = _build_test_settings(tmp_path, "controllers.db")
    repository = ReassignmentRepository(settings)
    repository.initialize_database()

    original = repository.add_resource(
        "Aula 101", "CLASSROOM", 30, ["projector", "whiteboard"], "Block A", 1, "Block A, floor 1"
    )
    repository.add_resource(
        "Aula 102", "CLASSROOM", 30, ["projector", "whiteboard"], "Block A", 1, "Block A, floor 1"
    )
    repository.add_resource(
        "Aula 201", "CLASSROOM", 32, ["projector", "whiteboard"], "Block A", 2, "Block A, floor 2"
    )
    start = datetime.now(timezone.utc) + timedelta(days=1)
    reservation = repository.add_reservation(
        original.resource_id, "user-001", "ENG", start, start + timedelta(hours=2)
    )

    policy_service = PolicyService(store=repository, requests=repository)
    history_service = HistoryService(sink=repository, settings=settings)
    workflow_service = ReassignmentWorkflowService(
        directory=repository,
        reservations=repository,
        requests=repository,
        standings=repository,
        policy_service=policy_service,
        history_service=history_service,
        notification_service=NotificationService(notifier=repository),
        settings=settings,
    )

    app = FastAPI()
    app.include_router(reassignment_router)
    app.include_router(policy_router)
    app.include_router(analytics_router)
    app.state.repository = repository
    app.state.policy_service = policy_service
    app.state.history_service = history_service
    app.state.workflow_service = workflow_service
    return app, repository, reservation.reservation_id


def _create_payload(reservation_id: int, **overrides) -> dict:
    payload = {
        "reservation_id": reservation_id,
        "requested_by": "user-001",
        "reason": "MAINTENANCE",
        "program_id": "ENG",
        "priority": "TEACHER",
        "is_urgent": False,
    }
    payload.update(overrides)
    return payload


def test_reassignment_end_to_end_flow(tmp_path) -> None:
    app, repository, reservation_id = _build_test_app(tmp_path)
    client = TestClient(app)

    validation = client.post(
        "/reassignments/validate",
        json={"reservation_id": reservation_id, "requested_by": "user-001", "reason": "MAINTENANCE"},
    )
    assert validation.status_code == 200
    assert validation.json()["is_valid"] is True

    created = client.post("/reassignments", json=_create_payload(reservation_id))
    assert created.status_code == 201
    body = created.json()
    request_id = body["request"]["request_id"]
    assert body["request"]["status"] == "PENDING"
    assert body["request"]["reason_description"]
    assert len(body["suggestions"]) == 2
    assert body["suggestions"][0]["score"] == 100.0
    assert body["suggestions"][0]["equivalence"] == "EXACT_MATCH"

    fetched = client.get(f"/reassignments/{request_id}")
    assert fetched.status_code == 200
    assert fetched.json()["version"] == 1

    accepted = client.post(
        f"/reassignments/{request_id}/response",
        json={"response": "ACCEPTED"},
    )
    assert accepted.status_code == 200
    assert accepted.json()["next_action"] == "COMPLETE"
    assert accepted.json()["penalty_required"] is False

    completed = client.post(f"/reassignments/{request_id}/complete")
    assert completed.status_code == 200
    assert completed.json()["status"] == "COMPLETE"
    suggested = completed.json()["suggested_resource_id"]
    assert repository.get_reservation(reservation_id).resource_id == suggested

    conflict = client.post(
        f"/reassignments/{request_id}/response",
        json={"response": "REJECTED"},
    )
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["code"] == "INVALID_STATE"

    rate = client.get("/analytics/acceptance-rate", params={"program_id": "ENG"})
    assert rate.status_code == 200
    assert rate.json()["acceptance_rate"] == 1.0

    alternatives = client.get("/analytics/alternatives")
    assert alternatives.status_code == 200
    assert alternatives.json()[0]["resource_id"] == suggested

    history = client.get("/analytics/history", params={"program_id": "ENG"})
    assert [item["decision"] for item in history.json()] == ["SUGGESTED", "ACCEPTED"]

    effectiveness = client.get("/analytics/effectiveness/ENG")
    assert effectiveness.status_code == 200
    assert effectiveness.json()["decided"] == 1
    assert 0.0 <= effectiveness.json()["effectiveness"] <= 100.0


def test_rejection_response_returns_sibling_request(tmp_path) -> None:
    app, _, reservation_id = _build_test_app(tmp_path)
    client = TestClient(app)
    request_id = client.post("/reassignments", json=_create_payload(reservation_id)).json()[
        "request"
    ]["request_id"]

    rejected = client.post(
        f"/reassignments/{request_id}/response",
        json={"response": "REJECTED", "notes": "too small"},
    )

    assert rejected.status_code == 200
    body = rejected.json()
    assert body["next_action"] == "FIND_ALTERNATIVES"
    assert body["request"]["rejection_count"] == 1
    assert body["alternative"]["request"]["parent_request_id"] == request_id
    assert body["alternative"]["warnings"] == ["Limited options available for reassignment"]


def test_error_mapping(tmp_path) -> None:
    app, _, reservation_id = _build_test_app(tmp_path)
    client = TestClient(app)

    missing = client.get("/reassignments/unknown")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NOT_FOUND"

    invalid = client.post(
        "/reassignments",
        json=_create_payload(reservation_id, reason="OTHER"),
    )
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["details"]["errors"] == [
        "custom_reason is required when reason is OTHER"
    ]

    malformed = client.post("/reassignments", json=_create_payload(0))
    assert malformed.status_code == 422

    request_id = client.post("/reassignments", json=_create_payload(reservation_id)).json()[
        "request"
    ]["request_id"]
    early = client.post(f"/reassignments/{request_id}/expire")
    assert early.status_code == 409


def test_expire_auto_approve_cancel_and_penalty_routes(tmp_path) -> None:
    app, _, reservation_id = _build_test_app(tmp_path)
    client = TestClient(app)
    request_id = client.post("/reassignments", json=_create_payload(reservation_id)).json()[
        "request"
    ]["request_id"]

    refused = client.post(
        f"/reassignments/{request_id}/auto-approve",
        json={"hours_until_event": 1.0},
    )
    assert refused.status_code == 200
    assert refused.json()["auto_approved"] is False

    cancelled = client.post(
        f"/reassignments/{request_id}/cancel",
        json={"cancelled_by": "admin", "reason": "class moved online"},
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"

    sweep = client.post("/reassignments/sweep")
    assert sweep.status_code == 200
    assert sweep.json() == []

    penalty = client.post(
        "/penalties",
        json={"user_id": "user-001", "program_id": "ENG", "rejection_count": 3},
    )
    assert penalty.status_code == 200
    assert penalty.json()["penalty_applied"] is True
    assert penalty.json()["priority"] == "STUDENT"

    repeated = client.post(
        "/penalties",
        json={"user_id": "user-001", "program_id": "ENG", "rejection_count": 3},
    )
    assert repeated.json()["already_applied"] is True


def test_policy_routes(tmp_path) -> None:
    app, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    assert client.get("/policies/ENG").status_code == 404
    effective = client.get("/policies/ENG", params={"effective": True})
    assert effective.status_code == 200
    assert effective.json()["notification_channels"] == ["email", "push"]

    created = client.put(
        "/policies/ENG",
        json={"preset": "strict", "overrides": {"max_suggestions": 4}},
    )
    assert created.status_code == 200
    assert created.json()["configuration"]["max_suggestions"] == 4
    assert "Max suggestions: 4" in created.json()["summary"]

    bad_preset = client.put("/policies/ENG", json={"preset": "relaxed"})
    assert bad_preset.status_code == 400

    invalid = client.patch(
        "/policies/ENG",
        json={"changes": {"default_capacity_tolerance": 150, "max_suggestions": 0}},
    )
    assert invalid.status_code == 400
    assert len(invalid.json()["detail"]["details"]["errors"]) == 2
    assert client.get("/policies/ENG").json()["configuration"]["max_suggestions"] == 4

    updated = client.patch(
        "/policies/ENG",
        json={"changes": {"weights": {"capacity": 0.4, "features": 0.25}}},
    )
    assert updated.status_code == 200
    assert updated.json()["configuration"]["weights"]["capacity"] == 0.4

    validation = client.get("/policies/ENG/validation")
    assert validation.json()["is_valid"] is True

    deactivated = client.post("/policies/ENG/deactivate")
    assert deactivated.json()["is_active"] is False
    assert client.post("/policies/ENG/activate").json()["is_active"] is True

    removed = client.delete("/policies/ENG")
    assert removed.status_code == 200
    assert removed.json()["hard_deleted"] is True


def test_missing_services_return_503() -> None:
    app = FastAPI()
    app.include_router(reassignment_router)
    app.include_router(policy_router)
    app.include_router(analytics_router)
    client = TestClient(app)

    assert client.get("/reassignments/abc").status_code == 503
    assert client.get("/policies/ENG").status_code == 503
    assert client.get("/analytics/acceptance-rate").status_code == 503


def test_effectiveness_route_applies_window_filters(tmp_path) -> None:
    app, _, reservation_id = _build_test_app(tmp_path)
    client = TestClient(app)
    request_id = client.post("/reassignments", json=_create_payload(reservation_id)).json()[
        "request"
    ]["request_id"]
    client.post(f"/reassignments/{request_id}/response", json={"response": "ACCEPTED"})

    mine = client.get("/analytics/effectiveness/ENG", params={"user_id": "user-001"})
    others = client.get("/analytics/effectiveness/ENG", params={"user_id": "user-999"})
    inverted = client.get(
        "/analytics/effectiveness/ENG",
        params={"start": "2026-03-02T00:00:00Z", "end": "2026-03-01T00:00:00Z"},
    )

    assert mine.status_code == 200
    assert mine.json()["program_id"] == "ENG"
    assert mine.json()["decided"] == 1
    assert others.status_code == 200
    assert others.json()["decided"] == 0
    assert inverted.status_code == 400


def test_application_factory_serves_all_routers(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("REASSIGN_DATABASE_PATH", str(tmp_path / "factory.db"))
    get_settings.cache_clear()
    import app as app_module

    with TestClient(app_module.create_app()) as client:
        paths = {route.path for route in client.app.routes}
        history = client.get("/analytics/history", params={"program_id": "ENG"})
        effectiveness = client.get("/analytics/effectiveness/ENG")

    get_settings.cache_clear()
    assert "/analytics/effectiveness/{program_id}" in paths
    assert "/reassignments/{request_id}" in paths
    assert history.status_code == 200
    assert effectiveness.status_code == 200
    assert (tmp_path / "factory.db").exists()
