from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from reassignment.domain.errors import NotFoundError, ValidationError
from reassignment.domain.models import ReassignmentReason, UserPriority
from reassignment.repository.reassignment_repository import ReassignmentRepository
from reassignment.services.history_service import HistoryService
from reassignment.services.notification_service import NotificationService
from reassignment.services.policy_service import PolicyService
from reassignment.services.reassignment_service import ReassignmentWorkflowService
from reassignment.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(get_settings(), database_path=tmp_path / filename)


def _build_service(tmp_path, filename: str) -> tuple[PolicyService, ReassignmentRepository]:
    repository = ReassignmentRepository(_build_test_settings(tmp_path, filename))
    repository.initialize_database()
    return PolicyService(store=repository, requests=repository), repository


def test_effective_policy_falls_back_to_default_preset(tmp_path) -> None:
    service, _ = _build_service(tmp_path, "policy_default.db")

    policy = service.get_effective_policy("ENG")

    assert policy.program_id == "ENG"
    assert policy.max_suggestions == 5
    with pytest.raises(NotFoundError):
        service.get_policy("ENG")


def test_create_from_preset_with_overrides_is_persisted(tmp_path) -> None:
    service, repository = _build_service(tmp_path, "policy_create.db")

    created = service.create_policy("ENG", "strict", {"max_suggestions": 4})

    assert created.max_suggestions == 4
    assert created.default_capacity_tolerance == 5.0
    assert repository.get_policy("ENG") == created
    assert service.get_effective_policy("ENG") == created


def test_invalid_update_leaves_stored_policy_untouched(tmp_path) -> None:
    service, _ = _build_service(tmp_path, "policy_update.db")
    service.create_policy("ENG")

    with pytest.raises(ValidationError) as exc_info:
        service.update_policy(
            "ENG",
            {"max_suggestions": 10, "urgent_response_time_hours": 30, "default_response_time_hours": 12},
        )

    assert exc_info.value.errors == [
        "urgent_response_time_hours cannot be longer than default_response_time_hours"
    ]
    assert service.get_policy("ENG").max_suggestions == 5


def test_empty_update_is_rejected(tmp_path) -> None:
    service, _ = _build_service(tmp_path, "policy_empty.db")
    service.create_policy("ENG")

    with pytest.raises(ValidationError, match="no changes supplied"):
        service.update_policy("ENG", {})


def test_deactivated_policy_is_not_effective(tmp_path) -> None:
    service, _ = _build_service(tmp_path, "policy_deactivate.db")
    service.create_policy("ENG", "lenient")

    service.deactivate_policy("ENG")

    assert not service.get_policy("ENG").is_active
    assert service.get_effective_policy("ENG").minimum_similarity_score == 60.0
    assert service.activate_policy("ENG").is_active


def test_remove_without_pending_requests_hard_deletes(tmp_path) -> None:
    service, repository = _build_service(tmp_path, "policy_delete.db")
    service.create_policy("ENG")

    removal = service.remove_policy("ENG")

    assert removal.hard_deleted
    assert repository.get_policy("ENG") is None


def test_remove_with_pending_requests_soft_deletes(tmp_path) -> None:
    settings = _build_test_settings(tmp_path, "policy_soft_delete.db")
    repository = ReassignmentRepository(settings)
    repository.initialize_database()
    service = PolicyService(store=repository, requests=repository)
    workflow = ReassignmentWorkflowService(
        directory=repository,
        reservations=repository,
        requests=repository,
        standings=repository,
        policy_service=service,
        history_service=HistoryService(sink=repository, settings=settings),
        notification_service=NotificationService(notifier=repository),
        settings=settings,
    )
    original = repository.add_resource("Aula 101", "CLASSROOM", 30, ["projector"], "Block A", 1)
    start = datetime.now(timezone.utc) + timedelta(days=1)
    reservation = repository.add_reservation(
        original.resource_id, "user-001", "ENG", start, start + timedelta(hours=2)
    )
    service.create_policy("ENG")
    workflow.create_reassignment_request(
        reservation_id=reservation.reservation_id,
        requested_by="user-001",
        reason=ReassignmentReason.DAMAGE,
        program_id="ENG",
        priority=UserPriority.TEACHER,
        is_urgent=False,
    )

    removal = service.remove_policy("ENG")

    assert not removal.hard_deleted
    assert removal.pending_requests == 1
    stored = repository.get_policy("ENG")
    assert stored is not None
    assert not stored.is_active
