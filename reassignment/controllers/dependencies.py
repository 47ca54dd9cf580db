"""Shared FastAPI dependency providers and error translation for the controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from reassignment.domain.errors import (
    DependencyError,
    NotFoundError,
    ReassignmentError,
    StateError,
    ValidationError,
)
from reassignment.services.history_service import HistoryService
from reassignment.services.policy_service import PolicyService
from reassignment.services.reassignment_service import ReassignmentWorkflowService


_STATUS_BY_ERROR: tuple[tuple[type[ReassignmentError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (StateError, status.HTTP_409_CONFLICT),
    (DependencyError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(exc: ReassignmentError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.to_dict())
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=exc.to_dict(),
    )


def _service_from_state(request: Request, attribute: str, label: str):
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} service is not initialized",
        )
    return service


def get_workflow_service(request: Request) -> ReassignmentWorkflowService:
    return _service_from_state(request, "workflow_service", "Reassignment")


def get_policy_service(request: Request) -> PolicyService:
    return _service_from_state(request, "policy_service", "Policy")


def get_history_service(request: Request) -> HistoryService:
    return _service_from_state(request, "history_service", "History")
