"""HTTP controller layer for per-program policy configuration."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from reassignment.controllers.dependencies import get_policy_service, to_http_exception
from reassignment.domain.errors import ReassignmentError
from reassignment.domain.policy import PolicyConfiguration
from reassignment.services.policy_service import PolicyService
from reassignment.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["policies"])


class CreatePolicyRequest(BaseModel):
    preset: str = Field(default="default", min_length=1)
    overrides: dict[str, Any] = Field(default_factory=dict)


class UpdatePolicyRequest(BaseModel):
    changes: dict[str, Any] = Field(min_length=1)


class PolicyResponse(BaseModel):
    program_id: str
    is_active: bool
    summary: str
    notification_channels: list[str]
    configuration: dict[str, Any]


class PolicyValidationResponse(BaseModel):
    program_id: str
    is_valid: bool
    errors: list[str]


class PolicyRemovalResponse(BaseModel):
    program_id: str
    hard_deleted: bool
    pending_requests: int = Field(ge=0)


def _policy_response(policy: PolicyConfiguration) -> PolicyResponse:
    return PolicyResponse(
        program_id=policy.program_id,
        is_active=policy.is_active,
        summary=policy.summary(),
        notification_channels=policy.enabled_notification_channels(),
        configuration=policy.to_dict(),
    )


def _unexpected(action: str) -> HTTPException:
    logger.exception("Unexpected failure | action=%s", action)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}",
    )


@router.get(
    "/policies/{program_id}",
    response_model=PolicyResponse,
    status_code=status.HTTP_200_OK,
)
async def get_policy(
    program_id: str,
    effective: bool = False,
    service: PolicyService = Depends(get_policy_service),
) -> PolicyResponse:
    """Return the stored policy, or with ``effective`` the one requests would use."""
    try:
        if effective:
            return _policy_response(service.get_effective_policy(program_id))
        return _policy_response(service.get_policy(program_id))
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc


@router.put(
    "/policies/{program_id}",
    response_model=PolicyResponse,
    status_code=status.HTTP_200_OK,
)
async def create_policy(
    program_id: str,
    payload: CreatePolicyRequest,
    service: PolicyService = Depends(get_policy_service),
) -> PolicyResponse:
    try:
        policy = service.create_policy(
            program_id=program_id,
            preset_name=payload.preset,
            overrides=payload.overrides,
        )
        return _policy_response(policy)
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("create policy") from exc


@router.patch(
    "/policies/{program_id}",
    response_model=PolicyResponse,
    status_code=status.HTTP_200_OK,
)
async def update_policy(
    program_id: str,
    payload: UpdatePolicyRequest,
    service: PolicyService = Depends(get_policy_service),
) -> PolicyResponse:
    try:
        return _policy_response(service.update_policy(program_id, payload.changes))
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("update policy") from exc


@router.get(
    "/policies/{program_id}/validation",
    response_model=PolicyValidationResponse,
    status_code=status.HTTP_200_OK,
)
async def validate_policy(
    program_id: str,
    service: PolicyService = Depends(get_policy_service),
) -> PolicyValidationResponse:
    try:
        result = service.validate_policy(program_id)
        return PolicyValidationResponse(
            program_id=program_id,
            is_valid=result.is_valid,
            errors=result.errors,
        )
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/policies/{program_id}/activate",
    response_model=PolicyResponse,
    status_code=status.HTTP_200_OK,
)
async def activate_policy(
    program_id: str,
    service: PolicyService = Depends(get_policy_service),
) -> PolicyResponse:
    try:
        return _policy_response(service.activate_policy(program_id))
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("activate policy") from exc


@router.post(
    "/policies/{program_id}/deactivate",
    response_model=PolicyResponse,
    status_code=status.HTTP_200_OK,
)
async def deactivate_policy(
    program_id: str,
    service: PolicyService = Depends(get_policy_service),
) -> PolicyResponse:
    try:
        return _policy_response(service.deactivate_policy(program_id))
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("deactivate policy") from exc


@router.delete(
    "/policies/{program_id}",
    response_model=PolicyRemovalResponse,
    status_code=status.HTTP_200_OK,
)
async def remove_policy(
    program_id: str,
    service: PolicyService = Depends(get_policy_service),
) -> PolicyRemovalResponse:
    """Soft-delete while pending requests reference the program, otherwise hard-delete."""
    try:
        removal = service.remove_policy(program_id)
        return PolicyRemovalResponse(
            program_id=removal.program_id,
            hard_deleted=removal.hard_deleted,
            pending_requests=removal.pending_requests,
        )
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("remove policy") from exc
