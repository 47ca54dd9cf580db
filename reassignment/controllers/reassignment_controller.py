"""HTTP controller layer for the reassignment workflow."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from reassignment.controllers.dependencies import get_workflow_service, to_http_exception
from reassignment.domain.errors import ReassignmentError
from reassignment.domain.models import (
    EquivalenceType,
    EscalationAction,
    NextAction,
    ReassignmentReason,
    ReassignmentRequest,
    ReassignmentStatus,
    UserPriority,
    UserResponse,
)
from reassignment.services.reassignment_service import (
    ReassignmentCreation,
    ReassignmentWorkflowService,
)
from reassignment.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["reassignments"])


class CreateReassignmentRequest(BaseModel):
    """Input DTO validated before entering service layer."""

    reservation_id: int = Field(gt=0)
    requested_by: str = Field(min_length=1)
    reason: ReassignmentReason
    program_id: str = Field(min_length=1)
    priority: UserPriority = UserPriority.STUDENT
    is_urgent: bool = False
    custom_reason: str | None = None
    capacity_tolerance_percent: float | None = Field(default=None, ge=0.0, le=100.0)
    required_features: list[str] = Field(default_factory=list)
    preferred_features: list[str] = Field(default_factory=list)
    excluded_resource_ids: list[int] = Field(default_factory=list)

    @field_validator("required_features", "preferred_features")
    @classmethod
    def normalize_features(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value]
        if any(not item for item in cleaned):
            raise ValueError("feature names must be non-empty")
        return cleaned


class ValidateReassignmentRequest(BaseModel):
    reservation_id: int = Field(gt=0)
    requested_by: str = Field(min_length=1)
    reason: ReassignmentReason


class ValidationResultResponse(BaseModel):
    is_valid: bool
    violations: list[str]
    warnings: list[str]


class ScoreBreakdownResponse(BaseModel):
    capacity: float = Field(ge=0.0, le=100.0)
    features: float = Field(ge=0.0, le=100.0)
    location: float = Field(ge=0.0, le=100.0)
    availability: float = Field(ge=0.0, le=100.0)


class SuggestionResponse(BaseModel):
    resource_id: int
    resource_name: str
    score: float = Field(ge=0.0, le=100.0)
    breakdown: ScoreBreakdownResponse
    equivalence: EquivalenceType
    pros: list[str]
    cons: list[str]


class ReassignmentRequestResponse(BaseModel):
    request_id: str
    reservation_id: int
    original_resource_id: int
    program_id: str
    requested_by: str
    reason: ReassignmentReason
    reason_description: str
    status: ReassignmentStatus
    user_response: UserResponse
    priority: UserPriority
    is_urgent: bool
    suggested_resource_id: int | None
    suggested_score: float | None
    alternative_resource_ids: list[int]
    response_deadline: datetime
    rejection_count: int = Field(ge=0)
    escalation_action: EscalationAction | None
    parent_request_id: str | None
    effects_pending: bool = False
    version: int
    created_at: datetime
    updated_at: datetime


class CreateReassignmentResponse(BaseModel):
    request: ReassignmentRequestResponse
    suggestions: list[SuggestionResponse]
    warnings: list[str]


class UserResponsePayload(BaseModel):
    response: UserResponse
    selected_resource_id: int | None = Field(default=None, gt=0)
    notes: str | None = None

    @field_validator("response")
    @classmethod
    def validate_response(cls, value: UserResponse) -> UserResponse:
        if value not in (UserResponse.ACCEPTED, UserResponse.REJECTED):
            raise ValueError("response must be ACCEPTED or REJECTED")
        return value


class ResponseOutcomeResponse(BaseModel):
    request: ReassignmentRequestResponse
    next_action: NextAction
    penalty_required: bool
    alternative: CreateReassignmentResponse | None = None


class ExpirationResponse(BaseModel):
    request: ReassignmentRequestResponse
    escalation_action: EscalationAction
    changed: bool
    details: str


class AutoApproveRequest(BaseModel):
    hours_until_event: float


class AutoApprovalResponse(BaseModel):
    request: ReassignmentRequestResponse
    auto_approved: bool
    selected_resource_id: int | None
    reason: str
    notifications_sent: int = Field(ge=0)


class CancelRequest(BaseModel):
    cancelled_by: str = Field(min_length=1)
    reason: str | None = None


class PenaltyRequest(BaseModel):
    user_id: str = Field(min_length=1)
    program_id: str = Field(min_length=1)
    rejection_count: int = Field(ge=0)


class PenaltyResponse(BaseModel):
    user_id: str
    program_id: str
    penalty_applied: bool
    already_applied: bool
    points: int = Field(ge=0)
    total_points: int = Field(ge=0)
    priority: UserPriority
    restrictions: list[str]
    suppressed_until: datetime | None


def _request_response(request: ReassignmentRequest) -> ReassignmentRequestResponse:
    return ReassignmentRequestResponse(
        request_id=request.request_id,
        reservation_id=request.original_reservation_id,
        original_resource_id=request.original_resource_id,
        program_id=request.program_id,
        requested_by=request.requested_by,
        reason=request.reason,
        reason_description=request.reason_description,
        status=request.status,
        user_response=request.user_response,
        priority=request.priority,
        is_urgent=request.is_urgent,
        suggested_resource_id=request.suggested_resource_id,
        suggested_score=request.suggested_score,
        alternative_resource_ids=list(request.alternative_resource_ids),
        response_deadline=request.response_deadline,
        rejection_count=request.rejection_count,
        escalation_action=request.escalation_action,
        parent_request_id=request.parent_request_id,
        effects_pending=request.effects_pending,
        version=request.version,
        created_at=request.created_at,
        updated_at=request.updated_at,
    )


def _creation_response(creation: ReassignmentCreation) -> CreateReassignmentResponse:
    return CreateReassignmentResponse(
        request=_request_response(creation.request),
        suggestions=[
            SuggestionResponse(
                resource_id=item.resource_id,
                resource_name=item.resource_name,
                score=item.score,
                breakdown=ScoreBreakdownResponse(**item.breakdown.to_dict()),
                equivalence=item.equivalence,
                pros=list(item.pros),
                cons=list(item.cons),
            )
            for item in creation.suggestions
        ],
        warnings=creation.warnings,
    )


def _unexpected(action: str) -> HTTPException:
    logger.exception("Unexpected failure | action=%s", action)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}",
    )


@router.post(
    "/reassignments",
    response_model=CreateReassignmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_reassignment(
    payload: CreateReassignmentRequest,
    service: ReassignmentWorkflowService = Depends(get_workflow_service),
) -> CreateReassignmentResponse:
    """Open a reassignment request and return ranked suggestions."""
    try:
        creation = service.create_reassignment_request(
            reservation_id=payload.reservation_id,
            requested_by=payload.requested_by,
            reason=payload.reason,
            program_id=payload.program_id,
            priority=payload.priority,
            is_urgent=payload.is_urgent,
            custom_reason=payload.custom_reason,
            capacity_tolerance_percent=payload.capacity_tolerance_percent,
            required_features=payload.required_features,
            preferred_features=payload.preferred_features,
            excluded_resource_ids=payload.excluded_resource_ids,
        )
        return _creation_response(creation)
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("create reassignment request") from exc


@router.post(
    "/reassignments/validate",
    response_model=ValidationResultResponse,
    status_code=status.HTTP_200_OK,
)
async def validate_reassignment(
    payload: ValidateReassignmentRequest,
    service: ReassignmentWorkflowService = Depends(get_workflow_service),
) -> ValidationResultResponse:
    try:
        result = service.validate_reassignment_request(
            reservation_id=payload.reservation_id,
            requested_by=payload.requested_by,
            reason=payload.reason,
        )
        return ValidationResultResponse(
            is_valid=result.is_valid,
            violations=result.violations,
            warnings=result.warnings,
        )
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("validate reassignment request") from exc


@router.get(
    "/reassignments/{request_id}",
    response_model=ReassignmentRequestResponse,
    status_code=status.HTTP_200_OK,
)
async def get_reassignment(
    request_id: str,
    service: ReassignmentWorkflowService = Depends(get_workflow_service),
) -> ReassignmentRequestResponse:
    try:
        return _request_response(service.get_request(request_id))
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/reassignments/{request_id}/response",
    response_model=ResponseOutcomeResponse,
    status_code=status.HTTP_200_OK,
)
async def respond_to_reassignment(
    request_id: str,
    payload: UserResponsePayload,
    service: ReassignmentWorkflowService = Depends(get_workflow_service),
) -> ResponseOutcomeResponse:
    """Record the user's accept/reject decision and return the next action."""
    try:
        outcome = service.process_user_response(
            request_id=request_id,
            response=payload.response,
            selected_resource_id=payload.selected_resource_id,
            notes=payload.notes,
        )
        return ResponseOutcomeResponse(
            request=_request_response(outcome.request),
            next_action=outcome.next_action,
            penalty_required=outcome.penalty_required,
            alternative=(
                _creation_response(outcome.alternative) if outcome.alternative else None
            ),
        )
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("process user response") from exc


@router.post(
    "/reassignments/{request_id}/complete",
    response_model=ReassignmentRequestResponse,
    status_code=status.HTTP_200_OK,
)
async def complete_reassignment(
    request_id: str,
    service: ReassignmentWorkflowService = Depends(get_workflow_service),
) -> ReassignmentRequestResponse:
    try:
        return _request_response(service.complete_reassignment(request_id))
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("complete reassignment") from exc


@router.post(
    "/reassignments/{request_id}/expire",
    response_model=ExpirationResponse,
    status_code=status.HTTP_200_OK,
)
async def expire_reassignment(
    request_id: str,
    service: ReassignmentWorkflowService = Depends(get_workflow_service),
) -> ExpirationResponse:
    """Invoked by the external deadline sweep; safe to call repeatedly."""
    try:
        outcome = service.handle_request_expiration(request_id)
        return ExpirationResponse(
            request=_request_response(outcome.request),
            escalation_action=outcome.escalation_action,
            changed=outcome.changed,
            details=outcome.details,
        )
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("handle expiration") from exc


@router.post(
    "/reassignments/{request_id}/auto-approve",
    response_model=AutoApprovalResponse,
    status_code=status.HTTP_200_OK,
)
async def auto_approve_reassignment(
    request_id: str,
    payload: AutoApproveRequest,
    service: ReassignmentWorkflowService = Depends(get_workflow_service),
) -> AutoApprovalResponse:
    try:
        outcome = service.process_automatic_reassignment(
            request_id=request_id,
            hours_until_event=payload.hours_until_event,
        )
        return AutoApprovalResponse(
            request=_request_response(outcome.request),
            auto_approved=outcome.auto_approved,
            selected_resource_id=outcome.selected_resource_id,
            reason=outcome.reason,
            notifications_sent=outcome.notifications_sent,
        )
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("process automatic reassignment") from exc


@router.post(
    "/reassignments/{request_id}/cancel",
    response_model=ReassignmentRequestResponse,
    status_code=status.HTTP_200_OK,
)
async def cancel_reassignment(
    request_id: str,
    payload: CancelRequest,
    service: ReassignmentWorkflowService = Depends(get_workflow_service),
) -> ReassignmentRequestResponse:
    try:
        return _request_response(
            service.cancel_request(request_id, payload.cancelled_by, payload.reason)
        )
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("cancel reassignment") from exc


@router.post(
    "/penalties",
    response_model=PenaltyResponse,
    status_code=status.HTTP_200_OK,
)
async def apply_penalty(
    payload: PenaltyRequest,
    service: ReassignmentWorkflowService = Depends(get_workflow_service),
) -> PenaltyResponse:
    """Apply the rejection penalty signalled by an APPLY_PENALTY next action."""
    try:
        outcome = service.apply_rejection_penalty(
            user_id=payload.user_id,
            program_id=payload.program_id,
            rejection_count=payload.rejection_count,
        )
        return PenaltyResponse(
            user_id=outcome.user_id,
            program_id=outcome.program_id,
            penalty_applied=outcome.penalty_applied,
            already_applied=outcome.already_applied,
            points=outcome.points,
            total_points=outcome.total_points,
            priority=outcome.priority,
            restrictions=outcome.restrictions,
            suppressed_until=outcome.suppressed_until,
        )
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("apply rejection penalty") from exc


@router.post(
    "/reassignments/sweep",
    response_model=list[ExpirationResponse],
    status_code=status.HTTP_200_OK,
)
async def sweep_expired_reassignments(
    service: ReassignmentWorkflowService = Depends(get_workflow_service),
) -> list[ExpirationResponse]:
    try:
        return [
            ExpirationResponse(
                request=_request_response(outcome.request),
                escalation_action=outcome.escalation_action,
                changed=outcome.changed,
                details=outcome.details,
            )
            for outcome in service.sweep_expired_requests()
        ]
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("sweep expired requests") from exc
