"""HTTP controller layer for reassignment history and analytics."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from reassignment.controllers.dependencies import (
    get_history_service,
    get_policy_service,
    to_http_exception,
)
from reassignment.domain.errors import ReassignmentError
from reassignment.domain.models import HistoryDecision, HistoryFilter
from reassignment.services.history_service import HistoryService
from reassignment.services.policy_service import PolicyService
from reassignment.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])


class HistoryRecordResponse(BaseModel):
    record_id: str
    request_id: str
    reservation_id: int
    program_id: str
    decision: HistoryDecision
    original_resource_id: int
    new_resource_id: Optional[int]
    similarity_score: Optional[float]
    accepted: Optional[bool]
    created_at: datetime
    responded_at: Optional[datetime]


class AcceptanceRateResponse(BaseModel):
    acceptance_rate: float = Field(ge=0.0, le=1.0)


class AlternativeUsageResponse(BaseModel):
    resource_id: int
    resource_name: str
    times_used: int = Field(ge=0)
    average_score: Optional[float]


class ResourceStatsResponse(BaseModel):
    resource_id: int
    resource_name: str
    reassignments: int = Field(ge=0)
    accepted: int = Field(ge=0)
    success_rate: float = Field(ge=0.0, le=1.0)


class EquivalencePerformanceResponse(BaseModel):
    original_resource_id: int
    new_resource_id: int
    decisions: int = Field(ge=0)
    acceptance_rate: float = Field(ge=0.0, le=1.0)


class EffectivenessResponse(BaseModel):
    program_id: str
    total_requests: int = Field(ge=0)
    decided: int = Field(ge=0)
    auto_approved: int = Field(ge=0)
    penalties_applied: int = Field(ge=0)
    escalated: int = Field(ge=0)
    average_response_hours: float = Field(ge=0.0)
    auto_approval_rate: float = Field(ge=0.0, le=1.0)
    penalty_rate: float = Field(ge=0.0, le=1.0)
    effectiveness: float = Field(ge=0.0, le=100.0)


def _window_filter(
    user_id: Optional[str] = Query(default=None),
    resource_id: Optional[int] = Query(default=None, gt=0),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
) -> HistoryFilter:
    if start is not None and end is not None and end < start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end must not be earlier than start",
        )
    return HistoryFilter(user_id=user_id, resource_id=resource_id, start=start, end=end)


def _history_filter(
    window: HistoryFilter = Depends(_window_filter),
    program_id: Optional[str] = Query(default=None),
    accepted: Optional[bool] = Query(default=None),
) -> HistoryFilter:
    return replace(window, program_id=program_id, accepted=accepted)


def _unexpected(action: str) -> HTTPException:
    logger.exception("Unexpected failure | action=%s", action)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}",
    )


@router.get("/history", response_model=list[HistoryRecordResponse])
async def list_history(
    history_filter: HistoryFilter = Depends(_history_filter),
    service: HistoryService = Depends(get_history_service),
) -> list[HistoryRecordResponse]:
    try:
        return [
            HistoryRecordResponse(
                record_id=record.record_id,
                request_id=record.request_id,
                reservation_id=record.reservation_id,
                program_id=record.program_id,
                decision=record.decision,
                original_resource_id=record.original_resource_id,
                new_resource_id=record.new_resource_id,
                similarity_score=record.similarity_score,
                accepted=record.accepted,
                created_at=record.created_at,
                responded_at=record.responded_at,
            )
            for record in service.query(history_filter)
        ]
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc


@router.get("/acceptance-rate", response_model=AcceptanceRateResponse)
async def acceptance_rate(
    history_filter: HistoryFilter = Depends(_history_filter),
    service: HistoryService = Depends(get_history_service),
) -> AcceptanceRateResponse:
    try:
        return AcceptanceRateResponse(acceptance_rate=service.acceptance_rate(history_filter))
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("compute acceptance rate") from exc


@router.get("/alternatives", response_model=list[AlternativeUsageResponse])
async def most_used_alternatives(
    limit: Optional[int] = Query(default=None, ge=0),
    history_filter: HistoryFilter = Depends(_history_filter),
    service: HistoryService = Depends(get_history_service),
) -> list[AlternativeUsageResponse]:
    try:
        return [
            AlternativeUsageResponse(
                resource_id=item.resource_id,
                resource_name=item.resource_name,
                times_used=item.times_used,
                average_score=item.average_score,
            )
            for item in service.most_used_alternatives(history_filter, limit)
        ]
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("compute alternative usage") from exc


@router.get("/problematic-resources", response_model=list[ResourceStatsResponse])
async def problematic_resources(
    limit: Optional[int] = Query(default=None, ge=0),
    history_filter: HistoryFilter = Depends(_history_filter),
    service: HistoryService = Depends(get_history_service),
) -> list[ResourceStatsResponse]:
    try:
        return [
            ResourceStatsResponse(
                resource_id=item.resource_id,
                resource_name=item.resource_name,
                reassignments=item.reassignments,
                accepted=item.accepted,
                success_rate=item.success_rate,
            )
            for item in service.problematic_resources(history_filter, limit)
        ]
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("compute problematic resources") from exc


@router.get(
    "/underperforming-equivalences",
    response_model=list[EquivalencePerformanceResponse],
)
async def underperforming_equivalences(
    history_filter: HistoryFilter = Depends(_history_filter),
    service: HistoryService = Depends(get_history_service),
) -> list[EquivalencePerformanceResponse]:
    try:
        return [
            EquivalencePerformanceResponse(
                original_resource_id=item.original_resource_id,
                new_resource_id=item.new_resource_id,
                decisions=item.decisions,
                acceptance_rate=item.acceptance_rate,
            )
            for item in service.underperforming_equivalences(history_filter)
        ]
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("compute equivalence performance") from exc


@router.get("/effectiveness/{program_id}", response_model=EffectivenessResponse)
async def configuration_effectiveness(
    program_id: str,
    history_filter: HistoryFilter = Depends(_window_filter),
    history: HistoryService = Depends(get_history_service),
    policies: PolicyService = Depends(get_policy_service),
) -> EffectivenessResponse:
    """Score the program's effective policy against its recorded outcomes."""
    try:
        policy = policies.get_effective_policy(program_id)
        report = history.configuration_effectiveness(program_id, policy, history_filter)
        return EffectivenessResponse(
            program_id=report.program_id,
            total_requests=report.total_requests,
            decided=report.decided,
            auto_approved=report.auto_approved,
            penalties_applied=report.penalties_applied,
            escalated=report.escalated,
            average_response_hours=report.average_response_hours,
            auto_approval_rate=report.auto_approval_rate,
            penalty_rate=report.penalty_rate,
            effectiveness=report.effectiveness,
        )
    except ReassignmentError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("compute configuration effectiveness") from exc
