"""Domain models for resource reassignment and similarity matching."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from reassignment.domain.errors import StateError


class ReassignmentReason(str, Enum):
    MAINTENANCE = "MAINTENANCE"
    UNAVAILABLE = "UNAVAILABLE"
    OVERBOOKING = "OVERBOOKING"
    USER_REQUEST = "USER_REQUEST"
    DAMAGE = "DAMAGE"
    EMERGENCY = "EMERGENCY"
    OTHER = "OTHER"

    @property
    def description(self) -> str:
        return _REASON_DESCRIPTIONS[self]

    @property
    def urgency(self) -> str:
        if self is ReassignmentReason.EMERGENCY:
            return "CRITICAL"
        if self in (ReassignmentReason.DAMAGE, ReassignmentReason.UNAVAILABLE):
            return "HIGH"
        if self in (ReassignmentReason.MAINTENANCE, ReassignmentReason.OVERBOOKING):
            return "MEDIUM"
        return "LOW"


_REASON_DESCRIPTIONS = {
    ReassignmentReason.MAINTENANCE: "Scheduled maintenance",
    ReassignmentReason.UNAVAILABLE: "Resource unavailable",
    ReassignmentReason.OVERBOOKING: "Resource overbooked",
    ReassignmentReason.USER_REQUEST: "Requested by user",
    ReassignmentReason.DAMAGE: "Resource damaged",
    ReassignmentReason.EMERGENCY: "Emergency situation",
    ReassignmentReason.OTHER: "Other reasons",
}


class ReassignmentStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    COMPLETE = "COMPLETE"
    ESCALATED = "ESCALATED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {
        ReassignmentStatus.COMPLETE,
        ReassignmentStatus.ESCALATED,
        ReassignmentStatus.CANCELLED,
    }
)

ALLOWED_TRANSITIONS: dict[ReassignmentStatus, frozenset[ReassignmentStatus]] = {
    ReassignmentStatus.PENDING: frozenset(
        {
            ReassignmentStatus.ACCEPTED,
            ReassignmentStatus.REJECTED,
            ReassignmentStatus.EXPIRED,
            ReassignmentStatus.CANCELLED,
        }
    ),
    ReassignmentStatus.ACCEPTED: frozenset(
        {ReassignmentStatus.COMPLETE, ReassignmentStatus.CANCELLED}
    ),
    ReassignmentStatus.REJECTED: frozenset(
        {ReassignmentStatus.ESCALATED, ReassignmentStatus.CANCELLED}
    ),
    ReassignmentStatus.EXPIRED: frozenset(
        {
            ReassignmentStatus.ESCALATED,
            ReassignmentStatus.COMPLETE,
            ReassignmentStatus.CANCELLED,
        }
    ),
    ReassignmentStatus.COMPLETE: frozenset(),
    ReassignmentStatus.ESCALATED: frozenset(),
    ReassignmentStatus.CANCELLED: frozenset(),
}


class UserResponse(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    AUTO_ACCEPTED = "AUTO_ACCEPTED"


class UserPriority(str, Enum):
    ADMIN_GENERAL = "ADMIN_GENERAL"
    PROGRAM_DIRECTOR = "PROGRAM_DIRECTOR"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"
    EXTERNAL = "EXTERNAL"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]

    def downgraded(self) -> "UserPriority":
        """Return the next lower priority; EXTERNAL is the floor."""
        return _PRIORITY_DOWNGRADES[self]


_PRIORITY_WEIGHTS = {
    UserPriority.ADMIN_GENERAL: 5,
    UserPriority.PROGRAM_DIRECTOR: 4,
    UserPriority.TEACHER: 3,
    UserPriority.STUDENT: 2,
    UserPriority.EXTERNAL: 1,
}

_PRIORITY_DOWNGRADES = {
    UserPriority.ADMIN_GENERAL: UserPriority.PROGRAM_DIRECTOR,
    UserPriority.PROGRAM_DIRECTOR: UserPriority.TEACHER,
    UserPriority.TEACHER: UserPriority.STUDENT,
    UserPriority.STUDENT: UserPriority.EXTERNAL,
    UserPriority.EXTERNAL: UserPriority.EXTERNAL,
}


class NextAction(str, Enum):
    COMPLETE = "COMPLETE"
    FIND_ALTERNATIVES = "FIND_ALTERNATIVES"
    ESCALATE = "ESCALATE"
    APPLY_PENALTY = "APPLY_PENALTY"


class EscalationAction(str, Enum):
    NOTIFY_SUPERVISOR = "NOTIFY_SUPERVISOR"
    AUTO_ASSIGN = "AUTO_ASSIGN"
    CANCEL_RESERVATION = "CANCEL_RESERVATION"
    NONE = "NONE"


class EquivalenceType(str, Enum):
    EXACT_MATCH = "EXACT_MATCH"
    TYPE_MATCH = "TYPE_MATCH"
    ACCEPTABLE_MATCH = "ACCEPTABLE_MATCH"
    NO_MATCH = "NO_MATCH"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"

    @property
    def is_equivalent(self) -> bool:
        return self in (EquivalenceType.EXACT_MATCH, EquivalenceType.TYPE_MATCH)


class HistoryDecision(str, Enum):
    SUGGESTED = "SUGGESTED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    AUTO_APPROVED = "AUTO_APPROVED"
    EXPIRED = "EXPIRED"
    ESCALATED = "ESCALATED"
    PENALIZED = "PENALIZED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class ResourceDescriptor:
    """Immutable snapshot of a resource used only for scoring."""

    resource_id: int
    resource_type: str
    capacity: Optional[int] = None
    features: frozenset[str] = frozenset()
    building: Optional[str] = None
    floor: Optional[int] = None
    location: Optional[str] = None
    name: str = ""


@dataclass(frozen=True)
class Reservation:
    reservation_id: int
    resource_id: int
    user_id: str
    program_id: str
    start_time: datetime
    end_time: datetime
    status: str = "CONFIRMED"


@dataclass(frozen=True)
class ScoreBreakdown:
    capacity: float
    features: float
    location: float
    availability: float

    def to_dict(self) -> dict[str, float]:
        return {
            "capacity": self.capacity,
            "features": self.features,
            "location": self.location,
            "availability": self.availability,
        }


@dataclass(frozen=True)
class SimilarityResult:
    resource_id: int
    score: float
    breakdown: ScoreBreakdown
    pros: tuple[str, ...] = ()
    cons: tuple[str, ...] = ()


@dataclass(frozen=True)
class AuditEntry:
    at: datetime
    action: str
    actor: str
    from_status: Optional[ReassignmentStatus]
    to_status: ReassignmentStatus
    note: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "action": self.action,
            "actor": self.actor,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
            "note": self.note,
        }


@dataclass(frozen=True)
class ReassignmentRequest:
    """Negotiation record for moving a reservation to another resource.

    Instances are immutable; every state change produces a new instance via
    :meth:`transitioned`, which enforces :data:`ALLOWED_TRANSITIONS` and
    appends an audit entry. ``version`` is owned by the request store and is
    bumped on every successful compare-and-swap update.
    """

    request_id: str
    original_reservation_id: int
    original_resource_id: int
    program_id: str
    requested_by: str
    reason: ReassignmentReason
    priority: UserPriority
    is_urgent: bool
    response_deadline: datetime
    created_at: datetime
    updated_at: datetime
    status: ReassignmentStatus = ReassignmentStatus.PENDING
    user_response: UserResponse = UserResponse.PENDING
    custom_reason: Optional[str] = None
    suggested_resource_id: Optional[int] = None
    suggested_score: Optional[float] = None
    alternative_resource_ids: tuple[int, ...] = ()
    excluded_resource_ids: tuple[int, ...] = ()
    rejection_count: int = 0
    capacity_tolerance_percent: float = 10.0
    required_features: frozenset[str] = frozenset()
    preferred_features: frozenset[str] = frozenset()
    escalation_action: Optional[EscalationAction] = None
    parent_request_id: Optional[str] = None
    response_notes: Optional[str] = None
    responded_at: Optional[datetime] = None
    effects_pending: bool = False
    version: int = 0
    audit_trail: tuple[AuditEntry, ...] = field(default=())

    @property
    def is_pending(self) -> bool:
        return self.status is ReassignmentStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def pending_action(self) -> Optional[str]:
        """Audit action whose side effects have not been confirmed yet."""
        if not self.effects_pending or not self.audit_trail:
            return None
        return self.audit_trail[-1].action

    @property
    def was_expired(self) -> bool:
        return any(entry.action == "expire" for entry in self.audit_trail)

    @property
    def reason_description(self) -> str:
        if self.reason is ReassignmentReason.OTHER and self.custom_reason:
            return self.custom_reason
        return self.reason.description

    def is_past_deadline(self, now: datetime) -> bool:
        return now > self.response_deadline

    def time_remaining_minutes(self, now: datetime) -> int:
        remaining = (self.response_deadline - now).total_seconds() / 60
        return max(0, int(remaining))

    def validate(self) -> list[str]:
        """Return every field violation; an empty list means the request is valid."""
        errors: list[str] = []
        if self.original_reservation_id <= 0:
            errors.append("original_reservation_id must be a positive integer")
        if not self.requested_by or not self.requested_by.strip():
            errors.append("requested_by is required")
        if not self.program_id or not self.program_id.strip():
            errors.append("program_id is required")
        if self.reason is ReassignmentReason.OTHER and not (
            self.custom_reason and self.custom_reason.strip()
        ):
            errors.append("custom_reason is required when reason is OTHER")
        if self.response_deadline <= self.created_at:
            errors.append("response_deadline must be after created_at")
        if not 0.0 <= self.capacity_tolerance_percent <= 100.0:
            errors.append("capacity_tolerance_percent must be between 0 and 100")
        if self.rejection_count < 0:
            errors.append("rejection_count must be >= 0")
        if self.suggested_score is not None and not 0.0 <= self.suggested_score <= 100.0:
            errors.append("suggested_score must be between 0 and 100")
        if self.suggested_resource_id is not None and (
            self.suggested_resource_id == self.original_resource_id
        ):
            errors.append("suggested_resource_id must differ from the original resource")
        overlap = self.required_features & self.preferred_features
        if overlap:
            errors.append(
                "features cannot be both required and preferred: "
                + ", ".join(sorted(overlap))
            )
        return errors

    def transitioned(
        self,
        to_status: ReassignmentStatus,
        *,
        at: datetime,
        actor: str,
        action: str,
        note: Optional[str] = None,
        **changes: Any,
    ) -> "ReassignmentRequest":
        """Return a copy moved to ``to_status`` or raise ``StateError``."""
        if to_status not in ALLOWED_TRANSITIONS[self.status]:
            raise StateError(action, self.status.value)
        if changes.get("rejection_count", self.rejection_count) < self.rejection_count:
            raise StateError(action, self.status.value, "rejection_count cannot decrease")
        entry = AuditEntry(
            at=at,
            action=action,
            actor=actor,
            from_status=self.status,
            to_status=to_status,
            note=note,
        )
        return replace(
            self,
            status=to_status,
            updated_at=at,
            audit_trail=self.audit_trail + (entry,),
            **changes,
        )


@dataclass(frozen=True)
class HistoryRecord:
    """Append-only decision record consumed by analytics."""

    record_id: str
    request_id: str
    reservation_id: int
    program_id: str
    decision: HistoryDecision
    original_resource_id: int
    original_resource_name: str
    requested_by: str
    reason: ReassignmentReason
    created_at: datetime
    new_resource_id: Optional[int] = None
    new_resource_name: Optional[str] = None
    similarity_score: Optional[float] = None
    score_breakdown: Optional[ScoreBreakdown] = None
    alternatives_considered: tuple[int, ...] = ()
    accepted: Optional[bool] = None
    feedback: Optional[str] = None
    notified_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None


@dataclass(frozen=True)
class HistoryFilter:
    program_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_id: Optional[int] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    accepted: Optional[bool] = None


@dataclass(frozen=True)
class UserStanding:
    """Per-user, per-program penalty ledger state."""

    user_id: str
    program_id: str
    priority: UserPriority
    penalty_points: int = 0
    suppressed_until: Optional[datetime] = None
    updated_at: Optional[datetime] = None
