"""Reassignment workflow: request creation, user responses, expiration and penalties.

The service holds no per-request state. Every mutation re-reads the request,
builds the next immutable version and persists it through the request store's
compare-and-swap update, so concurrent triggers serialize at the store and the
loser surfaces as a ``StateError``.

Follow-up work of a transition, such as moving the reservation or writing
history, runs after the transition is committed with ``effects_pending`` set,
and a second update clears the flag. Whatever runs next on a flagged request
finishes that work first, so a failed collaborator never leaves a request
that claims a decision whose effects are missing.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Sequence
from uuid import uuid4

from reassignment.domain.contracts import (
    RequestStore,
    ReservationStore,
    ResourceDirectory,
    StandingStore,
)
from reassignment.domain.errors import (
    DependencyError,
    NotFoundError,
    ReassignmentError,
    StateError,
    ValidationError,
)
from reassignment.domain.models import (
    AuditEntry,
    EquivalenceType,
    EscalationAction,
    HistoryDecision,
    HistoryRecord,
    NextAction,
    ReassignmentReason,
    ReassignmentRequest,
    ReassignmentStatus,
    Reservation,
    ResourceDescriptor,
    ScoreBreakdown,
    UserPriority,
    UserResponse,
    UserStanding,
)
from reassignment.domain.policy import PolicyConfiguration
from reassignment.services.history_service import HistoryService
from reassignment.services.notification_service import NotificationService
from reassignment.services.policy_service import PolicyService
from reassignment.services.similarity_service import (
    SimilarityScoringService,
    filter_by_minimum_score,
    top_n,
)
from reassignment.utils.config import Settings, get_settings
from reassignment.utils.logger import get_logger


logger = get_logger(__name__)

SYSTEM_ACTOR = "system"
RECENT_REJECTION_WINDOW_DAYS = 7
RECENT_REJECTION_WARNING_COUNT = 3
RECENT_EMERGENCY_WINDOW_DAYS = 30
RECENT_EMERGENCY_WARNING_COUNT = 2


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Suggestion:
    resource_id: int
    resource_name: str
    score: float
    breakdown: ScoreBreakdown
    equivalence: EquivalenceType
    pros: tuple[str, ...] = ()
    cons: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReassignmentCreation:
    request: ReassignmentRequest
    suggestions: list[Suggestion]
    warnings: list[str]


@dataclass(frozen=True)
class RequestValidation:
    is_valid: bool
    violations: list[str]
    warnings: list[str]


@dataclass(frozen=True)
class ResponseOutcome:
    request: ReassignmentRequest
    next_action: NextAction
    alternative: Optional[ReassignmentCreation] = None

    @property
    def penalty_required(self) -> bool:
        return self.next_action is NextAction.APPLY_PENALTY


@dataclass(frozen=True)
class ExpirationOutcome:
    request: ReassignmentRequest
    escalation_action: EscalationAction
    changed: bool
    details: str


@dataclass(frozen=True)
class AutoApprovalOutcome:
    request: ReassignmentRequest
    auto_approved: bool
    selected_resource_id: Optional[int]
    reason: str
    notifications_sent: int = 0


@dataclass(frozen=True)
class PenaltyOutcome:
    user_id: str
    program_id: str
    penalty_applied: bool
    already_applied: bool
    points: int
    total_points: int
    priority: UserPriority
    restrictions: list[str] = field(default_factory=list)
    suppressed_until: Optional[datetime] = None


class ReassignmentWorkflowService:
    """Drives the reassignment request lifecycle against injected collaborators."""

    def __init__(
        self,
        directory: ResourceDirectory,
        reservations: ReservationStore,
        requests: RequestStore,
        standings: StandingStore,
        policy_service: PolicyService,
        history_service: HistoryService,
        notification_service: NotificationService,
        scoring_service: Optional[SimilarityScoringService] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._directory = directory
        self._reservations = reservations
        self._requests = requests
        self._standings = standings
        self._policies = policy_service
        self._history = history_service
        self._notifications = notification_service
        self._scoring = scoring_service or SimilarityScoringService()
        self._clock = clock or utc_now

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def get_request(self, request_id: str) -> ReassignmentRequest:
        request = self._requests.get_request(request_id)
        if request is None:
            raise NotFoundError("ReassignmentRequest", request_id)
        return request

    def _get_reservation(self, reservation_id: int) -> Reservation:
        reservation = self._reservations.get_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation", reservation_id)
        return reservation

    def _get_resource(self, resource_id: int) -> ResourceDescriptor:
        resource = self._directory.get_resource(resource_id)
        if resource is None:
            raise NotFoundError("Resource", resource_id)
        return resource

    def _resource_name(self, resource_id: Optional[int]) -> Optional[str]:
        if resource_id is None:
            return None
        resource = self._directory.get_resource(resource_id)
        return resource.name if resource is not None else None

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    def validate_reassignment_request(
        self,
        reservation_id: int,
        requested_by: str,
        reason: ReassignmentReason,
    ) -> RequestValidation:
        """Pre-flight checks a caller can run before creating a request."""
        self._get_reservation(reservation_id)
        now = self._clock()
        violations: list[str] = []
        warnings: list[str] = []

        existing = self._requests.find_requests_by_reservation(reservation_id)
        if any(item.is_pending for item in existing):
            violations.append("A pending reassignment request already exists for this reservation")

        recent = self._requests.find_requests_by_requester(
            requested_by, since=now - timedelta(days=RECENT_REJECTION_WINDOW_DAYS)
        )
        recent_rejections = sum(
            1 for item in recent if item.user_response is UserResponse.REJECTED
        )
        if recent_rejections >= RECENT_REJECTION_WARNING_COUNT:
            warnings.append(
                f"User has rejected {recent_rejections} reassignments in the last "
                f"{RECENT_REJECTION_WINDOW_DAYS} days"
            )

        if reason is ReassignmentReason.EMERGENCY:
            emergencies = self._requests.find_requests_by_requester(
                requested_by, since=now - timedelta(days=RECENT_EMERGENCY_WINDOW_DAYS)
            )
            emergency_count = sum(
                1 for item in emergencies if item.reason is ReassignmentReason.EMERGENCY
            )
            if emergency_count >= RECENT_EMERGENCY_WARNING_COUNT:
                warnings.append(
                    f"Multiple emergency reassignments ({emergency_count}) in the last "
                    f"{RECENT_EMERGENCY_WINDOW_DAYS} days"
                )

        return RequestValidation(is_valid=not violations, violations=violations, warnings=warnings)

    def create_reassignment_request(
        self,
        reservation_id: int,
        requested_by: str,
        reason: ReassignmentReason,
        program_id: str,
        priority: UserPriority,
        is_urgent: bool,
        custom_reason: Optional[str] = None,
        capacity_tolerance_percent: Optional[float] = None,
        required_features: Iterable[str] = (),
        preferred_features: Iterable[str] = (),
        excluded_resource_ids: Iterable[int] = (),
    ) -> ReassignmentCreation:
        reservation = self._get_reservation(reservation_id)
        original = self._get_resource(reservation.resource_id)
        return self._open_request(
            reservation=reservation,
            original=original,
            requested_by=requested_by,
            reason=reason,
            program_id=program_id,
            priority=priority,
            is_urgent=is_urgent,
            custom_reason=custom_reason,
            capacity_tolerance_percent=capacity_tolerance_percent,
            required_features=frozenset(required_features),
            preferred_features=frozenset(preferred_features),
            excluded_resource_ids=tuple(excluded_resource_ids),
        )

    def _open_request(
        self,
        *,
        reservation: Reservation,
        original: ResourceDescriptor,
        requested_by: str,
        reason: ReassignmentReason,
        program_id: str,
        priority: UserPriority,
        is_urgent: bool,
        custom_reason: Optional[str],
        capacity_tolerance_percent: Optional[float],
        required_features: frozenset[str],
        preferred_features: frozenset[str],
        excluded_resource_ids: tuple[int, ...],
        rejection_count: int = 0,
        parent_request_id: Optional[str] = None,
    ) -> ReassignmentCreation:
        policy = self._policies.get_effective_policy(program_id)
        now = self._clock()
        tolerance = (
            policy.default_capacity_tolerance
            if capacity_tolerance_percent is None
            else capacity_tolerance_percent
        )
        standing = self._standings.get_standing(requested_by, program_id)
        effective_priority = priority
        if standing is not None and standing.priority.weight < priority.weight:
            effective_priority = standing.priority

        draft = ReassignmentRequest(
            request_id=uuid4().hex,
            original_reservation_id=reservation.reservation_id,
            original_resource_id=original.resource_id,
            program_id=program_id,
            requested_by=requested_by,
            reason=reason,
            custom_reason=custom_reason,
            priority=effective_priority,
            is_urgent=is_urgent,
            response_deadline=now + timedelta(hours=policy.response_time_hours(is_urgent)),
            created_at=now,
            updated_at=now,
            excluded_resource_ids=excluded_resource_ids,
            rejection_count=rejection_count,
            capacity_tolerance_percent=float(tolerance),
            required_features=required_features,
            preferred_features=preferred_features,
            parent_request_id=parent_request_id,
        )
        errors = draft.validate()
        if errors:
            raise ValidationError(errors, subject="Reassignment request")

        warnings: list[str] = []
        suppressed = (
            standing is not None
            and standing.suppressed_until is not None
            and standing.suppressed_until > now
        )
        if suppressed:
            suggestions: list[Suggestion] = []
            considered: list[int] = []
            warnings.append(
                "Automatic suggestions are suppressed for this user until "
                f"{standing.suppressed_until.isoformat()}"
            )
        else:
            suggestions, considered = self._suggest(draft, reservation, original, policy)

        if not suggestions:
            if is_urgent:
                warnings.append("No equivalent resources found for urgent reassignment")
            warnings.append("No equivalent resources available - manual intervention may be required")
        elif len(suggestions) == 1:
            warnings.append("Limited options available for reassignment")

        top = suggestions[0] if suggestions else None
        request = replace(
            draft,
            suggested_resource_id=top.resource_id if top else None,
            suggested_score=top.score if top else None,
            alternative_resource_ids=tuple(item.resource_id for item in suggestions[1:]),
            audit_trail=(
                AuditEntry(
                    at=now,
                    action="create",
                    actor=requested_by,
                    from_status=None,
                    to_status=ReassignmentStatus.PENDING,
                    note=draft.reason_description,
                ),
            ),
        )
        stored = self._requests.create_request(request)

        try:
            notified = self._notify_requester(
                policy,
                stored,
                self._creation_message(stored, top),
            )
            self._history.record(
                self._history_record(
                    stored,
                    HistoryDecision.SUGGESTED,
                    original_name=original.name,
                    new_resource_id=top.resource_id if top else None,
                    new_resource_name=top.resource_name if top else None,
                    similarity_score=top.score if top else None,
                    score_breakdown=top.breakdown if top else None,
                    alternatives_considered=tuple(considered),
                    notified_at=now if notified else None,
                )
            )
        except DependencyError:
            self._withdraw(stored)
            raise
        logger.info(
            "Reassignment request created | request_id=%s | reservation_id=%s | "
            "suggestions=%s | top_score=%s | urgent=%s",
            stored.request_id,
            stored.original_reservation_id,
            len(suggestions),
            stored.suggested_score,
            stored.is_urgent,
        )
        return ReassignmentCreation(request=stored, suggestions=suggestions, warnings=warnings)

    def _suggest(
        self,
        request: ReassignmentRequest,
        reservation: Reservation,
        original: ResourceDescriptor,
        policy: PolicyConfiguration,
    ) -> tuple[list[Suggestion], list[int]]:
        candidates = self._directory.get_candidates(
            original.resource_type,
            original.resource_id,
            self._settings.candidate_limit,
        )
        eligible = [
            candidate
            for candidate in candidates
            if self._is_eligible(candidate, request, original)
        ]
        availability = self._check_availability(
            eligible, reservation.start_time, reservation.end_time
        )
        results = self._scoring.score(
            original,
            eligible,
            policy.weights,
            availability,
            exact_match_threshold=policy.exact_match_min_score,
        )
        if policy.prioritize_by_availability:
            results = [item for item in results if availability.get(item.resource_id, False)]
        viable = top_n(
            filter_by_minimum_score(results, policy.minimum_similarity_score),
            policy.max_suggestions,
        )

        by_id = {candidate.resource_id: candidate for candidate in eligible}
        suggestions: list[Suggestion] = []
        for result in viable:
            candidate = by_id[result.resource_id]
            pros = list(result.pros)
            matched_preferences = sorted(request.preferred_features & candidate.features)
            if matched_preferences:
                pros.append("Has preferred features: " + ", ".join(matched_preferences))
            suggestions.append(
                Suggestion(
                    resource_id=result.resource_id,
                    resource_name=candidate.name,
                    score=result.score,
                    breakdown=result.breakdown,
                    equivalence=policy.classify(result.score),
                    pros=tuple(pros),
                    cons=result.cons,
                )
            )
        return suggestions, [candidate.resource_id for candidate in eligible]

    @staticmethod
    def _is_eligible(
        candidate: ResourceDescriptor,
        request: ReassignmentRequest,
        original: ResourceDescriptor,
    ) -> bool:
        if candidate.resource_id == original.resource_id:
            return False
        if candidate.resource_id in request.excluded_resource_ids:
            return False
        if not request.required_features <= candidate.features:
            return False
        if original.capacity is not None and candidate.capacity is not None:
            minimum = original.capacity * (1.0 - request.capacity_tolerance_percent / 100.0)
            if candidate.capacity < minimum:
                return False
        return True

    def _check_availability(
        self,
        candidates: Sequence[ResourceDescriptor],
        start: datetime,
        end: datetime,
    ) -> dict[int, bool]:
        """Query availability concurrently; any failure or timeout counts as unavailable."""
        if not candidates:
            return {}
        workers = max(1, min(self._settings.availability_check_workers, len(candidates)))
        timeout = self._settings.availability_check_timeout_seconds
        availability: dict[int, bool] = {}
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="availability")
        try:
            futures = {
                candidate.resource_id: pool.submit(
                    self._directory.check_availability, candidate.resource_id, start, end
                )
                for candidate in candidates
            }
            for resource_id, future in futures.items():
                try:
                    availability[resource_id] = bool(future.result(timeout=timeout))
                except FutureTimeoutError:
                    logger.warning(
                        "Availability check timed out | resource_id=%s | timeout_seconds=%s",
                        resource_id,
                        timeout,
                    )
                    availability[resource_id] = False
                except DependencyError as exc:
                    logger.warning(
                        "Availability check failed | resource_id=%s | error=%s",
                        resource_id,
                        exc,
                    )
                    availability[resource_id] = False
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return availability

    # ------------------------------------------------------------------
    # user response
    # ------------------------------------------------------------------

    def process_user_response(
        self,
        request_id: str,
        response: UserResponse,
        selected_resource_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> ResponseOutcome:
        if response not in (UserResponse.ACCEPTED, UserResponse.REJECTED):
            raise ValidationError(
                ["response must be ACCEPTED or REJECTED"], subject="User response"
            )
        request = self.get_request(request_id)
        if (
            request.pending_action in ("accept", "reject", "escalate")
            and not request.was_expired
            and request.user_response is response
        ):
            # Same response retried after its follow-up work failed.
            settled, outcome = self._resume(request)
            return replace(outcome, request=settled)
        request, _ = self._resume(request)
        if not request.is_pending:
            raise StateError(f"{response.value.lower()} response", request.status.value)
        now = self._clock()
        if request.is_past_deadline(now):
            raise StateError(
                f"{response.value.lower()} response",
                request.status.value,
                "response deadline has passed",
            )

        if response is UserResponse.ACCEPTED:
            return self._accept(request, selected_resource_id, notes, now)
        return self._reject(request, notes, now)

    def _accept(
        self,
        request: ReassignmentRequest,
        selected_resource_id: Optional[int],
        notes: Optional[str],
        now: datetime,
    ) -> ResponseOutcome:
        chosen = selected_resource_id if selected_resource_id is not None else request.suggested_resource_id
        if chosen is None:
            raise ValidationError(
                ["selected_resource_id is required when the request has no suggestion"],
                subject="User response",
            )
        if chosen == request.original_resource_id:
            raise ValidationError(
                ["selected resource must differ from the original resource"],
                subject="User response",
            )
        self._get_resource(chosen)
        overridden = chosen != request.suggested_resource_id

        updated = request.transitioned(
            ReassignmentStatus.ACCEPTED,
            at=now,
            actor=request.requested_by,
            action="accept",
            note=EquivalenceType.MANUAL_OVERRIDE.value if overridden else notes,
            user_response=UserResponse.ACCEPTED,
            suggested_resource_id=chosen,
            suggested_score=None if overridden else request.suggested_score,
            response_notes=notes,
            responded_at=now,
            effects_pending=True,
        )
        stored = self._commit(request, updated, "accept response")
        settled, outcome = self._settle(stored, self._accept_effects)
        logger.info(
            "Reassignment accepted | request_id=%s | resource_id=%s | override=%s",
            settled.request_id,
            chosen,
            overridden,
        )
        return replace(outcome, request=settled)

    def _accept_effects(self, stored: ReassignmentRequest) -> ResponseOutcome:
        chosen = stored.suggested_resource_id
        chosen_name = self._resource_name(chosen)
        policy = self._policies.get_effective_policy(stored.program_id)
        notified = self._notify_requester(
            policy,
            stored,
            f"You accepted {chosen_name or chosen} for reservation "
            f"{stored.original_reservation_id}.",
        )
        self._history.record(
            self._history_record(
                stored,
                HistoryDecision.ACCEPTED,
                new_resource_id=chosen,
                new_resource_name=chosen_name,
                similarity_score=stored.suggested_score,
                alternatives_considered=stored.alternative_resource_ids,
                accepted=True,
                feedback=stored.response_notes,
                notified_at=self._clock() if notified else None,
                responded_at=stored.responded_at,
            )
        )
        return ResponseOutcome(request=stored, next_action=NextAction.COMPLETE)

    def _reject(
        self,
        request: ReassignmentRequest,
        notes: Optional[str],
        now: datetime,
    ) -> ResponseOutcome:
        policy = self._policies.get_effective_policy(request.program_id)
        rejection_count = request.rejection_count + 1
        next_action = self._decide_after_rejection(policy, rejection_count)

        updated = request.transitioned(
            ReassignmentStatus.REJECTED,
            at=now,
            actor=request.requested_by,
            action="reject",
            note=notes,
            user_response=UserResponse.REJECTED,
            rejection_count=rejection_count,
            response_notes=notes,
            responded_at=now,
            effects_pending=True,
        )
        if next_action is NextAction.ESCALATE:
            updated = updated.transitioned(
                ReassignmentStatus.ESCALATED,
                at=now,
                actor=SYSTEM_ACTOR,
                action="escalate",
                note=f"rejected {rejection_count} times",
                escalation_action=EscalationAction.NOTIFY_SUPERVISOR,
            )
        stored = self._commit(request, updated, "reject response")
        settled, outcome = self._settle(stored, self._reject_effects)
        logger.info(
            "Reassignment rejected | request_id=%s | rejection_count=%s | next_action=%s",
            settled.request_id,
            rejection_count,
            outcome.next_action.value,
        )
        return replace(outcome, request=settled)

    def _reject_effects(self, stored: ReassignmentRequest) -> ResponseOutcome:
        policy = self._policies.get_effective_policy(stored.program_id)
        if stored.status is ReassignmentStatus.ESCALATED:
            next_action = NextAction.ESCALATE
        else:
            next_action = self._decide_after_rejection(policy, stored.rejection_count)

        self._history.record(
            self._history_record(
                stored,
                HistoryDecision.REJECTED,
                new_resource_id=stored.suggested_resource_id,
                new_resource_name=self._resource_name(stored.suggested_resource_id),
                similarity_score=stored.suggested_score,
                alternatives_considered=stored.alternative_resource_ids,
                accepted=False,
                feedback=stored.response_notes,
                responded_at=stored.responded_at,
            )
        )

        alternative: Optional[ReassignmentCreation] = None
        if next_action is NextAction.FIND_ALTERNATIVES:
            if self._find_sibling(stored) is None:
                alternative = self._open_sibling(stored)
        elif next_action is NextAction.ESCALATE:
            self._history.record(
                self._history_record(
                    stored,
                    HistoryDecision.ESCALATED,
                    feedback=EscalationAction.NOTIFY_SUPERVISOR.value,
                )
            )
            self._notify_supervisor(
                policy,
                stored,
                f"Reassignment request {stored.request_id} for reservation "
                f"{stored.original_reservation_id} was rejected {stored.rejection_count} times "
                "and needs manual handling.",
            )
        elif next_action is NextAction.APPLY_PENALTY:
            logger.info(
                "Penalty required | user_id=%s | program_id=%s | rejection_count=%s",
                stored.requested_by,
                stored.program_id,
                stored.rejection_count,
            )
        return ResponseOutcome(request=stored, next_action=next_action, alternative=alternative)

    def _find_sibling(self, rejected: ReassignmentRequest) -> Optional[ReassignmentRequest]:
        """Follow-up request already opened for ``rejected``; withdrawn ones do not count."""
        for item in self._requests.find_requests_by_reservation(rejected.original_reservation_id):
            if item.parent_request_id != rejected.request_id:
                continue
            if item.audit_trail and item.audit_trail[-1].action == "withdraw":
                continue
            return item
        return None

    @staticmethod
    def _decide_after_rejection(policy: PolicyConfiguration, rejection_count: int) -> NextAction:
        if policy.should_apply_penalty_for_rejection(rejection_count):
            return NextAction.APPLY_PENALTY
        if rejection_count == 1:
            return NextAction.FIND_ALTERNATIVES
        return NextAction.ESCALATE

    def _open_sibling(self, rejected: ReassignmentRequest) -> ReassignmentCreation:
        """Open a follow-up request that carries the rejection count and skips rejected resources."""
        excluded = list(rejected.excluded_resource_ids)
        if rejected.suggested_resource_id is not None:
            excluded.append(rejected.suggested_resource_id)
        reservation = self._get_reservation(rejected.original_reservation_id)
        original = self._get_resource(rejected.original_resource_id)
        return self._open_request(
            reservation=reservation,
            original=original,
            requested_by=rejected.requested_by,
            reason=rejected.reason,
            program_id=rejected.program_id,
            priority=rejected.priority,
            is_urgent=rejected.is_urgent,
            custom_reason=rejected.custom_reason,
            capacity_tolerance_percent=rejected.capacity_tolerance_percent,
            required_features=rejected.required_features,
            preferred_features=rejected.preferred_features,
            excluded_resource_ids=tuple(dict.fromkeys(excluded)),
            rejection_count=rejected.rejection_count,
            parent_request_id=rejected.request_id,
        )

    # ------------------------------------------------------------------
    # completion and cancellation
    # ------------------------------------------------------------------

    def complete_reassignment(self, request_id: str) -> ReassignmentRequest:
        """Move an accepted request to COMPLETE and the reservation to the chosen resource."""
        request = self.get_request(request_id)
        if request.pending_action == "complete":
            settled, _ = self._resume(request)
            return settled
        request, _ = self._resume(request)
        if request.status is not ReassignmentStatus.ACCEPTED:
            raise StateError("complete", request.status.value)
        now = self._clock()
        updated = request.transitioned(
            ReassignmentStatus.COMPLETE,
            at=now,
            actor=SYSTEM_ACTOR,
            action="complete",
            effects_pending=True,
        )
        stored = self._commit(request, updated, "complete")
        settled, _ = self._settle(stored, self._complete_effects)
        logger.info(
            "Reassignment completed | request_id=%s | resource_id=%s",
            settled.request_id,
            settled.suggested_resource_id,
        )
        return settled

    def _complete_effects(self, stored: ReassignmentRequest) -> None:
        self._move_reservation(stored)
        policy = self._policies.get_effective_policy(stored.program_id)
        self._notify_requester(
            policy,
            stored,
            f"Reservation {stored.original_reservation_id} now uses resource "
            f"{stored.suggested_resource_id}.",
        )

    def cancel_request(
        self,
        request_id: str,
        cancelled_by: str,
        reason: Optional[str] = None,
    ) -> ReassignmentRequest:
        request = self.get_request(request_id)
        if request.pending_action == "cancel":
            settled, _ = self._resume(request)
            return settled
        request, _ = self._resume(request)
        if request.is_terminal:
            raise StateError("cancel", request.status.value)
        now = self._clock()
        updated = request.transitioned(
            ReassignmentStatus.CANCELLED,
            at=now,
            actor=cancelled_by,
            action="cancel",
            note=reason,
            effects_pending=True,
        )
        stored = self._commit(request, updated, "cancel")
        settled, _ = self._settle(stored, self._cancel_effects)
        logger.info(
            "Reassignment cancelled | request_id=%s | cancelled_by=%s",
            settled.request_id,
            cancelled_by,
        )
        return settled

    def _cancel_effects(self, stored: ReassignmentRequest) -> None:
        self._history.record(
            self._history_record(
                stored,
                HistoryDecision.CANCELLED,
                new_resource_id=stored.suggested_resource_id,
                new_resource_name=self._resource_name(stored.suggested_resource_id),
                similarity_score=stored.suggested_score,
                feedback=stored.audit_trail[-1].note,
            )
        )

    # ------------------------------------------------------------------
    # expiration and auto-approval
    # ------------------------------------------------------------------

    def handle_request_expiration(self, request_id: str) -> ExpirationOutcome:
        """Resolve a request whose response deadline has passed.

        Repeated calls return the stored decision without changing anything,
        except that follow-up work left unfinished by an earlier call is
        completed first.
        """
        request = self.get_request(request_id)
        if self._expiration_pending(request):
            settled, outcome = self._resume(request)
            return replace(
                outcome, request=settled, details="completed pending expiration effects"
            )
        request, _ = self._resume(request)
        if request.was_expired and request.escalation_action is not None:
            return ExpirationOutcome(
                request=request,
                escalation_action=request.escalation_action,
                changed=False,
                details="expiration already handled",
            )
        if not request.is_pending:
            return ExpirationOutcome(
                request=request,
                escalation_action=EscalationAction.NONE,
                changed=False,
                details=f"request is {request.status.value}; nothing to expire",
            )

        now = self._clock()
        if not request.is_past_deadline(now):
            raise StateError("expire", request.status.value, "response deadline has not passed")

        policy = self._policies.get_effective_policy(request.program_id)
        expired = request.transitioned(
            ReassignmentStatus.EXPIRED,
            at=now,
            actor=SYSTEM_ACTOR,
            action="expire",
            effects_pending=True,
        )
        action = self._decide_escalation(policy, request)
        if action is EscalationAction.AUTO_ASSIGN:
            final = expired.transitioned(
                ReassignmentStatus.COMPLETE,
                at=now,
                actor=SYSTEM_ACTOR,
                action="auto_assign",
                user_response=UserResponse.AUTO_ACCEPTED,
                escalation_action=action,
            )
        elif action is EscalationAction.NOTIFY_SUPERVISOR:
            final = expired.transitioned(
                ReassignmentStatus.ESCALATED,
                at=now,
                actor=SYSTEM_ACTOR,
                action="escalate",
                escalation_action=action,
            )
        elif action is EscalationAction.CANCEL_RESERVATION:
            final = expired.transitioned(
                ReassignmentStatus.CANCELLED,
                at=now,
                actor=SYSTEM_ACTOR,
                action="cancel_reservation",
                escalation_action=action,
            )
        else:
            final = replace(expired, escalation_action=action)

        stored = self._commit(request, final, "expire")
        settled, outcome = self._settle(stored, self._expire_effects)
        logger.info(
            "Reassignment expired | request_id=%s | escalation_action=%s",
            settled.request_id,
            action.value,
        )
        return replace(outcome, request=settled)

    @staticmethod
    def _expiration_pending(request: ReassignmentRequest) -> bool:
        action = request.pending_action
        if action == "escalate":
            return request.was_expired
        return action in ("expire", "auto_assign", "cancel_reservation")

    def _expire_effects(self, stored: ReassignmentRequest) -> ExpirationOutcome:
        """Reservation changes, then history, then notifications."""
        policy = self._policies.get_effective_policy(stored.program_id)
        action = stored.escalation_action or EscalationAction.NONE
        if action is EscalationAction.AUTO_ASSIGN:
            self._move_reservation(stored)
        elif action is EscalationAction.CANCEL_RESERVATION:
            self._reservations.cancel_reservation(
                stored.original_reservation_id,
                "Reassignment expired without an available alternative",
            )

        self._history.record(
            self._history_record(
                stored,
                (
                    HistoryDecision.ESCALATED
                    if action is EscalationAction.NOTIFY_SUPERVISOR
                    else HistoryDecision.EXPIRED
                ),
                new_resource_id=stored.suggested_resource_id,
                new_resource_name=self._resource_name(stored.suggested_resource_id),
                similarity_score=stored.suggested_score,
                alternatives_considered=stored.alternative_resource_ids,
                accepted=True if action is EscalationAction.AUTO_ASSIGN else None,
                feedback=action.value,
            )
        )

        if action is EscalationAction.AUTO_ASSIGN:
            self._notify_requester(
                policy,
                stored,
                f"No response was received; reservation {stored.original_reservation_id} "
                f"was moved to resource {stored.suggested_resource_id}.",
            )
            details = f"assigned resource {stored.suggested_resource_id}"
        elif action is EscalationAction.NOTIFY_SUPERVISOR:
            self._notify_supervisor(
                policy,
                stored,
                f"Reassignment request {stored.request_id} for reservation "
                f"{stored.original_reservation_id} expired without a response.",
            )
            details = "supervisor notified"
        elif action is EscalationAction.CANCEL_RESERVATION:
            self._notify_requester(
                policy,
                stored,
                f"Reservation {stored.original_reservation_id} was cancelled because no "
                "alternative could be confirmed in time.",
            )
            details = f"reservation {stored.original_reservation_id} cancelled"
        else:
            details = "no escalation configured"
        return ExpirationOutcome(
            request=stored,
            escalation_action=action,
            changed=True,
            details=details,
        )

    @staticmethod
    def _decide_escalation(
        policy: PolicyConfiguration,
        request: ReassignmentRequest,
    ) -> EscalationAction:
        if request.is_urgent and request.suggested_resource_id is not None:
            return EscalationAction.AUTO_ASSIGN
        if policy.escalate_to_supervisor:
            return EscalationAction.NOTIFY_SUPERVISOR
        if request.is_urgent:
            return EscalationAction.CANCEL_RESERVATION
        return EscalationAction.NONE

    def sweep_expired_requests(self) -> list[ExpirationOutcome]:
        """Expire every overdue PENDING request; lost races are logged and skipped."""
        outcomes: list[ExpirationOutcome] = []
        for request in self._requests.find_overdue_pending(self._clock()):
            try:
                outcomes.append(self.handle_request_expiration(request.request_id))
            except StateError as exc:
                logger.info(
                    "Expiration skipped | request_id=%s | reason=%s",
                    request.request_id,
                    exc,
                )
        return outcomes

    def process_automatic_reassignment(
        self,
        request_id: str,
        hours_until_event: float,
    ) -> AutoApprovalOutcome:
        request = self.get_request(request_id)
        if request.pending_action == "auto_approve":
            settled, outcome = self._resume(request)
            return replace(outcome, request=settled)
        request, _ = self._resume(request)
        if not request.is_pending:
            raise StateError("auto-approve", request.status.value)
        if request.suggested_resource_id is None:
            return AutoApprovalOutcome(
                request=request,
                auto_approved=False,
                selected_resource_id=None,
                reason="request has no suggested resource",
            )

        policy = self._policies.get_effective_policy(request.program_id)
        equivalence = policy.classify(request.suggested_score or 0.0)
        if not policy.should_auto_approve(hours_until_event, equivalence.is_equivalent):
            return AutoApprovalOutcome(
                request=request,
                auto_approved=False,
                selected_resource_id=request.suggested_resource_id,
                reason=self._auto_approval_refusal(policy, hours_until_event, equivalence),
            )

        now = self._clock()
        updated = request.transitioned(
            ReassignmentStatus.ACCEPTED,
            at=now,
            actor=SYSTEM_ACTOR,
            action="auto_approve",
            note=equivalence.value,
            user_response=UserResponse.AUTO_ACCEPTED,
            responded_at=now,
            effects_pending=True,
        )
        stored = self._commit(request, updated, "auto-approve")
        settled, outcome = self._settle(stored, self._auto_approve_effects)
        logger.info(
            "Reassignment auto-approved | request_id=%s | resource_id=%s | equivalence=%s",
            settled.request_id,
            settled.suggested_resource_id,
            equivalence.value,
        )
        return replace(outcome, request=settled)

    def _auto_approve_effects(self, stored: ReassignmentRequest) -> AutoApprovalOutcome:
        policy = self._policies.get_effective_policy(stored.program_id)
        channels = policy.enabled_notification_channels()
        notified = self._notify_requester(
            policy,
            stored,
            f"Reservation {stored.original_reservation_id} was automatically reassigned "
            f"to resource {stored.suggested_resource_id}.",
        )
        self._history.record(
            self._history_record(
                stored,
                HistoryDecision.AUTO_APPROVED,
                new_resource_id=stored.suggested_resource_id,
                new_resource_name=self._resource_name(stored.suggested_resource_id),
                similarity_score=stored.suggested_score,
                alternatives_considered=stored.alternative_resource_ids,
                accepted=True,
                notified_at=self._clock() if notified else None,
                responded_at=stored.responded_at,
            )
        )
        return AutoApprovalOutcome(
            request=stored,
            auto_approved=True,
            selected_resource_id=stored.suggested_resource_id,
            reason=f"auto-approved as {stored.audit_trail[-1].note}",
            notifications_sent=len(channels) if notified else 0,
        )

    @staticmethod
    def _auto_approval_refusal(
        policy: PolicyConfiguration,
        hours_until_event: float,
        equivalence: EquivalenceType,
    ) -> str:
        if not policy.auto_approval_enabled:
            return "auto-approval is disabled for this program"
        if hours_until_event < 0 or hours_until_event > policy.auto_approval_threshold_hours:
            return (
                f"event is {hours_until_event:g}h away; threshold is "
                f"{policy.auto_approval_threshold_hours:g}h"
            )
        return f"suggestion is {equivalence.value}, not an equivalent resource"

    # ------------------------------------------------------------------
    # penalties
    # ------------------------------------------------------------------

    def apply_rejection_penalty(
        self,
        user_id: str,
        program_id: str,
        rejection_count: int,
    ) -> PenaltyOutcome:
        """Apply the policy penalty once per (user, program, rejection_count)."""
        if rejection_count < 0:
            raise ValidationError(["rejection_count must be >= 0"], subject="Penalty")
        policy = self._policies.get_effective_policy(program_id)
        current = self._standings.get_standing(user_id, program_id) or self._initial_standing(
            user_id, program_id
        )

        if not policy.should_apply_penalty_for_rejection(rejection_count):
            return PenaltyOutcome(
                user_id=user_id,
                program_id=program_id,
                penalty_applied=False,
                already_applied=False,
                points=0,
                total_points=current.penalty_points,
                priority=current.priority,
                suppressed_until=current.suppressed_until,
            )

        now = self._clock()
        points = policy.rejection_penalty_points

        previous: list[UserPriority] = []

        def fold(stored: Optional[UserStanding]) -> UserStanding:
            base = stored or current
            previous.append(base.priority)
            total = base.penalty_points + points
            suppressed = base.suppressed_until
            if total >= self._settings.penalty_suppression_points_threshold:
                suppressed = now + timedelta(days=self._settings.penalty_suppression_days)
            return UserStanding(
                user_id=user_id,
                program_id=program_id,
                priority=base.priority.downgraded(),
                penalty_points=total,
                suppressed_until=suppressed,
                updated_at=now,
            )

        updated = self._standings.record_penalty(
            user_id, program_id, rejection_count, points, now, fold
        )
        if updated is None:
            latest = self._standings.get_standing(user_id, program_id) or current
            logger.info(
                "Penalty already applied | user_id=%s | program_id=%s | rejection_count=%s",
                user_id,
                program_id,
                rejection_count,
            )
            return PenaltyOutcome(
                user_id=user_id,
                program_id=program_id,
                penalty_applied=False,
                already_applied=True,
                points=0,
                total_points=latest.penalty_points,
                priority=latest.priority,
                suppressed_until=latest.suppressed_until,
            )

        total_points = updated.penalty_points
        suppressed_until = updated.suppressed_until
        restrictions = []
        if previous and updated.priority is not previous[-1]:
            restrictions.append(f"priority lowered to {updated.priority.value}")
        if suppressed_until is not None and suppressed_until > now:
            restrictions.append(
                f"automatic suggestions suppressed until {suppressed_until.isoformat()}"
            )

        latest_request = self._latest_request(user_id, program_id)
        if latest_request is not None:
            self._history.record(
                self._history_record(
                    latest_request,
                    HistoryDecision.PENALIZED,
                    feedback=f"{points} points; total {total_points}",
                    record_id=uuid4().hex,
                )
            )
        self._notifications.send(
            user_id,
            f"A penalty of {points} points was applied after {rejection_count} rejections.",
            policy.enabled_notification_channels(),
        )
        logger.info(
            "Penalty applied | user_id=%s | program_id=%s | points=%s | total=%s | priority=%s",
            user_id,
            program_id,
            points,
            total_points,
            updated.priority.value,
        )
        return PenaltyOutcome(
            user_id=user_id,
            program_id=program_id,
            penalty_applied=True,
            already_applied=False,
            points=points,
            total_points=total_points,
            priority=updated.priority,
            restrictions=restrictions,
            suppressed_until=suppressed_until,
        )

    def _latest_request(self, user_id: str, program_id: str) -> Optional[ReassignmentRequest]:
        requests = [
            item
            for item in self._requests.find_requests_by_requester(user_id)
            if item.program_id == program_id
        ]
        return requests[-1] if requests else None

    def _initial_standing(self, user_id: str, program_id: str) -> UserStanding:
        latest = self._latest_request(user_id, program_id)
        priority = (
            latest.priority
            if latest is not None
            else UserPriority(self._settings.default_user_priority)
        )
        return UserStanding(user_id=user_id, program_id=program_id, priority=priority)

    # ------------------------------------------------------------------
    # shared helpers
    # ------------------------------------------------------------------

    def _commit(
        self,
        current: ReassignmentRequest,
        updated: ReassignmentRequest,
        attempted: str,
    ) -> ReassignmentRequest:
        candidate = replace(updated, version=current.version + 1)
        if not self._requests.compare_and_swap(candidate, expected_version=current.version):
            latest = self._requests.get_request(current.request_id)
            state = latest.status.value if latest is not None else "MISSING"
            raise StateError(attempted, state, "request was modified concurrently")
        return candidate

    def _settle(
        self,
        stored: ReassignmentRequest,
        effects: Callable[[ReassignmentRequest], Any],
    ) -> tuple[ReassignmentRequest, Any]:
        """Run the follow-up work of a committed transition, then clear its pending flag.

        ``effects`` must be safe to run again: when it raises, the flag stays
        set and the next operation on the request runs it once more.
        """
        result = effects(stored)
        settled = replace(stored, effects_pending=False, version=stored.version + 1)
        if self._requests.compare_and_swap(settled, expected_version=stored.version):
            return settled, result
        latest = self._requests.get_request(stored.request_id)
        return (latest or stored), result

    def _resume(self, request: ReassignmentRequest) -> tuple[ReassignmentRequest, Any]:
        if not request.effects_pending:
            return request, None
        logger.info(
            "Resuming unfinished follow-up work | request_id=%s | action=%s",
            request.request_id,
            request.pending_action,
        )
        return self._settle(request, self._effects_for(request))

    def _effects_for(self, request: ReassignmentRequest) -> Callable[[ReassignmentRequest], Any]:
        action = request.pending_action
        if action == "escalate":
            return self._expire_effects if request.was_expired else self._reject_effects
        handlers: dict[str, Callable[[ReassignmentRequest], Any]] = {
            "accept": self._accept_effects,
            "reject": self._reject_effects,
            "complete": self._complete_effects,
            "cancel": self._cancel_effects,
            "expire": self._expire_effects,
            "auto_assign": self._expire_effects,
            "cancel_reservation": self._expire_effects,
            "auto_approve": self._auto_approve_effects,
        }
        if action not in handlers:
            raise StateError("resume", request.status.value, f"no follow-up work for {action}")
        return handlers[action]

    def _withdraw(self, request: ReassignmentRequest) -> None:
        """Cancel a freshly created request whose creation could not be fully recorded."""
        withdrawn = request.transitioned(
            ReassignmentStatus.CANCELLED,
            at=self._clock(),
            actor=SYSTEM_ACTOR,
            action="withdraw",
            note="creation could not be recorded",
        )
        try:
            self._commit(request, withdrawn, "withdraw")
        except ReassignmentError:
            logger.exception("Request withdrawal failed | request_id=%s", request.request_id)
            return
        logger.warning("Request withdrawn | request_id=%s", request.request_id)

    def _move_reservation(self, request: ReassignmentRequest) -> None:
        if request.suggested_resource_id is None:
            return
        try:
            self._reservations.update_reservation_resource(
                request.original_reservation_id, request.suggested_resource_id
            )
        except DependencyError:
            logger.error(
                "Reservation move failed | request_id=%s | reservation_id=%s",
                request.request_id,
                request.original_reservation_id,
            )
            raise

    def _notify_requester(
        self,
        policy: PolicyConfiguration,
        request: ReassignmentRequest,
        message: str,
    ) -> bool:
        return self._notifications.send(
            request.requested_by,
            message,
            policy.enabled_notification_channels(),
        )

    def _notify_supervisor(
        self,
        policy: PolicyConfiguration,
        request: ReassignmentRequest,
        message: str,
    ) -> bool:
        return self._notifications.send(
            self._settings.supervisor_user_id,
            message,
            policy.enabled_notification_channels(),
        )

    @staticmethod
    def _creation_message(
        request: ReassignmentRequest,
        top: Optional[Suggestion],
    ) -> str:
        if top is None:
            return (
                f"Reservation {request.original_reservation_id} needs a new resource "
                f"({request.reason_description}); no alternative is available yet."
            )
        return (
            f"Reservation {request.original_reservation_id} needs a new resource "
            f"({request.reason_description}). Suggested: {top.resource_name or top.resource_id} "
            f"(score {top.score:.2f}). Please respond before "
            f"{request.response_deadline.isoformat()}."
        )

    def _history_record(
        self,
        request: ReassignmentRequest,
        decision: HistoryDecision,
        *,
        original_name: Optional[str] = None,
        new_resource_id: Optional[int] = None,
        new_resource_name: Optional[str] = None,
        similarity_score: Optional[float] = None,
        score_breakdown: Optional[ScoreBreakdown] = None,
        alternatives_considered: tuple[int, ...] = (),
        accepted: Optional[bool] = None,
        feedback: Optional[str] = None,
        notified_at: Optional[datetime] = None,
        responded_at: Optional[datetime] = None,
        record_id: Optional[str] = None,
    ) -> HistoryRecord:
        """Build a history row; the default id is stable per request version and decision."""
        if original_name is None:
            original_name = self._resource_name(request.original_resource_id) or ""
        return HistoryRecord(
            record_id=record_id
            or f"{request.request_id}:{decision.value.lower()}:{request.version}",
            request_id=request.request_id,
            reservation_id=request.original_reservation_id,
            program_id=request.program_id,
            decision=decision,
            original_resource_id=request.original_resource_id,
            original_resource_name=original_name,
            requested_by=request.requested_by,
            reason=request.reason,
            created_at=self._clock(),
            new_resource_id=new_resource_id,
            new_resource_name=new_resource_name,
            similarity_score=similarity_score,
            score_breakdown=score_breakdown,
            alternatives_considered=tuple(alternatives_considered),
            accepted=accepted,
            feedback=feedback,
            notified_at=notified_at,
            responded_at=responded_at,
        )
