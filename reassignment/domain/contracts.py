"""Collaborator interfaces consumed by the reassignment services.

The sqlite repositories implement all of them; tests substitute small fakes
where a failure mode has to be provoked.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence

from reassignment.domain.models import (
    HistoryFilter,
    HistoryRecord,
    ReassignmentRequest,
    Reservation,
    ResourceDescriptor,
    UserStanding,
)
from reassignment.domain.policy import PolicyConfiguration


class ResourceDirectory(Protocol):
    def get_resource(self, resource_id: int) -> Optional[ResourceDescriptor]: ...

    def get_candidates(
        self, resource_type: str, exclude_id: int, limit: int
    ) -> list[ResourceDescriptor]: ...

    def check_availability(self, resource_id: int, start: datetime, end: datetime) -> bool: ...


class ReservationStore(Protocol):
    def get_reservation(self, reservation_id: int) -> Optional[Reservation]: ...

    def update_reservation_resource(self, reservation_id: int, new_resource_id: int) -> None: ...

    def cancel_reservation(self, reservation_id: int, reason: str) -> None: ...


class RequestStore(Protocol):
    def create_request(self, request: ReassignmentRequest) -> ReassignmentRequest: ...

    def get_request(self, request_id: str) -> Optional[ReassignmentRequest]: ...

    def find_requests_by_reservation(self, reservation_id: int) -> list[ReassignmentRequest]: ...

    def find_requests_by_requester(
        self, user_id: str, since: Optional[datetime] = None
    ) -> list[ReassignmentRequest]: ...

    def find_overdue_pending(self, now: datetime) -> list[ReassignmentRequest]: ...

    def count_pending_for_program(self, program_id: str) -> int: ...

    def compare_and_swap(self, request: ReassignmentRequest, expected_version: int) -> bool:
        """Persist ``request`` only if the stored version equals ``expected_version``."""
        ...


class HistorySink(Protocol):
    def append_history(self, record: HistoryRecord) -> None: ...

    def query_history(self, history_filter: HistoryFilter) -> list[HistoryRecord]: ...


class PolicyStore(Protocol):
    def get_policy(self, program_id: str) -> Optional[PolicyConfiguration]: ...

    def save_policy(self, policy: PolicyConfiguration) -> None: ...

    def delete_policy(self, program_id: str) -> bool: ...


class StandingStore(Protocol):
    def get_standing(self, user_id: str, program_id: str) -> Optional[UserStanding]: ...

    def record_penalty(
        self,
        user_id: str,
        program_id: str,
        rejection_count: int,
        points: int,
        applied_at: datetime,
        apply: Callable[[Optional[UserStanding]], UserStanding],
    ) -> Optional[UserStanding]:
        """Apply the penalty once per (user, program, rejection_count).

        ``apply`` receives the latest stored standing inside the write and
        returns the standing to store. None when the penalty is already present.
        """
        ...


class Notifier(Protocol):
    def notify(self, user_id: str, message: str, channels: Sequence[str]) -> None: ...
