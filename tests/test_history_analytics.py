"""Tests for history queries and the pandas-backed analytics."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Optional

import pytest

from reassignment.domain.models import (
    HistoryDecision,
    HistoryFilter,
    HistoryRecord,
    ReassignmentReason,
)
from reassignment.domain.policy import default_for
from reassignment.repository.reassignment_repository import ReassignmentRepository
from reassignment.services.history_service import HistoryService
from reassignment.utils.config import get_settings


T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
_ids = count(1)


class _MemorySink:
    def __init__(self) -> None:
        self.records: list[HistoryRecord] = []

    def append_history(self, record: HistoryRecord) -> None:
        self.records.append(record)

    def query_history(self, history_filter: HistoryFilter) -> list[HistoryRecord]:
        return [
            record
            for record in self.records
            if history_filter.program_id is None or record.program_id == history_filter.program_id
        ]


def _record(
    decision: HistoryDecision,
    *,
    request_id: str = "req",
    original: int = 1,
    new: Optional[int] = None,
    score: Optional[float] = None,
    accepted: Optional[bool] = None,
    program_id: str = "ENG",
    created_at: datetime = T0,
    responded_at: Optional[datetime] = None,
) -> HistoryRecord:
    return HistoryRecord(
        record_id=f"rec-{next(_ids)}",
        request_id=request_id,
        reservation_id=10,
        program_id=program_id,
        decision=decision,
        original_resource_id=original,
        original_resource_name=f"Room {original}",
        requested_by="user-001",
        reason=ReassignmentReason.MAINTENANCE,
        created_at=created_at,
        new_resource_id=new,
        new_resource_name=f"Room {new}" if new is not None else None,
        similarity_score=score,
        accepted=accepted,
        responded_at=responded_at,
    )


def _build_service(*records: HistoryRecord) -> HistoryService:
    get_settings.cache_clear()
    sink = _MemorySink()
    service = HistoryService(sink=sink, settings=get_settings())
    for record in records:
        service.record(record)
    return service


def test_acceptance_rate_counts_only_decisions() -> None:
    service = _build_service(
        _record(HistoryDecision.SUGGESTED, new=2, score=90.0),
        _record(HistoryDecision.ACCEPTED, new=2, score=90.0, accepted=True),
        _record(HistoryDecision.REJECTED, new=3, score=70.0, accepted=False),
        _record(HistoryDecision.AUTO_APPROVED, new=4, score=96.0, accepted=True),
        _record(HistoryDecision.ESCALATED),
    )

    assert service.acceptance_rate() == pytest.approx(0.6667)


def test_acceptance_rate_is_zero_without_history() -> None:
    assert _build_service().acceptance_rate() == 0.0


def test_most_used_alternatives_ranks_by_count_then_score() -> None:
    service = _build_service(
        _record(HistoryDecision.ACCEPTED, new=2, score=90.0, accepted=True),
        _record(HistoryDecision.ACCEPTED, new=2, score=80.0, accepted=True),
        _record(HistoryDecision.ACCEPTED, new=3, score=95.0, accepted=True),
        _record(HistoryDecision.AUTO_APPROVED, new=3, score=99.0, accepted=True),
        _record(HistoryDecision.ACCEPTED, new=4, score=70.0, accepted=True),
        _record(HistoryDecision.REJECTED, new=4, score=70.0, accepted=False),
    )

    ranking = service.most_used_alternatives(limit=2)

    assert [item.resource_id for item in ranking] == [3, 2]
    assert ranking[0].times_used == 2
    assert ranking[0].average_score == 97.0
    assert ranking[1].average_score == 85.0
    assert service.most_used_alternatives(limit=0) == []


def test_problematic_resources_need_volume_and_low_success() -> None:
    service = _build_service(
        _record(HistoryDecision.REJECTED, original=1, new=2, accepted=False),
        _record(HistoryDecision.REJECTED, original=1, new=2, accepted=False),
        _record(HistoryDecision.REJECTED, original=1, new=3, accepted=False),
        _record(HistoryDecision.ACCEPTED, original=1, new=3, accepted=True),
        _record(HistoryDecision.ACCEPTED, original=5, new=6, accepted=True),
        _record(HistoryDecision.ACCEPTED, original=5, new=6, accepted=True),
        _record(HistoryDecision.ACCEPTED, original=5, new=6, accepted=True),
        _record(HistoryDecision.REJECTED, original=7, new=8, accepted=False),
        _record(HistoryDecision.REJECTED, original=7, new=8, accepted=False),
    )

    flagged = service.problematic_resources()

    assert [item.resource_id for item in flagged] == [1]
    assert flagged[0].reassignments == 4
    assert flagged[0].accepted == 1
    assert flagged[0].success_rate == 0.25


def test_underperforming_equivalences_flags_turned_down_pairs() -> None:
    service = _build_service(
        *[_record(HistoryDecision.REJECTED, original=1, new=2, accepted=False) for _ in range(3)],
        *[_record(HistoryDecision.ACCEPTED, original=1, new=3, accepted=True) for _ in range(3)],
    )

    flagged = service.underperforming_equivalences()

    assert [(item.original_resource_id, item.new_resource_id) for item in flagged] == [(1, 2)]
    assert flagged[0].acceptance_rate == 0.0


def test_configuration_effectiveness_blends_rates_and_response_time() -> None:
    records = []
    outcomes = [
        ("a", HistoryDecision.AUTO_APPROVED, True, 2),
        ("b", HistoryDecision.ACCEPTED, True, 4),
        ("c", HistoryDecision.REJECTED, False, 6),
        ("d", HistoryDecision.ACCEPTED, True, 8),
    ]
    for request_id, decision, accepted, hours in outcomes:
        records.append(_record(HistoryDecision.SUGGESTED, request_id=request_id, new=2, score=90.0))
        records.append(
            _record(
                decision,
                request_id=request_id,
                new=2,
                score=90.0,
                accepted=accepted,
                created_at=T0 + timedelta(hours=hours),
                responded_at=T0 + timedelta(hours=hours),
            )
        )
    records.append(_record(HistoryDecision.PENALIZED, request_id="c"))
    records.append(_record(HistoryDecision.SUGGESTED, request_id="other", program_id="ARCH"))
    service = _build_service(*records)

    report = service.configuration_effectiveness("ENG", default_for("ENG"))

    assert report.total_requests == 4
    assert report.decided == 4
    assert report.auto_approved == 1
    assert report.penalties_applied == 1
    assert report.average_response_hours == 5.0
    assert report.auto_approval_rate == 0.25
    assert report.penalty_rate == 0.25
    assert report.effectiveness == pytest.approx(56.25)


def test_configuration_effectiveness_without_decisions_is_zero() -> None:
    service = _build_service(_record(HistoryDecision.SUGGESTED, new=2, score=90.0))

    report = service.configuration_effectiveness("ENG", default_for("ENG"))

    assert report.total_requests == 1
    assert report.decided == 0
    assert report.effectiveness == 0.0


def test_sqlite_history_filters(tmp_path) -> None:
    get_settings.cache_clear()
    settings = replace(get_settings(), database_path=tmp_path / "history.db")
    repository = ReassignmentRepository(settings)
    repository.initialize_database()
    repository.append_history(_record(HistoryDecision.ACCEPTED, original=1, new=2, accepted=True))
    repository.append_history(
        _record(
            HistoryDecision.REJECTED,
            original=1,
            new=3,
            accepted=False,
            created_at=T0 + timedelta(days=2),
        )
    )
    repository.append_history(_record(HistoryDecision.ACCEPTED, original=4, new=5, program_id="ARCH"))

    assert len(repository.query_history(HistoryFilter(program_id="ENG"))) == 2
    assert [r.new_resource_id for r in repository.query_history(HistoryFilter(accepted=True))] == [2]
    assert [r.new_resource_id for r in repository.query_history(HistoryFilter(resource_id=3))] == [3]
    window = HistoryFilter(start=T0 + timedelta(days=1), end=T0 + timedelta(days=3))
    assert [r.decision for r in repository.query_history(window)] == [HistoryDecision.REJECTED]
