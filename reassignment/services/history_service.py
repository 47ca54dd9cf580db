"""Reassignment history write path and read-side analytics."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from reassignment.domain.contracts import HistorySink
from reassignment.domain.models import HistoryDecision, HistoryFilter, HistoryRecord
from reassignment.domain.policy import PolicyConfiguration
from reassignment.utils.config import Settings, get_settings
from reassignment.utils.logger import get_logger


logger = get_logger(__name__)

DECIDED = (
    HistoryDecision.ACCEPTED.value,
    HistoryDecision.REJECTED.value,
    HistoryDecision.AUTO_APPROVED.value,
)
ACCEPTED_DECISIONS = (
    HistoryDecision.ACCEPTED.value,
    HistoryDecision.AUTO_APPROVED.value,
)

EFFECTIVENESS_AUTO_WEIGHT = 0.4
EFFECTIVENESS_PENALTY_WEIGHT = 0.3
EFFECTIVENESS_RESPONSE_WEIGHT = 0.3

_FRAME_COLUMNS = [
    "request_id",
    "decision",
    "original_resource_id",
    "original_resource_name",
    "new_resource_id",
    "new_resource_name",
    "similarity_score",
    "accepted",
    "created_at",
    "responded_at",
]


@dataclass(frozen=True)
class AlternativeUsage:
    resource_id: int
    resource_name: str
    times_used: int
    average_score: Optional[float]


@dataclass(frozen=True)
class ResourceReassignmentStats:
    resource_id: int
    resource_name: str
    reassignments: int
    accepted: int
    success_rate: float


@dataclass(frozen=True)
class EquivalencePerformance:
    original_resource_id: int
    new_resource_id: int
    decisions: int
    acceptance_rate: float


@dataclass(frozen=True)
class EffectivenessReport:
    program_id: str
    total_requests: int
    decided: int
    auto_approved: int
    penalties_applied: int
    escalated: int
    average_response_hours: float
    auto_approval_rate: float
    penalty_rate: float
    effectiveness: float


class HistoryService:
    """Appends decision records and aggregates them with pandas."""

    def __init__(self, sink: HistorySink, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._sink = sink

    def record(self, record: HistoryRecord) -> None:
        self._sink.append_history(record)
        logger.debug(
            "History recorded | request_id=%s | decision=%s",
            record.request_id,
            record.decision.value,
        )

    def query(self, history_filter: Optional[HistoryFilter] = None) -> list[HistoryRecord]:
        return self._sink.query_history(history_filter or HistoryFilter())

    def _frame(self, history_filter: Optional[HistoryFilter]) -> pd.DataFrame:
        records = self.query(history_filter)
        frame = pd.DataFrame(
            [
                {
                    "request_id": record.request_id,
                    "decision": record.decision.value,
                    "original_resource_id": record.original_resource_id,
                    "original_resource_name": record.original_resource_name,
                    "new_resource_id": record.new_resource_id,
                    "new_resource_name": record.new_resource_name or "",
                    "similarity_score": (
                        np.nan if record.similarity_score is None else record.similarity_score
                    ),
                    "accepted": record.accepted is True,
                    "created_at": record.created_at,
                    "responded_at": record.responded_at,
                }
                for record in records
            ],
            columns=_FRAME_COLUMNS,
        )
        frame["new_resource_id"] = frame["new_resource_id"].astype("Int64")
        frame["similarity_score"] = frame["similarity_score"].astype(float)
        frame["accepted"] = frame["accepted"].astype(bool)
        frame["created_at"] = pd.to_datetime(frame["created_at"], utc=True)
        frame["responded_at"] = pd.to_datetime(frame["responded_at"], utc=True)
        return frame

    def acceptance_rate(self, history_filter: Optional[HistoryFilter] = None) -> float:
        """Accepted share of user/auto decisions; 0.0 when nothing was decided."""
        frame = self._frame(history_filter)
        decided = frame[frame["decision"].isin(DECIDED)]
        if decided.empty:
            return 0.0
        return round(float(decided["accepted"].mean()), 4)

    def most_used_alternatives(
        self,
        history_filter: Optional[HistoryFilter] = None,
        limit: Optional[int] = None,
    ) -> list[AlternativeUsage]:
        limit = self._settings.analytics_default_limit if limit is None else limit
        if limit <= 0:
            return []
        frame = self._frame(history_filter)
        used = frame[
            frame["decision"].isin(ACCEPTED_DECISIONS)
            & frame["accepted"]
            & frame["new_resource_id"].notna()
        ]
        if used.empty:
            return []

        grouped = (
            used.groupby("new_resource_id", sort=False)
            .agg(
                times_used=("request_id", "count"),
                average_score=("similarity_score", "mean"),
                resource_name=("new_resource_name", "first"),
            )
            .reset_index()
            .sort_values(
                ["times_used", "average_score"],
                ascending=[False, False],
                na_position="last",
                kind="mergesort",
            )
            .head(limit)
        )
        return [
            AlternativeUsage(
                resource_id=int(row.new_resource_id),
                resource_name=str(row.resource_name),
                times_used=int(row.times_used),
                average_score=None if pd.isna(row.average_score) else round(float(row.average_score), 2),
            )
            for row in grouped.itertuples(index=False)
        ]

    def problematic_resources(
        self,
        history_filter: Optional[HistoryFilter] = None,
        limit: Optional[int] = None,
    ) -> list[ResourceReassignmentStats]:
        """Original resources that are reassigned often and whose alternatives are rarely accepted."""
        limit = self._settings.analytics_default_limit if limit is None else limit
        frame = self._frame(history_filter)
        decided = frame[frame["decision"].isin(DECIDED)]
        if decided.empty or limit <= 0:
            return []

        grouped = (
            decided.groupby("original_resource_id", sort=False)
            .agg(
                reassignments=("request_id", "count"),
                accepted=("accepted", "sum"),
                resource_name=("original_resource_name", "first"),
            )
            .reset_index()
        )
        grouped["success_rate"] = grouped["accepted"] / grouped["reassignments"]
        flagged = grouped[
            (grouped["reassignments"] >= self._settings.analytics_min_reassignments)
            & (grouped["success_rate"] < self._settings.analytics_problematic_success_rate)
        ].sort_values(
            ["success_rate", "reassignments"],
            ascending=[True, False],
            kind="mergesort",
        )
        return [
            ResourceReassignmentStats(
                resource_id=int(row.original_resource_id),
                resource_name=str(row.resource_name),
                reassignments=int(row.reassignments),
                accepted=int(row.accepted),
                success_rate=round(float(row.success_rate), 4),
            )
            for row in flagged.head(limit).itertuples(index=False)
        ]

    def underperforming_equivalences(
        self,
        history_filter: Optional[HistoryFilter] = None,
    ) -> list[EquivalencePerformance]:
        """(original, alternative) pairs whose suggestions are usually turned down."""
        frame = self._frame(history_filter)
        decided = frame[frame["decision"].isin(DECIDED) & frame["new_resource_id"].notna()]
        if decided.empty:
            return []

        grouped = (
            decided.groupby(["original_resource_id", "new_resource_id"], sort=False)
            .agg(decisions=("request_id", "count"), acceptance_rate=("accepted", "mean"))
            .reset_index()
        )
        flagged = grouped[
            (grouped["decisions"] >= self._settings.analytics_min_reassignments)
            & (
                grouped["acceptance_rate"]
                < self._settings.analytics_min_equivalence_acceptance_rate
            )
        ].sort_values(["acceptance_rate", "decisions"], ascending=[True, False], kind="mergesort")
        return [
            EquivalencePerformance(
                original_resource_id=int(row.original_resource_id),
                new_resource_id=int(row.new_resource_id),
                decisions=int(row.decisions),
                acceptance_rate=round(float(row.acceptance_rate), 4),
            )
            for row in flagged.itertuples(index=False)
        ]

    def configuration_effectiveness(
        self,
        program_id: str,
        policy: PolicyConfiguration,
        history_filter: Optional[HistoryFilter] = None,
    ) -> EffectivenessReport:
        """Blend auto-approval rate, penalty rate and response time into a 0-100 figure.

        effectiveness = 100 * (0.4 * auto_rate + 0.3 * (1 - penalty_rate)
        + 0.3 * max(0, 1 - avg_response_hours / default_response_time_hours))
        """
        base = history_filter or HistoryFilter()
        frame = self._frame(
            HistoryFilter(
                program_id=program_id,
                user_id=base.user_id,
                resource_id=base.resource_id,
                start=base.start,
                end=base.end,
            )
        )
        decided = frame[frame["decision"].isin(DECIDED)]
        total_requests = int(
            frame.loc[frame["decision"] == HistoryDecision.SUGGESTED.value, "request_id"].nunique()
        )
        auto_approved = int((frame["decision"] == HistoryDecision.AUTO_APPROVED.value).sum())
        penalties = int((frame["decision"] == HistoryDecision.PENALIZED.value).sum())
        escalated = int((frame["decision"] == HistoryDecision.ESCALATED.value).sum())

        if decided.empty:
            return EffectivenessReport(
                program_id=program_id,
                total_requests=total_requests,
                decided=0,
                auto_approved=auto_approved,
                penalties_applied=penalties,
                escalated=escalated,
                average_response_hours=0.0,
                auto_approval_rate=0.0,
                penalty_rate=0.0,
                effectiveness=0.0,
            )

        decided_count = len(decided)
        auto_rate = auto_approved / decided_count
        penalty_rate = min(1.0, penalties / decided_count)
        average_hours = self._average_response_hours(frame, decided)
        response_score = max(0.0, 1.0 - average_hours / policy.default_response_time_hours)
        effectiveness = 100.0 * (
            EFFECTIVENESS_AUTO_WEIGHT * auto_rate
            + EFFECTIVENESS_PENALTY_WEIGHT * (1.0 - penalty_rate)
            + EFFECTIVENESS_RESPONSE_WEIGHT * response_score
        )
        report = EffectivenessReport(
            program_id=program_id,
            total_requests=total_requests,
            decided=decided_count,
            auto_approved=auto_approved,
            penalties_applied=penalties,
            escalated=escalated,
            average_response_hours=round(average_hours, 2),
            auto_approval_rate=round(auto_rate, 4),
            penalty_rate=round(penalty_rate, 4),
            effectiveness=round(float(np.clip(effectiveness, 0.0, 100.0)), 2),
        )
        logger.info(
            "Configuration effectiveness computed | program_id=%s | decided=%s | effectiveness=%s",
            program_id,
            decided_count,
            report.effectiveness,
        )
        return report

    @staticmethod
    def _average_response_hours(frame: pd.DataFrame, decided: pd.DataFrame) -> float:
        suggested = (
            frame.loc[frame["decision"] == HistoryDecision.SUGGESTED.value, ["request_id", "created_at"]]
            .drop_duplicates("request_id")
            .rename(columns={"created_at": "suggested_at"})
        )
        responses = decided[decided["responded_at"].notna()][["request_id", "responded_at"]]
        merged = responses.merge(suggested, on="request_id", how="inner")
        if merged.empty:
            return 0.0
        hours = (merged["responded_at"] - merged["suggested_at"]).dt.total_seconds() / 3600.0
        return float(hours.clip(lower=0.0).mean())
