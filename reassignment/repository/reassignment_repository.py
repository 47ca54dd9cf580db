"""SQLite persistence for reassignment requests, history, policies and penalties."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from reassignment.domain.models import (
    AuditEntry,
    EscalationAction,
    HistoryDecision,
    HistoryFilter,
    HistoryRecord,
    ReassignmentReason,
    ReassignmentRequest,
    ReassignmentStatus,
    ScoreBreakdown,
    UserPriority,
    UserResponse,
    UserStanding,
)
from reassignment.domain.policy import PolicyConfiguration
from reassignment.repository.data_repository import DataRepository, from_iso, to_iso
from reassignment.utils.logger import get_logger


logger = get_logger(__name__)

_REQUEST_COLUMNS = (
    "id",
    "original_reservation_id",
    "original_resource_id",
    "program_id",
    "requested_by",
    "reason",
    "custom_reason",
    "status",
    "user_response",
    "priority",
    "is_urgent",
    "suggested_resource_id",
    "suggested_score",
    "alternative_resource_ids",
    "excluded_resource_ids",
    "response_deadline",
    "rejection_count",
    "capacity_tolerance_percent",
    "required_features",
    "preferred_features",
    "escalation_action",
    "parent_request_id",
    "response_notes",
    "responded_at",
    "created_at",
    "updated_at",
    "effects_pending",
    "version",
    "audit_trail",
)


def _request_to_row(request: ReassignmentRequest) -> tuple[Any, ...]:
    return (
        request.request_id,
        request.original_reservation_id,
        request.original_resource_id,
        request.program_id,
        request.requested_by,
        request.reason.value,
        request.custom_reason,
        request.status.value,
        request.user_response.value,
        request.priority.value,
        int(request.is_urgent),
        request.suggested_resource_id,
        request.suggested_score,
        json.dumps(list(request.alternative_resource_ids)),
        json.dumps(list(request.excluded_resource_ids)),
        to_iso(request.response_deadline),
        request.rejection_count,
        request.capacity_tolerance_percent,
        json.dumps(sorted(request.required_features)),
        json.dumps(sorted(request.preferred_features)),
        request.escalation_action.value if request.escalation_action else None,
        request.parent_request_id,
        request.response_notes,
        to_iso(request.responded_at),
        to_iso(request.created_at),
        to_iso(request.updated_at),
        int(request.effects_pending),
        request.version,
        json.dumps([entry.to_dict() for entry in request.audit_trail]),
    )


def _audit_from_dict(payload: dict[str, Any]) -> AuditEntry:
    return AuditEntry(
        at=from_iso(payload["at"]),
        action=payload["action"],
        actor=payload["actor"],
        from_status=(
            ReassignmentStatus(payload["from_status"]) if payload.get("from_status") else None
        ),
        to_status=ReassignmentStatus(payload["to_status"]),
        note=payload.get("note"),
    )


def _row_to_request(row: sqlite3.Row) -> ReassignmentRequest:
    return ReassignmentRequest(
        request_id=str(row["id"]),
        original_reservation_id=int(row["original_reservation_id"]),
        original_resource_id=int(row["original_resource_id"]),
        program_id=str(row["program_id"]),
        requested_by=str(row["requested_by"]),
        reason=ReassignmentReason(row["reason"]),
        custom_reason=row["custom_reason"],
        status=ReassignmentStatus(row["status"]),
        user_response=UserResponse(row["user_response"]),
        priority=UserPriority(row["priority"]),
        is_urgent=bool(row["is_urgent"]),
        suggested_resource_id=row["suggested_resource_id"],
        suggested_score=row["suggested_score"],
        alternative_resource_ids=tuple(json.loads(row["alternative_resource_ids"])),
        excluded_resource_ids=tuple(json.loads(row["excluded_resource_ids"])),
        response_deadline=from_iso(row["response_deadline"]),
        rejection_count=int(row["rejection_count"]),
        capacity_tolerance_percent=float(row["capacity_tolerance_percent"]),
        required_features=frozenset(json.loads(row["required_features"])),
        preferred_features=frozenset(json.loads(row["preferred_features"])),
        escalation_action=(
            EscalationAction(row["escalation_action"]) if row["escalation_action"] else None
        ),
        parent_request_id=row["parent_request_id"],
        response_notes=row["response_notes"],
        responded_at=from_iso(row["responded_at"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        effects_pending=bool(row["effects_pending"]),
        version=int(row["version"]),
        audit_trail=tuple(_audit_from_dict(item) for item in json.loads(row["audit_trail"])),
    )


def _row_to_history(row: sqlite3.Row) -> HistoryRecord:
    breakdown = json.loads(row["score_breakdown"]) if row["score_breakdown"] else None
    return HistoryRecord(
        record_id=str(row["id"]),
        request_id=str(row["request_id"]),
        reservation_id=int(row["reservation_id"]),
        program_id=str(row["program_id"]),
        decision=HistoryDecision(row["decision"]),
        original_resource_id=int(row["original_resource_id"]),
        original_resource_name=str(row["original_resource_name"]),
        requested_by=str(row["requested_by"]),
        reason=ReassignmentReason(row["reason"]),
        created_at=from_iso(row["created_at"]),
        new_resource_id=row["new_resource_id"],
        new_resource_name=row["new_resource_name"],
        similarity_score=row["similarity_score"],
        score_breakdown=ScoreBreakdown(**breakdown) if breakdown else None,
        alternatives_considered=tuple(json.loads(row["alternatives_considered"])),
        accepted=None if row["accepted"] is None else bool(row["accepted"]),
        feedback=row["feedback"],
        notified_at=from_iso(row["notified_at"]),
        responded_at=from_iso(row["responded_at"]),
    )


def _row_to_standing(row: sqlite3.Row) -> UserStanding:
    return UserStanding(
        user_id=str(row["user_id"]),
        program_id=str(row["program_id"]),
        priority=UserPriority(row["priority"]),
        penalty_points=int(row["penalty_points"]),
        suppressed_until=from_iso(row["suppressed_until"]),
        updated_at=from_iso(row["updated_at"]),
    )


class ReassignmentRepository(DataRepository):
    """Request store, history sink, policy store and penalty ledger on one SQLite file."""

    def initialize_database(self) -> None:
        super().initialize_database()
        with self._session("Reassignment schema initialization") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ReassignmentRequests (
                    id TEXT PRIMARY KEY,
                    original_reservation_id INTEGER NOT NULL,
                    original_resource_id INTEGER NOT NULL,
                    program_id TEXT NOT NULL,
                    requested_by TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    custom_reason TEXT,
                    status TEXT NOT NULL,
                    user_response TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    is_urgent INTEGER NOT NULL CHECK (is_urgent IN (0,1)),
                    suggested_resource_id INTEGER,
                    suggested_score REAL,
                    alternative_resource_ids TEXT NOT NULL DEFAULT '[]',
                    excluded_resource_ids TEXT NOT NULL DEFAULT '[]',
                    response_deadline TEXT NOT NULL,
                    rejection_count INTEGER NOT NULL DEFAULT 0 CHECK (rejection_count >= 0),
                    capacity_tolerance_percent REAL NOT NULL,
                    required_features TEXT NOT NULL DEFAULT '[]',
                    preferred_features TEXT NOT NULL DEFAULT '[]',
                    escalation_action TEXT,
                    parent_request_id TEXT,
                    response_notes TEXT,
                    responded_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    effects_pending INTEGER NOT NULL DEFAULT 0 CHECK (effects_pending IN (0,1)),
                    version INTEGER NOT NULL,
                    audit_trail TEXT NOT NULL DEFAULT '[]'
                );
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ReassignmentHistory (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    reservation_id INTEGER NOT NULL,
                    program_id TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    original_resource_id INTEGER NOT NULL,
                    original_resource_name TEXT NOT NULL,
                    new_resource_id INTEGER,
                    new_resource_name TEXT,
                    requested_by TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    similarity_score REAL,
                    score_breakdown TEXT,
                    alternatives_considered TEXT NOT NULL DEFAULT '[]',
                    accepted INTEGER CHECK (accepted IS NULL OR accepted IN (0,1)),
                    feedback TEXT,
                    notified_at TEXT,
                    responded_at TEXT,
                    created_at TEXT NOT NULL
                );
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS PolicyConfigurations (
                    program_id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    is_active INTEGER NOT NULL CHECK (is_active IN (0,1)),
                    updated_at TEXT NOT NULL
                );
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS UserStandings (
                    user_id TEXT NOT NULL,
                    program_id TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    penalty_points INTEGER NOT NULL DEFAULT 0,
                    suppressed_until TEXT,
                    updated_at TEXT,
                    PRIMARY KEY (user_id, program_id)
                );
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS PenaltyLedger (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    program_id TEXT NOT NULL,
                    rejection_count INTEGER NOT NULL,
                    points INTEGER NOT NULL,
                    applied_at TEXT NOT NULL,
                    UNIQUE (user_id, program_id, rejection_count)
                );
                """
            )
            cursor.execute("PRAGMA table_info(ReassignmentRequests);")
            request_columns = {str(row["name"]) for row in cursor.fetchall()}
            if "effects_pending" not in request_columns:
                cursor.execute(
                    """
                    ALTER TABLE ReassignmentRequests
                    ADD COLUMN effects_pending INTEGER NOT NULL DEFAULT 0;
                    """
                )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_requests_reservation
                ON ReassignmentRequests(original_reservation_id, status);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_requests_requester_created
                ON ReassignmentRequests(requested_by, created_at);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_requests_status_deadline
                ON ReassignmentRequests(status, response_deadline);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_history_program_created
                ON ReassignmentHistory(program_id, created_at);
                """
            )

    # --- request store ---

    def create_request(self, request: ReassignmentRequest) -> ReassignmentRequest:
        """Insert ``request`` at version 1 and return the stored copy."""
        stored = replace(request, version=1)
        placeholders = ", ".join("?" for _ in _REQUEST_COLUMNS)
        with self._session("Request insert") as conn:
            conn.execute(
                f"INSERT INTO ReassignmentRequests ({', '.join(_REQUEST_COLUMNS)}) "
                f"VALUES ({placeholders});",
                _request_to_row(stored),
            )
        return stored

    def get_request(self, request_id: str) -> Optional[ReassignmentRequest]:
        with self._session("Request lookup") as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM ReassignmentRequests WHERE id = ?;", (request_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return _row_to_request(row)

    def find_requests_by_reservation(self, reservation_id: int) -> list[ReassignmentRequest]:
        with self._session("Request lookup by reservation") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM ReassignmentRequests
                WHERE original_reservation_id = ?
                ORDER BY created_at ASC;
                """,
                (reservation_id,),
            )
            return [_row_to_request(row) for row in cursor.fetchall()]

    def find_requests_by_requester(
        self,
        user_id: str,
        since: Optional[datetime] = None,
    ) -> list[ReassignmentRequest]:
        query = "SELECT * FROM ReassignmentRequests WHERE requested_by = ?"
        params: list[Any] = [user_id]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(to_iso(since))
        query += " ORDER BY created_at ASC;"
        with self._session("Request lookup by requester") as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [_row_to_request(row) for row in cursor.fetchall()]

    def find_overdue_pending(self, now: datetime) -> list[ReassignmentRequest]:
        with self._session("Overdue request lookup") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM ReassignmentRequests
                WHERE status = ? AND response_deadline < ?
                ORDER BY response_deadline ASC;
                """,
                (ReassignmentStatus.PENDING.value, to_iso(now)),
            )
            return [_row_to_request(row) for row in cursor.fetchall()]

    def count_pending_for_program(self, program_id: str) -> int:
        with self._session("Pending request count") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT COUNT(*) AS count FROM ReassignmentRequests
                WHERE program_id = ? AND status = ?;
                """,
                (program_id, ReassignmentStatus.PENDING.value),
            )
            return int(cursor.fetchone()["count"])

    def compare_and_swap(self, request: ReassignmentRequest, expected_version: int) -> bool:
        """Overwrite the stored row only while its version is still ``expected_version``."""
        assignments = ", ".join(f"{column} = ?" for column in _REQUEST_COLUMNS[1:])
        row = _request_to_row(request)
        with self._session("Request update") as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE ReassignmentRequests SET {assignments} "
                "WHERE id = ? AND version = ?;",
                (*row[1:], request.request_id, expected_version),
            )
            swapped = cursor.rowcount == 1
        if not swapped:
            logger.warning(
                "Optimistic update rejected | request_id=%s | expected_version=%s",
                request.request_id,
                expected_version,
            )
        return swapped

    # --- history sink ---

    def append_history(self, record: HistoryRecord) -> None:
        """Append ``record``; a record id that is already stored is left untouched."""
        with self._session("History append") as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO ReassignmentHistory (
                    id, request_id, reservation_id, program_id, decision,
                    original_resource_id, original_resource_name,
                    new_resource_id, new_resource_name, requested_by, reason,
                    similarity_score, score_breakdown, alternatives_considered,
                    accepted, feedback, notified_at, responded_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    record.record_id,
                    record.request_id,
                    record.reservation_id,
                    record.program_id,
                    record.decision.value,
                    record.original_resource_id,
                    record.original_resource_name,
                    record.new_resource_id,
                    record.new_resource_name,
                    record.requested_by,
                    record.reason.value,
                    record.similarity_score,
                    json.dumps(record.score_breakdown.to_dict()) if record.score_breakdown else None,
                    json.dumps(list(record.alternatives_considered)),
                    None if record.accepted is None else int(record.accepted),
                    record.feedback,
                    to_iso(record.notified_at),
                    to_iso(record.responded_at),
                    to_iso(record.created_at),
                ),
            )

    def query_history(self, history_filter: HistoryFilter) -> list[HistoryRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if history_filter.program_id is not None:
            clauses.append("program_id = ?")
            params.append(history_filter.program_id)
        if history_filter.user_id is not None:
            clauses.append("requested_by = ?")
            params.append(history_filter.user_id)
        if history_filter.resource_id is not None:
            clauses.append("(original_resource_id = ? OR new_resource_id = ?)")
            params.extend([history_filter.resource_id, history_filter.resource_id])
        if history_filter.start is not None:
            clauses.append("created_at >= ?")
            params.append(to_iso(history_filter.start))
        if history_filter.end is not None:
            clauses.append("created_at <= ?")
            params.append(to_iso(history_filter.end))
        if history_filter.accepted is not None:
            clauses.append("accepted = ?")
            params.append(int(history_filter.accepted))

        query = "SELECT * FROM ReassignmentHistory"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC, rowid ASC;"
        with self._session("History query") as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [_row_to_history(row) for row in cursor.fetchall()]

    # --- policy store ---

    def get_policy(self, program_id: str) -> Optional[PolicyConfiguration]:
        with self._session("Policy lookup") as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT payload FROM PolicyConfigurations WHERE program_id = ?;",
                (program_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return PolicyConfiguration.from_dict(json.loads(row["payload"]))

    def save_policy(self, policy: PolicyConfiguration) -> None:
        """Upsert the single policy row for the program."""
        with self._session("Policy save") as conn:
            conn.execute(
                """
                INSERT INTO PolicyConfigurations (program_id, payload, is_active, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(program_id) DO UPDATE SET
                    payload = excluded.payload,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at;
                """,
                (
                    policy.program_id,
                    json.dumps(policy.to_dict()),
                    int(policy.is_active),
                    to_iso(datetime.now(timezone.utc)),
                ),
            )

    def delete_policy(self, program_id: str) -> bool:
        with self._session("Policy delete") as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM PolicyConfigurations WHERE program_id = ?;",
                (program_id,),
            )
            return cursor.rowcount > 0

    # --- standing store ---

    def get_standing(self, user_id: str, program_id: str) -> Optional[UserStanding]:
        with self._session("Standing lookup") as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM UserStandings WHERE user_id = ? AND program_id = ?;",
                (user_id, program_id),
            )
            row = cursor.fetchone()
            return _row_to_standing(row) if row is not None else None

    def record_penalty(
        self,
        user_id: str,
        program_id: str,
        rejection_count: int,
        points: int,
        applied_at: datetime,
        apply: Callable[[Optional[UserStanding]], UserStanding],
    ) -> Optional[UserStanding]:
        """Insert the ledger row and fold it into the stored standing in one transaction.

        The ledger insert takes the write lock before the standing is read, so
        ``apply`` always sees the latest committed standing and concurrent
        penalties accumulate. Returns None when this rejection count is already
        in the ledger.
        """
        with self._session("Penalty record") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO PenaltyLedger (user_id, program_id, rejection_count, points, applied_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                (user_id, program_id, rejection_count, points, to_iso(applied_at)),
            )
            if cursor.rowcount == 0:
                return None
            cursor.execute(
                "SELECT * FROM UserStandings WHERE user_id = ? AND program_id = ?;",
                (user_id, program_id),
            )
            row = cursor.fetchone()
            standing = apply(_row_to_standing(row) if row is not None else None)
            cursor.execute(
                """
                INSERT INTO UserStandings (user_id, program_id, priority, penalty_points, suppressed_until, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, program_id) DO UPDATE SET
                    priority = excluded.priority,
                    penalty_points = excluded.penalty_points,
                    suppressed_until = excluded.suppressed_until,
                    updated_at = excluded.updated_at;
                """,
                (
                    standing.user_id,
                    standing.program_id,
                    standing.priority.value,
                    standing.penalty_points,
                    to_iso(standing.suppressed_until),
                    to_iso(standing.updated_at),
                ),
            )
            return standing
