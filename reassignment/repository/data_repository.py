"""SQLite access for resources, reservations and the notification outbox."""

from __future__ import annotations

import json
import random
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

from reassignment.domain.errors import DependencyError, NotFoundError
from reassignment.domain.models import Reservation, ResourceDescriptor
from reassignment.utils.config import Settings, get_settings
from reassignment.utils.logger import get_logger


logger = get_logger(__name__)

RESOURCE_STATUS_AVAILABLE = "AVAILABLE"
RESERVATION_STATUS_CONFIRMED = "CONFIRMED"
RESERVATION_STATUS_CANCELLED = "CANCELLED"


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DataRepository:
    """Owns the SQLite file and the tables shared with the booking platform."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path, timeout=10.0)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _session(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a transaction; sqlite errors become DependencyError."""
        try:
            connection = self._connect()
            try:
                with connection:
                    yield connection
            finally:
                connection.close()
        except sqlite3.Error as exc:
            raise DependencyError(f"{operation} failed: {exc}") from exc

    def initialize_database(self) -> None:
        """Create resource, reservation and outbox tables."""
        with self._session("Database initialization") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS Resources (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    capacity INTEGER CHECK (capacity IS NULL OR capacity >= 0),
                    features TEXT NOT NULL DEFAULT '[]',
                    building TEXT,
                    floor INTEGER,
                    location TEXT,
                    status TEXT NOT NULL DEFAULT 'AVAILABLE',
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS Reservations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    resource_id INTEGER NOT NULL,
                    user_id TEXT NOT NULL,
                    program_id TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'CONFIRMED',
                    cancellation_reason TEXT,
                    updated_at TEXT,
                    FOREIGN KEY (resource_id) REFERENCES Resources(id)
                );
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS Notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    message TEXT NOT NULL,
                    channels TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_resources_type
                ON Resources(resource_type, id);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_reservations_resource_window
                ON Reservations(resource_id, status, start_time, end_time);
                """
            )
        logger.info("Database initialized at %s", self._db_path)

    def seed_synthetic_data(self) -> None:
        """Seed a deterministic campus only when the Resources table is empty."""
        rng = random.Random(self._settings.synthetic_random_seed)
        with self._session("Synthetic data seeding") as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM Resources;")
            if int(cursor.fetchone()["count"]) > 0:
                logger.info("Synthetic data already present; skipping seed")
                return

            resources = [
                ("Aula 101", "CLASSROOM", 30, ["projector", "whiteboard"], "Block A", 1),
                ("Aula 102", "CLASSROOM", 30, ["projector", "whiteboard"], "Block A", 1),
                ("Aula 201", "CLASSROOM", 40, ["projector", "whiteboard", "audio"], "Block A", 2),
                ("Aula 305", "CLASSROOM", 25, ["whiteboard"], "Block B", 3),
                ("Aula 110", "CLASSROOM", 35, ["projector"], "Block B", 1),
                ("Lab Redes", "LAB", 20, ["computers", "projector", "network"], "Block C", 2),
                ("Lab Software", "LAB", 24, ["computers", "projector"], "Block C", 2),
                ("Lab Electronica", "LAB", 18, ["oscilloscopes", "workbenches"], "Block C", 1),
                ("Auditorio Central", "AUDITORIUM", 200, ["audio", "projector", "stage"], "Block D", 0),
                ("Auditorio Norte", "AUDITORIUM", 150, ["audio", "projector"], "Block E", 0),
                ("Sala Juntas 1", "MEETING_ROOM", 10, ["video_conference", "tv"], "Block A", 3),
                ("Sala Juntas 2", "MEETING_ROOM", 8, ["tv"], "Block B", 2),
            ]
            cursor.executemany(
                """
                INSERT INTO Resources (name, resource_type, capacity, features, building, floor, location)
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                [
                    (
                        name,
                        resource_type,
                        capacity,
                        json.dumps(sorted(features)),
                        building,
                        floor,
                        f"{building}, floor {floor}",
                    )
                    for name, resource_type, capacity, features, building, floor in resources
                ],
            )

            cursor.execute("SELECT id FROM Resources ORDER BY id ASC;")
            resource_ids = [int(row["id"]) for row in cursor.fetchall()]
            programs = ("ENG-SYS", "ENG-ELEC", "ARCH")
            start_day = datetime.now(timezone.utc).replace(
                hour=0, minute=0, second=0, microsecond=0
            ) + timedelta(days=1)

            reservations = []
            for day in range(self._settings.synthetic_reservation_days):
                for _ in range(self._settings.synthetic_reservations_per_day):
                    start = start_day + timedelta(days=day, hours=rng.randint(7, 19))
                    reservations.append(
                        (
                            rng.choice(resource_ids),
                            f"user-{rng.randint(1, 40):03d}",
                            rng.choice(programs),
                            to_iso(start),
                            to_iso(start + timedelta(hours=2)),
                        )
                    )
            cursor.executemany(
                """
                INSERT INTO Reservations (resource_id, user_id, program_id, start_time, end_time)
                VALUES (?, ?, ?, ?, ?);
                """,
                reservations,
            )
        logger.info(
            "Synthetic seed completed | resources=%s | reservations=%s",
            len(resources),
            len(reservations),
        )

    @staticmethod
    def _row_to_resource(row: sqlite3.Row) -> ResourceDescriptor:
        return ResourceDescriptor(
            resource_id=int(row["id"]),
            resource_type=str(row["resource_type"]),
            capacity=None if row["capacity"] is None else int(row["capacity"]),
            features=frozenset(json.loads(row["features"] or "[]")),
            building=row["building"],
            floor=None if row["floor"] is None else int(row["floor"]),
            location=row["location"],
            name=str(row["name"]),
        )

    @staticmethod
    def _row_to_reservation(row: sqlite3.Row) -> Reservation:
        return Reservation(
            reservation_id=int(row["id"]),
            resource_id=int(row["resource_id"]),
            user_id=str(row["user_id"]),
            program_id=str(row["program_id"]),
            start_time=from_iso(row["start_time"]),
            end_time=from_iso(row["end_time"]),
            status=str(row["status"]),
        )

    def add_resource(
        self,
        name: str,
        resource_type: str,
        capacity: Optional[int] = None,
        features: Iterable[str] = (),
        building: Optional[str] = None,
        floor: Optional[int] = None,
        location: Optional[str] = None,
        status: str = RESOURCE_STATUS_AVAILABLE,
    ) -> ResourceDescriptor:
        with self._session("Resource insert") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Resources (name, resource_type, capacity, features, building, floor, location, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    name,
                    resource_type,
                    capacity,
                    json.dumps(sorted(set(features))),
                    building,
                    floor,
                    location,
                    status,
                ),
            )
            resource_id = int(cursor.lastrowid)
        return ResourceDescriptor(
            resource_id=resource_id,
            resource_type=resource_type,
            capacity=capacity,
            features=frozenset(features),
            building=building,
            floor=floor,
            location=location,
            name=name,
        )

    def set_resource_status(self, resource_id: int, status: str) -> None:
        with self._session("Resource status update") as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE Resources SET status = ? WHERE id = ?;",
                (status, resource_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Resource", resource_id)

    def get_resource(self, resource_id: int) -> Optional[ResourceDescriptor]:
        with self._session("Resource lookup") as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM Resources WHERE id = ?;", (resource_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_resource(row)

    def get_candidates(
        self,
        resource_type: str,
        exclude_id: int,
        limit: int,
    ) -> list[ResourceDescriptor]:
        """Return resources of ``resource_type`` other than ``exclude_id`` in id order."""
        with self._session("Candidate lookup") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT *
                FROM Resources
                WHERE resource_type = ? AND id != ?
                ORDER BY id ASC
                LIMIT ?;
                """,
                (resource_type, exclude_id, limit),
            )
            return [self._row_to_resource(row) for row in cursor.fetchall()]

    def check_availability(self, resource_id: int, start: datetime, end: datetime) -> bool:
        """True when the resource is in service and has no overlapping confirmed reservation."""
        with self._session("Availability check") as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT status FROM Resources WHERE id = ?;", (resource_id,))
            row = cursor.fetchone()
            if row is None or str(row["status"]) != RESOURCE_STATUS_AVAILABLE:
                return False
            cursor.execute(
                """
                SELECT COUNT(*) AS count
                FROM Reservations
                WHERE resource_id = ?
                  AND status = ?
                  AND start_time < ?
                  AND end_time > ?;
                """,
                (resource_id, RESERVATION_STATUS_CONFIRMED, to_iso(end), to_iso(start)),
            )
            return int(cursor.fetchone()["count"]) == 0

    def add_reservation(
        self,
        resource_id: int,
        user_id: str,
        program_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> Reservation:
        with self._session("Reservation insert") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Reservations (resource_id, user_id, program_id, start_time, end_time)
                VALUES (?, ?, ?, ?, ?);
                """,
                (resource_id, user_id, program_id, to_iso(start_time), to_iso(end_time)),
            )
            reservation_id = int(cursor.lastrowid)
        return Reservation(
            reservation_id=reservation_id,
            resource_id=resource_id,
            user_id=user_id,
            program_id=program_id,
            start_time=start_time,
            end_time=end_time,
        )

    def get_reservation(self, reservation_id: int) -> Optional[Reservation]:
        with self._session("Reservation lookup") as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM Reservations WHERE id = ?;", (reservation_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_reservation(row)

    def update_reservation_resource(self, reservation_id: int, new_resource_id: int) -> None:
        with self._session("Reservation resource update") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Reservations
                SET resource_id = ?, updated_at = ?
                WHERE id = ?;
                """,
                (new_resource_id, to_iso(datetime.now(timezone.utc)), reservation_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Reservation", reservation_id)
        logger.info(
            "Reservation moved | reservation_id=%s | resource_id=%s",
            reservation_id,
            new_resource_id,
        )

    def cancel_reservation(self, reservation_id: int, reason: str) -> None:
        with self._session("Reservation cancellation") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Reservations
                SET status = ?, cancellation_reason = ?, updated_at = ?
                WHERE id = ?;
                """,
                (
                    RESERVATION_STATUS_CANCELLED,
                    reason,
                    to_iso(datetime.now(timezone.utc)),
                    reservation_id,
                ),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Reservation", reservation_id)
        logger.info("Reservation cancelled | reservation_id=%s | reason=%s", reservation_id, reason)

    def notify(self, user_id: str, message: str, channels: Sequence[str]) -> None:
        """Write a notification to the outbox; delivery happens elsewhere."""
        with self._session("Notification enqueue") as conn:
            conn.execute(
                """
                INSERT INTO Notifications (user_id, message, channels, created_at)
                VALUES (?, ?, ?, ?);
                """,
                (
                    user_id,
                    message,
                    json.dumps(list(channels)),
                    to_iso(datetime.now(timezone.utc)),
                ),
            )

    def list_notifications(self, user_id: str) -> list[str]:
        with self._session("Notification lookup") as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT message FROM Notifications WHERE user_id = ? ORDER BY id ASC;",
                (user_id,),
            )
            return [str(row["message"]) for row in cursor.fetchall()]
