#!/usr/bin/env python3
"""Validate local reassignment engine environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sqlite3
import sys
import tempfile
from dataclasses import replace
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from reassignment.domain.models import ReassignmentReason, UserPriority
from reassignment.repository.reassignment_repository import ReassignmentRepository
from reassignment.services.history_service import HistoryService
from reassignment.services.notification_service import NotificationService
from reassignment.services.policy_service import PolicyService
from reassignment.services.reassignment_service import ReassignmentWorkflowService
from reassignment.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="reassign-env-")

    # CHECK 1: Python version >= 3.11
    if sys.version_info >= (3, 11):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.11",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable with versions
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("numpy", "numpy"),
        ("pandas", "pandas"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    from importlib.metadata import version

    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except Exception as exc:  # pragma: no cover - runtime guard
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        temp_db_path = Path(temp_dir) / "reassignment_validation.db"
        validation_settings = replace(get_settings(), database_path=temp_db_path)
        repository = ReassignmentRepository(validation_settings)

        # CHECK 3: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Synthetic campus seeding
        expected_reservations = (
            validation_settings.synthetic_reservation_days
            * validation_settings.synthetic_reservations_per_day
        )
        try:
            repository.seed_synthetic_data()
            with sqlite3.connect(temp_db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) FROM Resources;")
                resources = int(cursor.fetchone()[0])
                cursor.execute("SELECT COUNT(*) FROM Reservations;")
                reservations = int(cursor.fetchone()[0])
            if resources == 0 or reservations != expected_reservations:
                raise RuntimeError(
                    f"expected {expected_reservations} reservations, got {reservations} "
                    f"across {resources} resources"
                )
            ok, line = _print_result(
                "Synthetic dataset",
                True,
                f": {resources} resources, {reservations} reservations",
            )
        except Exception as exc:
            ok, line = _print_result("Synthetic dataset", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: End-to-end reassignment request
        policy_service = PolicyService(store=repository, requests=repository)
        workflow = ReassignmentWorkflowService(
            directory=repository,
            reservations=repository,
            requests=repository,
            standings=repository,
            policy_service=policy_service,
            history_service=HistoryService(sink=repository, settings=validation_settings),
            notification_service=NotificationService(notifier=repository),
            settings=validation_settings,
        )
        try:
            reservation = repository.get_reservation(1)
            if reservation is None:
                raise RuntimeError("seeded reservation 1 is missing")
            creation = workflow.create_reassignment_request(
                reservation_id=reservation.reservation_id,
                requested_by=reservation.user_id,
                reason=ReassignmentReason.MAINTENANCE,
                program_id=reservation.program_id,
                priority=UserPriority.STUDENT,
                is_urgent=False,
            )
            ok, line = _print_result(
                "Reassignment request",
                True,
                f": {len(creation.suggestions)} suggestions, status={creation.request.status.value}",
            )
        except Exception as exc:
            ok, line = _print_result("Reassignment request", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Reassignment Engine Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
