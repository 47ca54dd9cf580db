"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from reassignment.controllers.analytics_controller import router as analytics_router
from reassignment.controllers.policy_controller import router as policy_router
from reassignment.controllers.reassignment_controller import router as reassignment_router
from reassignment.repository.reassignment_repository import ReassignmentRepository
from reassignment.services.history_service import HistoryService
from reassignment.services.notification_service import NotificationService
from reassignment.services.policy_service import PolicyService
from reassignment.services.reassignment_service import ReassignmentWorkflowService
from reassignment.services.similarity_service import SimilarityScoringService
from reassignment.utils.config import get_settings
from reassignment.utils.logger import get_logger


logger = get_logger(__name__)


def create_app() -> FastAPI:
    """
    Build and wire the FastAPI application.

    The sqlite repository plays every storage role (resource directory,
    reservations, requests, history, policies, standings and notification
    outbox); services receive it through explicit constructor injection.
    """
    settings = get_settings()

    # --- Repository (single SQLite connection factory) ---
    repository = ReassignmentRepository(settings)

    # --- Services (business logic, no direct DB access) ---
    notification_service = NotificationService(notifier=repository)
    policy_service = PolicyService(store=repository, requests=repository)
    history_service = HistoryService(sink=repository, settings=settings)
    scoring_service = SimilarityScoringService()
    workflow_service = ReassignmentWorkflowService(
        directory=repository,
        reservations=repository,
        requests=repository,
        standings=repository,
        policy_service=policy_service,
        history_service=history_service,
        notification_service=notification_service,
        scoring_service=scoring_service,
        settings=settings,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(reassignment_router)
    app.include_router(policy_router)
    app.include_router(analytics_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.repository = repository
    app.state.policy_service = policy_service
    app.state.history_service = history_service
    app.state.workflow_service = workflow_service

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    The schema must exist before the synthetic campus is seeded; seeding is
    skipped when resources are already present.
    """
    repository: ReassignmentRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    logger.info("Startup: seeding synthetic resources and reservations")
    repository.seed_synthetic_data()

    logger.info("Startup complete | system ready")


# Module-level app object for uvicorn
app = create_app()
