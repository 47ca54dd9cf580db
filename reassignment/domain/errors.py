"""Exception hierarchy shared by the reassignment domain and its adapters."""

from __future__ import annotations

from typing import Any, Iterable, Optional


class ReassignmentError(Exception):
    """Base class for every reassignment failure."""

    error_code: str = "REASSIGNMENT_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ReassignmentError):
    """Raised when an entity or configuration violates one or more field rules."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, errors: Iterable[str], subject: str = "Validation") -> None:
        self.errors = list(errors)
        message = f"{subject} failed: " + "; ".join(self.errors)
        super().__init__(message, {"errors": self.errors})


class NotFoundError(ReassignmentError):
    """Raised when a referenced request, reservation, resource or policy is missing."""

    error_code = "NOT_FOUND"

    def __init__(self, entity: str, identifier: Any) -> None:
        self.entity = entity
        self.identifier = identifier
        super().__init__(
            f"{entity} {identifier!r} was not found",
            {"entity": entity, "id": str(identifier)},
        )


class StateError(ReassignmentError):
    """Raised when an operation is not allowed from the request's current state."""

    error_code = "INVALID_STATE"

    def __init__(self, attempted: str, current: str, reason: Optional[str] = None) -> None:
        self.attempted = attempted
        self.current = current
        message = f"Cannot {attempted} while request is {current}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"attempted": attempted, "current": current})


class DependencyError(ReassignmentError):
    """Raised when a collaborator call fails or times out."""

    error_code = "DEPENDENCY_ERROR"
