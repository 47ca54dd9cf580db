"""Per-program policy lifecycle: lookup, creation from presets, updates and removal."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from reassignment.domain.contracts import PolicyStore, RequestStore
from reassignment.domain.errors import NotFoundError, ValidationError
from reassignment.domain.policy import PolicyConfiguration, PolicyValidation, default_for, preset
from reassignment.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class PolicyRemoval:
    program_id: str
    hard_deleted: bool
    pending_requests: int


class PolicyService:
    def __init__(self, store: PolicyStore, requests: RequestStore) -> None:
        self._store = store
        self._requests = requests

    def get_effective_policy(self, program_id: str) -> PolicyConfiguration:
        """Return the program's active policy, or an unsaved default preset."""
        policy = self._store.get_policy(program_id)
        if policy is not None and policy.is_active:
            return policy
        return default_for(program_id)

    def get_policy(self, program_id: str) -> PolicyConfiguration:
        policy = self._store.get_policy(program_id)
        if policy is None:
            raise NotFoundError("Policy", program_id)
        return policy

    def create_policy(
        self,
        program_id: str,
        preset_name: str = "default",
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> PolicyConfiguration:
        """Create (or replace) the program's policy from a preset plus overrides."""
        policy = preset(preset_name, program_id)
        if overrides:
            policy = policy.updated(overrides)
        self._store.save_policy(policy)
        logger.info(
            "Policy created | program_id=%s | preset=%s | summary=%s",
            program_id,
            preset_name,
            policy.summary(),
        )
        return policy

    def update_policy(self, program_id: str, changes: Mapping[str, Any]) -> PolicyConfiguration:
        """Apply ``changes`` atomically; the stored policy is untouched on failure."""
        current = self.get_policy(program_id)
        if not changes:
            raise ValidationError(["no changes supplied"], subject="Policy update")
        updated = current.updated(changes)
        self._store.save_policy(updated)
        logger.info(
            "Policy updated | program_id=%s | fields=%s",
            program_id,
            ",".join(sorted(changes)),
        )
        return updated

    def validate_policy(self, program_id: str) -> PolicyValidation:
        return self.get_policy(program_id).validate()

    def activate_policy(self, program_id: str) -> PolicyConfiguration:
        policy = self.get_policy(program_id).activated()
        self._store.save_policy(policy)
        logger.info("Policy activated | program_id=%s", program_id)
        return policy

    def deactivate_policy(self, program_id: str) -> PolicyConfiguration:
        policy = self.get_policy(program_id).deactivated()
        self._store.save_policy(policy)
        logger.info("Policy deactivated | program_id=%s", program_id)
        return policy

    def remove_policy(self, program_id: str) -> PolicyRemoval:
        """Hard-delete unless pending requests still reference the program."""
        self.get_policy(program_id)
        pending = self._requests.count_pending_for_program(program_id)
        if pending > 0:
            self.deactivate_policy(program_id)
            logger.info(
                "Policy soft-deleted | program_id=%s | pending_requests=%s",
                program_id,
                pending,
            )
            return PolicyRemoval(program_id=program_id, hard_deleted=False, pending_requests=pending)

        self._store.delete_policy(program_id)
        logger.info("Policy deleted | program_id=%s", program_id)
        return PolicyRemoval(program_id=program_id, hard_deleted=True, pending_requests=0)
