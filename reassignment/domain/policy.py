"""Per-program reassignment policy: thresholds, toggles and scoring weights."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Callable, Mapping, Optional

from reassignment.domain.errors import ValidationError
from reassignment.domain.models import EquivalenceType


@dataclass(frozen=True)
class ScoringWeights:
    capacity: float = 0.30
    features: float = 0.35
    location: float = 0.20
    availability: float = 0.15

    @classmethod
    def from_mapping(cls, value: Mapping[str, float] | "ScoringWeights") -> "ScoringWeights":
        if isinstance(value, ScoringWeights):
            return value
        unknown = set(value) - {item.name for item in fields(cls)}
        if unknown:
            raise ValidationError(
                [f"unknown weight '{name}'" for name in sorted(unknown)],
                subject="Scoring weights",
            )
        return replace(cls(), **dict(value))

    def validate(self) -> list[str]:
        errors: list[str] = []
        values = asdict(self)
        for name, weight in values.items():
            if not _is_number(weight):
                errors.append(f"weights.{name} must be a number")
            elif weight < 0.0:
                errors.append(f"weights.{name} must be >= 0")
        if not errors and not math.isclose(sum(values.values()), 1.0, abs_tol=1e-6):
            errors.append("weights must sum to 1.0")
        return errors


@dataclass(frozen=True)
class PolicyValidation:
    is_valid: bool
    errors: list[str]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _range_rule(
    name: str,
    lower: float,
    upper: float,
    *,
    integer: bool = False,
    unit: str = "",
) -> Callable[[Any], Optional[str]]:
    suffix = f" {unit}" if unit else ""

    def check(value: Any) -> Optional[str]:
        if integer and (not isinstance(value, int) or isinstance(value, bool)):
            return f"{name} must be an integer"
        if not _is_number(value):
            return f"{name} must be a number"
        if not lower <= value <= upper:
            return f"{name} must be between {lower:g} and {upper:g}{suffix}"
        return None

    return check


def _flag_rule(name: str) -> Callable[[Any], Optional[str]]:
    def check(value: Any) -> Optional[str]:
        if not isinstance(value, bool):
            return f"{name} must be a boolean"
        return None

    return check


def _program_rule(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return "program_id is required"
    return None


def _weights_rule(value: Any) -> Optional[str]:
    if not isinstance(value, ScoringWeights):
        return "weights must be a ScoringWeights instance"
    errors = value.validate()
    return "; ".join(errors) if errors else None


_FIELD_RULES: dict[str, Callable[[Any], Optional[str]]] = {
    "program_id": _program_rule,
    "default_capacity_tolerance": _range_rule(
        "default_capacity_tolerance", 0, 100, unit="percent"
    ),
    "max_suggestions": _range_rule("max_suggestions", 1, 20, integer=True),
    "prioritize_by_distance": _flag_rule("prioritize_by_distance"),
    "prioritize_by_availability": _flag_rule("prioritize_by_availability"),
    "default_response_time_hours": _range_rule(
        "default_response_time_hours", 1, 168, unit="hours"
    ),
    "urgent_response_time_hours": _range_rule(
        "urgent_response_time_hours", 0.5, 48, unit="hours"
    ),
    "reminder_interval_hours": _range_rule("reminder_interval_hours", 1, 24, unit="hours"),
    "notify_by_email": _flag_rule("notify_by_email"),
    "notify_by_sms": _flag_rule("notify_by_sms"),
    "notify_by_push": _flag_rule("notify_by_push"),
    "escalate_to_supervisor": _flag_rule("escalate_to_supervisor"),
    "auto_approval_enabled": _flag_rule("auto_approval_enabled"),
    "auto_approval_threshold_hours": _range_rule(
        "auto_approval_threshold_hours", 1, 72, unit="hours"
    ),
    "auto_approval_only_for_equivalent": _flag_rule("auto_approval_only_for_equivalent"),
    "apply_penalty_for_rejection": _flag_rule("apply_penalty_for_rejection"),
    "rejection_penalty_points": _range_rule("rejection_penalty_points", 0, 50, integer=True),
    "max_rejections_before_penalty": _range_rule(
        "max_rejections_before_penalty", 1, 10, integer=True
    ),
    "weights": _weights_rule,
    "minimum_similarity_score": _range_rule("minimum_similarity_score", 0, 100),
    "exact_match_min_score": _range_rule("exact_match_min_score", 0, 100),
    "good_match_min_score": _range_rule("good_match_min_score", 0, 100),
    "acceptable_match_min_score": _range_rule("acceptable_match_min_score", 0, 100),
    "is_active": _flag_rule("is_active"),
}

_NON_UPDATABLE_FIELDS = frozenset({"program_id", "is_active"})


@dataclass(frozen=True)
class PolicyConfiguration:
    """Tunable thresholds for one program.

    Instances are plain values; ``create`` and ``updated`` are the only ways to
    obtain a configuration that is guaranteed to satisfy every range rule.
    """

    program_id: str
    default_capacity_tolerance: float = 10.0
    max_suggestions: int = 5
    prioritize_by_distance: bool = True
    prioritize_by_availability: bool = True
    default_response_time_hours: float = 24.0
    urgent_response_time_hours: float = 4.0
    reminder_interval_hours: float = 6.0
    notify_by_email: bool = True
    notify_by_sms: bool = False
    notify_by_push: bool = True
    escalate_to_supervisor: bool = True
    auto_approval_enabled: bool = False
    auto_approval_threshold_hours: float = 2.0
    auto_approval_only_for_equivalent: bool = True
    apply_penalty_for_rejection: bool = True
    rejection_penalty_points: int = 5
    max_rejections_before_penalty: int = 3
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    minimum_similarity_score: float = 60.0
    exact_match_min_score: float = 95.0
    good_match_min_score: float = 75.0
    acceptable_match_min_score: float = 50.0
    is_active: bool = True

    @classmethod
    def create(cls, program_id: str, **values: Any) -> "PolicyConfiguration":
        if "weights" in values and not isinstance(values["weights"], ScoringWeights):
            values["weights"] = ScoringWeights.from_mapping(values["weights"])
        unknown = set(values) - set(_FIELD_RULES)
        if unknown:
            raise ValidationError(
                [f"unknown policy field '{name}'" for name in sorted(unknown)],
                subject="Policy configuration",
            )
        policy = cls(program_id=program_id, **values)
        result = policy.validate()
        if not result.is_valid:
            raise ValidationError(result.errors, subject="Policy configuration")
        return policy

    def validate(self) -> PolicyValidation:
        """Check every field independently and collect all violations."""
        errors: list[str] = []
        for name, rule in _FIELD_RULES.items():
            message = rule(getattr(self, name))
            if message:
                errors.append(message)
        errors.extend(self._cross_field_errors())
        return PolicyValidation(is_valid=not errors, errors=errors)

    def _cross_field_errors(self) -> list[str]:
        errors: list[str] = []
        if (
            _is_number(self.urgent_response_time_hours)
            and _is_number(self.default_response_time_hours)
            and self.urgent_response_time_hours > self.default_response_time_hours
        ):
            errors.append(
                "urgent_response_time_hours cannot be longer than "
                "default_response_time_hours"
            )
        thresholds = (
            self.acceptable_match_min_score,
            self.good_match_min_score,
            self.exact_match_min_score,
        )
        if all(_is_number(item) for item in thresholds) and not (
            thresholds[0] <= thresholds[1] <= thresholds[2]
        ):
            errors.append(
                "match thresholds must satisfy acceptable <= good <= exact"
            )
        return errors

    def updated(self, changes: Mapping[str, Any]) -> "PolicyConfiguration":
        """Return a new configuration with ``changes`` applied, or raise.

        Each changed field is checked on its own first; cross-field rules are
        then evaluated against the merged result. Nothing is applied unless the
        whole change set is valid.
        """
        errors: list[str] = []
        staged: dict[str, Any] = {}
        for name, value in changes.items():
            if name not in _FIELD_RULES:
                errors.append(f"unknown policy field '{name}'")
                continue
            if name in _NON_UPDATABLE_FIELDS:
                errors.append(f"{name} cannot be updated")
                continue
            if name == "weights" and isinstance(value, Mapping):
                try:
                    value = ScoringWeights.from_mapping({**asdict(self.weights), **value})
                except ValidationError as exc:
                    errors.extend(exc.errors)
                    continue
            message = _FIELD_RULES[name](value)
            if message:
                errors.append(message)
                continue
            staged[name] = value

        if errors:
            raise ValidationError(errors, subject="Policy update")

        candidate = replace(self, **staged)
        cross_errors = candidate._cross_field_errors()
        if cross_errors:
            raise ValidationError(cross_errors, subject="Policy update")
        return candidate

    def activated(self) -> "PolicyConfiguration":
        return replace(self, is_active=True)

    def deactivated(self) -> "PolicyConfiguration":
        return replace(self, is_active=False)

    def response_time_hours(self, is_urgent: bool) -> float:
        if is_urgent:
            return float(self.urgent_response_time_hours)
        return float(self.default_response_time_hours)

    def should_auto_approve(self, hours_until_event: float, is_equivalent: bool) -> bool:
        if not self.auto_approval_enabled:
            return False
        if hours_until_event < 0 or hours_until_event > self.auto_approval_threshold_hours:
            return False
        if self.auto_approval_only_for_equivalent and not is_equivalent:
            return False
        return True

    def should_apply_penalty_for_rejection(self, rejection_count: int) -> bool:
        return (
            self.apply_penalty_for_rejection
            and rejection_count >= self.max_rejections_before_penalty
        )

    def enabled_notification_channels(self) -> list[str]:
        channels: list[str] = []
        if self.notify_by_email:
            channels.append("email")
        if self.notify_by_sms:
            channels.append("sms")
        if self.notify_by_push:
            channels.append("push")
        return channels

    def classify(self, score: float) -> EquivalenceType:
        if score >= self.exact_match_min_score:
            return EquivalenceType.EXACT_MATCH
        if score >= self.good_match_min_score:
            return EquivalenceType.TYPE_MATCH
        if score >= self.acceptable_match_min_score:
            return EquivalenceType.ACCEPTABLE_MATCH
        return EquivalenceType.NO_MATCH

    def summary(self) -> str:
        parts = [
            f"Capacity tolerance: {self.default_capacity_tolerance:g}%",
            f"Max suggestions: {self.max_suggestions}",
            (
                f"Response time: {self.default_response_time_hours:g}h "
                f"(urgent: {self.urgent_response_time_hours:g}h)"
            ),
        ]
        if self.auto_approval_enabled:
            parts.append(f"Auto-approval: {self.auto_approval_threshold_hours:g}h threshold")
        if self.apply_penalty_for_rejection:
            parts.append(
                f"Penalty: {self.rejection_penalty_points} points after "
                f"{self.max_rejections_before_penalty} rejections"
            )
        return ", ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PolicyConfiguration":
        values = dict(payload)
        values["weights"] = ScoringWeights.from_mapping(values.get("weights") or {})
        return cls(**values)


_PRESETS: dict[str, dict[str, Any]] = {
    "default": {},
    "lenient": {
        "default_capacity_tolerance": 20.0,
        "max_suggestions": 8,
        "default_response_time_hours": 48.0,
        "urgent_response_time_hours": 8.0,
        "reminder_interval_hours": 12.0,
        "escalate_to_supervisor": False,
        "auto_approval_enabled": True,
        "auto_approval_threshold_hours": 4.0,
        "auto_approval_only_for_equivalent": False,
        "apply_penalty_for_rejection": False,
        "rejection_penalty_points": 0,
        "max_rejections_before_penalty": 5,
        "minimum_similarity_score": 50.0,
    },
    "strict": {
        "default_capacity_tolerance": 5.0,
        "max_suggestions": 3,
        "default_response_time_hours": 12.0,
        "urgent_response_time_hours": 2.0,
        "reminder_interval_hours": 3.0,
        "notify_by_sms": True,
        "auto_approval_threshold_hours": 1.0,
        "rejection_penalty_points": 10,
        "max_rejections_before_penalty": 2,
        "minimum_similarity_score": 70.0,
    },
}

PRESET_NAMES = tuple(_PRESETS)


def preset(name: str, program_id: str) -> PolicyConfiguration:
    """Build one of the named starting configurations for ``program_id``."""
    if name not in _PRESETS:
        raise ValidationError(
            [f"unknown preset '{name}'; expected one of {', '.join(PRESET_NAMES)}"],
            subject="Policy preset",
        )
    return PolicyConfiguration.create(program_id, **_PRESETS[name])


def default_for(program_id: str) -> PolicyConfiguration:
    return preset("default", program_id)


def lenient_for(program_id: str) -> PolicyConfiguration:
    return preset("lenient", program_id)


def strict_for(program_id: str) -> PolicyConfiguration:
    return preset("strict", program_id)
