"""Tests for policy configuration ranges, presets and decision helpers."""

from __future__ import annotations

import pytest

from reassignment.domain.errors import ValidationError
from reassignment.domain.models import EquivalenceType
from reassignment.domain.policy import (
    PolicyConfiguration,
    ScoringWeights,
    default_for,
    lenient_for,
    preset,
    strict_for,
)


# --- Baseline pass ---

def test_default_preset_is_valid() -> None:
    policy = default_for("ENG")
    result = policy.validate()

    assert result.is_valid
    assert result.errors == []
    assert policy.max_suggestions == 5
    assert policy.minimum_similarity_score == 60.0


def test_presets_differ_in_strictness() -> None:
    lenient = lenient_for("ENG")
    strict = strict_for("ENG")

    assert lenient.validate().is_valid
    assert strict.validate().is_valid
    assert lenient.default_capacity_tolerance > strict.default_capacity_tolerance
    assert lenient.minimum_similarity_score == 50.0
    assert strict.minimum_similarity_score == 70.0
    assert strict.max_rejections_before_penalty == 2


def test_unknown_preset_raises() -> None:
    with pytest.raises(ValidationError, match="unknown preset"):
        preset("relaxed", "ENG")


# --- range rules ---

@pytest.mark.parametrize(
    ("field_name", "value"),
    [
        ("default_capacity_tolerance", 101),
        ("max_suggestions", 0),
        ("max_suggestions", 21),
        ("default_response_time_hours", 0.5),
        ("urgent_response_time_hours", 0.25),
        ("auto_approval_threshold_hours", 73),
        ("rejection_penalty_points", 51),
        ("max_rejections_before_penalty", 0),
    ],
)
def test_out_of_range_values_are_rejected(field_name: str, value: float) -> None:
    with pytest.raises(ValidationError) as exc_info:
        PolicyConfiguration.create("ENG", **{field_name: value})
    assert any(field_name in message for message in exc_info.value.errors)


def test_integer_fields_reject_fractions() -> None:
    with pytest.raises(ValidationError) as exc_info:
        PolicyConfiguration.create("ENG", max_suggestions=2.5)
    assert "max_suggestions must be an integer" in exc_info.value.errors


def test_urgent_window_longer_than_default_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        PolicyConfiguration.create(
            "ENG",
            default_response_time_hours=4,
            urgent_response_time_hours=8,
        )
    assert exc_info.value.errors == [
        "urgent_response_time_hours cannot be longer than default_response_time_hours"
    ]


def test_validate_collects_every_violation() -> None:
    policy = PolicyConfiguration(
        program_id="ENG",
        default_capacity_tolerance=150,
        max_suggestions=0,
    )
    result = policy.validate()

    assert not result.is_valid
    assert len(result.errors) == 2


# --- weights ---

def test_weights_must_sum_to_one() -> None:
    assert ScoringWeights().validate() == []
    assert ScoringWeights(0.5, 0.5, 0.5, 0.5).validate() == ["weights must sum to 1.0"]


def test_unknown_weight_key_is_rejected() -> None:
    with pytest.raises(ValidationError):
        ScoringWeights.from_mapping({"distance": 1.0})


# --- updates ---

def test_update_is_atomic() -> None:
    policy = default_for("ENG")

    with pytest.raises(ValidationError) as exc_info:
        policy.updated({"max_suggestions": 8, "default_capacity_tolerance": 150})

    assert "default_capacity_tolerance must be between 0 and 100 percent" in exc_info.value.errors
    assert policy.max_suggestions == 5


def test_update_applies_valid_changes_and_merges_weights() -> None:
    policy = default_for("ENG")

    updated = policy.updated(
        {
            "max_suggestions": 8,
            "weights": {"capacity": 0.25, "features": 0.40},
        }
    )

    assert updated.max_suggestions == 8
    assert updated.weights == ScoringWeights(0.25, 0.40, 0.20, 0.15)
    assert policy.max_suggestions == 5


def test_update_rejects_identity_fields() -> None:
    with pytest.raises(ValidationError) as exc_info:
        default_for("ENG").updated({"program_id": "OTHER"})
    assert exc_info.value.errors == ["program_id cannot be updated"]


def test_update_checks_cross_field_rules_on_merged_values() -> None:
    policy = default_for("ENG")
    with pytest.raises(ValidationError):
        policy.updated({"default_response_time_hours": 2})


# --- decision helpers ---

def test_response_time_depends_on_urgency() -> None:
    policy = default_for("ENG")
    assert policy.response_time_hours(is_urgent=False) == 24.0
    assert policy.response_time_hours(is_urgent=True) == 4.0


def test_auto_approval_rules() -> None:
    policy = default_for("ENG").updated(
        {"auto_approval_enabled": True, "auto_approval_threshold_hours": 2}
    )

    assert policy.should_auto_approve(1.5, is_equivalent=True)
    assert not policy.should_auto_approve(3.0, is_equivalent=True)
    assert not policy.should_auto_approve(-1.0, is_equivalent=True)
    assert not policy.should_auto_approve(1.5, is_equivalent=False)
    assert not default_for("ENG").should_auto_approve(1.0, is_equivalent=True)


def test_penalty_threshold() -> None:
    policy = default_for("ENG")
    assert not policy.should_apply_penalty_for_rejection(2)
    assert policy.should_apply_penalty_for_rejection(3)
    disabled = policy.updated({"apply_penalty_for_rejection": False})
    assert not disabled.should_apply_penalty_for_rejection(10)


def test_notification_channels_follow_flags() -> None:
    assert default_for("ENG").enabled_notification_channels() == ["email", "push"]
    assert strict_for("ENG").enabled_notification_channels() == ["email", "sms", "push"]


def test_classify_uses_configured_thresholds() -> None:
    policy = default_for("ENG")
    assert policy.classify(97) is EquivalenceType.EXACT_MATCH
    assert policy.classify(80) is EquivalenceType.TYPE_MATCH
    assert policy.classify(55) is EquivalenceType.ACCEPTABLE_MATCH
    assert policy.classify(10) is EquivalenceType.NO_MATCH


def test_round_trip_through_dict() -> None:
    policy = strict_for("ENG")
    assert PolicyConfiguration.from_dict(policy.to_dict()) == policy
