"""Tests for the similarity scoring functions and ranking service."""

from __future__ import annotations

from dataclasses import replace

import pytest

from reassignment.domain.models import ResourceDescriptor, ScoreBreakdown, SimilarityResult
from reassignment.domain.policy import ScoringWeights
from reassignment.services.similarity_service import (
    SimilarityScoringService,
    aggregate_score,
    capacity_score,
    feature_score,
    filter_by_minimum_score,
    levenshtein_distance,
    location_score,
    text_similarity,
    top_n,
)


def _resource(resource_id: int, **overrides) -> ResourceDescriptor:
    values = {
        "resource_id": resource_id,
        "resource_type": "CLASSROOM",
        "capacity": 30,
        "features": frozenset({"projector", "whiteboard"}),
        "building": "Block A",
        "floor": 1,
        "location": "Block A, floor 1",
        "name": f"Room {resource_id}",
    }
    values.update(overrides)
    return ResourceDescriptor(**values)


# --- capacity ---

def test_equal_capacity_scores_full() -> None:
    assert capacity_score(30, 30) == 100.0


def test_larger_capacity_is_floored_at_85() -> None:
    assert capacity_score(30, 100) == 85.0
    assert capacity_score(30, 32) == pytest.approx(93.75)


def test_smaller_capacity_takes_flat_penalty() -> None:
    assert capacity_score(30, 15) == pytest.approx(37.5)


def test_missing_capacity_is_neutral() -> None:
    assert capacity_score(None, 30) == 50.0
    assert capacity_score(30, None) == 50.0


# --- features ---

def test_both_feature_sets_empty_is_identical() -> None:
    assert feature_score(set(), set()) == 100.0


def test_one_empty_feature_set_scores_zero() -> None:
    assert feature_score({"projector"}, set()) == 0.0
    assert feature_score(set(), {"projector"}) == 0.0


def test_superset_bonus_is_capped() -> None:
    assert feature_score({"a", "b"}, {"a", "b"}) == 100.0
    # jaccard 2/3 plus superset bonus
    assert feature_score({"a", "b"}, {"a", "b", "c"}) == pytest.approx(76.6667, abs=1e-3)


def test_partial_overlap_has_no_bonus() -> None:
    assert feature_score({"a", "b"}, {"b", "c"}) == pytest.approx(33.3333, abs=1e-3)


# --- location ---

def test_levenshtein_distance_basics() -> None:
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("", "abc") == 3
    assert levenshtein_distance("same", "same") == 0


def test_text_similarity_is_case_insensitive_and_empty_is_zero() -> None:
    assert text_similarity("Block A", "block a") == 100.0
    assert text_similarity("", "Block A") == 0.0
    assert text_similarity(None, None) == 0.0


def test_same_building_floor_distance_scoring() -> None:
    original = _resource(1, floor=1)
    assert location_score(original, _resource(2, floor=1)) == 100.0
    assert location_score(original, _resource(3, floor=3)) == 80.0
    assert location_score(original, _resource(4, floor=9)) == 60.0
    assert location_score(original, _resource(5, floor=None)) == 60.0


def test_different_building_falls_back_to_text_similarity() -> None:
    original = _resource(1, building="Block A", location="North Campus")
    candidate = _resource(2, building="Block Z", location="North Campus")
    assert location_score(original, candidate) == 100.0


# --- ranking ---

def test_identical_available_candidate_is_exact_match() -> None:
    original = _resource(1)
    service = SimilarityScoringService()

    results = service.score(original, [_resource(2)], ScoringWeights(), {2: True})

    assert len(results) == 1
    assert results[0].score == 100.0
    assert "Exact match" in results[0].pros
    assert "Same building and floor" in results[0].pros


def test_half_capacity_unrelated_candidate_is_filtered_out() -> None:
    original = _resource(1)
    weak = _resource(
        2,
        capacity=15,
        features=frozenset({"stage"}),
        building="Block Q",
        location="Annex",
    )
    service = SimilarityScoringService()

    results = service.score(original, [weak], ScoringWeights(), {2: True})

    assert results[0].breakdown.capacity == 37.5
    assert results[0].breakdown.features == 0.0
    assert results[0].score < 60.0
    assert filter_by_minimum_score(results, 60.0) == []
    assert "Different building" in results[0].cons


def test_results_are_sorted_and_ties_keep_candidate_order() -> None:
    original = _resource(1)
    candidates = [
        _resource(5, capacity=15),
        _resource(3),
        _resource(4),
    ]
    service = SimilarityScoringService()

    results = service.score(original, candidates, ScoringWeights(), {3: True, 4: True, 5: True})

    assert [item.resource_id for item in results] == [3, 4, 5]
    assert all(0.0 <= item.score <= 100.0 for item in results)


def test_unavailable_candidate_scores_zero_availability() -> None:
    service = SimilarityScoringService()
    results = service.score(_resource(1), [_resource(2)], ScoringWeights(), {})

    assert results[0].breakdown.availability == 0.0
    assert results[0].score == 85.0
    assert "Not available for the requested time" in results[0].cons


def test_aggregate_uses_given_weights_without_renormalizing() -> None:
    service = SimilarityScoringService()
    skewed = ScoringWeights(capacity=1.0, features=1.0, location=0.0, availability=0.0)

    results = service.score(_resource(1), [_resource(2)], skewed, {2: True})

    assert results[0].score == 200.0


def test_top_n_handles_non_positive_n() -> None:
    service = SimilarityScoringService()
    results = service.score(
        _resource(1), [_resource(2), _resource(3)], ScoringWeights(), {2: True, 3: True}
    )

    assert top_n(results, 0) == []
    assert len(top_n(results, 1)) == 1
    assert len(top_n(results, 10)) == 2


def test_aggregate_uses_unrounded_sub_scores() -> None:
    service = SimilarityScoringService()
    weights = ScoringWeights(capacity=0.5, features=0.5, location=0.0, availability=0.0)
    original = _resource(1, capacity=9, features=frozenset())
    candidate = _resource(2, capacity=7, features=frozenset())

    results = service.score(original, [candidate], weights, {2: True})

    assert results[0].breakdown.capacity == 58.33
    assert results[0].score == round(0.5 * (7 / 9 * 75.0) + 0.5 * 100.0, 2)


# --- filtering and aggregation properties ---

_POOL_SCORES = [100.0, 97.5, 91.0, 75.0, 74.99, 60.0, 50.0, 33.3, 12.5, 0.0]


def _pool() -> list[SimilarityResult]:
    empty = ScoreBreakdown(capacity=0.0, features=0.0, location=0.0, availability=0.0)
    return [
        SimilarityResult(resource_id=index, score=score, breakdown=empty)
        for index, score in enumerate(_POOL_SCORES, start=1)
    ]


@pytest.mark.parametrize("threshold", [0.0, 0.01, 12.5, 50.0, 60.0, 74.995, 90.0, 99.99, 100.0])
@pytest.mark.parametrize("n", [0, 1, 2, 3, 5, 10, 25])
def test_filtered_top_n_respects_threshold_and_size(threshold: float, n: int) -> None:
    selected = top_n(filter_by_minimum_score(_pool(), threshold), n)

    expected_size = min(n, sum(1 for score in _POOL_SCORES if score >= threshold))
    assert len(selected) == expected_size
    assert len(selected) <= n
    assert all(item.score >= threshold for item in selected)
    assert [item.score for item in selected] == sorted(
        (item.score for item in selected), reverse=True
    )


@pytest.mark.parametrize("field_name", ["capacity", "features", "location", "availability"])
@pytest.mark.parametrize(
    "weights",
    [
        ScoringWeights(),
        ScoringWeights(capacity=0.7, features=0.1, location=0.2, availability=0.0),
        ScoringWeights(capacity=0.0, features=0.0, location=0.0, availability=1.0),
    ],
)
def test_aggregate_is_monotonic_in_each_sub_score(field_name: str, weights: ScoringWeights) -> None:
    base = ScoreBreakdown(capacity=40.0, features=55.0, location=70.0, availability=0.0)

    totals = [
        aggregate_score(replace(base, **{field_name: float(value)}), weights)
        for value in range(0, 101, 5)
    ]

    assert all(later >= earlier for earlier, later in zip(totals, totals[1:]))
    assert all(0.0 <= total <= 100.0 for total in totals)
