"""Multi-criteria similarity scoring between an original resource and candidates.

Every function in this module is pure. Availability is supplied by the caller
as a precomputed map so scoring never blocks on I/O.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional, Sequence

import numpy as np

from reassignment.domain.models import ResourceDescriptor, ScoreBreakdown, SimilarityResult
from reassignment.domain.policy import ScoringWeights
from reassignment.utils.logger import get_logger


logger = get_logger(__name__)

NEUTRAL_CAPACITY_SCORE = 50.0
LARGER_CAPACITY_FLOOR = 85.0
UNDER_CAPACITY_FACTOR = 75.0
SUPERSET_BONUS = 10.0
SAME_BUILDING_BASE = 60.0
SAME_FLOOR_BONUS = 40.0
FLOOR_STEP_PENALTY = 10.0


def capacity_score(original: Optional[int], candidate: Optional[int]) -> float:
    if original is None or candidate is None:
        return NEUTRAL_CAPACITY_SCORE
    if candidate == original:
        return 100.0
    if candidate > original:
        return max(LARGER_CAPACITY_FLOOR, original / candidate * 100.0)
    # Under-capacity is penalized by a flat 25% and never receives a bonus.
    return candidate / original * UNDER_CAPACITY_FACTOR


def feature_score(original: Iterable[str], candidate: Iterable[str]) -> float:
    original_set = frozenset(original)
    candidate_set = frozenset(candidate)
    if not original_set and not candidate_set:
        return 100.0
    if not original_set or not candidate_set:
        return 0.0
    jaccard = len(original_set & candidate_set) / len(original_set | candidate_set)
    score = jaccard * 100.0
    if candidate_set >= original_set:
        score += SUPERSET_BONUS
    return min(100.0, score)


def levenshtein_distance(left: str, right: str) -> int:
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + cost,
                )
            )
        previous = current
    return previous[-1]


def text_similarity(left: Optional[str], right: Optional[str]) -> float:
    """Normalized edit-distance similarity in [0, 100]; empty text on either side is 0."""
    left_norm = (left or "").strip().lower()
    right_norm = (right or "").strip().lower()
    if not left_norm or not right_norm:
        return 0.0
    longest = max(len(left_norm), len(right_norm))
    distance = levenshtein_distance(left_norm, right_norm)
    return (1.0 - distance / longest) * 100.0


def _normalized(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _location_text(resource: ResourceDescriptor) -> Optional[str]:
    return resource.location or resource.building


def location_score(original: ResourceDescriptor, candidate: ResourceDescriptor) -> float:
    original_building = _normalized(original.building)
    candidate_building = _normalized(candidate.building)
    if original_building and original_building == candidate_building:
        if original.floor is None or candidate.floor is None:
            return SAME_BUILDING_BASE
        floor_delta = abs(original.floor - candidate.floor)
        if floor_delta == 0:
            return SAME_BUILDING_BASE + SAME_FLOOR_BONUS
        return SAME_BUILDING_BASE + max(0.0, SAME_FLOOR_BONUS - FLOOR_STEP_PENALTY * floor_delta)
    return text_similarity(_location_text(original), _location_text(candidate))


def availability_score(resource_id: int, availability: Mapping[int, bool]) -> float:
    return 100.0 if availability.get(resource_id, False) else 0.0


def aggregate_score(breakdown: ScoreBreakdown, weights: ScoringWeights) -> float:
    subscores = np.array(
        [breakdown.capacity, breakdown.features, breakdown.location, breakdown.availability],
        dtype=float,
    )
    weight_vector = np.array(
        [weights.capacity, weights.features, weights.location, weights.availability],
        dtype=float,
    )
    return round(float(np.dot(subscores, weight_vector)), 2)


def filter_by_minimum_score(
    results: Sequence[SimilarityResult],
    threshold: float,
) -> list[SimilarityResult]:
    return [result for result in results if result.score >= threshold]


def top_n(results: Sequence[SimilarityResult], n: int) -> list[SimilarityResult]:
    if n <= 0:
        return []
    return list(results[:n])


def _describe(
    original: ResourceDescriptor,
    candidate: ResourceDescriptor,
    breakdown: ScoreBreakdown,
    score: float,
    exact_match_threshold: float,
) -> tuple[tuple[str, ...], tuple[str, ...]]:
    pros: list[str] = []
    cons: list[str] = []

    if score >= exact_match_threshold:
        pros.append("Exact match")

    if original.capacity is not None and candidate.capacity is not None:
        if candidate.capacity == original.capacity:
            pros.append("Same capacity")
        elif candidate.capacity > original.capacity:
            pros.append(f"Larger capacity ({candidate.capacity} vs {original.capacity})")
        else:
            cons.append(f"Smaller capacity ({candidate.capacity} vs {original.capacity})")
    else:
        cons.append("Capacity unknown")

    missing = sorted(original.features - candidate.features)
    if missing:
        cons.append("Missing features: " + ", ".join(missing))
    elif original.features:
        pros.append("Has all original features")

    if breakdown.location == SAME_BUILDING_BASE + SAME_FLOOR_BONUS and original.building:
        pros.append("Same building and floor")
    elif _normalized(original.building) and (
        _normalized(original.building) == _normalized(candidate.building)
    ):
        pros.append("Same building")
        if original.floor is not None and candidate.floor is not None:
            cons.append("Different floor")
    else:
        cons.append("Different building")

    if breakdown.availability == 100.0:
        pros.append("Available for the requested time")
    else:
        cons.append("Not available for the requested time")

    return tuple(pros), tuple(cons)


class SimilarityScoringService:
    """Ranks candidate resources against an original resource."""

    def score(
        self,
        original: ResourceDescriptor,
        candidates: Sequence[ResourceDescriptor],
        weights: ScoringWeights,
        availability: Mapping[int, bool],
        *,
        exact_match_threshold: float = 100.0,
    ) -> list[SimilarityResult]:
        """Return one result per candidate, sorted by aggregate score descending.

        Ties keep candidate order. Weights are used as given.
        """
        results: list[SimilarityResult] = []
        for candidate in candidates:
            raw = ScoreBreakdown(
                capacity=capacity_score(original.capacity, candidate.capacity),
                features=feature_score(original.features, candidate.features),
                location=location_score(original, candidate),
                availability=availability_score(candidate.resource_id, availability),
            )
            # Aggregate unrounded sub-scores; only the reported breakdown is rounded.
            total = aggregate_score(raw, weights)
            breakdown = ScoreBreakdown(
                **{name: round(value, 2) for name, value in raw.to_dict().items()}
            )
            pros, cons = _describe(
                original, candidate, breakdown, total, exact_match_threshold
            )
            results.append(
                SimilarityResult(
                    resource_id=candidate.resource_id,
                    score=total,
                    breakdown=breakdown,
                    pros=pros,
                    cons=cons,
                )
            )

        ranked = sorted(results, key=lambda item: item.score, reverse=True)
        logger.debug(
            "Similarity scoring completed | original=%s | candidates=%s | best=%s",
            original.resource_id,
            len(ranked),
            ranked[0].score if ranked else None,
        )
        return ranked
