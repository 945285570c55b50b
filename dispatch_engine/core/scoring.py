"""
Dispatch Engine Scoring

Weighted combination of factor vectors into a single [0, 1] score, and the
deterministic ranking of candidates.

Determinism:
    The weighted sum runs over factors in a fixed field order, so identical
    inputs give bit-for-bit identical scores. Exact ties are broken by lower
    estimated pickup time, then by driver id.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from ..models import (
    AssignmentFactors,
    DispatchAssignment,
    DriverAvailability,
    ScoringWeights,
    clamp01,
)


# Dominant factor -> human-readable reason for alternates
FACTOR_REASONS = {
    "distance": "Closest driver",
    "driver_rating": "Highest rated driver",
    "acceptance_rate": "Most reliable driver",
    "vehicle_match": "Perfect vehicle match",
    "availability": "Immediately available",
    "efficiency": "Most efficient driver",
}
DEFAULT_REASON = "Best overall match"


@dataclass(frozen=True)
class ScoredCandidate:
    """
    One driver's position in the ranking for a ride.

    ``raw_score`` is the scorer's output; ``score`` is after any load penalty.
    """
    driver: DriverAvailability
    factors: AssignmentFactors
    score: float
    raw_score: float
    estimated_pickup_time_s: float
    distance_km: float
    load_penalty: float = 0.0

    @property
    def driver_id(self) -> str:
        return self.driver.driver_id


def ranking_key(candidate: ScoredCandidate) -> Tuple[float, float, str]:
    return (-candidate.score, candidate.estimated_pickup_time_s, candidate.driver_id)


def dominant_factor(factors: AssignmentFactors) -> str:
    """Name of the highest factor; the first in field order wins a tie."""
    best_name, best_value = None, -1.0
    for name, value in factors.as_dict().items():
        if value > best_value:
            best_name, best_value = name, value
    return best_name


def reason_for(factors: AssignmentFactors) -> str:
    return FACTOR_REASONS.get(dominant_factor(factors), DEFAULT_REASON)


def confidence_for(ranked: Sequence[ScoredCandidate]) -> float:
    """
    How decisively the winner beat the runner-up.

    1.0 with fewer than two candidates; otherwise ``2 * (best - second)``
    clamped to [0, 1], collapsing toward 0 as the top two converge.
    """
    if len(ranked) < 2:
        return 1.0
    return clamp01(2.0 * (ranked[0].score - ranked[1].score))


class ScoringEngine:
    """
    Applies a weight table to factor vectors.

    The weights are an explicit immutable value; swap them by building a new
    engine with ``with_weights``.
    """

    def __init__(self, weights: Optional[ScoringWeights] = None):
        self._weights = weights or ScoringWeights()
        self._order = tuple(type(self._weights).model_fields)

    @property
    def weights(self) -> ScoringWeights:
        return self._weights

    def with_weights(self, weights: ScoringWeights) -> "ScoringEngine":
        return ScoringEngine(weights)

    def score(self, factors: AssignmentFactors) -> float:
        total = 0.0
        for name in self._order:
            total += getattr(factors, name) * getattr(self._weights, name)
        return clamp01(total)

    def candidate(
        self,
        driver: DriverAvailability,
        factors: AssignmentFactors,
        estimated_pickup_time_s: float,
        distance_km: float,
    ) -> ScoredCandidate:
        value = self.score(factors)
        return ScoredCandidate(
            driver=driver,
            factors=factors,
            score=value,
            raw_score=value,
            estimated_pickup_time_s=estimated_pickup_time_s,
            distance_km=distance_km,
        )

    @staticmethod
    def rank(candidates: Iterable[ScoredCandidate]) -> List[ScoredCandidate]:
        return sorted(candidates, key=ranking_key)


class WeightTuner(ABC):
    """
    Hook for learned weight tables.

    Implementations look at past assignments and may propose a new weight
    table. Returning None keeps the current weights.
    """

    @abstractmethod
    async def propose(self, assignments: List[DispatchAssignment]) -> Optional[ScoringWeights]:
        ...
