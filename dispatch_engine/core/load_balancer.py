"""
Dispatch Engine Load Balancer

Correction pass over a ranked candidate list. Drivers already carrying
active rides lose score so the scorer does not keep funnelling requests to
the same high-rated driver while the rest of the fleet idles.

Penalty rule (first match wins):
    load >= max_rides_per_driver                  -> overload_penalty (0.5)
    load / max_rides_per_driver > optimal (0.75)  -> high_utilization_penalty (0.2)

A penalty never excludes a candidate; an overloaded driver still wins if
every alternative is worse.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional

from ..models import LoadBalancingConfig
from .scoring import ScoredCandidate, ranking_key


logger = logging.getLogger(__name__)


class LoadBalancer:
    """Applies workload penalties and re-ranks."""

    def __init__(self, config: Optional[LoadBalancingConfig] = None):
        self.config = config or LoadBalancingConfig()

    def penalty_for(self, load: int) -> float:
        cfg = self.config
        if load >= cfg.max_rides_per_driver:
            return cfg.overload_penalty
        if load / cfg.max_rides_per_driver > cfg.optimal_utilization_rate:
            return cfg.high_utilization_penalty
        return 0.0

    def utilization(self, load: int) -> float:
        return min(1.0, load / self.config.max_rides_per_driver)

    def rebalance(
        self,
        candidates: Iterable[ScoredCandidate],
        workloads: Mapping[str, int],
    ) -> List[ScoredCandidate]:
        """
        Penalize loaded drivers and return the list re-sorted.

        Args:
            candidates: Scored candidates (any order)
            workloads: driver_id -> count of active rides; missing means 0

        Returns:
            New list of candidates; scores are only ever lowered
        """
        adjusted: List[ScoredCandidate] = []
        for candidate in candidates:
            load = workloads.get(candidate.driver_id, 0)
            penalty = self.penalty_for(load)
            if penalty:
                new_score = max(0.0, candidate.score - penalty)
                logger.debug(
                    f"Driver {candidate.driver_id} load={load}: "
                    f"score {candidate.score:.3f} -> {new_score:.3f}"
                )
                candidate = replace(
                    candidate,
                    score=new_score,
                    load_penalty=candidate.load_penalty + penalty,
                )
            adjusted.append(candidate)

        return sorted(adjusted, key=ranking_key)

    def fleet_utilization(self, workloads: Mapping[str, int], driver_ids: Iterable[str]) -> Dict[str, float]:
        """Per-driver utilization for the given drivers."""
        return {driver_id: self.utilization(workloads.get(driver_id, 0)) for driver_id in driver_ids}
