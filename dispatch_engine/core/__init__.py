"""
Dispatch Engine Core Package

Filtering, factor scoring, load balancing and the dispatch coordinator.
"""

from .candidate_filter import CandidateFilter
from .coordinator import DispatchCoordinator
from .factors import FactorCalculator
from .load_balancer import LoadBalancer
from .scoring import ScoredCandidate, ScoringEngine, WeightTuner

__all__ = [
    "CandidateFilter",
    "DispatchCoordinator",
    "FactorCalculator",
    "LoadBalancer",
    "ScoredCandidate",
    "ScoringEngine",
    "WeightTuner",
]
