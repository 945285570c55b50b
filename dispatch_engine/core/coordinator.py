"""
Dispatch Engine Coordinator

Orchestrates one dispatch decision:

    ride -> CandidateFilter -> FactorCalculator -> ScoringEngine
         -> LoadBalancer -> select -> atomic commit -> DispatchAssignment

Concurrency:
    - A per-ride asyncio.Lock stops the same ride being dispatched twice
      from this process; the ride ``version`` check in the store covers
      other processes.
    - The driver claim is compare-and-swap inside the store commit. Losing
      the race excludes that driver and re-runs selection over the
      remaining candidates, bounded by ``max_claim_retries``.

Outcomes:
    - ``None`` when no driver is eligible (normal, not an error)
    - ``DispatchFailure`` when the ride already moved on, the claim retries
      are exhausted, or the store failed
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Set

from ..exceptions import (
    ConcurrentAssignmentConflict,
    DispatchFailure,
    InvalidRideTransition,
    PersistenceFailure,
)
from ..models import (
    AlternativeDriver,
    DispatchAssignment,
    DispatchConfig,
    DriverAvailability,
    DriverStatus,
    LoadBalancingConfig,
    RideRequest,
    RideStatus,
    ScoringWeights,
    TimeRange,
)
from ..oracles.signal_service import ExternalSignalService
from ..store.base import DispatchStore
from .candidate_filter import CandidateFilter
from .factors import FactorCalculator
from .geo import haversine_km, estimate_eta_seconds
from .load_balancer import LoadBalancer
from .scoring import ScoredCandidate, ScoringEngine, WeightTuner, confidence_for, reason_for


logger = logging.getLogger(__name__)


class DispatchCoordinator:
    """
    Matches a ride request to the best available driver.

    Example:
        coordinator = DispatchCoordinator(store=InMemoryDispatchStore())
        assignment = await coordinator.dispatch(ride)
        if assignment is None:
            # No drivers currently available
            ...
    """

    def __init__(
        self,
        store: DispatchStore,
        signals: Optional[ExternalSignalService] = None,
        weights: Optional[ScoringWeights] = None,
        load_balancing: Optional[LoadBalancingConfig] = None,
        config: Optional[DispatchConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            store: Record store for rides, drivers and assignments
            signals: External lookups (neutral sources when omitted)
            weights: Scoring weight table (documented defaults when omitted)
            load_balancing: Workload penalty thresholds
            config: Dispatch tunables
            clock: Wall-clock source, injectable for working-hours tests
        """
        self._config = config or (signals.config if signals else DispatchConfig())
        self._store = store
        self._filter = CandidateFilter(self._config)
        self._factors = FactorCalculator(signals, self._config)
        self._scoring = ScoringEngine(weights)
        self._balancer = LoadBalancer(load_balancing)
        self._clock = clock or datetime.utcnow
        self._ride_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def scoring(self) -> ScoringEngine:
        return self._scoring

    @property
    def load_balancer(self) -> LoadBalancer:
        return self._balancer

    def _lock_for(self, ride_id: str) -> asyncio.Lock:
        lock = self._ride_locks.get(ride_id)
        if lock is None:
            lock = asyncio.Lock()
            self._ride_locks[ride_id] = lock
        return lock

    # =========================================================================
    # Ranking
    # =========================================================================

    async def _driver_pool(self, ride: RideRequest) -> List[DriverAvailability]:
        return await self._store.query_drivers(
            status=DriverStatus.AVAILABLE,
            vehicle_class=ride.vehicle_class,
            limit=self._config.driver_pool_limit,
        )

    async def _score(self, ride: RideRequest, drivers: Iterable[DriverAvailability]) -> List[ScoredCandidate]:
        """Filter and score, without load balancing."""
        eligible = self._filter.filter(ride, drivers, self._clock())
        if not eligible:
            return []

        distances = [haversine_km(ride.pickup, driver.location) for driver in eligible]
        factor_vectors = await asyncio.gather(*(
            self._factors.calculate(ride, driver, distance)
            for driver, distance in zip(eligible, distances)
        ))

        scored = [
            self._scoring.candidate(
                driver=driver,
                factors=factors,
                estimated_pickup_time_s=estimate_eta_seconds(distance, self._config.average_speed_kmh),
                distance_km=distance,
            )
            for driver, factors, distance in zip(eligible, factor_vectors, distances)
        ]
        return self._scoring.rank(scored)

    async def rank_candidates(
        self,
        ride: RideRequest,
        drivers: Optional[List[DriverAvailability]] = None,
    ) -> List[ScoredCandidate]:
        """
        Full filter, score and balance pipeline without persisting anything.

        Args:
            ride: The ride to rank drivers for
            drivers: Explicit pool; queried from the store when omitted

        Returns:
            Candidates best first, after load penalties
        """
        if drivers is None:
            drivers = await self._driver_pool(ride)
        scored = await self._score(ride, drivers)
        if not scored:
            return []
        workloads = await self._store.get_workloads()
        return self._balancer.rebalance(scored, workloads)

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _build_assignment(
        self,
        ride: RideRequest,
        ranked: List[ScoredCandidate],
        started: float,
    ) -> DispatchAssignment:
        best = ranked[0]
        now = self._clock()
        alternatives = [
            AlternativeDriver(
                driver_id=candidate.driver_id,
                score=candidate.score,
                estimated_pickup_time_s=candidate.estimated_pickup_time_s,
                reason=reason_for(candidate.factors),
            )
            for candidate in ranked[1:1 + self._config.max_alternatives]
        ]
        return DispatchAssignment(
            ride_id=ride.ride_id,
            driver_id=best.driver_id,
            assigned_at=now,
            score=best.score,
            factors=best.factors,
            estimated_pickup_time_s=best.estimated_pickup_time_s,
            estimated_arrival_time=now + timedelta(seconds=best.estimated_pickup_time_s),
            confidence=confidence_for(ranked),
            alternatives=alternatives,
            assignment_time_ms=(time.perf_counter() - started) * 1000,
        )

    async def dispatch(self, ride: RideRequest) -> Optional[DispatchAssignment]:
        """
        Assign the best available driver to ``ride``.

        Returns:
            The committed assignment, or None when no driver is eligible

        Raises:
            DispatchFailure: ride already dispatched (not retryable), claim
                retries exhausted (retryable), or store failure (retryable,
                chained from PersistenceFailure)
        """
        started = time.perf_counter()

        async with self._lock_for(ride.ride_id):
            try:
                return await self._dispatch_locked(ride, started)
            except PersistenceFailure as e:
                logger.error(f"Ride {ride.ride_id}: dispatch failed on store error: {e}")
                raise DispatchFailure(f"Could not persist dispatch for ride {ride.ride_id}", retryable=True) from e

    async def _dispatch_locked(self, ride: RideRequest, started: float) -> Optional[DispatchAssignment]:
        current = await self._store.get_ride(ride.ride_id) or ride
        if current.status != RideStatus.PENDING:
            raise DispatchFailure(
                f"Ride {ride.ride_id} is {current.status.value}, not pending",
                retryable=False,
            )

        scored = await self._score(current, await self._driver_pool(current))
        excluded: Set[str] = set()

        for attempt in range(self._config.max_claim_retries + 1):
            remaining = [c for c in scored if c.driver_id not in excluded]
            if not remaining:
                logger.warning(f"Ride {ride.ride_id}: no eligible drivers")
                return None

            ranked = self._balancer.rebalance(remaining, await self._store.get_workloads())
            assignment = self._build_assignment(current, ranked, started)
            reason = reason_for(ranked[0].factors)

            try:
                await self._store.commit_assignment(assignment, current, reason)
            except ConcurrentAssignmentConflict as e:
                if e.driver_id is None:
                    raise DispatchFailure(str(e), retryable=False) from e
                logger.warning(
                    f"Ride {ride.ride_id}: lost claim on driver {e.driver_id} "
                    f"(attempt {attempt + 1}); re-selecting"
                )
                excluded.add(e.driver_id)
                continue

            logger.info(
                f"Ride {ride.ride_id}: assigned driver {assignment.driver_id}, "
                f"score={assignment.score:.3f}, confidence={assignment.confidence:.2f}, "
                f"pickup_eta_s={assignment.estimated_pickup_time_s:.0f}, "
                f"elapsed_ms={assignment.assignment_time_ms:.1f}"
            )
            return assignment

        raise DispatchFailure(
            f"Ride {ride.ride_id}: gave up after {len(excluded)} lost driver claims",
            retryable=True,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def advance(self, ride_id: str, status: RideStatus) -> RideRequest:
        """Move an assigned ride to ``accepted`` or ``in_progress``."""
        if status not in (RideStatus.ACCEPTED, RideStatus.IN_PROGRESS):
            raise InvalidRideTransition(
                f"Use dispatch, override or release to move ride {ride_id} to {status.value}"
            )
        ride = await self._store.update_ride_status(ride_id, status)
        logger.info(f"Ride {ride_id}: status -> {status.value}")
        return ride

    async def release(self, ride_id: str, outcome: RideStatus) -> RideRequest:
        """
        Finish a ride and free its driver.

        Args:
            ride_id: The ride to close
            outcome: ``completed`` or ``cancelled``
        """
        ride = await self._store.release_ride(ride_id, outcome)
        logger.info(f"Ride {ride_id}: released as {outcome.value} (driver {ride.assigned_driver_id})")
        return ride

    async def retune(self, tuner: WeightTuner, time_range: TimeRange) -> Optional[ScoringWeights]:
        """
        Offer recent assignments to ``tuner`` and adopt any weights it proposes.

        Returns:
            The adopted weights, or None if the tuner kept the current table
        """
        assignments = await self._store.list_assignments(time_range.start, time_range.end)
        proposal = await tuner.propose(assignments)
        if proposal is None:
            return None
        self._scoring = self._scoring.with_weights(proposal)
        logger.info(f"Scoring weights replaced from {len(assignments)} assignments (total={proposal.total:.3f})")
        return proposal
