"""
DispatchCoordinator tests: selection, persistence, concurrency, failures.

Tech Stack: pytest, pytest-asyncio, unittest.mock
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from dispatch_engine.core.coordinator import DispatchCoordinator
from dispatch_engine.core.scoring import WeightTuner
from dispatch_engine.exceptions import (
    ConcurrentAssignmentConflict,
    DispatchFailure,
    InvalidRideTransition,
    PersistenceFailure,
)
from dispatch_engine.models import (
    AssignmentStatus,
    DispatchAssignment,
    DispatchConfig,
    DriverStatus,
    RidePriority,
    RideStatus,
    ScoringWeights,
    TimeRange,
    VehicleClass,
)
from dispatch_engine.oracles.affinity import AffinityScorer
from dispatch_engine.oracles.signal_service import ExternalSignalService
from dispatch_engine.oracles.traffic import TrafficScorer


@pytest.fixture
def coordinator(store, clock):
    return DispatchCoordinator(store=store, clock=clock)


async def seed(store, *drivers):
    for driver in drivers:
        await store.save_driver(driver)


class SlowTrafficScorer(TrafficScorer):
    async def score(self, origin, destination):
        await asyncio.sleep(5)
        return 0.1


class BrokenAffinityScorer(AffinityScorer):
    async def score(self, passenger_id, driver_id):
        raise RuntimeError("affinity service exploded")


# =============================================================================
# HAPPY PATH
# =============================================================================

class TestDispatch:

    @pytest.mark.asyncio
    async def test_assigns_closest_driver_and_persists(self, coordinator, store, make_ride, make_driver, now):
        await seed(
            store,
            make_driver("d_near", km_north=1.0),
            make_driver("d_mid", km_north=3.0),
            make_driver("d_far", km_north=5.0),
            make_driver("d_suv", km_north=0.5, vehicle_class=VehicleClass.SUV),
        )
        ride = make_ride()

        assignment = await coordinator.dispatch(ride)

        assert assignment.driver_id == "d_near"
        assert assignment.estimated_pickup_time_s == pytest.approx(120.0, rel=1e-3)
        assert assignment.estimated_arrival_time == now + timedelta(seconds=assignment.estimated_pickup_time_s)
        assert [a.driver_id for a in assignment.alternatives] == ["d_mid", "d_far"]
        assert assignment.alternatives[0].reason == "Perfect vehicle match"
        # Distance factors 0.9 vs 0.7 at weight 0.25
        assert assignment.confidence == pytest.approx(0.1, abs=1e-6)
        assert 0.0 <= assignment.score <= 1.0
        assert assignment.assignment_time_ms >= 0.0

        stored_ride = await store.get_ride(ride.ride_id)
        assert stored_ride.status == RideStatus.ASSIGNED
        assert stored_ride.assigned_driver_id == "d_near"
        assert stored_ride.assignment_score == assignment.score
        assert stored_ride.version == ride.version + 1

        driver = await store.get_driver("d_near")
        assert driver.status == DriverStatus.ASSIGNED
        assert driver.current_ride_id == ride.ride_id

        active = await store.get_assignment(ride.ride_id)
        assert active.assignment_id == assignment.assignment_id

    @pytest.mark.asyncio
    async def test_alternates_capped_at_three(self, coordinator, store, make_ride, make_driver):
        await seed(store, *[make_driver(f"d{i}", km_north=0.5 + i) for i in range(6)])
        assignment = await coordinator.dispatch(make_ride())
        assert len(assignment.alternatives) == 3

    @pytest.mark.asyncio
    async def test_single_candidate_has_full_confidence(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("only"))
        assignment = await coordinator.dispatch(make_ride())
        assert assignment.confidence == 1.0
        assert assignment.alternatives == []

    @pytest.mark.asyncio
    async def test_no_eligible_drivers_returns_none_and_writes_nothing(
        self, coordinator, store, make_ride, make_driver, now
    ):
        await seed(
            store,
            make_driver("sedan"),
            make_driver("luxury_off", vehicle_class=VehicleClass.LUXURY, status=DriverStatus.OFFLINE),
        )
        ride = make_ride(vehicle_class=VehicleClass.LUXURY)

        assert await coordinator.dispatch(ride) is None

        assert await store.get_ride(ride.ride_id) is None
        window = TimeRange(start=now - timedelta(days=1), end=now + timedelta(days=1))
        assert await store.list_assignments(window.start, window.end) == []
        assert (await store.get_driver("sedan")).status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_load_balancer_demotes_driver_at_capacity(
        self, coordinator, store, make_ride, make_driver
    ):
        # Raw scores tie; driver_a would win on id but carries three active rides
        await seed(store, make_driver("driver_a", km_north=1.0), make_driver("driver_b", km_north=1.0))
        for i in range(3):
            await store.save_ride(make_ride(
                ride_id=f"busy_{i}", status=RideStatus.ACCEPTED, assigned_driver_id="driver_a",
            ))

        assignment = await coordinator.dispatch(make_ride())

        assert assignment.driver_id == "driver_b"
        assert assignment.alternatives[0].driver_id == "driver_a"
        assert assignment.alternatives[0].score == pytest.approx(assignment.score - 0.5)

    @pytest.mark.asyncio
    async def test_rank_candidates_does_not_persist(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("d1"), make_driver("d2", km_north=2.0))
        ride = make_ride()

        ranked = await coordinator.rank_candidates(ride)

        assert [c.driver_id for c in ranked] == ["d1", "d2"]
        assert await store.get_ride(ride.ride_id) is None
        assert (await store.get_driver("d1")).status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_dispatch_uses_stored_ride_record(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("d1"))
        ride = make_ride(priority=RidePriority.EMERGENCY)
        await store.save_ride(ride)

        assignment = await coordinator.dispatch(ride)

        assert assignment.driver_id == "d1"
        assert (await store.get_ride(ride.ride_id)).priority == RidePriority.EMERGENCY


# =============================================================================
# EXTERNAL LOOKUPS
# =============================================================================

class TestLookupFallback:

    @pytest.mark.asyncio
    async def test_timeouts_and_errors_fall_back_to_neutral(self, store, clock, make_ride, make_driver):
        config = DispatchConfig(lookup_timeout_seconds=0.05)
        signals = ExternalSignalService(
            traffic=SlowTrafficScorer(),
            affinity=BrokenAffinityScorer(),
            config=config,
        )
        coordinator = DispatchCoordinator(store=store, signals=signals, config=config, clock=clock)
        await seed(store, make_driver("d1"))

        assignment = await coordinator.dispatch(make_ride())

        assert assignment.factors.traffic_conditions == 0.7
        assert assignment.factors.passenger_preference == 0.5
        stats = signals.get_stats()
        assert stats["traffic"]["failure"] == 1
        assert stats["affinity"]["failure"] == 1


# =============================================================================
# CONCURRENCY
# =============================================================================

class TestConcurrency:

    @pytest.mark.asyncio
    async def test_two_rides_racing_for_the_same_driver(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("best", km_north=0.5), make_driver("second", km_north=2.0))

        first, second = await asyncio.gather(
            coordinator.dispatch(make_ride()),
            coordinator.dispatch(make_ride()),
        )

        assert {first.driver_id, second.driver_id} == {"best", "second"}
        assert (await store.get_workloads()) == {"best": 1, "second": 1}

    @pytest.mark.asyncio
    async def test_loser_gets_none_when_no_one_else_is_left(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("only"))

        results = await asyncio.gather(
            coordinator.dispatch(make_ride()),
            coordinator.dispatch(make_ride()),
        )

        assigned = [r for r in results if r is not None]
        assert len(assigned) == 1
        assert results.count(None) == 1
        assert (await store.get_driver("only")).status == DriverStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_lost_claim_falls_through_to_second_best(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("best", km_north=0.5), make_driver("second", km_north=2.0))
        real_commit = store.commit_assignment
        calls = []

        async def flaky_commit(assignment, ride, reason=None):
            calls.append(assignment.driver_id)
            if assignment.driver_id == "best":
                raise ConcurrentAssignmentConflict("claimed elsewhere", driver_id="best", ride_id=ride.ride_id)
            return await real_commit(assignment, ride, reason)

        store.commit_assignment = AsyncMock(side_effect=flaky_commit)

        assignment = await coordinator.dispatch(make_ride())

        assert calls == ["best", "second"]
        assert assignment.driver_id == "second"
        assert "best" not in [a.driver_id for a in assignment.alternatives]

    @pytest.mark.asyncio
    async def test_retries_exhausted_raises_retryable_failure(self, store, clock, make_ride, make_driver):
        coordinator = DispatchCoordinator(
            store=store, config=DispatchConfig(max_claim_retries=1), clock=clock,
        )
        await seed(store, *[make_driver(f"d{i}", km_north=1.0 + i) for i in range(4)])

        async def always_lost(assignment, ride, reason=None):
            raise ConcurrentAssignmentConflict("lost", driver_id=assignment.driver_id, ride_id=ride.ride_id)

        store.commit_assignment = AsyncMock(side_effect=always_lost)

        with pytest.raises(DispatchFailure) as exc_info:
            await coordinator.dispatch(make_ride())

        assert exc_info.value.retryable is True
        assert store.commit_assignment.await_count == 2

    @pytest.mark.asyncio
    async def test_already_dispatched_ride_is_rejected(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("d1"), make_driver("d2", km_north=2.0))
        ride = make_ride()
        await coordinator.dispatch(ride)

        with pytest.raises(DispatchFailure) as exc_info:
            await coordinator.dispatch(ride)

        assert exc_info.value.retryable is False
        assert (await store.get_driver("d2")).status == DriverStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_same_ride_dispatched_concurrently_only_once(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("d1"), make_driver("d2", km_north=2.0))
        ride = make_ride()
        await store.save_ride(ride)

        results = await asyncio.gather(
            coordinator.dispatch(ride),
            coordinator.dispatch(ride),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, DispatchFailure)]
        assert len(failures) == 1
        assert (await store.get_workloads()) == {"d1": 1}

    @pytest.mark.asyncio
    async def test_stale_ride_version_is_a_ride_level_conflict(self, store, make_ride, make_driver):
        await seed(store, make_driver("d1"), make_driver("d2"))
        ride = make_ride()
        await store.save_ride(ride.model_copy(update={"version": 4}))

        assignment = DispatchAssignment(
            ride_id=ride.ride_id, driver_id="d1", estimated_arrival_time=ride.requested_at,
        )
        with pytest.raises(ConcurrentAssignmentConflict) as exc_info:
            await store.commit_assignment(assignment, ride)

        assert exc_info.value.driver_id is None
        assert (await store.get_driver("d1")).status == DriverStatus.AVAILABLE


# =============================================================================
# PERSISTENCE FAILURE
# =============================================================================

class TestPersistenceFailure:

    @pytest.mark.asyncio
    async def test_store_failure_surfaces_as_dispatch_failure(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("d1"))
        store.commit_assignment = AsyncMock(side_effect=PersistenceFailure("disk on fire"))
        ride = make_ride()

        with pytest.raises(DispatchFailure) as exc_info:
            await coordinator.dispatch(ride)

        assert isinstance(exc_info.value.__cause__, PersistenceFailure)
        assert exc_info.value.retryable is True
        assert await store.get_ride(ride.ride_id) is None
        assert (await store.get_driver("d1")).status == DriverStatus.AVAILABLE


# =============================================================================
# LIFECYCLE
# =============================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_advance_through_lifecycle(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("d1"))
        ride = make_ride()
        await coordinator.dispatch(ride)

        accepted = await coordinator.advance(ride.ride_id, RideStatus.ACCEPTED)
        started = await coordinator.advance(ride.ride_id, RideStatus.IN_PROGRESS)

        assert accepted.status == RideStatus.ACCEPTED
        assert started.status == RideStatus.IN_PROGRESS
        assert (await store.get_workloads()) == {"d1": 1}

    @pytest.mark.asyncio
    async def test_advance_rejects_invalid_transitions(self, coordinator, store, make_ride):
        ride = make_ride()
        await store.save_ride(ride)

        with pytest.raises(InvalidRideTransition):
            await coordinator.advance(ride.ride_id, RideStatus.IN_PROGRESS)
        with pytest.raises(InvalidRideTransition):
            await coordinator.advance(ride.ride_id, RideStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_release_frees_driver_and_closes_assignment(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("d1"))
        ride = make_ride()
        assignment = await coordinator.dispatch(ride)

        released = await coordinator.release(ride.ride_id, RideStatus.COMPLETED)

        assert released.status == RideStatus.COMPLETED
        driver = await store.get_driver("d1")
        assert driver.status == DriverStatus.AVAILABLE
        assert driver.current_ride_id is None
        assert await store.get_assignment(ride.ride_id) is None
        history = await store.list_assignments(assignment.assigned_at, assignment.assigned_at, ride.ride_id)
        assert history[0].status == AssignmentStatus.COMPLETED
        assert await store.get_workloads() == {}

    @pytest.mark.asyncio
    async def test_cancel_pending_ride(self, coordinator, store, make_ride):
        ride = make_ride()
        await store.save_ride(ride)
        cancelled = await coordinator.release(ride.ride_id, RideStatus.CANCELLED)
        assert cancelled.status == RideStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_release_twice_is_invalid(self, coordinator, store, make_ride, make_driver):
        await seed(store, make_driver("d1"))
        ride = make_ride()
        await coordinator.dispatch(ride)
        await coordinator.release(ride.ride_id, RideStatus.CANCELLED)

        with pytest.raises(InvalidRideTransition):
            await coordinator.release(ride.ride_id, RideStatus.COMPLETED)


class TestRetune:

    class FixedTuner(WeightTuner):
        def __init__(self, weights):
            self.weights = weights
            self.seen = None

        async def propose(self, assignments):
            self.seen = assignments
            return self.weights

    @pytest.mark.asyncio
    async def test_adopts_proposed_weights(self, coordinator, store, make_ride, make_driver, now):
        await seed(store, make_driver("d1"))
        await coordinator.dispatch(make_ride())
        proposal = ScoringWeights(distance=0.5, driver_rating=0.1)
        tuner = self.FixedTuner(proposal)

        adopted = await coordinator.retune(tuner, TimeRange(start=now - timedelta(hours=1), end=now))

        assert adopted == proposal
        assert coordinator.scoring.weights == proposal
        assert len(tuner.seen) == 1

    @pytest.mark.asyncio
    async def test_none_keeps_current_weights(self, coordinator, now):
        before = coordinator.scoring
        adopted = await coordinator.retune(self.FixedTuner(None), TimeRange(start=now, end=now))
        assert adopted is None
        assert coordinator.scoring is before
