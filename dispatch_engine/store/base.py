"""
Dispatch Engine Record Store Interface

The persistence collaborator for rides, drivers, assignments and overrides.

Every multi-record change (dispatch commit, override, release) is planned
by a pure function in this module and then written by the store as one
atomic unit. Both store implementations share the planners, so the
preconditions and resulting state are identical whichever backend is used.

Compare-and-swap rules enforced by the planners:
    - dispatch: the ride is still at the version the coordinator read and
      still pending; the driver is still ``available``
    - override: the ride exists and is not terminal; the new driver is
      ``available`` and not already on this ride
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from ..exceptions import (
    ConcurrentAssignmentConflict,
    InvalidRideTransition,
    OverrideTargetInvalid,
    RideNotFound,
)
from ..models import (
    AssignmentStatus,
    DispatchAssignment,
    DriverAvailability,
    DriverStatus,
    EmergencyOverride,
    OverrideStatus,
    RideRequest,
    RideStatus,
    VehicleClass,
)


# =============================================================================
# Change sets
# =============================================================================

@dataclass
class ChangeSet:
    """Records to write together. Order within each list is write order."""
    rides: List[RideRequest] = field(default_factory=list)
    drivers: List[DriverAvailability] = field(default_factory=list)
    assignments: List[DispatchAssignment] = field(default_factory=list)
    overrides: List[EmergencyOverride] = field(default_factory=list)


def _bump(ride: RideRequest, now: datetime, **changes) -> RideRequest:
    changes.update(version=ride.version + 1, updated_at=now)
    return ride.model_copy(update=changes, deep=True)


def release_driver(driver: DriverAvailability, ride_id: str, now: datetime) -> Optional[DriverAvailability]:
    """
    Return the driver to ``available`` if they are holding ``ride_id``.

    A driver who has already moved on to another ride is left alone.
    """
    if driver.current_ride_id != ride_id:
        return None
    return driver.model_copy(
        update={"status": DriverStatus.AVAILABLE, "current_ride_id": None, "updated_at": now},
        deep=True,
    )


def claim_driver(driver: DriverAvailability, ride_id: str, now: datetime) -> DriverAvailability:
    return driver.model_copy(
        update={"status": DriverStatus.ASSIGNED, "current_ride_id": ride_id, "updated_at": now},
        deep=True,
    )


def transition_ride(ride: RideRequest, status: RideStatus, now: datetime) -> RideRequest:
    if not ride.status.can_transition_to(status):
        raise InvalidRideTransition(
            f"Ride {ride.ride_id} cannot move from {ride.status.value} to {status.value}"
        )
    return _bump(ride, now, status=status)


# =============================================================================
# Planners
# =============================================================================

def plan_assignment(
    ride: RideRequest,
    stored_ride: Optional[RideRequest],
    driver: Optional[DriverAvailability],
    active: Optional[DispatchAssignment],
    assignment: DispatchAssignment,
    reason: Optional[str],
    now: datetime,
) -> ChangeSet:
    """
    Plan the dispatch commit: assignment + ride ``assigned`` + driver ``assigned``.

    Args:
        ride: The ride as the coordinator read it (its version is the expected version)
        stored_ride: The ride as currently stored, or None if never stored
        driver: The selected driver as currently stored
        active: The ride's currently active assignment, if any
        assignment: The new assignment
        reason: Human-readable reason recorded on the ride
        now: Commit timestamp

    Raises:
        ConcurrentAssignmentConflict: ride-level (no driver_id) when the ride
            moved on since it was read; driver-level when the driver was claimed
    """
    base = stored_ride if stored_ride is not None else ride

    if stored_ride is not None and stored_ride.version != ride.version:
        raise ConcurrentAssignmentConflict(
            f"Ride {ride.ride_id} changed since it was read "
            f"(version {ride.version} -> {stored_ride.version})",
            ride_id=ride.ride_id,
        )
    if base.status != RideStatus.PENDING or active is not None:
        raise ConcurrentAssignmentConflict(
            f"Ride {ride.ride_id} is already {base.status.value}",
            ride_id=ride.ride_id,
        )
    if driver is None or driver.status != DriverStatus.AVAILABLE:
        state = "missing" if driver is None else driver.status.value
        raise ConcurrentAssignmentConflict(
            f"Driver {assignment.driver_id} is no longer available ({state})",
            driver_id=assignment.driver_id,
            ride_id=ride.ride_id,
        )

    updated_ride = _bump(
        base,
        now,
        status=RideStatus.ASSIGNED,
        assigned_driver_id=driver.driver_id,
        assignment_score=assignment.score,
        assignment_reason=reason,
        estimated_pickup_time_s=assignment.estimated_pickup_time_s,
        estimated_arrival_time=assignment.estimated_arrival_time,
    )
    return ChangeSet(
        rides=[updated_ride],
        drivers=[claim_driver(driver, ride.ride_id, now)],
        assignments=[assignment],
    )


def validate_override_target(
    ride: RideRequest,
    driver: Optional[DriverAvailability],
    new_driver_id: str,
) -> None:
    """Raise OverrideTargetInvalid naming the first reason the override cannot apply."""
    if ride.status.is_terminal:
        raise OverrideTargetInvalid(f"ride {ride.ride_id} is already {ride.status.value}")
    if driver is None:
        raise OverrideTargetInvalid(f"driver {new_driver_id} does not exist")
    if ride.assigned_driver_id == new_driver_id:
        raise OverrideTargetInvalid(f"driver {new_driver_id} is already assigned to ride {ride.ride_id}")
    if driver.status != DriverStatus.AVAILABLE:
        raise OverrideTargetInvalid(
            f"driver {new_driver_id} is not available (status {driver.status.value})"
        )


def plan_override(
    override: EmergencyOverride,
    assignment: DispatchAssignment,
    ride: Optional[RideRequest],
    new_driver: Optional[DriverAvailability],
    prior_driver: Optional[DriverAvailability],
    active: Optional[DispatchAssignment],
    open_overrides: List[EmergencyOverride],
    now: datetime,
) -> ChangeSet:
    """
    Plan an override: supersede, reassign, release the prior driver, audit.

    The override's ``original_driver_id`` is taken from the stored ride so the
    audit record reflects what was actually replaced.
    """
    if ride is None:
        raise RideNotFound(f"Ride {override.ride_id} not found")
    validate_override_target(ride, new_driver, override.new_driver_id)

    changes = ChangeSet()
    original_driver_id = ride.assigned_driver_id

    if prior_driver is not None:
        released = release_driver(prior_driver, ride.ride_id, now)
        if released is not None:
            changes.drivers.append(released)
    changes.drivers.append(claim_driver(new_driver, ride.ride_id, now))

    if active is not None:
        changes.assignments.append(active.model_copy(
            update={"status": AssignmentStatus.SUPERSEDED, "superseded_by": assignment.assignment_id},
            deep=True,
        ))
    changes.assignments.append(assignment.model_copy(update={"override_id": override.override_id}))

    # A newer override replaces any still-open one on the same ride
    for previous in open_overrides:
        changes.overrides.append(previous.model_copy(
            update={"status": OverrideStatus.RESOLVED, "resolved_at": now},
        ))
    changes.overrides.append(override.model_copy(
        update={"original_driver_id": original_driver_id, "status": OverrideStatus.ACTIVE},
    ))

    # The new driver has to accept again, even on a ride already under way
    changes.rides.append(_bump(
        ride,
        now,
        status=RideStatus.ASSIGNED,
        assigned_driver_id=override.new_driver_id,
        assignment_score=None,
        assignment_reason=f"Override: {override.reason.value}",
        estimated_pickup_time_s=assignment.estimated_pickup_time_s,
        estimated_arrival_time=assignment.estimated_arrival_time,
        assignment_override=True,
        override_reason=override.reason,
    ))
    return changes


def plan_release(
    ride: Optional[RideRequest],
    ride_id: str,
    outcome: RideStatus,
    driver: Optional[DriverAvailability],
    active: Optional[DispatchAssignment],
    open_overrides: List[EmergencyOverride],
    now: datetime,
) -> ChangeSet:
    """
    Plan the end of a ride: terminal status, driver back to ``available``,
    active assignment closed, open overrides resolved.
    """
    if ride is None:
        raise RideNotFound(f"Ride {ride_id} not found")
    if outcome not in (RideStatus.COMPLETED, RideStatus.CANCELLED):
        raise InvalidRideTransition(f"Release outcome must be completed or cancelled, got {outcome.value}")

    changes = ChangeSet(rides=[transition_ride(ride, outcome, now)])

    if driver is not None:
        released = release_driver(driver, ride.ride_id, now)
        if released is not None:
            changes.drivers.append(released)

    if active is not None:
        closed = AssignmentStatus.COMPLETED if outcome == RideStatus.COMPLETED else AssignmentStatus.CANCELLED
        changes.assignments.append(active.model_copy(update={"status": closed}, deep=True))

    for override in open_overrides:
        changes.overrides.append(override.model_copy(
            update={"status": OverrideStatus.RESOLVED, "resolved_at": now},
        ))
    return changes


def close_override(
    override: EmergencyOverride,
    status: OverrideStatus,
    now: datetime,
) -> EmergencyOverride:
    if override.status != OverrideStatus.ACTIVE:
        raise OverrideTargetInvalid(
            f"override {override.override_id} is already {override.status.value}"
        )
    if status == OverrideStatus.ACTIVE:
        raise OverrideTargetInvalid("an override can only be closed as resolved or cancelled")
    return override.model_copy(update={"status": status, "resolved_at": now})


# =============================================================================
# Store interface
# =============================================================================

class DispatchStore(ABC):
    """
    Record store used by the dispatch engine.

    Reads return validated model instances. Commit methods are all-or-nothing:
    either every record in the unit is written or none is.
    """

    # Rides

    @abstractmethod
    async def get_ride(self, ride_id: str) -> Optional[RideRequest]:
        ...

    @abstractmethod
    async def save_ride(self, ride: RideRequest) -> None:
        ...

    @abstractmethod
    async def list_rides(self, start: datetime, end: datetime) -> List[RideRequest]:
        """Rides whose ``requested_at`` falls within [start, end]."""

    @abstractmethod
    async def update_ride_status(self, ride_id: str, status: RideStatus) -> RideRequest:
        """Single-record lifecycle step; raises RideNotFound / InvalidRideTransition."""

    # Drivers

    @abstractmethod
    async def get_driver(self, driver_id: str) -> Optional[DriverAvailability]:
        ...

    @abstractmethod
    async def save_driver(self, driver: DriverAvailability) -> None:
        ...

    @abstractmethod
    async def query_drivers(
        self,
        status: Optional[DriverStatus] = None,
        vehicle_class: Optional[VehicleClass] = None,
        limit: Optional[int] = None,
    ) -> List[DriverAvailability]:
        """Driver pool filtered by status and vehicle class, ordered by driver id."""

    @abstractmethod
    async def get_workloads(self) -> Dict[str, int]:
        """driver_id -> count of rides assigned to them in an active status."""

    # Assignments

    @abstractmethod
    async def get_assignment(self, ride_id: str) -> Optional[DispatchAssignment]:
        """The ride's single active assignment, if any."""

    @abstractmethod
    async def list_assignments(
        self,
        start: datetime,
        end: datetime,
        ride_id: Optional[str] = None,
    ) -> List[DispatchAssignment]:
        """Assignments (any status) made within [start, end], oldest first."""

    # Overrides

    @abstractmethod
    async def get_override(self, override_id: str) -> Optional[EmergencyOverride]:
        ...

    @abstractmethod
    async def list_overrides(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        ride_id: Optional[str] = None,
    ) -> List[EmergencyOverride]:
        """Overrides made within [start, end] (unbounded when omitted), oldest first."""

    @abstractmethod
    async def set_override_status(self, override_id: str, status: OverrideStatus) -> EmergencyOverride:
        ...

    # Atomic units

    @abstractmethod
    async def commit_assignment(
        self,
        assignment: DispatchAssignment,
        ride: RideRequest,
        reason: Optional[str] = None,
    ) -> RideRequest:
        """
        Atomically persist a dispatch decision.

        Raises:
            ConcurrentAssignmentConflict: the ride or driver precondition failed
            PersistenceFailure: the backend write failed (nothing was written)
        """

    @abstractmethod
    async def commit_override(
        self,
        override: EmergencyOverride,
        assignment: DispatchAssignment,
    ) -> EmergencyOverride:
        """
        Atomically apply an override and its audit record.

        Raises:
            RideNotFound, OverrideTargetInvalid, PersistenceFailure
        """

    @abstractmethod
    async def release_ride(self, ride_id: str, outcome: RideStatus) -> RideRequest:
        ...

    async def close(self) -> None:
        """Release backend resources."""
