"""
In-process record store.

Used by tests and single-process deployments. One asyncio.Lock serializes
every commit, which makes each planned change set an atomic unit; records
are deep-copied on the way in and out so callers can never mutate stored
state by accident.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..exceptions import OverrideNotFound, RideNotFound
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
from .base import (
    ChangeSet,
    DispatchStore,
    close_override,
    plan_assignment,
    plan_override,
    plan_release,
    transition_ride,
)


logger = logging.getLogger(__name__)


class InMemoryDispatchStore(DispatchStore):

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.utcnow
        self._lock = asyncio.Lock()
        self._rides: Dict[str, RideRequest] = {}
        self._drivers: Dict[str, DriverAvailability] = {}
        self._assignments: Dict[str, DispatchAssignment] = {}
        self._overrides: Dict[str, EmergencyOverride] = {}

    # =========================================================================
    # Internal helpers (call with the lock held)
    # =========================================================================

    def _active_assignment(self, ride_id: str) -> Optional[DispatchAssignment]:
        for assignment in self._assignments.values():
            if assignment.ride_id == ride_id and assignment.status == AssignmentStatus.ACTIVE:
                return assignment
        return None

    def _open_overrides(self, ride_id: str) -> List[EmergencyOverride]:
        return [
            o for o in self._overrides.values()
            if o.ride_id == ride_id and o.status == OverrideStatus.ACTIVE
        ]

    def _apply(self, changes: ChangeSet) -> None:
        for ride in changes.rides:
            self._rides[ride.ride_id] = ride.model_copy(deep=True)
        for driver in changes.drivers:
            self._drivers[driver.driver_id] = driver.model_copy(deep=True)
        for assignment in changes.assignments:
            self._assignments[assignment.assignment_id] = assignment.model_copy(deep=True)
        for override in changes.overrides:
            self._overrides[override.override_id] = override.model_copy(deep=True)

    @staticmethod
    def _copy(record):
        return record.model_copy(deep=True) if record is not None else None

    # =========================================================================
    # Rides
    # =========================================================================

    async def get_ride(self, ride_id: str) -> Optional[RideRequest]:
        return self._copy(self._rides.get(ride_id))

    async def save_ride(self, ride: RideRequest) -> None:
        async with self._lock:
            self._rides[ride.ride_id] = ride.model_copy(deep=True)

    async def list_rides(self, start: datetime, end: datetime) -> List[RideRequest]:
        rides = [r for r in self._rides.values() if start <= r.requested_at <= end]
        rides.sort(key=lambda r: (r.requested_at, r.ride_id))
        return [r.model_copy(deep=True) for r in rides]

    async def update_ride_status(self, ride_id: str, status: RideStatus) -> RideRequest:
        async with self._lock:
            ride = self._rides.get(ride_id)
            if ride is None:
                raise RideNotFound(f"Ride {ride_id} not found")
            updated = transition_ride(ride, status, self._clock())
            self._rides[ride_id] = updated
            return updated.model_copy(deep=True)

    # =========================================================================
    # Drivers
    # =========================================================================

    async def get_driver(self, driver_id: str) -> Optional[DriverAvailability]:
        return self._copy(self._drivers.get(driver_id))

    async def save_driver(self, driver: DriverAvailability) -> None:
        async with self._lock:
            self._drivers[driver.driver_id] = driver.model_copy(deep=True)

    async def query_drivers(
        self,
        status: Optional[DriverStatus] = None,
        vehicle_class: Optional[VehicleClass] = None,
        limit: Optional[int] = None,
    ) -> List[DriverAvailability]:
        drivers = [
            d for d in sorted(self._drivers.values(), key=lambda d: d.driver_id)
            if (status is None or d.status == status)
            and (vehicle_class is None or d.vehicle_class == vehicle_class)
        ]
        if limit is not None:
            drivers = drivers[:limit]
        return [d.model_copy(deep=True) for d in drivers]

    async def get_workloads(self) -> Dict[str, int]:
        workloads: Dict[str, int] = {}
        for ride in self._rides.values():
            if ride.assigned_driver_id and ride.status.is_active:
                workloads[ride.assigned_driver_id] = workloads.get(ride.assigned_driver_id, 0) + 1
        return workloads

    # =========================================================================
    # Assignments & overrides
    # =========================================================================

    async def get_assignment(self, ride_id: str) -> Optional[DispatchAssignment]:
        return self._copy(self._active_assignment(ride_id))

    async def list_assignments(
        self,
        start: datetime,
        end: datetime,
        ride_id: Optional[str] = None,
    ) -> List[DispatchAssignment]:
        found = [
            a for a in self._assignments.values()
            if start <= a.assigned_at <= end and (ride_id is None or a.ride_id == ride_id)
        ]
        found.sort(key=lambda a: (a.assigned_at, a.assignment_id))
        return [a.model_copy(deep=True) for a in found]

    async def get_override(self, override_id: str) -> Optional[EmergencyOverride]:
        return self._copy(self._overrides.get(override_id))

    async def list_overrides(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        ride_id: Optional[str] = None,
    ) -> List[EmergencyOverride]:
        found = [
            o for o in self._overrides.values()
            if (start is None or o.overridden_at >= start)
            and (end is None or o.overridden_at <= end)
            and (ride_id is None or o.ride_id == ride_id)
        ]
        found.sort(key=lambda o: (o.overridden_at, o.override_id))
        return [o.model_copy(deep=True) for o in found]

    async def set_override_status(self, override_id: str, status: OverrideStatus) -> EmergencyOverride:
        async with self._lock:
            override = self._overrides.get(override_id)
            if override is None:
                raise OverrideNotFound(f"Override {override_id} not found")
            updated = close_override(override, status, self._clock())
            self._overrides[override_id] = updated
            return updated.model_copy(deep=True)

    # =========================================================================
    # Atomic units
    # =========================================================================

    async def commit_assignment(
        self,
        assignment: DispatchAssignment,
        ride: RideRequest,
        reason: Optional[str] = None,
    ) -> RideRequest:
        async with self._lock:
            changes = plan_assignment(
                ride=ride,
                stored_ride=self._rides.get(ride.ride_id),
                driver=self._drivers.get(assignment.driver_id),
                active=self._active_assignment(ride.ride_id),
                assignment=assignment,
                reason=reason,
                now=self._clock(),
            )
            self._apply(changes)
            return changes.rides[0].model_copy(deep=True)

    async def commit_override(
        self,
        override: EmergencyOverride,
        assignment: DispatchAssignment,
    ) -> EmergencyOverride:
        async with self._lock:
            ride = self._rides.get(override.ride_id)
            prior = None
            if ride is not None and ride.assigned_driver_id:
                prior = self._drivers.get(ride.assigned_driver_id)

            changes = plan_override(
                override=override,
                assignment=assignment,
                ride=ride,
                new_driver=self._drivers.get(override.new_driver_id),
                prior_driver=prior,
                active=self._active_assignment(override.ride_id),
                open_overrides=self._open_overrides(override.ride_id),
                now=self._clock(),
            )
            self._apply(changes)
            return changes.overrides[-1].model_copy(deep=True)

    async def release_ride(self, ride_id: str, outcome: RideStatus) -> RideRequest:
        async with self._lock:
            ride = self._rides.get(ride_id)
            driver = None
            if ride is not None and ride.assigned_driver_id:
                driver = self._drivers.get(ride.assigned_driver_id)

            changes = plan_release(
                ride=ride,
                ride_id=ride_id,
                outcome=outcome,
                driver=driver,
                active=self._active_assignment(ride_id),
                open_overrides=self._open_overrides(ride_id),
                now=self._clock(),
            )
            self._apply(changes)
            return changes.rides[0].model_copy(deep=True)
