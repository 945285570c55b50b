"""
Dispatch Engine Override Manager

Manual and emergency reassignment. This is the escalation path for
emergencies, vehicle breakdowns and dispatcher corrections, so it never
consults the scorer.

Theory of Operation:
    - The dispatcher names the ride, the replacement driver and a reason
    - The previous assignment is superseded, never deleted
    - The prior driver (if any) goes back to ``available``
    - The new driver becomes ``assigned`` with the ride attached
    - An EmergencyOverride audit record is written in the same atomic unit

A rejected override (unknown driver, driver busy, driver already on the
ride, ride finished) writes nothing and tells the dispatcher why.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..exceptions import OverrideNotFound, OverrideTargetInvalid, RideNotFound
from ..models import (
    AssignmentSource,
    DispatchAssignment,
    DispatchConfig,
    EmergencyOverride,
    OverrideReason,
    OverrideStatus,
)
from ..core.geo import pickup_eta_seconds
from ..store.base import DispatchStore, validate_override_target


logger = logging.getLogger(__name__)


class OverrideManager:
    """
    Applies and tracks overrides.

    Example:
        manager = OverrideManager(store)
        record = await manager.override(
            ride_id="ride_123",
            new_driver_id="driver_9",
            reason=OverrideReason.BREAKDOWN,
            actor_id="dispatcher_4",
            notes="Vehicle reported flat tyre",
        )
    """

    def __init__(
        self,
        store: DispatchStore,
        config: Optional[DispatchConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._config = config or DispatchConfig()
        self._clock = clock or datetime.utcnow

    async def override(
        self,
        ride_id: str,
        new_driver_id: str,
        reason: OverrideReason,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> EmergencyOverride:
        """
        Reassign ``ride_id`` to ``new_driver_id``.

        Args:
            ride_id: Ride to reassign
            new_driver_id: Replacement driver (must be available)
            reason: Why the override was needed
            actor_id: Dispatcher or system issuing the override
            notes: Free-text context for the audit trail

        Returns:
            The persisted override record (status ``active``)

        Raises:
            RideNotFound: No such ride
            OverrideTargetInvalid: The override cannot be applied; nothing written
        """
        reason = OverrideReason(reason)

        ride = await self._store.get_ride(ride_id)
        if ride is None:
            raise RideNotFound(f"Ride {ride_id} not found")
        driver = await self._store.get_driver(new_driver_id)

        try:
            validate_override_target(ride, driver, new_driver_id)
        except OverrideTargetInvalid as e:
            logger.warning(f"Override on ride {ride_id} by {actor_id} rejected: {e.reason}")
            raise

        now = self._clock()
        record = EmergencyOverride(
            ride_id=ride_id,
            original_driver_id=ride.assigned_driver_id,
            new_driver_id=new_driver_id,
            reason=reason,
            overridden_by=actor_id,
            overridden_at=now,
            notes=notes,
        )
        eta = pickup_eta_seconds(ride.pickup, driver.location, self._config.average_speed_kmh)
        assignment = DispatchAssignment(
            ride_id=ride_id,
            driver_id=new_driver_id,
            assigned_at=now,
            estimated_pickup_time_s=eta,
            estimated_arrival_time=now + timedelta(seconds=eta),
            source=AssignmentSource.OVERRIDE,
            override_id=record.override_id,
        )

        # The store re-checks every precondition inside the atomic unit
        try:
            committed = await self._store.commit_override(record, assignment)
        except OverrideTargetInvalid as e:
            logger.warning(f"Override on ride {ride_id} by {actor_id} rejected at commit: {e.reason}")
            raise

        logger.info(
            f"Override {committed.override_id} on ride {ride_id}: "
            f"{committed.original_driver_id or 'unassigned'} -> {new_driver_id} "
            f"({reason.value}) by {actor_id}"
        )
        return committed

    async def _close(self, override_id: str, status: OverrideStatus) -> EmergencyOverride:
        existing = await self._store.get_override(override_id)
        if existing is None:
            raise OverrideNotFound(f"Override {override_id} not found")
        closed = await self._store.set_override_status(override_id, status)
        logger.info(f"Override {override_id} on ride {closed.ride_id} {status.value}")
        return closed

    async def resolve(self, override_id: str) -> EmergencyOverride:
        """Mark the emergency handled. The assignment it made stays in place."""
        return await self._close(override_id, OverrideStatus.RESOLVED)

    async def cancel(self, override_id: str) -> EmergencyOverride:
        """Withdraw the override record. Driver state is not rolled back."""
        return await self._close(override_id, OverrideStatus.CANCELLED)

    async def history(self, ride_id: str) -> List[EmergencyOverride]:
        """Audit trail for a ride, oldest first."""
        return await self._store.list_overrides(ride_id=ride_id)
