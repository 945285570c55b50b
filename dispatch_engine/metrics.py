"""
Dispatch Engine Metrics

Read-only operational aggregates over stored dispatch history. Every
average over an empty set is 0.0.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .models import (
    AssignmentSource,
    AssignmentStatus,
    DispatchMetrics,
    DriverAvailability,
    DriverStatus,
    FleetUtilization,
    RidePriority,
    RideStatus,
    TimeRange,
    VehicleClass,
)
from .core.load_balancer import LoadBalancer
from .store.base import DispatchStore


logger = logging.getLogger(__name__)

ON_DUTY_STATUSES = frozenset({DriverStatus.AVAILABLE, DriverStatus.BUSY, DriverStatus.ASSIGNED})


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class MetricsReporter:

    def __init__(self, store: DispatchStore, balancer: Optional[LoadBalancer] = None):
        self._store = store
        self._balancer = balancer or LoadBalancer()

    async def _on_duty(self) -> List[DriverAvailability]:
        drivers = await self._store.query_drivers()
        return [d for d in drivers if d.status in ON_DUTY_STATUSES]

    async def get_metrics(self, time_range: TimeRange) -> DispatchMetrics:
        """
        Aggregate dispatch outcomes for ``time_range``.

        Assignments, overrides and rides are each selected by their own
        timestamp (assigned_at, overridden_at, requested_at).
        """
        assignments = await self._store.list_assignments(time_range.start, time_range.end)
        rides = await self._store.list_rides(time_range.start, time_range.end)
        overrides = await self._store.list_overrides(time_range.start, time_range.end)

        dispatched = [a for a in assignments if a.source == AssignmentSource.DISPATCH]
        successful = [a for a in assignments if a.status == AssignmentStatus.COMPLETED]

        first_assigned = {}
        for assignment in assignments:
            seen = first_assigned.get(assignment.ride_id)
            if seen is None or assignment.assigned_at < seen:
                first_assigned[assignment.ride_id] = assignment.assigned_at

        emergency_waits = [
            (first_assigned[ride.ride_id] - ride.requested_at).total_seconds()
            for ride in rides
            if ride.priority == RidePriority.EMERGENCY and ride.ride_id in first_assigned
        ]
        cancelled = [r for r in rides if r.status == RideStatus.CANCELLED]

        on_duty = await self._on_duty()
        per_driver = self._balancer.fleet_utilization(
            await self._store.get_workloads(), [d.driver_id for d in on_duty],
        )

        metrics = DispatchMetrics(
            total_assignments=len(assignments),
            successful_assignments=len(successful),
            average_assignment_time_ms=_mean([a.assignment_time_ms for a in dispatched]),
            average_pickup_time_s=_mean([a.estimated_pickup_time_s for a in assignments]),
            driver_utilization=_mean(list(per_driver.values())),
            cancellation_rate=len(cancelled) / len(rides) if rides else 0.0,
            emergency_response_time_s=_mean([max(0.0, wait) for wait in emergency_waits]),
            override_count=len(overrides),
        )
        logger.debug(f"Metrics {time_range.start} - {time_range.end}: {metrics.model_dump()}")
        return metrics

    async def fleet_utilization(self) -> FleetUtilization:
        """Current utilization of on-duty drivers, overall and per vehicle class."""
        on_duty = await self._on_duty()
        per_driver = self._balancer.fleet_utilization(
            await self._store.get_workloads(), [d.driver_id for d in on_duty],
        )

        per_class: Dict[VehicleClass, List[float]] = {}
        overall: List[float] = []
        for driver in on_duty:
            value = per_driver[driver.driver_id]
            overall.append(value)
            per_class.setdefault(driver.vehicle_class, []).append(value)

        return FleetUtilization(
            overall=_mean(overall),
            by_vehicle_class={cls: _mean(values) for cls, values in per_class.items()},
            on_duty_drivers=len(on_duty),
        )
