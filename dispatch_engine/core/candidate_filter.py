"""
Dispatch Engine Candidate Filter

Hard eligibility gates applied before any scoring. A driver failing any
predicate is dropped without a score being computed.

Predicates:
    - vehicle class equals the requested class
    - driver status is AVAILABLE
    - driver vehicle features are a superset of the ride's special requirements
    - current UTC minute-of-day lies inside the driver's working-hours window
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from ..models import DispatchConfig, DriverAvailability, DriverStatus, RideRequest


logger = logging.getLogger(__name__)


def matches_vehicle_class(request: RideRequest, driver: DriverAvailability) -> bool:
    return driver.vehicle_class == request.vehicle_class


def is_available(driver: DriverAvailability) -> bool:
    return driver.status == DriverStatus.AVAILABLE


def has_required_features(request: RideRequest, driver: DriverAvailability) -> bool:
    if not request.special_requirements:
        return True
    return set(request.special_requirements).issubset(driver.vehicle_features)


def minute_of_day(moment: datetime) -> int:
    """Minute of the UTC day. Naive datetimes are taken as UTC already."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.hour * 60 + moment.minute


def is_within_working_hours(
    driver: DriverAvailability,
    now: datetime,
    allow_overnight: bool = False,
) -> bool:
    """
    Inclusive minute-of-day comparison against the driver's shift window.

    A window that crosses midnight (e.g. 22:00-06:00) never matches the plain
    ``start <= now <= end`` comparison. It only wraps when ``allow_overnight``
    is set.
    """
    hours = driver.working_hours
    current = minute_of_day(now)
    start, end = hours.start_minute, hours.end_minute

    if hours.crosses_midnight:
        if not allow_overnight:
            logger.debug(
                f"Driver {driver.driver_id} has overnight shift {hours.start}-{hours.end}; "
                f"overnight windows are disabled"
            )
            return False
        return current >= start or current <= end

    return start <= current <= end


class CandidateFilter:
    """
    Narrows a driver pool to the drivers structurally eligible for a request.

    Read-only: never mutates drivers or requests.
    """

    def __init__(self, config: Optional[DispatchConfig] = None):
        self._config = config or DispatchConfig()

    def rejection_reason(
        self,
        request: RideRequest,
        driver: DriverAvailability,
        now: datetime,
    ) -> Optional[str]:
        """Name the first failed predicate, or None if the driver is eligible."""
        if not matches_vehicle_class(request, driver):
            return f"vehicle class {driver.vehicle_class.value} != {request.vehicle_class.value}"
        if not is_available(driver):
            return f"status {driver.status.value}"
        if not has_required_features(request, driver):
            missing = sorted(set(request.special_requirements) - set(driver.vehicle_features))
            return f"missing features {missing}"
        if not is_within_working_hours(driver, now, self._config.allow_overnight_shifts):
            return f"outside working hours {driver.working_hours.start}-{driver.working_hours.end}"
        return None

    def is_eligible(self, request: RideRequest, driver: DriverAvailability, now: datetime) -> bool:
        return self.rejection_reason(request, driver, now) is None

    def filter(
        self,
        request: RideRequest,
        drivers: Iterable[DriverAvailability],
        now: Optional[datetime] = None,
    ) -> List[DriverAvailability]:
        """
        Return the eligible subset of ``drivers`` in their original order.

        Args:
            request: The ride being dispatched
            drivers: Candidate pool (typically pre-filtered by the store)
            now: Wall-clock time for the working-hours check
        """
        now = now or datetime.utcnow()
        eligible: List[DriverAvailability] = []

        for driver in drivers:
            reason = self.rejection_reason(request, driver, now)
            if reason is None:
                eligible.append(driver)
            else:
                logger.debug(f"Ride {request.ride_id}: driver {driver.driver_id} excluded ({reason})")

        return eligible
