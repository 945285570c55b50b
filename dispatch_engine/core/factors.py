"""
Dispatch Engine Factor Calculator

Computes the ten-factor vector for one (ride, driver) pair. Every factor is
its own function so any one can be swapped out or stubbed in tests; the
three externally sourced factors arrive through the ExternalSignalService
and fall back to neutral values when their source is slow or down.

Factor definitions:
    distance              max(0, 1 - km / horizon), horizon 10 km
    driver_rating         rating / 5
    acceptance_rate       acceptance percentage / 100
    vehicle_match         1 if classes match else 0
    availability          1 if status is available else 0
    efficiency            completion rate, 0.8 when unknown
    passenger_preference  affinity lookup, 0.5 when unknown
    traffic_conditions    traffic lookup, 0.7 when unknown
    surge                 1 / multiplier, 1.0 at no surge
    loyalty               min(1, completed rides / 1000)
"""

from __future__ import annotations

import logging
from typing import Optional

from ..models import (
    AssignmentFactors,
    DispatchConfig,
    DriverAvailability,
    DriverStatus,
    RideRequest,
    clamp01,
)
from ..oracles.signal_service import ExternalSignalService, ExternalSignals
from .geo import haversine_km


logger = logging.getLogger(__name__)


def distance_factor(distance_km: float, horizon_km: float = 10.0) -> float:
    """Linear falloff; drivers beyond the horizon score 0 but stay eligible."""
    return max(0.0, 1.0 - distance_km / horizon_km)


def rating_factor(rating: float) -> float:
    return rating / 5.0


def acceptance_factor(acceptance_rate_pct: float) -> float:
    return acceptance_rate_pct / 100.0


def vehicle_match_factor(ride: RideRequest, driver: DriverAvailability) -> float:
    # Redundant with the candidate filter; kept so the score explains itself.
    return 1.0 if ride.vehicle_class == driver.vehicle_class else 0.0


def availability_factor(driver: DriverAvailability) -> float:
    return 1.0 if driver.status == DriverStatus.AVAILABLE else 0.0


def efficiency_factor(driver: DriverAvailability, default: float = 0.8) -> float:
    completion_rate = driver.performance.completion_rate
    return default if completion_rate is None else completion_rate


def surge_factor(multiplier: float) -> float:
    """1.0 at base demand, shrinking as the area surges."""
    if multiplier <= 0:
        return 1.0
    return clamp01(1.0 / multiplier)


def loyalty_factor(completed_rides: int, saturation: int = 1000) -> float:
    return min(1.0, completed_rides / saturation)


class FactorCalculator:
    """
    Builds AssignmentFactors for candidates of a single ride.

    Args:
        signals: External lookups (defaults to neutral sources)
        config: Dispatch tunables (horizon, neutral defaults, saturation)
    """

    def __init__(
        self,
        signals: Optional[ExternalSignalService] = None,
        config: Optional[DispatchConfig] = None,
    ):
        self._config = config or (signals.config if signals else DispatchConfig())
        self._signals = signals or ExternalSignalService(config=self._config)

    @property
    def signals(self) -> ExternalSignalService:
        return self._signals

    def distance_km(self, ride: RideRequest, driver: DriverAvailability) -> float:
        return haversine_km(ride.pickup, driver.location)

    def build(
        self,
        ride: RideRequest,
        driver: DriverAvailability,
        signals: ExternalSignals,
        distance_km: Optional[float] = None,
    ) -> AssignmentFactors:
        """Assemble the clamped vector from already-resolved external signals."""
        if distance_km is None:
            distance_km = self.distance_km(ride, driver)
        config = self._config

        return AssignmentFactors.clamped(
            distance=distance_factor(distance_km, config.distance_horizon_km),
            driver_rating=rating_factor(driver.rating),
            acceptance_rate=acceptance_factor(driver.acceptance_rate),
            vehicle_match=vehicle_match_factor(ride, driver),
            availability=availability_factor(driver),
            efficiency=efficiency_factor(driver, config.default_efficiency),
            passenger_preference=signals.passenger_preference,
            traffic_conditions=signals.traffic_score,
            surge=surge_factor(signals.surge_multiplier),
            loyalty=loyalty_factor(driver.completed_rides, config.loyalty_saturation_rides),
        )

    async def calculate(
        self,
        ride: RideRequest,
        driver: DriverAvailability,
        distance_km: Optional[float] = None,
    ) -> AssignmentFactors:
        """
        Compute the factor vector for one candidate.

        External lookups never raise here; neutral values stand in for
        anything that failed.
        """
        signals = await self._signals.collect(ride, driver)
        if signals.fallbacks:
            logger.debug(
                f"Ride {ride.ride_id} / driver {driver.driver_id}: "
                f"neutral values used for {', '.join(signals.fallbacks)}"
            )
        return self.build(ride, driver, signals, distance_km)
