"""
Dispatch Engine Core Data Models

This module defines all the core data structures used throughout the dispatch engine.
Using Pydantic for validation at the persistence boundary: driver and ride records
arrive from the store as loosely-typed documents and are rejected here if malformed,
rather than leaking missing fields into scoring.

Design Philosophy:
    - Frozen models for derived values (locations, factor vectors)
    - Mutable records are updated through ``model_copy(update=...)`` by the store
    - Rich enums for clear lifecycle states
    - Comprehensive validation at the boundary
"""

from __future__ import annotations

import math
import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator


# =============================================================================
# ENUMS - Clear State Definitions
# =============================================================================

class VehicleClass(str, Enum):
    """Vehicle class a ride is requested for and a driver operates."""
    SEDAN = "sedan"
    SUV = "suv"
    VAN = "van"
    LUXURY = "luxury"
    ELECTRIC = "electric"
    WHEELCHAIR = "wheelchair"


class RidePriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    EMERGENCY = "emergency"


class RideStatus(str, Enum):
    """
    Ride lifecycle.

        pending -> assigned -> accepted -> in_progress -> completed
                                                      \\-> cancelled

    ``completed`` and ``cancelled`` are terminal.
    """
    PENDING = "pending"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RideStatus.COMPLETED, RideStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        """Statuses that count toward a driver's workload."""
        return self in ACTIVE_RIDE_STATUSES

    def can_transition_to(self, target: "RideStatus") -> bool:
        return target in RIDE_TRANSITIONS.get(self, frozenset())


ACTIVE_RIDE_STATUSES = frozenset({
    RideStatus.ASSIGNED,
    RideStatus.ACCEPTED,
    RideStatus.IN_PROGRESS,
})

# Re-entering ASSIGNED from a live status is an override reassignment.
RIDE_TRANSITIONS: Dict[RideStatus, frozenset] = {
    RideStatus.PENDING: frozenset({RideStatus.ASSIGNED, RideStatus.CANCELLED}),
    RideStatus.ASSIGNED: frozenset({
        RideStatus.ASSIGNED, RideStatus.ACCEPTED, RideStatus.CANCELLED,
    }),
    RideStatus.ACCEPTED: frozenset({
        RideStatus.ASSIGNED, RideStatus.IN_PROGRESS, RideStatus.CANCELLED,
    }),
    RideStatus.IN_PROGRESS: frozenset({
        RideStatus.ASSIGNED, RideStatus.COMPLETED, RideStatus.CANCELLED,
    }),
}


class DriverStatus(str, Enum):
    """
    Driver duty state.

    AVAILABLE: On shift, free to take a ride (the only dispatchable state)
    ASSIGNED: Holding a ride assigned by dispatch or override
    BUSY: Occupied outside of this engine's control
    OFFLINE / BREAK: Off duty
    """
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    BUSY = "busy"
    OFFLINE = "offline"
    BREAK = "break"


class OverrideReason(str, Enum):
    EMERGENCY = "emergency"
    BREAKDOWN = "breakdown"
    MEDICAL = "medical"
    SAFETY = "safety"
    MANUAL = "manual"


class OverrideStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class AssignmentStatus(str, Enum):
    """An assignment is superseded, never deleted, when an override replaces it."""
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AssignmentSource(str, Enum):
    DISPATCH = "dispatch"
    OVERRIDE = "override"


# =============================================================================
# CORE DATA MODELS
# =============================================================================

class GeoLocation(BaseModel):
    """
    Geographic coordinates with optional metadata.

    Attributes:
        latitude: WGS84 latitude (-90 to 90)
        longitude: WGS84 longitude (-180 to 180)
        address: Human-readable address if known
        timestamp: When the fix was taken (location freshness is the
            tracking collaborator's concern, not validated here)
    """
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90, description="WGS84 latitude")
    longitude: float = Field(..., ge=-180, le=180, description="WGS84 longitude")
    address: Optional[str] = None
    timestamp: Optional[datetime] = None

    def __str__(self) -> str:
        return f"({self.latitude:.6f}, {self.longitude:.6f})"


_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class WorkingHours(BaseModel):
    """
    Time-of-day window during which a driver is on shift.

    Times are ``HH:MM`` on a 24-hour clock in UTC, matching the naive UTC
    timestamps used throughout the engine. A window whose start is after its
    end crosses midnight; whether such windows are honoured is decided by the
    candidate filter, not here.
    """
    model_config = ConfigDict(frozen=True)

    start: str = "00:00"
    end: str = "23:59"

    @field_validator("start", "end")
    @classmethod
    def _check_format(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError(f"expected HH:MM, got {value!r}")
        return value

    @staticmethod
    def to_minutes(value: str) -> int:
        hours, minutes = value.split(":")
        return int(hours) * 60 + int(minutes)

    @property
    def start_minute(self) -> int:
        return self.to_minutes(self.start)

    @property
    def end_minute(self) -> int:
        return self.to_minutes(self.end)

    @property
    def crosses_midnight(self) -> bool:
        return self.start_minute > self.end_minute


class DriverPreferences(BaseModel):
    preferred_areas: List[str] = Field(default_factory=list)
    max_distance_km: Optional[float] = Field(default=None, ge=0)
    avoid_tolls: bool = False
    accept_shared_rides: bool = True
    accept_long_distance: bool = True


class DriverPerformance(BaseModel):
    """Historical performance. ``completion_rate`` of None means unknown."""
    completion_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    average_response_time_s: Optional[float] = Field(default=None, ge=0.0)
    customer_rating: Optional[float] = Field(default=None, ge=0.0, le=5.0)
    on_time_performance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    safety_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class DriverAvailability(BaseModel):
    """
    A driver's dispatch-relevant state.

    Mutated by the dispatch system whenever a driver is assigned, released,
    or goes off/on duty.
    """
    driver_id: str
    location: GeoLocation
    status: DriverStatus = DriverStatus.OFFLINE
    vehicle_class: VehicleClass
    vehicle_features: List[str] = Field(default_factory=list)
    rating: float = Field(default=0.0, ge=0.0, le=5.0)
    acceptance_rate: float = Field(default=0.0, ge=0.0, le=100.0)
    completed_rides: int = Field(default=0, ge=0)
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    preferences: DriverPreferences = Field(default_factory=DriverPreferences)
    performance: DriverPerformance = Field(default_factory=DriverPerformance)
    current_ride_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class RideRequest(BaseModel):
    """
    A passenger's ride request and its assignment state.

    Created on request submission; mutated only by the dispatch coordinator
    and the override manager. ``version`` increments on every stored change
    and backs the optimistic check that stops a ride being dispatched twice.
    """
    ride_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    passenger_id: str
    pickup: GeoLocation
    dropoff: GeoLocation
    requested_at: datetime = Field(default_factory=datetime.utcnow)
    scheduled_for: Optional[datetime] = None
    vehicle_class: VehicleClass
    priority: RidePriority = RidePriority.NORMAL
    special_requirements: List[str] = Field(default_factory=list)
    estimated_fare: Optional[float] = Field(default=None, ge=0)
    status: RideStatus = RideStatus.PENDING

    # Assignment metadata
    assigned_driver_id: Optional[str] = None
    assignment_score: Optional[float] = None
    assignment_reason: Optional[str] = None
    estimated_pickup_time_s: Optional[float] = None
    estimated_arrival_time: Optional[datetime] = None

    # Override metadata (kept distinct from normal assignment for reporting)
    assignment_override: bool = False
    override_reason: Optional[OverrideReason] = None

    version: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class AssignmentFactors(BaseModel):
    """
    The ten normalized signals behind a driver's score for one request.

    Pure derived data: recomputed per dispatch attempt and never treated as
    authoritative state. Field order is the order used for weighting and for
    picking the dominant factor.
    """
    model_config = ConfigDict(frozen=True)

    distance: float = Field(..., ge=0.0, le=1.0)
    driver_rating: float = Field(..., ge=0.0, le=1.0)
    acceptance_rate: float = Field(..., ge=0.0, le=1.0)
    vehicle_match: float = Field(..., ge=0.0, le=1.0)
    availability: float = Field(..., ge=0.0, le=1.0)
    efficiency: float = Field(..., ge=0.0, le=1.0)
    passenger_preference: float = Field(..., ge=0.0, le=1.0)
    traffic_conditions: float = Field(..., ge=0.0, le=1.0)
    surge: float = Field(..., ge=0.0, le=1.0)
    loyalty: float = Field(..., ge=0.0, le=1.0)

    @classmethod
    def clamped(cls, **values: float) -> "AssignmentFactors":
        """Build a factor vector, clamping every component to [0, 1] first."""
        return cls(**{name: clamp01(value) for name, value in values.items()})

    def as_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in type(self).model_fields}


class AlternativeDriver(BaseModel):
    driver_id: str
    score: float = Field(..., ge=0.0, le=1.0)
    estimated_pickup_time_s: float = Field(..., ge=0.0)
    reason: str


class DispatchAssignment(BaseModel):
    """
    The outcome of assigning a driver to a ride.

    One active assignment exists per ride at a time. Override assignments
    carry no score or factors because they bypass the scorer.
    """
    assignment_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    ride_id: str
    driver_id: str
    assigned_at: datetime = Field(default_factory=datetime.utcnow)
    score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    factors: Optional[AssignmentFactors] = None
    estimated_pickup_time_s: float = Field(default=0.0, ge=0.0)
    estimated_arrival_time: datetime
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    alternatives: List[AlternativeDriver] = Field(default_factory=list, max_length=3)
    source: AssignmentSource = AssignmentSource.DISPATCH
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    assignment_time_ms: float = Field(default=0.0, ge=0.0)
    override_id: Optional[str] = None
    superseded_by: Optional[str] = None


class EmergencyOverride(BaseModel):
    """Audit record of a manual or emergency reassignment."""
    override_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    ride_id: str
    original_driver_id: Optional[str] = None
    new_driver_id: str
    reason: OverrideReason
    overridden_by: str
    overridden_at: datetime = Field(default_factory=datetime.utcnow)
    notes: Optional[str] = None
    status: OverrideStatus = OverrideStatus.ACTIVE
    resolved_at: Optional[datetime] = None


class TimeRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self) -> "TimeRange":
        if self.start > self.end:
            raise ValueError("time range start must not be after end")
        return self

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class DispatchMetrics(BaseModel):
    """Read-only operational aggregate over a time range."""
    total_assignments: int = 0
    successful_assignments: int = 0
    average_assignment_time_ms: float = 0.0
    average_pickup_time_s: float = 0.0
    driver_utilization: float = Field(default=0.0, ge=0.0, le=1.0)
    cancellation_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    emergency_response_time_s: float = 0.0
    override_count: int = 0


class FleetUtilization(BaseModel):
    overall: float = Field(default=0.0, ge=0.0, le=1.0)
    by_vehicle_class: Dict[VehicleClass, float] = Field(default_factory=dict)
    on_duty_drivers: int = 0


# =============================================================================
# CONFIGURATION MODELS
# =============================================================================

class ScoringWeights(BaseModel):
    """
    Weight table for the scoring engine.

    Designed to sum to 1.0 but not required to; the final score is clamped.
    Passed explicitly into the scoring engine so tests and tenants can
    override it without touching process-wide state.
    """
    model_config = ConfigDict(frozen=True)

    distance: float = Field(default=0.25, ge=0.0)
    driver_rating: float = Field(default=0.15, ge=0.0)
    acceptance_rate: float = Field(default=0.15, ge=0.0)
    vehicle_match: float = Field(default=0.10, ge=0.0)
    availability: float = Field(default=0.10, ge=0.0)
    efficiency: float = Field(default=0.10, ge=0.0)
    passenger_preference: float = Field(default=0.05, ge=0.0)
    traffic_conditions: float = Field(default=0.05, ge=0.0)
    surge: float = Field(default=0.03, ge=0.0)
    loyalty: float = Field(default=0.02, ge=0.0)

    @property
    def total(self) -> float:
        return sum(getattr(self, name) for name in type(self).model_fields)


class LoadBalancingConfig(BaseModel):
    """Configuration for the load-balancing correction pass."""
    model_config = ConfigDict(frozen=True)

    max_rides_per_driver: int = Field(default=3, ge=1)
    optimal_utilization_rate: float = Field(default=0.75, ge=0.0, le=1.0)
    overload_penalty: float = Field(default=0.5, ge=0.0, le=1.0)
    high_utilization_penalty: float = Field(default=0.2, ge=0.0, le=1.0)


class DispatchConfig(BaseModel):
    """
    Tunables for the dispatch pipeline.

    The neutral values are what the factor calculator falls back to when an
    external lookup is unavailable or times out.
    """
    model_config = ConfigDict(frozen=True)

    average_speed_kmh: float = Field(default=30.0, gt=0)
    distance_horizon_km: float = Field(default=10.0, gt=0)
    loyalty_saturation_rides: int = Field(default=1000, ge=1)
    default_efficiency: float = Field(default=0.8, ge=0.0, le=1.0)
    neutral_passenger_preference: float = Field(default=0.5, ge=0.0, le=1.0)
    neutral_traffic_score: float = Field(default=0.7, ge=0.0, le=1.0)
    neutral_surge_multiplier: float = Field(default=1.0, gt=0)
    max_alternatives: int = Field(default=3, ge=0, le=3)
    max_claim_retries: int = Field(default=3, ge=0)
    driver_pool_limit: Optional[int] = Field(default=50, ge=1)
    lookup_timeout_seconds: float = Field(default=2.0, gt=0)
    allow_overnight_shifts: bool = False


def clamp01(value: float) -> float:
    """Clamp a value into [0, 1]. NaN collapses to 0."""
    value = float(value)
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))
