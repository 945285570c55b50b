"""
GeoMath and CandidateFilter tests.

Tech Stack: pytest
"""

from datetime import datetime, timedelta, timezone

import pytest

from dispatch_engine.core.candidate_filter import (
    CandidateFilter,
    has_required_features,
    is_within_working_hours,
    minute_of_day,
)
from dispatch_engine.core.geo import (
    bearing_degrees,
    estimate_eta_seconds,
    haversine_km,
    pickup_eta_seconds,
)
from dispatch_engine.models import (
    DispatchConfig,
    DriverStatus,
    GeoLocation,
    VehicleClass,
    WorkingHours,
)


# =============================================================================
# GEOMATH
# =============================================================================

class TestGeoMath:

    def test_identical_points_are_zero_km_apart(self, pickup):
        assert haversine_km(pickup, pickup) == 0.0

    def test_one_degree_of_latitude(self):
        a = GeoLocation(latitude=0.0, longitude=0.0)
        b = GeoLocation(latitude=1.0, longitude=0.0)
        assert haversine_km(a, b) == pytest.approx(111.195, abs=0.01)

    def test_distance_is_symmetric(self):
        sf = GeoLocation(latitude=37.7749, longitude=-122.4194)
        la = GeoLocation(latitude=34.0522, longitude=-118.2437)
        assert haversine_km(sf, la) == pytest.approx(haversine_km(la, sf))
        assert haversine_km(sf, la) == pytest.approx(559, abs=2)

    def test_bearing_cardinal_directions(self):
        origin = GeoLocation(latitude=0.0, longitude=0.0)
        north = GeoLocation(latitude=1.0, longitude=0.0)
        east = GeoLocation(latitude=0.0, longitude=1.0)
        west = GeoLocation(latitude=0.0, longitude=-1.0)

        assert bearing_degrees(origin, north) == pytest.approx(0.0, abs=1e-9)
        assert bearing_degrees(origin, east) == pytest.approx(90.0)
        assert bearing_degrees(origin, west) == pytest.approx(270.0)

    def test_eta_at_city_speed(self):
        assert estimate_eta_seconds(15.0, 30.0) == pytest.approx(1800.0)
        assert estimate_eta_seconds(0.0) == 0.0

    def test_eta_rejects_non_positive_speed(self):
        with pytest.raises(ValueError):
            estimate_eta_seconds(1.0, 0.0)

    def test_pickup_eta_uses_default_speed(self, pickup, make_driver):
        driver = make_driver("d1", km_north=1.0)
        assert pickup_eta_seconds(pickup, driver.location) == pytest.approx(120.0, rel=1e-3)


# =============================================================================
# CANDIDATE FILTER
# =============================================================================

NOON = datetime(2026, 3, 2, 12, 0)


class TestCandidateFilter:

    @pytest.fixture
    def candidate_filter(self):
        return CandidateFilter()

    def test_all_predicates_pass(self, candidate_filter, make_ride, make_driver):
        ride = make_ride()
        driver = make_driver("d1")
        assert candidate_filter.filter(ride, [driver], NOON) == [driver]

    def test_vehicle_class_mismatch_excluded(self, candidate_filter, make_ride, make_driver):
        ride = make_ride(vehicle_class=VehicleClass.LUXURY)
        drivers = [make_driver("d1"), make_driver("d2", vehicle_class=VehicleClass.SUV)]
        assert candidate_filter.filter(ride, drivers, NOON) == []

    @pytest.mark.parametrize("status", [
        DriverStatus.ASSIGNED, DriverStatus.BUSY, DriverStatus.OFFLINE, DriverStatus.BREAK,
    ])
    def test_only_available_drivers_pass(self, candidate_filter, make_ride, make_driver, status):
        ride = make_ride()
        driver = make_driver("d1", status=status)
        assert candidate_filter.rejection_reason(ride, driver, NOON) == f"status {status.value}"

    def test_required_features_must_be_subset(self, make_ride, make_driver):
        ride = make_ride(special_requirements=["child_seat", "pet_friendly"])
        assert has_required_features(ride, make_driver("d1", vehicle_features=["child_seat", "pet_friendly", "wifi"]))
        assert not has_required_features(ride, make_driver("d2", vehicle_features=["child_seat"]))

    def test_no_requirements_means_any_features(self, make_ride, make_driver):
        assert has_required_features(make_ride(), make_driver("d1", vehicle_features=[]))

    def test_working_hours_inclusive_bounds(self, make_driver):
        ends_at_noon = make_driver("d1", working_hours=WorkingHours(start="06:00", end="12:00"))
        starts_at_noon = make_driver("d2", working_hours=WorkingHours(start="12:00", end="20:00"))
        afternoon = make_driver("d3", working_hours=WorkingHours(start="13:00", end="20:00"))

        assert is_within_working_hours(ends_at_noon, NOON)
        assert is_within_working_hours(starts_at_noon, NOON)
        assert not is_within_working_hours(afternoon, NOON)

    def test_aware_times_are_read_in_utc(self, make_driver):
        # 13:00 at UTC+1 is noon UTC
        berlin_one_pm = datetime(2026, 3, 2, 13, 0, tzinfo=timezone(timedelta(hours=1)))
        morning = make_driver("d1", working_hours=WorkingHours(start="06:00", end="12:00"))
        afternoon = make_driver("d2", working_hours=WorkingHours(start="12:30", end="20:00"))

        assert minute_of_day(berlin_one_pm) == 720
        assert minute_of_day(datetime(2026, 3, 2, 12, 0)) == 720
        assert is_within_working_hours(morning, berlin_one_pm)
        assert not is_within_working_hours(afternoon, berlin_one_pm)

    def test_overnight_window_is_not_honoured_by_default(self, make_driver):
        night_shift = make_driver("d1", working_hours=WorkingHours(start="22:00", end="06:00"))
        late = datetime(2026, 3, 2, 23, 30)
        early = datetime(2026, 3, 2, 5, 0)

        assert not is_within_working_hours(night_shift, late)
        assert not is_within_working_hours(night_shift, early)

    def test_overnight_window_wraps_when_enabled(self, make_ride, make_driver):
        night_shift = make_driver("d1", working_hours=WorkingHours(start="22:00", end="06:00"))
        candidate_filter = CandidateFilter(DispatchConfig(allow_overnight_shifts=True))
        ride = make_ride()

        assert candidate_filter.is_eligible(ride, night_shift, datetime(2026, 3, 2, 23, 30))
        assert candidate_filter.is_eligible(ride, night_shift, datetime(2026, 3, 2, 5, 0))
        assert not candidate_filter.is_eligible(ride, night_shift, NOON)

    def test_malformed_working_hours_rejected(self):
        with pytest.raises(ValueError):
            WorkingHours(start="25:00", end="06:00")

    def test_every_survivor_satisfies_every_predicate(self, candidate_filter, make_ride, make_driver):
        ride = make_ride(special_requirements=["wheelchair_ramp"])
        pool = [
            make_driver("ok", vehicle_features=["wheelchair_ramp"]),
            make_driver("wrong_class", vehicle_class=VehicleClass.VAN, vehicle_features=["wheelchair_ramp"]),
            make_driver("busy", status=DriverStatus.BUSY, vehicle_features=["wheelchair_ramp"]),
            make_driver("no_ramp"),
            make_driver("off_shift", vehicle_features=["wheelchair_ramp"],
                        working_hours=WorkingHours(start="18:00", end="23:00")),
        ]

        survivors = candidate_filter.filter(ride, pool, NOON)

        assert [d.driver_id for d in survivors] == ["ok"]
        for driver in survivors:
            assert driver.vehicle_class == ride.vehicle_class
            assert driver.status == DriverStatus.AVAILABLE
            assert set(ride.special_requirements) <= set(driver.vehicle_features)
            assert is_within_working_hours(driver, NOON)

    def test_filter_preserves_input_order(self, candidate_filter, make_ride, make_driver):
        pool = [make_driver("z"), make_driver("a"), make_driver("m")]
        assert [d.driver_id for d in candidate_filter.filter(make_ride(), pool, NOON)] == ["z", "a", "m"]
