"""
Dispatch Engine - pytest Configuration

Shared fixtures and configuration for all tests.
"""

import os
import sys
from datetime import datetime

import pytest

# Make the package importable without installation
sys.path.insert(0, os.path.dirname(__file__))


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires external services)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly requested."""
    if not config.getoption("--run-integration", default=False):
        skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="run integration tests that require external services"
    )


# =============================================================================
# CLOCK & STORE FIXTURES
# =============================================================================

NOON = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture
def now():
    """Fixed wall-clock instant (a Monday at noon) used by the coordinator."""
    return NOON


@pytest.fixture
def clock(now):
    return lambda: now


@pytest.fixture
def store(clock):
    """Empty in-memory record store."""
    from dispatch_engine.store.memory import InMemoryDispatchStore
    return InMemoryDispatchStore(clock=clock)


# =============================================================================
# RECORD FACTORIES
# =============================================================================

@pytest.fixture
def pickup():
    """Pickup point in downtown San Francisco."""
    from dispatch_engine.models import GeoLocation
    return GeoLocation(latitude=37.7749, longitude=-122.4194)


@pytest.fixture
def make_driver(pickup):
    """
    Build a DriverAvailability near ``pickup``.

    ``km_north`` offsets the driver from the pickup (~0.009 deg per km).
    """
    from dispatch_engine.models import (
        DriverAvailability,
        DriverStatus,
        GeoLocation,
        VehicleClass,
    )

    def _make(driver_id, km_north=1.0, **overrides):
        fields = dict(
            driver_id=driver_id,
            location=GeoLocation(
                latitude=pickup.latitude + km_north / 111.195,
                longitude=pickup.longitude,
            ),
            status=DriverStatus.AVAILABLE,
            vehicle_class=VehicleClass.SEDAN,
            rating=4.9,
            acceptance_rate=90.0,
            completed_rides=500,
        )
        fields.update(overrides)
        return DriverAvailability(**fields)

    return _make


@pytest.fixture
def make_ride(pickup, now):
    """Build a pending RideRequest from ``pickup``."""
    from dispatch_engine.models import GeoLocation, RideRequest, VehicleClass

    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = dict(
            ride_id=f"ride_{counter['n']:03d}",
            passenger_id="passenger_1",
            pickup=pickup,
            dropoff=GeoLocation(latitude=37.7849, longitude=-122.4094),
            requested_at=now,
            vehicle_class=VehicleClass.SEDAN,
        )
        fields.update(overrides)
        return RideRequest(**fields)

    return _make


# =============================================================================
# CONFIGURATION FIXTURES
# =============================================================================

@pytest.fixture
def test_config():
    """Create a test configuration."""
    from dispatch_engine.config import DispatchEngineConfig, Environment

    return DispatchEngineConfig(environment=Environment.DEVELOPMENT)


@pytest.fixture(autouse=True)
def reset_config_fixture():
    """Reset global configuration before each test."""
    from dispatch_engine.config import reset_config
    reset_config()
    yield
    reset_config()
