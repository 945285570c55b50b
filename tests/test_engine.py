"""
DispatchEngine facade and configuration tests.

Tech Stack: pytest, pytest-asyncio, unittest.mock
"""

import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from dispatch_engine import NO_DRIVERS_MESSAGE, DispatchEngine, dispatch_ride
from dispatch_engine.config import (
    DispatchEngineConfig,
    Environment,
    LoggingConfig,
    configure_logging,
    get_config,
    set_config,
)
from dispatch_engine.exceptions import DispatchFailure
from dispatch_engine.models import (
    DriverStatus,
    OverrideReason,
    RideStatus,
    ScoringWeights,
    TimeRange,
)
from dispatch_engine.oracles import HttpSurgeLookup, HttpTrafficScorer, NeutralAffinityScorer
from dispatch_engine.store.redis_store import RedisDispatchStore


@pytest.fixture
def engine(store, clock):
    return DispatchEngine(store=store, clock=clock)


@pytest.fixture
def package_logger():
    """Restore the package logger after a test installs handlers on it."""
    package = logging.getLogger("dispatch_engine")
    saved_handlers, saved_level = list(package.handlers), package.level
    yield package
    for handler in list(package.handlers):
        package.removeHandler(handler)
        if handler not in saved_handlers:
            handler.close()
    for handler in saved_handlers:
        package.addHandler(handler)
    package.setLevel(saved_level)


# =============================================================================
# CONFIGURATION
# =============================================================================

class TestConfig:

    def test_defaults_are_valid(self, test_config):
        check = test_config.validate()
        assert check["valid"] is True
        assert check["messages"] == []

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "staging")
        monkeypatch.setenv("REDIS_HOST", "redis.internal")
        monkeypatch.setenv("REDIS_PASSWORD", "pw")
        monkeypatch.setenv("DISPATCH_WEIGHT_DISTANCE", "0.30")
        monkeypatch.setenv("DISPATCH_WEIGHT_LOYALTY", "0.0")
        monkeypatch.setenv("DISPATCH_MAX_RIDES_PER_DRIVER", "4")
        monkeypatch.setenv("DISPATCH_ALLOW_OVERNIGHT_SHIFTS", "true")
        monkeypatch.setenv("TRAFFIC_API_URL", "http://traffic.internal")

        config = DispatchEngineConfig.from_env()

        assert config.environment == Environment.STAGING
        assert config.redis.url == "redis://:pw@redis.internal:6379/0"
        assert config.scoring.to_weights().distance == 0.30
        assert config.load_balancing.to_model().max_rides_per_driver == 4
        assert config.dispatch.to_model().allow_overnight_shifts is True
        assert config.oracles.traffic_api_url == "http://traffic.internal"

    def test_unknown_environment_falls_back_to_development(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "moon-base")
        assert DispatchEngineConfig.from_env().environment == Environment.DEVELOPMENT

    def test_weight_drift_is_a_warning(self, test_config):
        test_config.scoring.distance = 0.5
        check = test_config.validate()
        assert check["valid"] is True
        assert any("Scoring weights sum to 1.250" in m for m in check["messages"])

    def test_non_positive_speed_is_an_error(self, test_config):
        test_config.dispatch.average_speed_kmh = 0
        check = test_config.validate()
        assert check["valid"] is False
        assert any(m.startswith("ERROR") for m in check["messages"])

    def test_negative_weight_is_an_error(self, test_config):
        test_config.scoring.loyalty = -0.1
        check = test_config.validate()
        assert check["valid"] is False
        assert "ERROR: Scoring weights must not be negative: loyalty" in check["messages"]

    def test_negative_weight_from_env_is_reported_not_raised(self, monkeypatch):
        monkeypatch.setenv("DISPATCH_WEIGHT_LOYALTY", "-0.1")
        check = DispatchEngineConfig.from_env().validate()
        assert check["valid"] is False
        assert any("must not be negative: loyalty" in m for m in check["messages"])

    def test_localhost_redis_in_production_warns(self):
        config = DispatchEngineConfig(environment=Environment.PRODUCTION)
        assert any("localhost Redis" in m for m in config.validate()["messages"])

    def test_global_config(self, test_config):
        set_config(test_config)
        assert get_config() is test_config


# =============================================================================
# ENGINE
# =============================================================================

class TestDispatchEngine:

    @pytest.mark.asyncio
    async def test_payload_assigned(self, engine, store, make_ride, make_driver):
        await store.save_driver(make_driver("d1"))
        payload = make_ride().model_dump(mode="json")

        response = await engine.dispatch_payload(payload)

        assert response["status"] == "assigned"
        assert response["assignment"]["driver_id"] == "d1"
        assert response["assignment"]["source"] == "dispatch"

    @pytest.mark.asyncio
    async def test_payload_no_drivers(self, engine, make_ride):
        response = await engine.dispatch_payload(make_ride().model_dump(mode="json"))
        assert response["status"] == "no_drivers"
        assert response["message"] == NO_DRIVERS_MESSAGE

    @pytest.mark.asyncio
    async def test_payload_invalid(self, engine, make_ride):
        payload = make_ride().model_dump(mode="json")
        payload["pickup"] = {"latitude": 123.0, "longitude": 0.0}
        del payload["passenger_id"]

        response = await engine.dispatch_payload(payload)

        assert response["status"] == "invalid"
        fields = {tuple(error["loc"])[0] for error in response["errors"]}
        assert fields == {"pickup", "passenger_id"}

    @pytest.mark.asyncio
    async def test_payload_failed(self, engine, make_ride):
        engine.coordinator.dispatch = AsyncMock(side_effect=DispatchFailure("store down", retryable=True))

        response = await engine.dispatch_payload(make_ride().model_dump(mode="json"))

        assert response["status"] == "failed"
        assert response["retryable"] is True
        assert "store down" not in response["message"]

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, engine, store, make_ride, make_driver, now):
        for driver in (make_driver("d1"), make_driver("d2", km_north=2.0)):
            await store.save_driver(driver)
        ride = make_ride()

        assignment = await engine.dispatch(ride)
        await engine.override(ride.ride_id, "d2", OverrideReason.SAFETY, "dispatcher_1")
        await engine.advance(ride.ride_id, RideStatus.ACCEPTED)
        await engine.advance(ride.ride_id, RideStatus.IN_PROGRESS)
        finished = await engine.release(ride.ride_id, RideStatus.COMPLETED)

        assert assignment.driver_id == "d1"
        assert finished.status == RideStatus.COMPLETED
        assert finished.assigned_driver_id == "d2"
        assert (await store.get_driver("d2")).status == DriverStatus.AVAILABLE

        metrics = await engine.get_metrics(TimeRange(start=now - timedelta(hours=1), end=now))
        assert metrics.total_assignments == 2
        assert metrics.successful_assignments == 1
        assert metrics.override_count == 1

        fleet = await engine.fleet_utilization()
        assert fleet.overall == 0.0

    @pytest.mark.asyncio
    async def test_dispatch_ride_with_engine(self, engine, store, make_ride, make_driver):
        await store.save_driver(make_driver("d1"))
        assignment = await dispatch_ride(make_ride(), engine=engine)
        assert assignment.driver_id == "d1"

    def test_default_engine_is_in_memory(self):
        engine = DispatchEngine()
        assert engine.store is engine.coordinator._store
        assert engine.coordinator.scoring.weights == ScoringWeights()


class TestFromConfig:

    @pytest.mark.asyncio
    async def test_wires_redis_and_configured_lookups(self, test_config):
        test_config.oracles.traffic_api_url = "http://traffic.internal"
        test_config.oracles.surge_api_url = "http://surge.internal"
        test_config.scoring.distance = 0.35
        test_config.scoring.loyalty = 0.0
        test_config.scoring.surge = 0.0
        test_config.scoring.passenger_preference = 0.0

        engine = DispatchEngine.from_config(test_config)

        assert isinstance(engine.store, RedisDispatchStore)
        assert isinstance(engine.signals._traffic, HttpTrafficScorer)
        assert isinstance(engine.signals._surge, HttpSurgeLookup)
        assert isinstance(engine.signals._affinity, NeutralAffinityScorer)
        assert engine.coordinator.scoring.weights.distance == 0.35
        assert engine.signals._surge_cache_max == test_config.oracles.surge_cache_max_entries
        await engine.close()

    def test_invalid_config_rejected(self, test_config):
        test_config.load_balancing.max_rides_per_driver = 0
        with pytest.raises(ValueError):
            DispatchEngine.from_config(test_config)

    def test_installs_configured_log_handlers(self, test_config, package_logger, tmp_path):
        test_config.logging.level = "debug"
        test_config.logging.console = False
        test_config.logging.file_path = str(tmp_path / "dispatch.log")

        DispatchEngine.from_config(test_config)

        assert package_logger.level == logging.DEBUG
        assert [type(h) for h in package_logger.handlers] == [logging.FileHandler]
        package_logger.handlers[0].flush()
        assert "Dispatch engine configured for" in (tmp_path / "dispatch.log").read_text()


class TestConfigureLogging:

    def test_console_handler_with_format(self, package_logger):
        configure_logging(LoggingConfig(level="WARNING", format="%(levelname)s %(message)s"))

        assert package_logger.level == logging.WARNING
        assert len(package_logger.handlers) == 1
        handler = package_logger.handlers[0]
        assert type(handler) is logging.StreamHandler
        assert handler.formatter._fmt == "%(levelname)s %(message)s"

    def test_reconfiguring_replaces_handlers(self, package_logger, tmp_path):
        configure_logging(LoggingConfig(console=True, file_path=str(tmp_path / "a.log")))
        assert len(package_logger.handlers) == 2

        configure_logging(LoggingConfig(console=False))
        assert package_logger.handlers == []
