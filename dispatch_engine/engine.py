"""
Dispatch Engine - Main Entry Point

Wires the store, external lookups, coordinator, override manager and
metrics reporter into one object that a host service calls into.

Inbound operations:
    - dispatch(ride)                     -> DispatchAssignment | None
    - dispatch_payload(dict)             -> response dict for passenger-facing callers
    - override(ride_id, driver_id, ...)  -> EmergencyOverride
    - advance(ride_id, status) / release(ride_id, outcome)
    - get_metrics(time_range)            -> DispatchMetrics
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .config import DispatchEngineConfig, configure_logging, get_config
from .core.coordinator import DispatchCoordinator
from .exceptions import DispatchFailure
from .metrics import MetricsReporter
from .models import (
    DispatchAssignment,
    DispatchConfig,
    EmergencyOverride,
    FleetUtilization,
    DispatchMetrics,
    LoadBalancingConfig,
    OverrideReason,
    RideRequest,
    RideStatus,
    ScoringWeights,
    TimeRange,
)
from .oracles.affinity import HttpAffinityScorer
from .oracles.signal_service import ExternalSignalService
from .oracles.surge import HttpSurgeLookup
from .oracles.traffic import HttpTrafficScorer
from .overrides.manager import OverrideManager
from .store.base import DispatchStore
from .store.memory import InMemoryDispatchStore
from .store.redis_store import RedisDispatchStore


logger = logging.getLogger(__name__)


NO_DRIVERS_MESSAGE = "No drivers currently available, please try again"
DISPATCH_FAILED_MESSAGE = "We could not assign a driver right now, please try again"


class DispatchEngine:
    """
    The ride-dispatch engine.

    Example:
        engine = DispatchEngine.from_config()
        assignment = await engine.dispatch(ride)
        ...
        await engine.release(ride.ride_id, RideStatus.COMPLETED)
        await engine.close()
    """

    def __init__(
        self,
        store: Optional[DispatchStore] = None,
        signals: Optional[ExternalSignalService] = None,
        weights: Optional[ScoringWeights] = None,
        load_balancing: Optional[LoadBalancingConfig] = None,
        config: Optional[DispatchConfig] = None,
        clock=None,
    ):
        self._config = config or DispatchConfig()
        self.store = store or InMemoryDispatchStore()
        self.signals = signals or ExternalSignalService(config=self._config)
        self.coordinator = DispatchCoordinator(
            store=self.store,
            signals=self.signals,
            weights=weights,
            load_balancing=load_balancing,
            config=self._config,
            clock=clock,
        )
        self.overrides = OverrideManager(self.store, config=self._config, clock=clock)
        self.metrics = MetricsReporter(self.store, self.coordinator.load_balancer)

    @classmethod
    def from_config(cls, config: Optional[DispatchEngineConfig] = None) -> "DispatchEngine":
        """
        Build an engine from the environment-driven configuration.

        Installs the configured log handlers, then uses the Redis store and
        HTTP lookups for every source whose URL is configured (neutral values
        otherwise).
        """
        config = config or get_config()
        configure_logging(config.logging)
        check = config.validate()
        for message in check["messages"]:
            logger.warning(message)
        if not check["valid"]:
            raise ValueError(f"Invalid dispatch engine configuration: {check['messages']}")

        dispatch_config = config.dispatch.to_model()
        oracle = config.oracles

        def http(client_cls, url):
            if not url:
                return None
            return client_cls(url, api_key=oracle.api_key, timeout_seconds=oracle.timeout_seconds)

        signals = ExternalSignalService(
            traffic=http(HttpTrafficScorer, oracle.traffic_api_url),
            affinity=http(HttpAffinityScorer, oracle.affinity_api_url),
            surge=http(HttpSurgeLookup, oracle.surge_api_url),
            config=dispatch_config,
            surge_cache_ttl_seconds=oracle.surge_cache_ttl_seconds,
            surge_cache_max_entries=oracle.surge_cache_max_entries,
        )
        store = RedisDispatchStore(
            redis_url=config.redis.url,
            key_prefix=config.redis.key_prefix,
            max_connections=config.redis.max_connections,
            socket_timeout=config.redis.socket_timeout,
        )
        logger.info(f"Dispatch engine configured for {config.environment.value}")
        return cls(
            store=store,
            signals=signals,
            weights=config.scoring.to_weights(),
            load_balancing=config.load_balancing.to_model(),
            config=dispatch_config,
        )

    async def close(self) -> None:
        """Clean up resources."""
        await self.signals.close()
        await self.store.close()

    # =========================================================================
    # Operations
    # =========================================================================

    async def dispatch(self, ride: RideRequest) -> Optional[DispatchAssignment]:
        return await self.coordinator.dispatch(ride)

    async def dispatch_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Dispatch from a loosely-typed request payload.

        Returns one of:
            {"status": "assigned", "assignment": {...}}
            {"status": "no_drivers", "message": NO_DRIVERS_MESSAGE}
            {"status": "failed", "message": ..., "retryable": bool}
            {"status": "invalid", "errors": [...]}
        """
        try:
            ride = RideRequest.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Rejected malformed ride payload: {e.error_count()} errors")
            return {"status": "invalid", "errors": e.errors(include_url=False, include_context=False)}

        try:
            assignment = await self.coordinator.dispatch(ride)
        except DispatchFailure as e:
            logger.error(f"Ride {ride.ride_id}: dispatch failed: {e}")
            return {
                "status": "failed",
                "ride_id": ride.ride_id,
                "message": DISPATCH_FAILED_MESSAGE,
                "retryable": e.retryable,
            }

        if assignment is None:
            return {"status": "no_drivers", "ride_id": ride.ride_id, "message": NO_DRIVERS_MESSAGE}
        return {
            "status": "assigned",
            "ride_id": ride.ride_id,
            "assignment": assignment.model_dump(mode="json"),
        }

    async def override(
        self,
        ride_id: str,
        new_driver_id: str,
        reason: OverrideReason,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> EmergencyOverride:
        return await self.overrides.override(ride_id, new_driver_id, reason, actor_id, notes)

    async def advance(self, ride_id: str, status: RideStatus) -> RideRequest:
        return await self.coordinator.advance(ride_id, status)

    async def release(self, ride_id: str, outcome: RideStatus) -> RideRequest:
        return await self.coordinator.release(ride_id, outcome)

    async def get_metrics(self, time_range: TimeRange) -> DispatchMetrics:
        return await self.metrics.get_metrics(time_range)

    async def fleet_utilization(self) -> FleetUtilization:
        return await self.metrics.fleet_utilization()


async def dispatch_ride(
    ride: RideRequest,
    engine: Optional[DispatchEngine] = None,
    config: Optional[DispatchEngineConfig] = None,
) -> Optional[DispatchAssignment]:
    """
    Convenience function to dispatch a single ride.

    For callers that don't want to manage the engine lifecycle. A temporary
    engine is built from ``config`` and closed afterwards.

    Example:
        assignment = await dispatch_ride(ride)
        if assignment is None:
            print(NO_DRIVERS_MESSAGE)
    """
    if engine is not None:
        return await engine.dispatch(ride)

    engine = DispatchEngine.from_config(config)
    try:
        return await engine.dispatch(ride)
    finally:
        await engine.close()
