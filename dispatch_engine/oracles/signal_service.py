"""
Dispatch Engine External Signal Service

Collects the three externally sourced scoring inputs for one
(ride, driver) pair:

    - passenger preference (affinity between passenger and driver)
    - traffic conditions between the driver and the pickup
    - surge multiplier at the pickup

Sources are queried in parallel, each under its own timeout. A source that
times out, raises, or answers None is replaced by its neutral value so a
slow dependency never blocks dispatch.

Example:
    service = ExternalSignalService()
    signals = await service.collect(ride, driver)
    signals.traffic_score   # 0.7 when no traffic feed is configured
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Dict, Optional, Tuple
import logging

from ..models import DispatchConfig, DriverAvailability, GeoLocation, RideRequest
from .affinity import AffinityScorer, NeutralAffinityScorer
from .surge import NoSurgeLookup, SurgeLookup
from .traffic import NeutralTrafficScorer, TrafficScorer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalSignals:
    """Resolved external inputs for one candidate. ``fallbacks`` names the neutral substitutions."""
    passenger_preference: float
    traffic_score: float
    surge_multiplier: float
    fallbacks: Tuple[str, ...] = ()


class SignalSource:
    """
    A single lookup source with health tracking.

    Counts successes and failures so operators can see which feed is
    degrading dispatch quality.
    """

    def __init__(self, name: str, client: Any, timeout_seconds: float = 2.0):
        self.name = name
        self.client = client
        self.timeout = timeout_seconds
        self.is_healthy = True
        self.last_check = datetime.utcnow()
        self.failure_count = 0
        self.success_count = 0

    def record(self, ok: bool) -> None:
        if ok:
            self.success_count += 1
        else:
            self.failure_count += 1

    async def check_health(self) -> bool:
        try:
            result = await asyncio.wait_for(self.client.health_check(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Signal source {self.name} health check timed out")
            result = False
        except Exception as e:
            logger.warning(f"Signal source {self.name} health check failed: {e}")
            result = False

        self.is_healthy = bool(result)
        self.last_check = datetime.utcnow()
        return self.is_healthy


class ExternalSignalService:
    """
    Parallel, timeout-bounded lookups with neutral fallback.

    Performance:
        - Each lookup is bounded by ``timeout_seconds``
        - Failed sources degrade to neutral values, never to errors
        - Surge multipliers are cached per ~100m cell for ``surge_cache_ttl_seconds``
          (at most ``surge_cache_max_entries`` cells; expired cells are swept first)
    """

    def __init__(
        self,
        traffic: Optional[TrafficScorer] = None,
        affinity: Optional[AffinityScorer] = None,
        surge: Optional[SurgeLookup] = None,
        config: Optional[DispatchConfig] = None,
        timeout_seconds: Optional[float] = None,
        surge_cache_ttl_seconds: int = 60,
        surge_cache_max_entries: int = 10_000,
    ):
        self._config = config or DispatchConfig()
        self._traffic = traffic or NeutralTrafficScorer(self._config.neutral_traffic_score)
        self._affinity = affinity or NeutralAffinityScorer(self._config.neutral_passenger_preference)
        self._surge = surge or NoSurgeLookup()
        self._timeout = timeout_seconds or self._config.lookup_timeout_seconds
        self._surge_ttl = surge_cache_ttl_seconds
        self._surge_cache_max = max(1, surge_cache_max_entries)

        # {cell_key: (multiplier, fetched_at)}
        self._surge_cache: Dict[str, Tuple[float, datetime]] = {}

        self._sources = {
            "traffic": SignalSource("traffic", self._traffic, self._timeout),
            "affinity": SignalSource("affinity", self._affinity, self._timeout),
            "surge": SignalSource("surge", self._surge, self._timeout),
        }

    @property
    def config(self) -> DispatchConfig:
        return self._config

    # =========================================================================
    # Lookups
    # =========================================================================

    async def collect(self, ride: RideRequest, driver: DriverAvailability) -> ExternalSignals:
        """
        Resolve every external signal for one candidate.

        Args:
            ride: The ride being dispatched
            driver: The candidate driver

        Returns:
            ExternalSignals with neutral values substituted where needed
        """
        preference, traffic, surge = await asyncio.gather(
            self._bounded("affinity", self._affinity.score(ride.passenger_id, driver.driver_id)),
            self._bounded("traffic", self._traffic.score(driver.location, ride.pickup)),
            self.surge_multiplier(ride.pickup),
        )

        fallbacks = []
        if preference is None:
            preference = self._config.neutral_passenger_preference
            fallbacks.append("affinity")
        if traffic is None:
            traffic = self._config.neutral_traffic_score
            fallbacks.append("traffic")
        if surge is None:
            surge = self._config.neutral_surge_multiplier
            fallbacks.append("surge")

        return ExternalSignals(
            passenger_preference=preference,
            traffic_score=traffic,
            surge_multiplier=surge,
            fallbacks=tuple(fallbacks),
        )

    async def surge_multiplier(self, location: GeoLocation) -> Optional[float]:
        """Surge at ``location``, served from the cell cache when fresh."""
        cached = self._get_cached_surge(location)
        if cached is not None:
            return cached

        value = await self._bounded("surge", self._surge.multiplier(location))
        if value is not None and value > 0:
            self._cache_surge(location, value)
            return value
        if value is not None:
            logger.warning(f"Ignoring non-positive surge multiplier {value} at {location}")
        return None

    async def _bounded(self, name: str, lookup: Awaitable[Optional[float]]) -> Optional[float]:
        """Await one lookup under the timeout, mapping every failure to None."""
        source = self._sources[name]
        try:
            value = await asyncio.wait_for(lookup, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{name} lookup timed out after {self._timeout}s; using neutral value")
            source.record(False)
            return None
        except Exception as e:
            logger.error(f"{name} lookup failed: {e}; using neutral value")
            source.record(False)
            return None

        source.record(value is not None)
        return value

    # =========================================================================
    # Surge cache
    # =========================================================================

    def _cell_key(self, location: GeoLocation) -> str:
        """Cache key rounded to ~100m precision."""
        return f"{round(location.latitude, 3)}:{round(location.longitude, 3)}"

    def _get_cached_surge(self, location: GeoLocation) -> Optional[float]:
        key = self._cell_key(location)
        if key in self._surge_cache:
            value, fetched_at = self._surge_cache[key]
            if (datetime.utcnow() - fetched_at).total_seconds() < self._surge_ttl:
                return value
            del self._surge_cache[key]
        return None

    def _cache_surge(self, location: GeoLocation, value: float) -> None:
        now = datetime.utcnow()
        if len(self._surge_cache) >= self._surge_cache_max:
            self._evict_surge(now)
        self._surge_cache[self._cell_key(location)] = (value, now)

    def _evict_surge(self, now: datetime) -> None:
        """Drop expired cells; if the cache is still full, drop the oldest."""
        for key, (_, fetched_at) in list(self._surge_cache.items()):
            if (now - fetched_at).total_seconds() >= self._surge_ttl:
                del self._surge_cache[key]
        while len(self._surge_cache) >= self._surge_cache_max:
            oldest = min(self._surge_cache, key=lambda key: self._surge_cache[key][1])
            del self._surge_cache[oldest]

    def clear_cache(self) -> None:
        self._surge_cache.clear()
        logger.info("Surge cache cleared")

    # =========================================================================
    # Health
    # =========================================================================

    async def check_health(self) -> Dict[str, bool]:
        """Returns {source_name: is_healthy}."""
        results = {}
        for name, source in self._sources.items():
            results[name] = await source.check_health()
        return results

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        return {
            name: {"success": source.success_count, "failure": source.failure_count}
            for name, source in self._sources.items()
        }

    async def close(self) -> None:
        """Close any HTTP clients held by the sources."""
        for client in (self._traffic, self._affinity, self._surge):
            closer = getattr(client, "close", None)
            if closer is not None:
                await closer()
