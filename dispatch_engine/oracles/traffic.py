"""
Dispatch Engine Traffic Scorer

Traffic conditions between a driver and the pickup point, expressed as a
score in [0, 1] where 1.0 is free-flowing.

The scorer is abstracted to allow:
    - A neutral implementation for tests and for deployments without a feed
    - HTTP-backed implementations swappable without touching the dispatch core
    - Graceful degradation when the API is unavailable (returns None)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional
import logging

import httpx

from ..models import GeoLocation


logger = logging.getLogger(__name__)


class TrafficScorer(ABC):
    """Interface for traffic-condition lookups."""

    @abstractmethod
    async def score(self, origin: GeoLocation, destination: GeoLocation) -> Optional[float]:
        """
        Score traffic on the route between two points.

        Returns:
            Score in [0, 1], or None if no answer is available
        """

    async def health_check(self) -> bool:
        return True


class NeutralTrafficScorer(TrafficScorer):
    """Always answers with the same neutral-good score."""

    def __init__(self, value: float = 0.7):
        self._value = value

    async def score(self, origin: GeoLocation, destination: GeoLocation) -> Optional[float]:
        return self._value


class HttpTrafficScorer(TrafficScorer):
    """
    Traffic scorer backed by a JSON HTTP endpoint.

    Expects ``GET {base_url}/traffic/score`` with origin/destination query
    parameters to answer ``{"score": <float>}``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 2.0,
    ):
        self._base_url = base_url
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"Authorization": f"Bearer {self._api_key}"} if self._api_key else None,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def score(self, origin: GeoLocation, destination: GeoLocation) -> Optional[float]:
        try:
            client = await self._get_client()
            response = await client.get(
                "/traffic/score",
                params={
                    "origin": f"{origin.latitude},{origin.longitude}",
                    "destination": f"{destination.latitude},{destination.longitude}",
                },
            )
            response.raise_for_status()
            value = response.json().get("score")
            return float(value) if value is not None else None

        except httpx.HTTPError as e:
            logger.error(f"Traffic API error: {e}")
            return None
        except (TypeError, ValueError) as e:
            logger.warning(f"Unparseable traffic response: {e}")
            return None

    async def health_check(self) -> bool:
        try:
            client = await self._get_client()
            response = await client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False
