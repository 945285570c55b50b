"""
Dispatch Engine Passenger Affinity Scorer

Passenger/driver affinity from ride history (past pairings, mutual ratings,
blocks), as a score in [0, 1] where 0.5 is neutral.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional
import logging

import httpx


logger = logging.getLogger(__name__)


class AffinityScorer(ABC):
    """Interface for passenger/driver affinity lookups."""

    @abstractmethod
    async def score(self, passenger_id: str, driver_id: str) -> Optional[float]:
        """Return affinity in [0, 1], or None when unknown."""

    async def health_check(self) -> bool:
        return True


class NeutralAffinityScorer(AffinityScorer):
    """No history: every pairing is neutral."""

    def __init__(self, value: float = 0.5):
        self._value = value

    async def score(self, passenger_id: str, driver_id: str) -> Optional[float]:
        return self._value


class HttpAffinityScorer(AffinityScorer):
    """
    Affinity scorer backed by a JSON HTTP endpoint.

    ``GET {base_url}/affinity/{passenger_id}/{driver_id}`` answering
    ``{"score": <float>}``. A 404 means no shared history.
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
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"Authorization": f"Bearer {self._api_key}"} if self._api_key else None,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def score(self, passenger_id: str, driver_id: str) -> Optional[float]:
        try:
            client = await self._get_client()
            response = await client.get(f"/affinity/{passenger_id}/{driver_id}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            value = response.json().get("score")
            return float(value) if value is not None else None

        except httpx.HTTPError as e:
            logger.error(f"Affinity API error for {passenger_id}/{driver_id}: {e}")
            return None
        except (TypeError, ValueError) as e:
            logger.warning(f"Unparseable affinity response: {e}")
            return None

    async def health_check(self) -> bool:
        try:
            client = await self._get_client()
            response = await client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False
