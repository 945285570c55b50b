"""
Dispatch Engine Surge Lookup

Current demand multiplier for the area around a pickup point. 1.0 means no
surge; 2.0 means demand-driven pricing at twice the base fare.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional
import logging

import httpx

from ..models import GeoLocation


logger = logging.getLogger(__name__)


class SurgeLookup(ABC):
    """Interface for area surge-multiplier lookups."""

    @abstractmethod
    async def multiplier(self, location: GeoLocation) -> Optional[float]:
        """Return the multiplier (>= 1.0 in practice), or None when unknown."""

    async def health_check(self) -> bool:
        return True


class NoSurgeLookup(SurgeLookup):
    """Every area is at base demand."""

    async def multiplier(self, location: GeoLocation) -> Optional[float]:
        return 1.0


class HttpSurgeLookup(SurgeLookup):
    """
    Surge lookup backed by a JSON HTTP endpoint.

    ``GET {base_url}/surge?lat=..&lon=..`` answering ``{"multiplier": <float>}``.
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

    async def multiplier(self, location: GeoLocation) -> Optional[float]:
        try:
            client = await self._get_client()
            response = await client.get(
                "/surge",
                params={"lat": location.latitude, "lon": location.longitude},
            )
            response.raise_for_status()
            value = response.json().get("multiplier")
            return float(value) if value is not None else None

        except httpx.HTTPError as e:
            logger.error(f"Surge API error at {location}: {e}")
            return None
        except (TypeError, ValueError) as e:
            logger.warning(f"Unparseable surge response: {e}")
            return None

    async def health_check(self) -> bool:
        try:
            client = await self._get_client()
            response = await client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False
