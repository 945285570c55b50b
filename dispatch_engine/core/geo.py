"""
Dispatch Engine GeoMath

Pure great-circle helpers. Real routing is delegated elsewhere; these give
the straight-line distance and a fixed-speed ETA the scorer works with.
"""

from __future__ import annotations

import math

from ..models import GeoLocation


EARTH_RADIUS_KM = 6371.0
DEFAULT_AVERAGE_SPEED_KMH = 30.0


def haversine_km(a: GeoLocation, b: GeoLocation) -> float:
    """
    Great-circle distance between two points in kilometers.

    Args:
        a: First point
        b: Second point

    Returns:
        Distance in km (0.0 for identical points)
    """
    d_lat = math.radians(b.latitude - a.latitude)
    d_lon = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.latitude))
        * math.cos(math.radians(b.latitude))
        * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c


def bearing_degrees(a: GeoLocation, b: GeoLocation) -> float:
    """Initial compass bearing from ``a`` to ``b`` in [0, 360)."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lon = math.radians(b.longitude - a.longitude)

    x = math.sin(d_lon) * math.cos(lat2)
    y = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(d_lon)
    return (math.degrees(math.atan2(x, y)) + 360.0) % 360.0


def estimate_eta_seconds(distance_km: float, speed_kmh: float = DEFAULT_AVERAGE_SPEED_KMH) -> float:
    """Travel time in seconds at a constant average speed."""
    if speed_kmh <= 0:
        raise ValueError("speed_kmh must be positive")
    return (max(distance_km, 0.0) / speed_kmh) * 3600.0


def pickup_eta_seconds(
    pickup: GeoLocation,
    driver_location: GeoLocation,
    speed_kmh: float = DEFAULT_AVERAGE_SPEED_KMH,
) -> float:
    """Seconds for a driver to reach the pickup point in city traffic."""
    return estimate_eta_seconds(haversine_km(pickup, driver_location), speed_kmh)
