"""Great-circle distance and implied speed."""

from __future__ import annotations

import math

EARTH_RADIUS_METERS = 6_371_000.0


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in meters between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


def speed_kmh(distance_meters: float, elapsed_seconds: float) -> float:
    """Implied speed in km/h. Zero or negative elapsed time yields infinity for any movement."""
    if elapsed_seconds <= 0:
        return math.inf if distance_meters > 0 else 0.0
    return (distance_meters / elapsed_seconds) * 3.6
