from __future__ import annotations

from dataclasses import dataclass
from math import asin, cos, radians, sin, sqrt
from typing import Any

EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True, slots=True)
class GeofenceCheck:
    distance_m: float
    allowed_radius_m: float

    @property
    def within(self) -> bool:
        return self.distance_m <= self.allowed_radius_m

    def to_details(self) -> dict[str, Any]:
        # Rounded for display only; comparisons use the raw float.
        return {
            "distance": round(self.distance_m),
            "allowedRadius": self.allowed_radius_m,
        }


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two WGS84 points (haversine)."""
    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    a = min(1.0, max(0.0, a))
    c = 2 * asin(sqrt(a))
    return EARTH_RADIUS_M * c


def check_geofence(
    *,
    anchor_lat: float,
    anchor_lon: float,
    lat: float,
    lon: float,
    radius_m: float,
) -> GeofenceCheck:
    return GeofenceCheck(
        distance_m=distance_m(anchor_lat, anchor_lon, lat, lon),
        allowed_radius_m=radius_m,
    )
