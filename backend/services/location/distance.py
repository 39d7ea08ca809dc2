"""
Distance and Coordinate Checks for Location Services

Haversine formula for great-circle distance between two lat/lng points,
plus the coordinate validity rules shared by the reconciler, the map view
and the geocoder.

A position is usable on the map only when both values are finite, inside
-90..90 / -180..180, and neither is exactly 0 (devices and the backend use
0 as the "no fix" sentinel).
"""

import math
from typing import Any, Optional

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Calculate great-circle distance between two points in kilometers.
    Uses the Haversine formula.
    """
    lat1_r = math.radians(lat1)
    lat2_r = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters."""
    return haversine_km(lat1, lng1, lat2, lng2) * 1000.0


def parse_coordinate(value: Any) -> Optional[float]:
    """
    Coerce a coordinate from the wire (float, int, numeric string) to float.
    Returns None for missing, boolean, or unparseable values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            return None
    return None


def in_bounds(latitude: Any, longitude: Any) -> bool:
    """Finite numbers inside the WGS84 lat/lng ranges."""
    if not isinstance(latitude, (int, float)) or not isinstance(longitude, (int, float)):
        return False
    if isinstance(latitude, bool) or isinstance(longitude, bool):
        return False
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        return False
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def is_valid_position(latitude: Any, longitude: Any) -> bool:
    """In bounds and not the 0 'no fix' sentinel on either axis."""
    if not in_bounds(latitude, longitude):
        return False
    return latitude != 0 and longitude != 0
