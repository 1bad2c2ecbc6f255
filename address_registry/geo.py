"""Great-circle distance and geohash helpers."""
import math

import pygeohash as pgh

EARTH_RADIUS_METERS = 6371000.0
DEFAULT_GEOHASH_PRECISION = 9  # ~5m x 5m cells


def distance_meters(p1, p2) -> float:
    """Haversine distance in meters between two points with .lat/.lng."""
    lat1, lat2 = math.radians(p1.lat), math.radians(p2.lat)
    dlat = lat2 - lat1
    dlng = math.radians(p2.lng - p1.lng)
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    # Clamp guards asin against a drifting a hair above 1.0
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(min(1.0, a)))


def encode_geohash(location, precision: int = DEFAULT_GEOHASH_PRECISION) -> str:
    return pgh.encode(location.lat, location.lng, precision=precision)
