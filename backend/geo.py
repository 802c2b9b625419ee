"""MetroSafe Backend — Region containment & sampling grid"""

import math

from config import REGION_BOUNDS, LAT_DEG_PER_KM, LON_DEG_PER_KM
from models import Coordinate, GeoBounds

EARTH_RADIUS_KM = 6371.0

# Process-wide serviceable region. Frozen model, never mutated.
REGION = GeoBounds(**REGION_BOUNDS)


def in_region(lat: float, lon: float) -> bool:
    return REGION.contains(lat, lon)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def generate_grid(center: Coordinate, radius_km: float) -> list[Coordinate]:
    """Sample points covering the disc of ``radius_km`` around ``center``.

    A square lattice with one step per kilometre (fixed degree deltas for the
    region's latitude band) is filtered down to the points whose haversine
    distance from the center is within the radius. The center itself is always
    the lattice origin, so it is always included. Sub-kilometre spacing is not
    supported; the result size is bounded by ``(2 * ceil(radius_km) + 1) ** 2``.
    """
    if radius_km < 0:
        raise ValueError(f"radius_km must be non-negative, got {radius_km}")

    steps = math.ceil(radius_km)
    seen: set[Coordinate] = set()
    points: list[Coordinate] = []
    for lat_offset in range(-steps, steps + 1):
        for lon_offset in range(-steps, steps + 1):
            lat = center.lat + lat_offset * LAT_DEG_PER_KM
            lon = center.lon + lon_offset * LON_DEG_PER_KM
            if haversine_km(center.lat, center.lon, lat, lon) > radius_km:
                continue
            point = Coordinate(lat=lat, lon=lon)
            if point not in seen:
                seen.add(point)
                points.append(point)
    return points
