"""
Geo Service
===========

Geographic utility functions for distance calculations and radius filtering.
Used by the geo matcher to narrow, filter and rank providers by proximity.

Uses the haversine formula for great-circle distance between two points
on Earth's surface. Accurate enough for service radius calculations
(error < 0.5% for distances under 100 km).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Sequence

# Earth's mean radius in kilometres
EARTH_RADIUS_KM: float = 6371.0


def haversine_distance(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
) -> float:
    """Calculate the great-circle distance between two points using the
    haversine formula.

    Args:
        lat1: Latitude of point 1 in decimal degrees.
        lon1: Longitude of point 1 in decimal degrees.
        lat2: Latitude of point 2 in decimal degrees.
        lon2: Longitude of point 2 in decimal degrees.

    Returns:
        Distance in kilometres.
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    # Clamp against floating point drift just above 1.0
    c = 2 * math.asin(math.sqrt(min(1.0, a)))

    return EARTH_RADIUS_KM * c


@dataclass(frozen=True)
class BoundingBox:
    """Lat/lon rectangle that fully contains a search circle.

    ``min_lon``/``max_lon`` are None when the circle touches a pole or wraps
    the antimeridian; callers then skip the longitude filter.
    """

    min_lat: float
    max_lat: float
    min_lon: float | None
    max_lon: float | None


def bounding_box(center_lat: float, center_lon: float, radius_km: float) -> BoundingBox:
    """Compute a conservative prefilter box around a point.

    The box only narrows the SQL query; the haversine distance remains the
    authoritative filter.
    """
    delta_lat = math.degrees(radius_km / EARTH_RADIUS_KM)
    min_lat = max(-90.0, center_lat - delta_lat)
    max_lat = min(90.0, center_lat + delta_lat)

    if min_lat <= -90.0 or max_lat >= 90.0:
        return BoundingBox(min_lat, max_lat, None, None)

    # Widest longitude span occurs at the latitude closest to a pole
    widest_lat = max(abs(min_lat), abs(max_lat))
    cos_lat = math.cos(math.radians(widest_lat))
    if cos_lat <= 1e-12:
        return BoundingBox(min_lat, max_lat, None, None)

    ratio = math.sin(radius_km / EARTH_RADIUS_KM) / cos_lat
    if ratio >= 1.0:
        return BoundingBox(min_lat, max_lat, None, None)
    delta_lon = math.degrees(math.asin(ratio))
    min_lon = center_lon - delta_lon
    max_lon = center_lon + delta_lon
    if min_lon < -180.0 or max_lon > 180.0:
        return BoundingBox(min_lat, max_lat, None, None)

    return BoundingBox(min_lat, max_lat, min_lon, max_lon)


@dataclass
class ProviderDistance:
    """A provider paired with their calculated distance from a reference point."""

    provider: Any
    distance_km: float


def filter_by_radius(
    providers: Sequence[Any],
    center_lat: float,
    center_lon: float,
    radius_km: float,
) -> list[ProviderDistance]:
    """Keep providers within ``radius_km`` of the center, closest first.

    Args:
        providers: Objects with ``latitude`` and ``longitude`` attributes.
        center_lat: Latitude of the search center.
        center_lon: Longitude of the search center.
        radius_km: Search radius in km.

    Returns:
        List of ProviderDistance objects sorted by distance (closest first).
    """
    results: list[ProviderDistance] = []

    for provider in providers:
        if provider.latitude is None or provider.longitude is None:
            continue

        distance = haversine_distance(
            center_lat,
            center_lon,
            float(provider.latitude),
            float(provider.longitude),
        )
        if distance <= radius_km:
            results.append(ProviderDistance(provider=provider, distance_km=distance))

    results.sort(key=lambda pd: pd.distance_km)
    return results
