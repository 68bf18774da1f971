"""
Nearest-station lookup for waterway geometry.

Each feature is represented by the middle vertex of its coordinate
sequence; the closest station strictly within the cutoff (great-circle
distance, miles) is associated with it.  Ties keep the station that came
first in the input.
"""

from __future__ import annotations

import math
import os
from typing import Optional, Sequence, Tuple

from .models import GeometryFeature, Station

EARTH_RADIUS_MILES = 3958.8
MAX_GAUGE_DISTANCE_MILES = float(os.getenv("MAX_GAUGE_DISTANCE_MILES", "10"))


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Compute great-circle distance between two points on Earth.
    """
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_MILES * c


def representative_point(feature: GeometryFeature) -> Optional[Tuple[float, float]]:
    if not feature.coordinates:
        return None
    return feature.coordinates[len(feature.coordinates) // 2]


def nearest_station(
    feature: GeometryFeature,
    stations: Sequence[Station],
    max_distance_miles: float = MAX_GAUGE_DISTANCE_MILES,
) -> Tuple[Optional[Station], Optional[float]]:
    """
    Closest station to ``feature`` and its distance in miles.

    Returns ``(None, None)`` when the feature has no coordinates or no
    station is strictly closer than ``max_distance_miles``.
    """
    point = representative_point(feature)
    if point is None:
        return None, None

    best: Optional[Station] = None
    best_d = math.inf
    for station in stations:
        d = haversine_miles(point[0], point[1], station.latitude, station.longitude)
        # strict < keeps the earlier station on exact ties
        if d < max_distance_miles and d < best_d:
            best, best_d = station, d
    if best is None:
        return None, None
    return best, best_d
