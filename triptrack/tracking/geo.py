"""
GPS Distance Calculator
=======================

Great-circle distance between two coordinates using the Haversine formula
on a spherical Earth, with a small FIFO cache for repeated pairs.

Usage:
    calc = DistanceCalculator()
    km = calc.distance_km(Coordinate(48.2082, 16.3738), Coordinate(45.8150, 15.9819))
"""

from __future__ import annotations

import math
from collections import OrderedDict

from ..domain.models import Coordinate

EARTH_RADIUS_KM = 6371.0

_CacheKey = tuple[float, float, float, float]


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    """
    Calculate distance between two points using Haversine formula.

    Args:
        a: First point
        b: Second point

    Returns:
        Distance in kilometres, never negative
    """
    lat1_rad = math.radians(a.lat)
    lat2_rad = math.radians(b.lat)
    dlat = math.radians(b.lat - a.lat)
    dlon = math.radians(b.lon - a.lon)

    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    )
    h = min(1.0, h)  # rounding near antipodes
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return max(0.0, EARTH_RADIUS_KM * c)


class DistanceCalculator:
    """
    Haversine distance with a bounded FIFO cache.

    Keys are both coordinates rounded to 6 decimals (~0.1 m), so a hit is the
    distance of the rounded pair. Coordinates are immutable, so cached values
    never go stale.
    """

    def __init__(self, capacity: int = 100, precision: int = 6) -> None:
        self.capacity = capacity
        self.precision = precision
        self._cache: OrderedDict[_CacheKey, float] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def _key(self, a: Coordinate, b: Coordinate) -> _CacheKey:
        p = self.precision
        return (round(a.lat, p), round(a.lon, p), round(b.lat, p), round(b.lon, p))

    def distance_km(self, a: Coordinate, b: Coordinate) -> float:
        """Distance between ``a`` and ``b`` in kilometres."""
        if self.capacity <= 0:
            return haversine_km(a, b)

        key = self._key(a, b)
        cached = self._cache.get(key)
        if cached is not None:
            self.hits += 1
            return cached

        self.misses += 1
        result = haversine_km(Coordinate(key[0], key[1]), Coordinate(key[2], key[3]))
        self._cache[key] = result
        if len(self._cache) > self.capacity:
            self._cache.popitem(last=False)  # oldest insertion first
        return result

    def clear(self) -> None:
        self._cache.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> dict:
        return {
            "size": len(self._cache),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
        }
