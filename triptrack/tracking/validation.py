"""Coordinate and distance sanitation shared by the processor, store and persistence."""

from __future__ import annotations

import logging
import math
from typing import Any

from ..config import MAX_DISTANCE_KM
from ..domain.models import Coordinate

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class CoordinateValidator:
    """Rejects malformed or out-of-range coordinates and the (0, 0) sentinel."""

    @staticmethod
    def is_valid(coord: Coordinate | None) -> bool:
        if coord is None:
            return False
        lat, lon = coord.lat, coord.lon
        return (
            _is_number(lat)
            and _is_number(lon)
            and math.isfinite(lat)
            and math.isfinite(lon)
            and -90 <= lat <= 90
            and -180 <= lon <= 180
        )

    @staticmethod
    def is_suspicious_origin(coord: Coordinate) -> bool:
        """(0, 0) is a receiver fault, not a real place to start a trip."""
        return coord.is_origin

    @classmethod
    def parse(cls, raw: Any) -> Coordinate | None:
        """
        Build a valid Coordinate from a stored or imported value.

        Accepts ``Coordinate``, ``{"lat": .., "lon": ..}`` (also ``latitude`` /
        ``longitude``) or a 2-item sequence. Returns None for anything invalid.
        """
        if isinstance(raw, Coordinate):
            coord = raw
        elif isinstance(raw, dict):
            lat = raw.get("lat", raw.get("latitude"))
            lon = raw.get("lon", raw.get("longitude"))
            if not (_is_number(lat) and _is_number(lon)):
                return None
            coord = Coordinate(float(lat), float(lon))
        elif isinstance(raw, (list, tuple)) and len(raw) == 2:
            if not (_is_number(raw[0]) and _is_number(raw[1])):
                return None
            coord = Coordinate(float(raw[0]), float(raw[1]))
        else:
            return None
        return coord if cls.is_valid(coord) else None


def clamp_distance(value: Any, max_km: float = MAX_DISTANCE_KM) -> float:
    """
    Coerce a distance into ``[0, max_km]``.

    Non-numeric, non-finite and negative values become 0.
    """
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return 0.0
    if not _is_number(value) or not math.isfinite(value) or value < 0:
        return 0.0
    return min(float(value), max_km)
