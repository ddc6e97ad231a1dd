"""Trip domain models - positions, movement modes and progress state."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

KM_TO_MILES = 0.621371


@dataclass(frozen=True)
class Coordinate:
    """Latitude/longitude pair in degrees.

    May hold out-of-range values; use ``CoordinateValidator`` before trusting it.
    """

    lat: float
    lon: float

    @property
    def is_origin(self) -> bool:
        """True for the (0, 0) sentinel that some receivers emit without a fix."""
        return self.lat == 0 and self.lon == 0

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lon": self.lon}


@dataclass(frozen=True)
class PositionSample:
    """One GPS fix as delivered by a location source."""

    coordinate: Coordinate
    timestamp_ms: int
    accuracy_m: float | None = None
    speed_kmh: float | None = None  # receiver-reported speed

    @property
    def reported_speed_kmh(self) -> float:
        """Reported speed, or 0 when missing or not a usable number."""
        if self.speed_kmh is None:
            return 0.0
        if not math.isfinite(self.speed_kmh) or self.speed_kmh < 0:
            return 0.0
        return float(self.speed_kmh)


class MovementMode(str, Enum):
    """Movement modes, declared from slowest to fastest."""

    STATIONARY = "STATIONARY"
    WALKING = "WALKING"
    CYCLING = "CYCLING"
    VEHICLE = "VEHICLE"

    @property
    def rank(self) -> int:
        return _MODE_ORDER.index(self)

    def is_faster_than(self, other: MovementMode) -> bool:
        return self.rank > other.rank

    def is_slower_than(self, other: MovementMode) -> bool:
        return self.rank < other.rank

    @classmethod
    def parse(cls, value: object, default: MovementMode | None = None) -> MovementMode:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            if default is None:
                raise
            return default


_MODE_ORDER = list(MovementMode)


class Units(str, Enum):
    """Display units. Accumulation is always in kilometres."""

    KM = "km"
    MILES = "miles"

    @property
    def suffix(self) -> str:
        return "mi" if self is Units.MILES else "km"

    def from_km(self, km: float) -> float:
        return km * KM_TO_MILES if self is Units.MILES else km


@dataclass
class ProgressState:
    """Aggregate root for trip progress. Owned by ``ProgressStore``."""

    total_target_km: float = 371.0
    total_traveled_km: float = 0.0
    today_traveled_km: float = 0.0
    start_location: Coordinate | None = None
    last_position: Coordinate | None = None
    last_update_at_ms: int = 0
    current_mode: MovementMode = MovementMode.STATIONARY
    units: Units = Units.KM
    last_active_date: date | None = None
    last_active_at_ms: int | None = None
    connected: bool = False


class ProgressSnapshot(BaseModel):
    """Read-only view of progress handed to the render layer."""

    model_config = ConfigDict(frozen=True)

    total_traveled_km: float = Field(..., ge=0)
    today_traveled_km: float = Field(..., ge=0)
    total_target_km: float = Field(..., gt=0)
    current_mode: MovementMode
    units: Units
    connected: bool = False

    @property
    def remaining_km(self) -> float:
        return max(0.0, self.total_target_km - self.total_traveled_km)

    @property
    def progress_percent(self) -> float:
        return min(100.0, self.total_traveled_km / self.total_target_km * 100)

    def display(self, km: float) -> str:
        """Format a kilometre value in the snapshot's display units."""
        return f"{self.units.from_km(km):.2f} {self.units.suffix}"
