"""Progress store - the only mutable trip state."""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import date

from ..config import MAX_DISTANCE_KM
from ..core.events import EventBus, EventType
from ..domain.models import Coordinate, MovementMode, ProgressSnapshot, ProgressState, Units
from .validation import CoordinateValidator, clamp_distance

logger = logging.getLogger(__name__)


class ProgressStore:
    """
    Holder of ``ProgressState``.

    Callers own the policy (throttling, noise, rollover); the store only
    guarantees that every numeric value it accepts is clamped into
    ``[0, max_distance_km]`` and that each change is published as
    ``PROGRESS_UPDATED`` with a fresh snapshot.
    """

    def __init__(
        self,
        state: ProgressState | None = None,
        bus: EventBus | None = None,
        max_distance_km: float = MAX_DISTANCE_KM,
    ) -> None:
        self._state = state or ProgressState()
        self._bus = bus
        self.max_distance_km = max_distance_km

    # ==================== Reads ====================

    @property
    def state(self) -> ProgressState:
        """A copy of the current state. Mutate through the store methods."""
        return replace(self._state)

    @property
    def total_traveled_km(self) -> float:
        return self._state.total_traveled_km

    @property
    def today_traveled_km(self) -> float:
        return self._state.today_traveled_km

    @property
    def total_target_km(self) -> float:
        return self._state.total_target_km

    @property
    def start_location(self) -> Coordinate | None:
        return self._state.start_location

    @property
    def last_position(self) -> Coordinate | None:
        return self._state.last_position

    @property
    def last_update_at_ms(self) -> int:
        return self._state.last_update_at_ms

    @property
    def current_mode(self) -> MovementMode:
        return self._state.current_mode

    @property
    def units(self) -> Units:
        return self._state.units

    @property
    def connected(self) -> bool:
        return self._state.connected

    def snapshot(self) -> ProgressSnapshot:
        s = self._state
        return ProgressSnapshot(
            total_traveled_km=s.total_traveled_km,
            today_traveled_km=s.today_traveled_km,
            total_target_km=s.total_target_km,
            current_mode=s.current_mode,
            units=s.units,
            connected=s.connected,
        )

    # ==================== GPS processor entry points ====================

    def seed_position(self, position: Coordinate, now_ms: int, as_start: bool) -> None:
        """Record the first position of a trip (and optionally its start). No distance."""
        if as_start:
            self._state.start_location = position
        self._state.last_position = position
        self._state.last_update_at_ms = now_ms

    def commit_movement(self, delta_km: float, position: Coordinate, now_ms: int) -> None:
        """Add an accepted distance delta to both counters and advance the last fix."""
        delta = clamp_distance(delta_km, self.max_distance_km)
        s = self._state
        s.total_traveled_km = clamp_distance(s.total_traveled_km + delta, self.max_distance_km)
        s.today_traveled_km = clamp_distance(s.today_traveled_km + delta, self.max_distance_km)
        s.last_position = position
        s.last_update_at_ms = now_ms
        self._changed()

    def set_current_mode(self, mode: MovementMode) -> MovementMode:
        """Set the movement mode, returning the previous one."""
        previous = self._state.current_mode
        self._state.current_mode = mode
        if previous != mode:
            self._changed()
        return previous

    def set_connected(self, connected: bool) -> bool:
        """Update the location-source status flag. Returns True if it changed."""
        if self._state.connected == connected:
            return False
        self._state.connected = connected
        return True

    # ==================== Control entry points ====================

    def add_distance(self, km: float) -> bool:
        """Add (or with a negative value, subtract) distance from both counters."""
        if not isinstance(km, (int, float)) or not math.isfinite(km):
            return False
        s = self._state
        s.total_traveled_km = clamp_distance(max(0.0, s.total_traveled_km + km), self.max_distance_km)
        s.today_traveled_km = clamp_distance(max(0.0, s.today_traveled_km + km), self.max_distance_km)
        self._changed()
        return True

    def set_total_traveled(self, km: float) -> float:
        self._state.total_traveled_km = clamp_distance(km, self.max_distance_km)
        self._changed()
        return self._state.total_traveled_km

    def set_today_traveled(self, km: float) -> float:
        self._state.today_traveled_km = clamp_distance(km, self.max_distance_km)
        self._changed()
        return self._state.today_traveled_km

    def set_total_target(self, km: float) -> bool:
        """Set the trip goal. Non-positive values are refused since the goal must stay > 0."""
        value = clamp_distance(km, self.max_distance_km)
        if value <= 0:
            return False
        self._state.total_target_km = value
        self._changed()
        return True

    def set_units(self, units: Units) -> bool:
        if self._state.units == units:
            return False
        self._state.units = units
        self._changed()
        return True

    def set_start_location(self, location: Coordinate | None) -> None:
        if location is not None and not CoordinateValidator.is_valid(location):
            logger.warning("Ignoring invalid start location: %s", location)
            return
        self._state.start_location = location

    def clear_position(self) -> None:
        """Forget the last fix so the next sample re-seeds the trip."""
        self._state.last_position = None
        self._state.last_update_at_ms = 0

    def reset_progress(self, start_location: Coordinate | None) -> None:
        """Zero both counters and restart the trip from ``start_location`` (None = re-detect)."""
        s = self._state
        s.total_traveled_km = 0.0
        s.today_traveled_km = 0.0
        s.start_location = start_location
        s.last_position = None
        s.last_update_at_ms = 0
        s.units = Units.KM
        self._changed()

    def reset_today(self) -> None:
        self._state.today_traveled_km = 0.0
        self._changed()

    def mark_active(self, day: date, at_ms: int) -> None:
        self._state.last_active_date = day
        self._state.last_active_at_ms = at_ms

    def restore(self, state: ProgressState) -> None:
        """Replace the whole state (used when loading or importing), re-clamping every field."""
        state.total_traveled_km = clamp_distance(state.total_traveled_km, self.max_distance_km)
        state.today_traveled_km = clamp_distance(state.today_traveled_km, self.max_distance_km)
        target = clamp_distance(state.total_target_km, self.max_distance_km)
        state.total_target_km = target if target > 0 else self._state.total_target_km
        if not CoordinateValidator.is_valid(state.start_location):
            state.start_location = None
        if not CoordinateValidator.is_valid(state.last_position):
            state.last_position = None
        state.connected = self._state.connected
        self._state = state
        self._changed()

    def _changed(self) -> None:
        if self._bus is not None:
            self._bus.publish(EventType.PROGRESS_UPDATED, self.snapshot(), source="store")
