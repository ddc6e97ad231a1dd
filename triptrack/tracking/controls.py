"""
Trip Controls
=============

Operator commands against a running (or stored) trip: distance corrections,
resets, unit switching, backup export/import and the query-string form of
the same commands used by remote overlay URLs (``?reset=today&units=miles``).

Every command validates its input and answers with a ``ControlResult``;
bad input is refused with a message, never raised.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qsl

from pydantic import ValidationError

from ..config import MAX_DISTANCE_KM, TripConfig
from ..core.events import EventBus, EventType
from ..domain.models import Coordinate, Units
from .classifier import MovementModeClassifier
from .persistence import PersistedProgress, PersistenceAdapter
from .store import ProgressStore

logger = logging.getLogger(__name__)

MAX_IMPORT_LENGTH = 10_000
ADD_DISTANCE_LIMIT_KM = 10_000.0
TODAY_DISTANCE_LIMIT_KM = 1_000.0

_MILES_ALIASES = {"miles", "mi", "imperial"}
_KM_ALIASES = {"km", "kilometers", "kilometres", "metric"}
_BACKUP_TOTAL_KEYS = ("totalTraveledKm", "totalDistanceTraveled")


@dataclass(frozen=True)
class ControlResult:
    ok: bool
    message: str
    action: str = ""


def _number(value: Any) -> Optional[float]:
    """Parse an operator-supplied number. None for anything non-finite or non-numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    return float(value)


class TripControls:
    """
    Control surface over a ``ProgressStore``.

    Args:
        store: Trip state
        trip: Trip settings (manual start location, auto-start)
        persistence: Where changes are saved; None for throwaway stores
        classifier: Applies an imported movement mode; without one the mode is
            written to the store directly
        bus: Observability hook
        clock: Local "now" for export timestamps
    """

    def __init__(
        self,
        store: ProgressStore,
        trip: TripConfig | None = None,
        persistence: PersistenceAdapter | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = datetime.now,
        classifier: MovementModeClassifier | None = None,
    ) -> None:
        self._store = store
        self._trip = trip or TripConfig()
        self._persistence = persistence
        self._classifier = classifier
        self._bus = bus
        self._clock = clock

    # ==================== Distance ====================

    def add_distance(self, km: Any) -> ControlResult:
        """Add (or subtract, when negative) distance from both counters."""
        value = _number(km)
        if value is None:
            return self._refuse("add_distance", f"Invalid distance: {km!r} - provide a number")
        self._store.add_distance(value)
        verb = "Added" if value >= 0 else "Adjusted"
        return self._done("add_distance", f"{verb} {abs(value):.1f}km", save=True)

    def set_distance(self, km: Any) -> ControlResult:
        """Set both total and today's distance, clamped into the valid range."""
        value = _number(km)
        if value is None:
            return self._refuse("set_distance", f"Invalid distance: {km!r} - provide a number")
        total = self._store.set_total_traveled(value)
        self._store.set_today_traveled(value)
        return self._done("set_distance", f"Set to {total:.1f}km", save=True)

    def jump_to_progress(self, percent: Any) -> ControlResult:
        value = _number(percent)
        if value is None or not 0 <= value <= 100:
            return self._refuse("jump_to_progress", f"Invalid percentage: {percent!r} - must be 0-100")
        target = value / 100 * self._store.total_target_km
        self._store.set_total_traveled(target)
        self._store.set_today_traveled(target)
        return self._done("jump_to_progress", f"{value:g}% progress ({target:.1f}km)", save=True)

    def set_total_distance(self, km: Any) -> ControlResult:
        """Change the trip goal."""
        value = _number(km)
        if value is None or not 0 < value <= MAX_DISTANCE_KM:
            return self._refuse(
                "set_total_distance", f"Invalid total distance: {km!r} - must be > 0 and <= {MAX_DISTANCE_KM:.0f}"
            )
        self._store.set_total_target(value)
        return self._done("set_total_distance", f"Trip distance: {value:g}km", save=True)

    def set_today_distance(self, km: Any) -> ControlResult:
        value = _number(km)
        if value is None:
            return self._refuse("set_today_distance", f"Invalid distance: {km!r} - provide a number")
        today = self._store.set_today_traveled(value)
        return self._done("set_today_distance", f"Today: {today:.1f}km", save=True)

    def set_total_traveled(self, km: Any) -> ControlResult:
        value = _number(km)
        if value is None:
            return self._refuse("set_total_traveled", f"Invalid distance: {km!r} - provide a number")
        total = self._store.set_total_traveled(value)
        return self._done("set_total_traveled", f"Total traveled: {total:.1f}km", save=True)

    # ==================== Resets ====================

    def _start_location(self) -> Coordinate | None:
        return None if self._trip.use_auto_start else self._trip.manual_start_location.to_coordinate()

    def reset_progress(self) -> ControlResult:
        """Start the trip over: counters, start location, units and the stored record."""
        self._store.reset_progress(self._start_location())
        if self._persistence is not None:
            self._persistence.clear()
        return self._done("reset_progress", "Trip reset complete", save=False)

    def reset_today_distance(self) -> ControlResult:
        self._store.reset_today()
        return self._done("reset_today_distance", "Today's distance reset", save=True)

    def reset_start_location(self) -> ControlResult:
        """Forget the start and the last fix; the next sample seeds the trip again."""
        self._store.set_start_location(self._start_location())
        self._store.clear_position()
        message = "Start location will re-detect" if self._trip.use_auto_start else "Start location restored"
        return self._done("reset_start_location", message, save=True)

    # ==================== Units ====================

    def set_units(self, units: Any) -> ControlResult:
        if isinstance(units, Units):
            target = units
        else:
            text = str(units).strip().lower()
            if text in _MILES_ALIASES:
                target = Units.MILES
            elif text in _KM_ALIASES:
                target = Units.KM
            else:
                return self._refuse("set_units", f"Invalid units: {units!r} - must be miles, km, imperial or metric")
        if not self._store.set_units(target):
            return ControlResult(True, f"Units already {target.value}", "set_units")
        return self._done("set_units", f"Units: {target.value}", save=True)

    def convert_to_miles(self) -> ControlResult:
        return self.set_units(Units.MILES)

    def convert_to_kilometers(self) -> ControlResult:
        return self.set_units(Units.KM)

    # ==================== Backup ====================

    def export_state(self) -> str:
        """Backup JSON of the current trip, in the stored record format."""
        now = self._clock()
        record = PersistedProgress.from_state(self._store.state).model_copy(
            update={"saved_date": now.date(), "last_active_at_ms": int(now.timestamp() * 1000)}
        )
        logger.info("Trip data exported")
        return record.to_json(indent=2)

    def import_state(self, snapshot: str | Mapping[str, Any]) -> ControlResult:
        """Restore a backup produced by ``export_state`` (or by older overlay versions)."""
        if isinstance(snapshot, str):
            try:
                data = json.loads(snapshot)
            except json.JSONDecodeError as e:
                return self._refuse("import_state", f"Import failed - invalid JSON: {e}")
        else:
            data = dict(snapshot)

        if not isinstance(data, dict) or not any(key in data for key in _BACKUP_TOTAL_KEYS):
            return self._refuse("import_state", "Invalid backup format")

        try:
            record = PersistedProgress.model_validate(data)
        except ValidationError as e:
            return self._refuse("import_state", f"Invalid backup: {e.error_count()} error(s)")

        state = self._store.state
        state.total_traveled_km = record.total_traveled_km
        state.today_traveled_km = record.today_traveled_km
        state.units = record.units
        if record.total_target_km:
            state.total_target_km = record.total_target_km
        if self._trip.use_auto_start and record.start_location is not None:
            state.start_location = record.start_location
        if record.current_mode is not None and self._classifier is None:
            state.current_mode = record.current_mode
        self._store.restore(state)
        if record.current_mode is not None and self._classifier is not None:
            self._classifier.force(record.current_mode)
        if self._persistence is not None:
            self._persistence.save_now(self._store)
        return self._done(
            "import_state",
            f"Imported - total {record.total_traveled_km:.2f}km, today {record.today_traveled_km:.2f}km",
            save=False,
        )

    # ==================== Query parameters ====================

    def apply_query_params(self, query: str | Mapping[str, str]) -> list[ControlResult]:
        """
        Apply URL query parameters in order.

        Accepts a raw query string (``"?reset=today&units=miles"``) or a
        mapping. Unknown parameters are ignored.
        """
        if isinstance(query, str):
            pairs = parse_qsl(query.lstrip("?"), keep_blank_values=True)
        else:
            pairs = list(query.items())

        handlers = self._query_handlers()
        results: list[ControlResult] = []
        for key, value in pairs:
            handler = handlers.get(key)
            if handler is None:
                logger.debug("Ignoring unknown parameter: %s", key)
                continue
            logger.info("URL parameter triggered: %s=%s", key, value[:80])
            results.extend(handler(value))
        return results

    def _query_handlers(self) -> dict[str, Callable[[str], list[ControlResult]]]:
        return {
            "reset": self._q_reset,
            "resets": self._q_reset,
            "units": lambda value: [self.set_units(value)],
            "totalDistance": self._q_bounded(self.set_total_distance, 0, MAX_DISTANCE_KM, "totalDistance"),
            "addDistance": self._q_bounded(
                self.add_distance, -ADD_DISTANCE_LIMIT_KM, ADD_DISTANCE_LIMIT_KM, "addDistance"
            ),
            "setDistance": self._q_bounded(self.set_distance, 0, MAX_DISTANCE_KM, "setDistance"),
            "jumpTo": self._q_bounded(self.jump_to_progress, 0, 100, "jumpTo"),
            "setTodayDistance": self._q_bounded(
                self.set_today_distance, 0, TODAY_DISTANCE_LIMIT_KM, "setTodayDistance"
            ),
            "setTotalTraveled": self._q_bounded(self.set_total_traveled, 0, MAX_DISTANCE_KM, "setTotalTraveled"),
            "import": self._q_import,
            "importTripData": self._q_import,
            "export": self._q_export,
            "exportTripData": self._q_export,
        }

    def _q_reset(self, value: str) -> list[ControlResult]:
        results = []
        for kind in (part.strip() for part in value.split(",")):
            if kind == "all":
                results.append(self.reset_progress())
            elif kind == "today":
                results.append(self.reset_today_distance())
            elif kind == "location":
                results.append(self.reset_start_location())
            else:
                results.append(self._refuse("reset", f"Unknown reset parameter: {kind!r}"))
        return results

    def _q_bounded(
        self, action: Callable[[Any], ControlResult], low: float, high: float, name: str
    ) -> Callable[[str], list[ControlResult]]:
        def apply(value: str) -> list[ControlResult]:
            number = _number(value)
            if number is None or not low <= number <= high:
                return [self._refuse(name, f"Invalid {name} parameter: {value!r} (must be {low:g} to {high:g})")]
            return [action(number)]

        return apply

    def _q_import(self, value: str) -> list[ControlResult]:
        if not value:
            return []
        if len(value) > MAX_IMPORT_LENGTH:
            return [self._refuse("import", "Import data too large (>10KB)")]
        return [self.import_state(value)]

    def _q_export(self, value: str) -> list[ControlResult]:
        if value.lower() not in ("", "true", "1"):
            return []
        logger.info("Trip data backup:\n%s", self.export_state())
        return [ControlResult(True, "Trip data exported to log", "export")]

    # ==================== Internals ====================

    def _refuse(self, action: str, message: str) -> ControlResult:
        logger.warning("Control %s refused: %s", action, message)
        result = ControlResult(False, message, action)
        self._publish(result)
        return result

    def _done(self, action: str, message: str, save: bool) -> ControlResult:
        logger.info("Control %s: %s", action, message)
        if save and self._persistence is not None:
            self._persistence.save(self._store)
        result = ControlResult(True, message, action)
        self._publish(result)
        return result

    def _publish(self, result: ControlResult) -> None:
        if self._bus is not None:
            self._bus.publish(
                EventType.CONTROL_APPLIED,
                {"action": result.action, "ok": result.ok, "message": result.message},
                source="controls",
            )
