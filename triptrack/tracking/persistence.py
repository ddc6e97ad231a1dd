"""
Progress Persistence
====================

Serializes ``ProgressState`` to a key-value store under a stable key and
restores it on startup.

- Writes are debounced: bursts of commits collapse into one write.
- Reads are sanitized: distances clamped, coordinates re-validated,
  anything unreadable falls back to defaults.
- "Today" is reset on load when the saved day is over (see
  ``should_reset_today``).
- Records written by older overlay versions are still understood.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Callable, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from ..config import MAX_DISTANCE_KM
from ..core.events import EventBus, EventType
from ..core.timers import ResettableTimer
from ..domain.models import Coordinate, MovementMode, ProgressState, Units
from ..infrastructure.storage.kv_store import KeyValueStore, StorageError
from .store import ProgressStore
from .validation import CoordinateValidator, clamp_distance

logger = logging.getLogger(__name__)

STORAGE_KEY = "trip-overlay-data"
LEGACY_DATE_FORMAT = "%a %b %d %Y"  # e.g. "Fri Oct 16 2026"


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class PersistedProgress(BaseModel):
    """
    The stored record.

    Field names serialize to the camelCase keys of the record; legacy keys
    are accepted on read only.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    total_traveled_km: float = Field(
        0.0,
        validation_alias=AliasChoices("totalTraveledKm", "totalDistanceTraveled", "total_traveled_km"),
        serialization_alias="totalTraveledKm",
    )
    today_traveled_km: float = Field(
        0.0,
        validation_alias=AliasChoices("todayTraveledKm", "todayDistanceTraveled", "today_traveled_km"),
        serialization_alias="todayTraveledKm",
    )
    saved_date: Optional[date] = Field(
        None,
        validation_alias=AliasChoices("date", "saved_date"),
        serialization_alias="date",
    )
    last_active_at_ms: Optional[int] = Field(
        None,
        validation_alias=AliasChoices("lastActiveAtMs", "lastActiveTime", "last_active_at_ms"),
        serialization_alias="lastActiveAtMs",
    )
    start_location: Optional[Coordinate] = Field(
        None,
        validation_alias=AliasChoices("startLocation", "autoStartLocation", "start_location"),
        serialization_alias="startLocation",
    )
    units: Units = Field(Units.KM, serialization_alias="units")
    total_target_km: Optional[float] = Field(
        None,
        validation_alias=AliasChoices("totalTargetKm", "totalDistance", "total_target_km"),
        serialization_alias="totalTargetKm",
    )
    current_mode: Optional[MovementMode] = Field(
        None,
        validation_alias=AliasChoices("currentMode", "current_mode"),
        serialization_alias="currentMode",
    )

    @model_validator(mode="before")
    @classmethod
    def _legacy_units(cls, data: Any) -> Any:
        if isinstance(data, dict) and "units" not in data and "useImperialUnits" in data:
            data = dict(data)
            data["units"] = Units.MILES if data.get("useImperialUnits") is True else Units.KM
        return data

    @field_validator("total_traveled_km", "today_traveled_km", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return clamp_distance(value, MAX_DISTANCE_KM)

    @field_validator("total_target_km", mode="before")
    @classmethod
    def _positive_target(cls, value: Any) -> Optional[float]:
        if value is None:
            return None
        target = clamp_distance(value, MAX_DISTANCE_KM)
        return target if target > 0 else None

    @field_validator("saved_date", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> Optional[date]:
        if value is None or isinstance(value, date):
            return value
        text = str(value).strip()
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            pass
        try:
            return datetime.strptime(text, LEGACY_DATE_FORMAT).date()
        except ValueError:
            logger.debug("Unreadable saved date: %r", value)
            return None

    @field_validator("last_active_at_ms", mode="before")
    @classmethod
    def _parse_active_time(cls, value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return int(value) if math.isfinite(value) and value >= 0 else None
        try:
            # legacy ISO timestamp ("2026-10-15T21:30:00.000Z")
            return _to_ms(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
        except ValueError:
            return None

    @field_validator("start_location", mode="before")
    @classmethod
    def _parse_location(cls, value: Any) -> Optional[Coordinate]:
        return CoordinateValidator.parse(value)

    @field_validator("units", mode="before")
    @classmethod
    def _parse_units(cls, value: Any) -> Units:
        if isinstance(value, Units):
            return value
        text = str(value).strip().lower()
        if text in ("mi", "miles", "imperial"):
            return Units.MILES
        return Units.KM

    @field_validator("current_mode", mode="before")
    @classmethod
    def _parse_mode(cls, value: Any) -> Optional[MovementMode]:
        if value is None:
            return None
        try:
            return MovementMode.parse(value)
        except ValueError:
            return None

    @classmethod
    def from_state(cls, state: ProgressState) -> PersistedProgress:
        return cls(
            total_traveled_km=state.total_traveled_km,
            today_traveled_km=state.today_traveled_km,
            saved_date=state.last_active_date,
            last_active_at_ms=state.last_active_at_ms,
            start_location=state.start_location,
            units=state.units,
            total_target_km=state.total_target_km,
            current_mode=state.current_mode,
        )

    def to_json(self, indent: int | None = None) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), indent=indent)

    def apply_to(self, base: ProgressState) -> ProgressState:
        """Merge the record over ``base`` (config defaults for anything missing)."""
        return replace(
            base,
            total_traveled_km=self.total_traveled_km,
            today_traveled_km=self.today_traveled_km,
            start_location=self.start_location if self.start_location is not None else base.start_location,
            units=self.units,
            total_target_km=self.total_target_km or base.total_target_km,
            last_active_date=self.saved_date,
            last_active_at_ms=self.last_active_at_ms,
        )


def should_reset_today(
    saved_date: Optional[date],
    last_active_at_ms: Optional[int],
    now: datetime,
    gap_hours: float = 6.0,
) -> bool:
    """
    Decide whether a restored "today" distance belongs to a previous day.

    True only when the saved calendar date differs from ``now``'s date and
    more than ``gap_hours`` passed since the last activity. A missing date
    means first run (never reset); a missing activity time resets on any
    date change.
    """
    if saved_date is None:
        return False
    if saved_date == now.date():
        return False
    if last_active_at_ms is None:
        return True
    hours_since_active = (_to_ms(now) - last_active_at_ms) / 3_600_000
    return hours_since_active > gap_hours


class PersistenceAdapter:
    """
    Debounced writer and sanitizing reader for one progress record.

    Args:
        kv_store: Backend holding the record
        key: Storage key
        debounce_s: Delay before a requested save is written
        max_distance_km: Clamp applied on load
        rollover_gap_hours: Inactivity gap that ends a travel day
        bus: Observability hook
        timer: Debounce timer (injectable for tests)
        clock: Local "now", injectable for tests
    """

    def __init__(
        self,
        kv_store: KeyValueStore,
        key: str = STORAGE_KEY,
        debounce_s: float = 0.5,
        max_distance_km: float = MAX_DISTANCE_KM,
        rollover_gap_hours: float = 6.0,
        bus: EventBus | None = None,
        timer: ResettableTimer | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._kv = kv_store
        self.key = key
        self.debounce_s = debounce_s
        self.max_distance_km = max_distance_km
        self.rollover_gap_hours = rollover_gap_hours
        self._bus = bus
        self._timer = timer or ResettableTimer("persistence-debounce")
        self._clock = clock
        self.saves = 0
        self.failures = 0

    @property
    def pending(self) -> bool:
        return self._timer.pending

    # ==================== Writes ====================

    def save(self, store: ProgressStore) -> None:
        """Request a write of ``store``; replaces any write still waiting."""
        if self.debounce_s <= 0:
            self.save_now(store)
            return
        try:
            self._timer.arm(self.debounce_s, lambda: self.save_now(store))
        except RuntimeError:
            # no event loop (one-shot CLI commands)
            self.save_now(store)

    def flush(self) -> bool:
        """Write a pending save immediately. Returns True if one was pending."""
        return self._timer.flush()

    def save_now(self, store: ProgressStore) -> bool:
        """Write ``store`` synchronously. Failures are logged and published, never raised."""
        self._timer.cancel()
        now = self._clock()
        store.mark_active(now.date(), _to_ms(now))
        record = PersistedProgress.from_state(store.state)
        try:
            self._kv.set(self.key, record.to_json())
        except (StorageError, OSError, TypeError, ValueError) as e:
            self.failures += 1
            logger.error("Failed to save trip data: %s", e)
            if self._bus is not None:
                self._bus.publish(EventType.SAVE_FAILED, {"error": str(e)}, source="persistence")
            return False

        self.saves += 1
        logger.debug(
            "Progress saved - total %.3fkm, today %.3fkm",
            record.total_traveled_km,
            record.today_traveled_km,
        )
        if self._bus is not None:
            self._bus.publish(EventType.STATE_SAVED, record, source="persistence")
        return True

    # ==================== Reads ====================

    def read_record(self) -> Optional[PersistedProgress]:
        """The stored record, or None when missing or unreadable."""
        try:
            raw = self._kv.get(self.key)
        except StorageError as e:
            logger.error("Failed to read saved progress, starting fresh: %s", e)
            return None
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Saved progress is corrupt, starting fresh: %s", e)
            return None
        if not isinstance(data, dict):
            logger.warning("Saved progress is not an object, starting fresh")
            return None
        try:
            return PersistedProgress.model_validate(data)
        except ValidationError as e:
            logger.warning("Saved progress failed validation, starting fresh: %s", e)
            return None

    def load(self, defaults: ProgressState | None = None) -> ProgressState:
        """
        Restore state from storage.

        Args:
            defaults: State used for anything the record does not hold

        Returns:
            A sanitized state; ``defaults`` when nothing usable is stored
        """
        base = defaults or ProgressState()
        record = self.read_record()
        if record is None:
            logger.info("No saved progress - starting fresh")
            return replace(base)

        state = record.apply_to(base)
        state.total_traveled_km = clamp_distance(state.total_traveled_km, self.max_distance_km)
        state.today_traveled_km = clamp_distance(state.today_traveled_km, self.max_distance_km)

        now = self._clock()
        if should_reset_today(record.saved_date, record.last_active_at_ms, now, self.rollover_gap_hours):
            logger.info(
                "Daily distance reset - new travel day detected (saved %s, %.2fkm)",
                record.saved_date,
                state.today_traveled_km,
            )
            if self._bus is not None:
                self._bus.publish(
                    EventType.DAY_ROLLOVER,
                    {"saved_date": record.saved_date, "discarded_km": state.today_traveled_km},
                    source="persistence",
                )
            state.today_traveled_km = 0.0

        logger.info(
            "Progress restored - Total: %.2fkm, Today: %.2fkm",
            state.total_traveled_km,
            state.today_traveled_km,
        )
        if self._bus is not None:
            self._bus.publish(EventType.STATE_LOADED, record, source="persistence")
        return state

    def clear(self) -> None:
        """Drop the stored record and any pending write."""
        self._timer.cancel()
        try:
            self._kv.delete(self.key)
        except StorageError as e:
            logger.error("Failed to clear saved progress: %s", e)

    def close(self) -> None:
        self.flush()
