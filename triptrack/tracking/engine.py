"""
Trip Engine
===========

Wires the trip components together and owns their lifecycle:

    location source -> handle_location -> GPSUpdateProcessor
        -> ProgressStore -> PersistenceAdapter (debounced)
        -> EventBus (PROGRESS_UPDATED snapshots for the render layer)

Usage:
    engine = TripEngine(cfg)
    engine.start()
    await engine.run(GpsdLocationSource(cfg.source.gpsd))
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, AsyncIterator, Callable, Mapping, Optional, Protocol

from ..config import TripTrackConfig
from ..core.events import EventBus, EventType
from ..domain.models import Coordinate, PositionSample, ProgressSnapshot, ProgressState
from ..infrastructure.gps.gpsd_client import now_ms
from ..infrastructure.storage.kv_store import KeyValueStore, open_store
from .classifier import MovementModeClassifier
from .controls import TripControls
from .geo import DistanceCalculator
from .persistence import PersistenceAdapter
from .processor import GPSUpdateProcessor, ProcessResult
from .store import ProgressStore

logger = logging.getLogger(__name__)

MPS_TO_KMH = 3.6


class LocationSource(Protocol):
    def stream(self) -> AsyncIterator[Optional[PositionSample]]: ...

    async def stop(self) -> None: ...


def _float(value: Any) -> float:
    if isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def sample_from_payload(payload: Mapping[str, Any], timestamp_ms: int) -> PositionSample:
    """
    Build a sample from a location-service message.

    Accepts ``{"latitude", "longitude", "accuracy", "speed"}`` (speed in m/s),
    optionally nested under ``"location"``, or ``lat``/``lon``. Missing or
    malformed coordinates become NaN so the processor rejects them.
    """
    location = payload.get("location")
    if not isinstance(location, Mapping):
        location = payload
    lat = _float(location.get("latitude", location.get("lat")))
    lon = _float(location.get("longitude", location.get("lon")))

    speed_mps = payload.get("speed")
    speed_kmh = _float(speed_mps) * MPS_TO_KMH if speed_mps is not None else None
    accuracy = payload.get("accuracy")

    return PositionSample(
        coordinate=Coordinate(lat, lon),
        timestamp_ms=timestamp_ms,
        accuracy_m=_float(accuracy) if accuracy is not None else None,
        speed_kmh=speed_kmh,
    )


class TripEngine:
    """
    Trip-progress engine.

    Args:
        config: Full configuration
        kv_store: Persistence backend (default: from ``config.persistence``)
        bus: Event bus shared with readers
        clock_ms: Arrival clock for raw payloads
    """

    def __init__(
        self,
        config: TripTrackConfig | None = None,
        kv_store: KeyValueStore | None = None,
        bus: EventBus | None = None,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config or TripTrackConfig()
        self.bus = bus or EventBus()
        self._clock_ms = clock_ms
        cfg = self.config

        self.store = ProgressStore(bus=self.bus, max_distance_km=cfg.persistence.max_distance_km)
        self.persistence = PersistenceAdapter(
            kv_store if kv_store is not None else open_store(cfg.persistence),
            key=cfg.persistence.storage_key,
            debounce_s=cfg.persistence.save_debounce_s,
            max_distance_km=cfg.persistence.max_distance_km,
            rollover_gap_hours=cfg.persistence.rollover_gap_hours,
            bus=self.bus,
        )
        self.calculator = DistanceCalculator()
        self.classifier = MovementModeClassifier(self.store, cfg.movement, bus=self.bus)
        self.processor = GPSUpdateProcessor(
            self.store,
            self.classifier,
            cfg.movement,
            calculator=self.calculator,
            auto_start=cfg.trip.use_auto_start,
            on_commit=self._request_save,
            bus=self.bus,
            progress_log_interval_s=cfg.logging.progress_log_interval_s,
        )
        self.controls = TripControls(
            self.store, cfg.trip, self.persistence, bus=self.bus, classifier=self.classifier
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def default_state(self) -> ProgressState:
        trip = self.config.trip
        return ProgressState(
            total_target_km=trip.total_distance_km,
            start_location=None if trip.use_auto_start else trip.manual_start_location.to_coordinate(),
            units=trip.units,
        )

    def start(self) -> ProgressSnapshot:
        """Restore saved progress. Safe to call once before the first sample."""
        state = self.persistence.load(self.default_state())
        if not self.config.trip.use_auto_start:
            state.start_location = self.config.trip.manual_start_location.to_coordinate()
        self.store.restore(state)
        self.classifier.cancel_pending(reason="start")
        self._started = True
        snapshot = self.store.snapshot()
        logger.info(
            "Trip engine started - %.2f/%.0fkm (%.1f%%), auto-start %s",
            snapshot.total_traveled_km,
            snapshot.total_target_km,
            snapshot.progress_percent,
            "on" if self.config.trip.use_auto_start else "off",
        )
        return snapshot

    def handle_location(self, payload: PositionSample | Mapping[str, Any] | None) -> Optional[ProcessResult]:
        """
        Inbound location callback.

        ``None`` means the source is hidden or offline: only the connection
        flag changes. Anything else is processed as a sample.

        Called outside a running event loop there is no downgrade timer, so
        mode downgrades apply on the first slower sample (logged once).
        """
        if payload is None:
            self._set_connected(False)
            return None

        if isinstance(payload, PositionSample):
            sample = payload
        else:
            sample = sample_from_payload(payload, self._clock_ms())

        self._set_connected(True)
        return self.processor.process(sample)

    def _set_connected(self, connected: bool) -> None:
        if not self.store.set_connected(connected):
            return
        logger.info("Location source %s", "online" if connected else "offline")
        self.bus.publish(EventType.CONNECTION_CHANGED, {"connected": connected}, source="engine")

    def _request_save(self) -> None:
        self.persistence.save(self.store)

    def snapshot(self) -> ProgressSnapshot:
        return self.store.snapshot()

    def get_status(self) -> dict:
        """Diagnostic view of the whole engine."""
        state = self.store.state
        snapshot = self.store.snapshot()
        profile = self.config.movement.profile(state.current_mode)
        return {
            "total_traveled_km": round(snapshot.total_traveled_km, 4),
            "today_traveled_km": round(snapshot.today_traveled_km, 4),
            "total_target_km": snapshot.total_target_km,
            "remaining_km": round(snapshot.remaining_km, 4),
            "progress_percent": round(snapshot.progress_percent, 2),
            "units": state.units.value,
            "current_mode": state.current_mode.value,
            "pending_mode": self.classifier.pending_mode.value if self.classifier.pending_mode else None,
            "avatar": profile.avatar,
            "connected": state.connected,
            "use_auto_start": self.config.trip.use_auto_start,
            "start_location": state.start_location.to_dict() if state.start_location else None,
            "last_position": state.last_position.to_dict() if state.last_position else None,
            "last_speed_kmh": round(self.processor.last_speed_kmh, 2),
            "last_active_date": state.last_active_date.isoformat() if state.last_active_date else None,
            "samples": dict(self.processor.stats),
            "distance_cache": self.calculator.stats(),
            "saves": self.persistence.saves,
            "save_failures": self.persistence.failures,
            "events": self.bus.get_stats(),
        }

    async def run(self, source: LocationSource, minutes: Optional[float] = None) -> None:
        """Feed ``source`` into the engine until it ends, ``minutes`` pass, or the task is cancelled."""
        if not self._started:
            self.start()
        try:
            if minutes is None:
                await self._consume(source)
            else:
                try:
                    async with asyncio.timeout(minutes * 60):
                        await self._consume(source)
                except TimeoutError:
                    logger.info("Run time of %.1f minutes reached", minutes)
        finally:
            await source.stop()
            self.shutdown()

    async def _consume(self, source: LocationSource) -> None:
        async for payload in source.stream():
            self.handle_location(payload)

    def shutdown(self) -> None:
        """Cancel the downgrade timer and write any pending progress synchronously."""
        self.bus.publish(EventType.ENGINE_STOPPING, self.store.snapshot(), source="engine")
        self.classifier.cancel_pending(reason="shutdown")
        if not self.persistence.flush():
            self.persistence.save_now(self.store)
        logger.info(
            "Trip engine stopped - total %.2fkm, today %.2fkm",
            self.store.total_traveled_km,
            self.store.today_traveled_km,
        )
