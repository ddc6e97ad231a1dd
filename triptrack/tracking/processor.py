"""
GPS Update Processor
====================

Turns one ``PositionSample`` into either a committed distance delta or a
silent rejection. Steps, in order:

1. throttle by the current mode's sampling interval
2. validate the coordinate
3. seed the start location / first fix
4. distance delta and speed estimate
5. noise floor of the mode in effect (speed still reaches the classifier)
6. implausible-jump rejection
7. commit, classify, request a save

Rejections never add distance or move the last fix and never raise; they
are logged, counted and published as ``SAMPLE_REJECTED``. Only a noise
rejection may change the movement mode.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from ..config import MovementConfig
from ..core.events import EventBus, EventType
from ..domain.models import Coordinate, MovementMode, PositionSample
from .classifier import MovementModeClassifier
from .geo import DistanceCalculator
from .store import ProgressStore
from .validation import CoordinateValidator

logger = logging.getLogger(__name__)

THROTTLE_LOG_INTERVAL_MS = 10_000


class Outcome(str, Enum):
    SEEDED = "seeded"
    COMMITTED = "committed"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    THROTTLED = "throttled"
    INVALID_COORDINATE = "invalid_coordinate"
    SUSPICIOUS_ORIGIN = "suspicious_origin"
    NOISE = "noise"
    IMPLAUSIBLE_JUMP = "implausible_jump"


@dataclass(frozen=True)
class ProcessResult:
    outcome: Outcome
    reason: RejectReason | None = None
    delta_km: float = 0.0
    speed_kmh: float = 0.0
    mode: MovementMode | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome is not Outcome.REJECTED


class GPSUpdateProcessor:
    """
    Processes position samples against a ``ProgressStore``.

    Args:
        store: State to mutate on commit
        classifier: Movement mode state machine
        movement: Mode profiles and jump tolerance
        calculator: Distance function (cached)
        auto_start: First valid fix becomes the trip start
        on_commit: Called after every seed/commit (debounced save)
        bus: Observability hook
    """

    def __init__(
        self,
        store: ProgressStore,
        classifier: MovementModeClassifier,
        movement: MovementConfig,
        calculator: DistanceCalculator | None = None,
        auto_start: bool = False,
        on_commit: Callable[[], None] | None = None,
        bus: EventBus | None = None,
        progress_log_interval_s: float = 15.0,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._movement = movement
        self._calc = calculator or DistanceCalculator()
        self.auto_start = auto_start
        self._on_commit = on_commit
        self._bus = bus
        self._progress_log_interval_ms = progress_log_interval_s * 1000
        self._last_throttle_log_ms = 0
        self._last_progress_log_ms = 0
        self._last_logged_percent: int | None = None
        self.last_speed_kmh = 0.0
        self.stats: dict[str, int] = {
            "samples": 0,
            "committed": 0,
            "seeded": 0,
            **{reason.value: 0 for reason in RejectReason},
        }

    def process(self, sample: PositionSample) -> ProcessResult:
        """Evaluate one sample. Never raises for bad input."""
        self.stats["samples"] += 1
        now = sample.timestamp_ms
        store = self._store
        profile = self._movement.profile(store.current_mode)

        # 1. Throttle
        if now - store.last_update_at_ms < profile.gps_throttle_ms:
            if now - self._last_throttle_log_ms > THROTTLE_LOG_INTERVAL_MS:
                logger.debug("Updates throttled (%s: %dms)", store.current_mode.value, profile.gps_throttle_ms)
                self._last_throttle_log_ms = now
            return self._reject(RejectReason.THROTTLED, sample, log_level=None)

        # 2. Validate
        position = sample.coordinate
        if not CoordinateValidator.is_valid(position):
            return self._reject(RejectReason.INVALID_COORDINATE, sample, log_level=logging.WARNING)

        # 3. Seed
        if self.auto_start and store.start_location is None:
            if CoordinateValidator.is_suspicious_origin(position):
                return self._reject(RejectReason.SUSPICIOUS_ORIGIN, sample, log_level=logging.WARNING)
            store.seed_position(position, now, as_start=True)
            logger.info("Auto-detected start location - %.4f, %.4f", position.lat, position.lon)
            return self._seeded(position, is_start=True)

        last = store.last_position
        if last is None:
            store.seed_position(position, now, as_start=False)
            logger.info("Initial position set - %.4f, %.4f", position.lat, position.lon)
            return self._seeded(position, is_start=False)

        # 4. Distance and speed
        delta_km = self._calc.distance_km(last, position)
        elapsed_s = max(1.0, (now - store.last_update_at_ms) / 1000)
        calculated_kmh = delta_km / (elapsed_s / 3600)
        effective_kmh = max(sample.reported_speed_kmh, calculated_kmh)

        # 5. Noise floor of the mode in effect
        mode = self._classifier.mode_in_effect(calculated_kmh)
        mode_profile = self._movement.profile(mode)
        if delta_km < mode_profile.min_movement_m / 1000:
            # a clean stop is all noise; its speed still drives downgrades
            self.last_speed_kmh = effective_kmh
            self._classifier.update(effective_kmh)
            return self._reject(
                RejectReason.NOISE, sample, log_level=None, delta_km=delta_km, speed_kmh=effective_kmh, mode=mode
            )

        # 6. Jump rejection
        max_plausible_km = elapsed_s * (mode_profile.max_speed_kmh / 3.6) / 1000
        if delta_km > max_plausible_km * self._movement.jump_tolerance:
            logger.warning(
                "GPS jump detected in %s mode: %.3fkm vs max %.3fkm in %.0fs - ignoring",
                mode.value,
                delta_km,
                max_plausible_km,
                elapsed_s,
            )
            return self._reject(
                RejectReason.IMPLAUSIBLE_JUMP,
                sample,
                log_level=None,
                delta_km=delta_km,
                speed_kmh=effective_kmh,
                mode=mode,
            )

        # 7. Commit
        store.commit_movement(delta_km, position, now)
        self.last_speed_kmh = effective_kmh
        self._classifier.update(effective_kmh)
        self.stats["committed"] += 1
        self._log_progress(delta_km, now)
        self._notify_commit()
        return ProcessResult(
            Outcome.COMMITTED, delta_km=delta_km, speed_kmh=effective_kmh, mode=store.current_mode
        )

    def _seeded(self, position: Coordinate, is_start: bool) -> ProcessResult:
        self.stats["seeded"] += 1
        self.last_speed_kmh = 0.0
        if self._bus is not None:
            self._bus.publish(
                EventType.START_LOCATION_SET,
                {"position": position, "is_start": is_start},
                source="processor",
            )
        self._notify_commit()
        return ProcessResult(Outcome.SEEDED, mode=self._store.current_mode)

    def _reject(
        self,
        reason: RejectReason,
        sample: PositionSample,
        log_level: int | None,
        delta_km: float = 0.0,
        speed_kmh: float = 0.0,
        mode: MovementMode | None = None,
    ) -> ProcessResult:
        self.stats[reason.value] += 1
        if log_level is not None:
            logger.log(log_level, "Sample rejected (%s): %s", reason.value, sample.coordinate)
        else:
            logger.debug("Sample rejected (%s): delta=%.5fkm", reason.value, delta_km)
        if self._bus is not None:
            self._bus.publish(
                EventType.SAMPLE_REJECTED,
                {"reason": reason, "sample": sample, "delta_km": delta_km},
                source="processor",
            )
        return ProcessResult(Outcome.REJECTED, reason=reason, delta_km=delta_km, speed_kmh=speed_kmh, mode=mode)

    def _notify_commit(self) -> None:
        if self._on_commit is None:
            return
        try:
            self._on_commit()
        except Exception as e:
            logger.error("Post-commit hook failed: %s", e)

    def _log_progress(self, delta_km: float, now: int) -> None:
        store = self._store
        percent = store.total_traveled_km / store.total_target_km * 100
        if (
            self._last_logged_percent is not None
            and now - self._last_progress_log_ms < self._progress_log_interval_ms
            and math.floor(percent) == self._last_logged_percent
        ):
            return
        units = store.units
        logger.info(
            "Progress update - +%.4f%s | Total: %.4f%s | %.2f%% | Mode: %s",
            units.from_km(delta_km),
            units.suffix,
            units.from_km(store.total_traveled_km),
            units.suffix,
            min(100.0, percent),
            store.current_mode.value,
        )
        self._last_progress_log_ms = now
        self._last_logged_percent = math.floor(percent)
