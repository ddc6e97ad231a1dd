"""
Movement Mode Classifier
========================

Speed-driven state machine over ``MovementMode`` with hysteresis:
upgrades apply immediately, downgrades wait for an uninterrupted delay so a
stop at a traffic light does not flip the avatar back and forth.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from ..config import MovementConfig
from ..core.events import EventBus, EventType
from ..core.timers import ResettableTimer
from ..domain.models import MovementMode
from .store import ProgressStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModeDecision:
    """Outcome of feeding one speed value to the classifier."""

    speed_kmh: float
    candidate: MovementMode
    mode: MovementMode  # mode in effect after the decision
    changed: bool  # applied immediately
    pending: MovementMode | None  # downgrade waiting on the timer


class MovementModeClassifier:
    """
    Classifies speed into a movement mode and applies it to the store.

    Only one downgrade timer exists. A slower candidate arms it if idle;
    further slower candidates keep its deadline and only retarget it. A
    faster-or-equal candidate cancels it.
    """

    def __init__(
        self,
        store: ProgressStore,
        movement: MovementConfig,
        bus: EventBus | None = None,
        timer: ResettableTimer | None = None,
    ) -> None:
        self._store = store
        self._movement = movement
        self._bus = bus
        self._timer = timer or ResettableTimer("mode-downgrade")
        self._pending: MovementMode | None = None
        self._warned_no_loop = False
        self.changes = 0

    @property
    def current_mode(self) -> MovementMode:
        return self._store.current_mode

    @property
    def pending_mode(self) -> MovementMode | None:
        return self._pending

    @property
    def downgrade_delay_s(self) -> float:
        return self._movement.mode_switch_delay_s

    def classify(self, speed_kmh: float) -> MovementMode:
        """Slowest enabled mode whose ceiling holds ``speed_kmh``, else the fastest."""
        modes = self._movement.enabled_modes
        for mode in modes:
            if speed_kmh <= self._movement.profile(mode).max_speed_kmh:
                return mode
        return modes[-1]

    def mode_in_effect(self, speed_kmh: float) -> MovementMode:
        """The more permissive of the current mode and the mode ``speed_kmh`` implies."""
        implied = self.classify(speed_kmh)
        current = self.current_mode
        return implied if implied.is_faster_than(current) else current

    def update(self, speed_kmh: float) -> ModeDecision | None:
        """Feed one effective speed. Non-finite or negative speeds are ignored."""
        if not isinstance(speed_kmh, (int, float)) or not math.isfinite(speed_kmh) or speed_kmh < 0:
            return None

        candidate = self.classify(speed_kmh)
        current = self.current_mode

        if candidate.is_faster_than(current):
            self.cancel_pending(reason="upgrade")
            self._apply(candidate, speed_kmh, delayed=False)
            return ModeDecision(speed_kmh, candidate, candidate, changed=True, pending=None)

        if candidate == current:
            self.cancel_pending(reason="settled")
            return ModeDecision(speed_kmh, candidate, current, changed=False, pending=None)

        self._request_downgrade(candidate, speed_kmh)
        return ModeDecision(speed_kmh, candidate, current, changed=False, pending=self._pending)

    def _request_downgrade(self, target: MovementMode, speed_kmh: float) -> None:
        def commit() -> None:
            self._pending = None
            self._apply(target, speed_kmh, delayed=True)

        if self._timer.pending:
            if self._pending != target:
                logger.debug("Pending downgrade retargeted %s -> %s", self._pending, target.value)
            self._timer.retarget(commit)
            self._pending = target
            return

        try:
            self._timer.arm(self.downgrade_delay_s, commit)
        except RuntimeError:
            if not self._warned_no_loop:
                logger.warning("No running event loop - mode downgrades apply without delay")
                self._warned_no_loop = True
            logger.debug("Downgrade to %s applied without delay", target.value)
            self._apply(target, speed_kmh, delayed=False)
            return
        self._pending = target
        logger.info(
            "Mode downgrade %s -> %s pending (%.0fs, speed %.1f km/h)",
            self.current_mode.value,
            target.value,
            self.downgrade_delay_s,
            speed_kmh,
        )
        if self._bus is not None:
            self._bus.publish(
                EventType.MODE_DOWNGRADE_PENDING,
                {"current": self.current_mode, "target": target, "delay_s": self.downgrade_delay_s},
                source="classifier",
            )

    def cancel_pending(self, reason: str = "cancelled") -> bool:
        """Drop a pending downgrade. Returns True if one was pending."""
        target = self._pending
        self._pending = None
        if not self._timer.cancel():
            return False
        logger.debug("Pending downgrade to %s cancelled (%s)", target.value if target else None, reason)
        if self._bus is not None:
            self._bus.publish(
                EventType.MODE_DOWNGRADE_CANCELLED,
                {"current": self.current_mode, "target": target, "reason": reason},
                source="classifier",
            )
        return True

    def flush(self) -> bool:
        """Commit a pending downgrade now. Returns True if one was pending."""
        return self._timer.flush()

    def force(self, mode: MovementMode) -> None:
        """Apply ``mode`` now, bypassing hysteresis."""
        self.cancel_pending(reason="forced")
        self._apply(mode, None, delayed=False)

    def _apply(self, mode: MovementMode, speed_kmh: float | None, delayed: bool) -> None:
        previous = self._store.set_current_mode(mode)
        if previous == mode:
            return
        self.changes += 1
        logger.info(
            "Mode changed %s -> %s%s",
            previous.value,
            mode.value,
            " after delay" if delayed else "",
        )
        if self._bus is not None:
            self._bus.publish(
                EventType.MODE_CHANGED,
                {
                    "previous": previous,
                    "current": mode,
                    "speed_kmh": speed_kmh,
                    "delayed": delayed,
                    "avatar": self._movement.profile(mode).avatar,
                },
                source="classifier",
            )
