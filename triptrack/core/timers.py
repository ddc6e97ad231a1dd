"""Named one-shot timers with cancel/re-arm semantics."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class ResettableTimer:
    """
    One-shot timer over ``loop.call_later``.

    At most one callback is pending per timer. ``arm`` always cancels the
    previous schedule before starting a new one, so re-arming never stacks.

    Usage:
        timer = ResettableTimer("persistence-debounce")
        timer.arm(0.5, save)
        timer.arm(0.5, save)   # replaces the first schedule
        timer.flush()          # run ``save`` now if pending
    """

    def __init__(self, name: str, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self.name = name
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None
        self._callback: Callable[[], None] | None = None
        self.fired_count = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def remaining(self) -> float | None:
        """Seconds until the pending callback fires, None when idle."""
        if self._handle is None:
            return None
        return max(0.0, self._handle.when() - self._get_loop().time())

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def arm(self, delay: float, callback: Callable[[], None]) -> None:
        """Cancel any pending callback and schedule ``callback`` after ``delay`` seconds."""
        loop = self._get_loop()
        self.cancel()
        self._callback = callback
        self._handle = loop.call_later(max(0.0, delay), self._fire)
        logger.debug("Timer %s armed (%.2fs)", self.name, delay)

    def retarget(self, callback: Callable[[], None]) -> bool:
        """Replace the pending callback without moving its deadline."""
        if self._handle is None:
            return False
        self._callback = callback
        return True

    def cancel(self) -> bool:
        """Cancel the pending callback. Returns True if one was pending."""
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        self._callback = None
        logger.debug("Timer %s cancelled", self.name)
        return True

    def flush(self) -> bool:
        """Run the pending callback immediately. Returns True if one ran."""
        if self._handle is None:
            return False
        self._handle.cancel()
        self._fire()
        return True

    def _fire(self) -> None:
        callback = self._callback
        self._handle = None
        self._callback = None
        if callback is None:
            return
        self.fired_count += 1
        try:
            callback()
        except Exception as e:
            logger.error("Timer %s callback failed: %s", self.name, e)
