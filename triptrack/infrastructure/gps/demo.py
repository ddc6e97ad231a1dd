"""Simulated location source for demos and offline testing."""

from __future__ import annotations

import asyncio
import logging
import math
import random
from typing import AsyncIterator, Callable, Optional

from ...domain.models import Coordinate, PositionSample
from .gpsd_client import now_ms

logger = logging.getLogger(__name__)

VIENNA = Coordinate(48.209, 16.3531)
KM_PER_DEG_LAT = 111.32


class DemoLocationSource:
    """
    Random walk around a starting point.

    Speed drifts between 0 and ``max_speed_kmh`` so every movement mode gets
    exercised; heading wanders a few degrees per step.
    """

    def __init__(
        self,
        start: Coordinate = VIENNA,
        interval_s: float = 10.0,
        max_speed_kmh: float = 40.0,
        seed: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.position = start
        self.interval_s = interval_s
        self.max_speed_kmh = max_speed_kmh
        self.speed_kmh = 0.0
        self.heading_deg = 0.0
        self._rng = random.Random(seed)
        self._clock = clock
        self._running = False
        self.steps = 0

    def step(self, elapsed_s: float, timestamp_ms: int) -> PositionSample:
        """Advance the walk by ``elapsed_s`` seconds and return the new fix."""
        self.speed_kmh = min(self.max_speed_kmh, max(0.0, self.speed_kmh + self._rng.uniform(-5.0, 5.0)))
        self.heading_deg = (self.heading_deg + self._rng.uniform(-20.0, 20.0)) % 360

        km = self.speed_kmh * elapsed_s / 3600
        heading = math.radians(self.heading_deg)
        dlat = km * math.cos(heading) / KM_PER_DEG_LAT
        dlon = km * math.sin(heading) / (KM_PER_DEG_LAT * math.cos(math.radians(self.position.lat)))
        self.position = Coordinate(self.position.lat + dlat, self.position.lon + dlon)
        self.steps += 1

        return PositionSample(
            coordinate=self.position,
            timestamp_ms=timestamp_ms,
            accuracy_m=5.0,
            speed_kmh=self.speed_kmh,
        )

    async def stream(self) -> AsyncIterator[Optional[PositionSample]]:
        self._running = True
        logger.info("Demo location source started at %.4f, %.4f", self.position.lat, self.position.lon)
        while self._running:
            yield self.step(self.interval_s, self._clock())
            await asyncio.sleep(self.interval_s)

    async def stop(self) -> None:
        self._running = False
