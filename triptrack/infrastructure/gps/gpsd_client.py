"""Async gpsd location source with auto-reconnect."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ...config import GpsdConfig
from ...domain.models import Coordinate, PositionSample

logger = logging.getLogger(__name__)

MPS_TO_KMH = 3.6


def now_ms() -> int:
    return int(time.time() * 1000)


class GpsdReport(BaseModel):
    """
    TPV (Time-Position-Velocity) report from gpsd.

    Ranges are not checked here; out-of-range fixes reach the processor and
    are rejected and counted there.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    report_class: str = Field(..., alias="class")
    mode: int = 0  # 0=unknown, 1=no fix, 2=2D, 3=3D
    lat: Optional[float] = None
    lon: Optional[float] = None
    speed: Optional[float] = None  # m/s
    eph: Optional[float] = None  # horizontal error estimate, metres

    @property
    def has_fix(self) -> bool:
        return self.mode >= 2 and self.lat is not None and self.lon is not None

    def to_sample(self, timestamp_ms: int) -> Optional[PositionSample]:
        if not self.has_fix:
            return None
        return PositionSample(
            coordinate=Coordinate(float(self.lat), float(self.lon)),  # type: ignore[arg-type]
            timestamp_ms=timestamp_ms,
            accuracy_m=self.eph,
            speed_kmh=self.speed * MPS_TO_KMH if self.speed is not None else None,
        )


@dataclass
class SourceState:
    """Connection diagnostics."""

    connected: bool = False
    fix_count: int = 0
    error_count: int = 0
    last_fix_ms: Optional[int] = None


class GpsdLocationSource:
    """
    gpsd client yielding ``PositionSample`` objects.

    Yields ``None`` once per lost connection so the engine can flag the
    source as offline; reconnects on its own.

    Usage:
        source = GpsdLocationSource(cfg.source.gpsd)

        async for sample in source.stream():
            engine.handle_location(sample)
    """

    def __init__(self, config: GpsdConfig | None = None, clock: Callable[[], int] = now_ms) -> None:
        self.config = config or GpsdConfig()
        self._clock = clock
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._running = False
        self._state = SourceState()
        self._reconnect_attempts = 0

    @property
    def is_connected(self) -> bool:
        return self._state.connected

    @property
    def state(self) -> SourceState:
        return self._state

    async def connect(self) -> bool:
        """
        Connect to gpsd and enable JSON watch mode.

        Returns:
            True if connected successfully, False otherwise.
        """
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.config.host, self.config.port),
                timeout=self.config.timeout,
            )
            self._writer.write(b'?WATCH={"enable":true,"json":true}\n')
            await self._writer.drain()

            self._state.connected = True
            self._reconnect_attempts = 0
            logger.info("Connected to gpsd at %s:%d", self.config.host, self.config.port)
            return True

        except asyncio.TimeoutError:
            logger.warning("gpsd connection timeout to %s:%d", self.config.host, self.config.port)
        except ConnectionRefusedError:
            logger.warning("gpsd connection refused - is gpsd running?")
        except OSError as e:
            logger.warning("gpsd connection failed: %s", e)

        self._state.error_count += 1
        return False

    async def disconnect(self) -> None:
        """Disconnect from gpsd gracefully."""
        writer = self._writer
        self._reader = None
        self._writer = None
        self._state.connected = False
        if writer is None:
            return
        try:
            writer.write(b'?WATCH={"enable":false}\n')
            await writer.drain()
            writer.close()
            await writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug("gpsd disconnect: %s", e)

    def parse_line(self, line: bytes) -> Optional[PositionSample]:
        """Parse one gpsd JSON line. Non-TPV reports and fixless TPVs give None."""
        try:
            data = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("gpsd JSON parse error: %s", e)
            return None
        if not isinstance(data, dict) or data.get("class") != "TPV":
            return None
        try:
            report = GpsdReport.model_validate(data)
        except ValidationError as e:
            logger.warning("TPV parse error: %s", e)
            return None
        return report.to_sample(self._clock())

    async def stream(self) -> AsyncIterator[Optional[PositionSample]]:
        """
        Yield samples as they arrive, and ``None`` when the connection drops.

        Never raises: connection problems are logged and retried until
        ``stop()`` or ``max_reconnect_attempts``.
        """
        self._running = True

        while self._running:
            if not self._reader:
                if not await self.connect():
                    self._reconnect_attempts += 1
                    if (
                        self.config.max_reconnect_attempts > 0
                        and self._reconnect_attempts >= self.config.max_reconnect_attempts
                    ):
                        logger.error("gpsd max reconnect attempts reached, stopping")
                        break
                    await asyncio.sleep(self.config.reconnect_delay)
                    continue

            try:
                line = await asyncio.wait_for(self._reader.readline(), timeout=self.config.timeout)
                if not line:
                    raise ConnectionError("gpsd closed the connection")
            except asyncio.TimeoutError:
                logger.debug("gpsd read timeout, connection still alive")
                continue
            except (OSError, ConnectionError) as e:
                logger.warning("gpsd stream error: %s, reconnecting...", e)
                self._state.error_count += 1
                await self.disconnect()
                yield None
                await asyncio.sleep(self.config.reconnect_delay)
                continue

            sample = self.parse_line(line)
            if sample is not None:
                self._state.fix_count += 1
                self._state.last_fix_ms = sample.timestamp_ms
                yield sample

    async def stop(self) -> None:
        """Stop streaming and disconnect."""
        self._running = False
        await self.disconnect()
