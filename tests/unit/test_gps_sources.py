"""
Location Source Unit Tests
==========================

gpsd report parsing, the gpsd stream against a local fake daemon, and the
demo random walk.
"""

import asyncio
import json

import pytest

from triptrack.config import GpsdConfig
from triptrack.infrastructure.gps import DemoLocationSource, GpsdLocationSource
from triptrack.tracking.geo import haversine_km

T0 = 1_760_000_000_000

TPV = {"class": "TPV", "mode": 3, "lat": 48.2082, "lon": 16.3738, "speed": 2.0, "eph": 4.5}


def line(data: dict) -> bytes:
    return json.dumps(data).encode("utf-8") + b"\n"


class TestParseLine:
    def test_tpv_becomes_sample(self):
        source = GpsdLocationSource(clock=lambda: T0)
        sample = source.parse_line(line(TPV))
        assert sample.coordinate.lat == 48.2082
        assert sample.speed_kmh == pytest.approx(7.2)
        assert sample.accuracy_m == 4.5
        assert sample.timestamp_ms == T0

    def test_missing_speed(self):
        source = GpsdLocationSource(clock=lambda: T0)
        sample = source.parse_line(line({**TPV, "speed": None}))
        assert sample.speed_kmh is None
        assert sample.reported_speed_kmh == 0.0

    @pytest.mark.parametrize(
        "raw",
        [
            line({"class": "SKY", "satellites": []}),
            line({"class": "TPV", "mode": 1}),
            line({"class": "TPV", "mode": 3, "lat": 48.0}),
            line({"class": "TPV", "mode": 3, "lat": "x", "lon": 16.0}),
            b"not json\n",
            b"\xff\xfe\n",
        ],
    )
    def test_ignored_lines(self, raw):
        assert GpsdLocationSource().parse_line(raw) is None


@pytest.mark.asyncio
async def test_stream_from_fake_gpsd():
    """Two fixes, then the daemon hangs up: the stream reports the loss as None."""
    watch_requests = []

    async def handler(reader, writer):
        watch_requests.append(await reader.readline())
        writer.write(line(TPV) + line({"class": "SKY", "satellites": [{}, {}]}) + line({**TPV, "lat": 48.2083}))
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    source = GpsdLocationSource(GpsdConfig(host="127.0.0.1", port=port, timeout=2.0, reconnect_delay=0.1))

    received = []
    try:
        async with asyncio.timeout(5):
            async for sample in source.stream():
                received.append(sample)
                if len(received) == 3:
                    break
    finally:
        await source.stop()
        server.close()
        await server.wait_closed()

    assert watch_requests[0].startswith(b"?WATCH=")
    assert received[0].coordinate.lat == 48.2082
    assert received[1].coordinate.lat == 48.2083
    assert received[2] is None
    assert source.state.fix_count == 2


@pytest.mark.asyncio
async def test_stream_gives_up_after_max_attempts():
    source = GpsdLocationSource(
        GpsdConfig(host="127.0.0.1", port=1, timeout=1.0, reconnect_delay=0.1, max_reconnect_attempts=1)
    )
    received = [sample async for sample in source.stream()]
    assert received == []
    assert source.state.error_count == 1


class TestDemoSource:
    def test_step_moves_within_speed_limit(self):
        demo = DemoLocationSource(interval_s=10.0, seed=7)
        previous = demo.position
        for i in range(50):
            sample = demo.step(10.0, T0 + i * 10_000)
            assert 0.0 <= sample.speed_kmh <= 40.0
            moved_km = haversine_km(previous, sample.coordinate)
            assert moved_km <= sample.speed_kmh * 10 / 3600 + 1e-6
            previous = sample.coordinate
        assert demo.steps == 50

    def test_seed_is_reproducible(self):
        a = DemoLocationSource(seed=42)
        b = DemoLocationSource(seed=42)
        assert a.step(10, T0) == b.step(10, T0)

    @pytest.mark.asyncio
    async def test_stream_yields_until_stopped(self):
        demo = DemoLocationSource(interval_s=0.01, seed=1, clock=lambda: T0)
        received = []
        async for sample in demo.stream():
            received.append(sample)
            if len(received) == 3:
                await demo.stop()
        assert len(received) == 3
