"""
GPS Update Processor Unit Tests
===============================

Scenarios around throttling, seeding, noise and jump rejection.
"""

import asyncio
import math

import pytest

from triptrack.config import MovementConfig
from triptrack.core.events import EventBus, EventType
from triptrack.domain.models import Coordinate, MovementMode, PositionSample, ProgressState
from triptrack.tracking.classifier import MovementModeClassifier
from triptrack.tracking.processor import GPSUpdateProcessor, Outcome, RejectReason
from triptrack.tracking.store import ProgressStore

T0 = 1_760_000_000_000
VIENNA = Coordinate(48.2082, 16.3738)
M_PER_DEG_LAT = 111_194.9


def north(meters: float, origin: Coordinate = VIENNA) -> Coordinate:
    return Coordinate(origin.lat + meters / M_PER_DEG_LAT, origin.lon)


def sample(coord: Coordinate, at_ms: int, speed_kmh=None) -> PositionSample:
    return PositionSample(coordinate=coord, timestamp_ms=at_ms, speed_kmh=speed_kmh)


class Harness:
    def __init__(self, mode=MovementMode.WALKING, auto_start=False, on_commit=None, **movement):
        self.bus = EventBus()
        self.store = ProgressStore(ProgressState(current_mode=mode), bus=self.bus)
        self.movement = MovementConfig(**movement)
        self.classifier = MovementModeClassifier(self.store, self.movement, bus=self.bus)
        self.commits = []
        self.processor = GPSUpdateProcessor(
            self.store,
            self.classifier,
            self.movement,
            auto_start=auto_start,
            on_commit=on_commit or (lambda: self.commits.append(1)),
            bus=self.bus,
        )

    def feed(self, coord, at_ms, speed_kmh=None):
        return self.processor.process(sample(coord, at_ms, speed_kmh))


class TestSeeding:
    def test_first_fix_seeds_without_distance(self):
        h = Harness()
        result = h.feed(VIENNA, T0)
        assert result.outcome is Outcome.SEEDED
        assert h.store.last_position == VIENNA
        assert h.store.last_update_at_ms == T0
        assert h.store.total_traveled_km == 0.0
        assert h.store.start_location is None

    def test_auto_start_sets_start_location(self):
        h = Harness(auto_start=True)
        result = h.feed(VIENNA, T0)
        assert result.outcome is Outcome.SEEDED
        assert h.store.start_location == VIENNA
        event = h.bus.get_history(EventType.START_LOCATION_SET)[-1]
        assert event.data["is_start"] is True

    def test_auto_start_rejects_origin(self):
        h = Harness(auto_start=True)
        result = h.feed(Coordinate(0.0, 0.0), T0)
        assert result.reason is RejectReason.SUSPICIOUS_ORIGIN
        assert h.store.start_location is None
        assert h.store.last_update_at_ms == 0

        assert h.feed(VIENNA, T0 + 1000).outcome is Outcome.SEEDED
        assert h.store.start_location == VIENNA


class TestRejections:
    def test_invalid_coordinate(self):
        h = Harness()
        result = h.feed(Coordinate(95.0, 16.0), T0)
        assert result.reason is RejectReason.INVALID_COORDINATE
        assert h.store.last_position is None
        assert h.processor.stats["invalid_coordinate"] == 1

    def test_nan_coordinate(self):
        h = Harness()
        assert h.feed(Coordinate(math.nan, 16.0), T0).reason is RejectReason.INVALID_COORDINATE

    def test_throttled_within_mode_interval(self):
        h = Harness()
        h.feed(VIENNA, T0)
        result = h.feed(north(5), T0 + 1000)  # WALKING throttles at 2000ms
        assert result.reason is RejectReason.THROTTLED
        assert h.store.last_position == VIENNA
        assert h.store.total_traveled_km == 0.0

    def test_noise_below_mode_floor(self):
        h = Harness()
        h.feed(VIENNA, T0)
        result = h.feed(north(0.3), T0 + 3000)
        assert result.reason is RejectReason.NOISE
        assert h.store.total_traveled_km == 0.0
        assert h.store.last_update_at_ms == T0

    def test_stationary_jitter_is_noise(self):
        h = Harness(mode=MovementMode.STATIONARY)
        h.feed(VIENNA, T0)
        assert h.feed(north(0.4), T0 + 6000).reason is RejectReason.NOISE

    def test_rejection_is_published(self):
        h = Harness()
        h.feed(VIENNA, T0)
        h.feed(north(0.3), T0 + 3000)
        event = h.bus.get_history(EventType.SAMPLE_REJECTED)[-1]
        assert event.data["reason"] is RejectReason.NOISE

    @pytest.mark.asyncio
    async def test_stop_downgrades_after_delay(self):
        """Identical fixes while stopped are noise but still bring the mode down."""
        h = Harness(mode=MovementMode.CYCLING, mode_switch_delay_s=0.05)
        h.feed(VIENNA, T0)
        for i in range(1, 6):
            result = h.feed(VIENNA, T0 + i * 1000, speed_kmh=0.0)
            assert result.reason is RejectReason.NOISE
        assert h.classifier.pending_mode is MovementMode.STATIONARY
        assert h.store.current_mode is MovementMode.CYCLING

        await asyncio.sleep(0.15)
        assert h.store.current_mode is MovementMode.STATIONARY
        assert h.store.total_traveled_km == 0.0
        assert h.store.last_update_at_ms == T0

    def test_jump_does_not_reach_classifier(self):
        h = Harness(mode=MovementMode.CYCLING)
        h.feed(VIENNA, T0)
        assert h.feed(north(5000), T0 + 1000, speed_kmh=0.0).reason is RejectReason.IMPLAUSIBLE_JUMP
        assert h.store.current_mode is MovementMode.CYCLING
        assert h.classifier.pending_mode is None


class TestVienna:
    def test_jump_rejected_then_walk_accepted(self):
        """A 200 m jump after 3 s is a glitch; a 5 m step after 5 s is walking."""
        h = Harness(mode=MovementMode.WALKING)
        assert h.feed(VIENNA, T0).outcome is Outcome.SEEDED

        jump = h.feed(north(200), T0 + 3000)
        assert jump.reason is RejectReason.IMPLAUSIBLE_JUMP
        assert h.store.total_traveled_km == 0.0
        assert h.store.last_position == VIENNA
        assert h.store.last_update_at_ms == T0

        step = h.feed(north(5), T0 + 5000)
        assert step.outcome is Outcome.COMMITTED
        assert step.delta_km == pytest.approx(0.005, abs=1e-5)
        assert h.store.total_traveled_km == pytest.approx(0.005, abs=1e-5)
        assert h.store.today_traveled_km == pytest.approx(0.005, abs=1e-5)
        assert h.store.current_mode is MovementMode.WALKING


class TestCommit:
    def test_commit_notifies_and_publishes(self):
        h = Harness()
        h.feed(VIENNA, T0)
        h.feed(north(5), T0 + 5000)
        assert len(h.commits) == 2  # seed + commit
        assert h.bus.get_history(EventType.PROGRESS_UPDATED)
        assert h.processor.stats["committed"] == 1

    def test_fast_movement_upgrades_mode(self):
        h = Harness()
        h.feed(VIENNA, T0)
        result = h.feed(north(30), T0 + 5000)  # 21.6 km/h
        assert result.outcome is Outcome.COMMITTED
        assert result.speed_kmh == pytest.approx(21.6, rel=0.01)
        assert h.store.current_mode is MovementMode.CYCLING

    def test_reported_speed_wins_when_higher(self):
        h = Harness()
        h.feed(VIENNA, T0)
        result = h.feed(north(5), T0 + 5000, speed_kmh=30.0)
        assert result.speed_kmh == 30.0
        assert h.store.current_mode is MovementMode.CYCLING

    def test_non_finite_reported_speed_is_ignored(self):
        h = Harness()
        h.feed(VIENNA, T0)
        result = h.feed(north(5), T0 + 5000, speed_kmh=math.inf)
        assert result.speed_kmh == pytest.approx(3.6, rel=0.01)
        assert h.store.current_mode is MovementMode.WALKING

    def test_hook_failure_does_not_escape(self):
        def broken():
            raise RuntimeError("disk full")

        h = Harness(on_commit=broken)
        h.feed(VIENNA, T0)
        assert h.feed(north(5), T0 + 5000).outcome is Outcome.COMMITTED

    def test_elapsed_time_floor_of_one_second(self):
        """Back-to-back CYCLING fixes are judged as if a second had passed."""
        h = Harness(mode=MovementMode.CYCLING)
        h.feed(VIENNA, T0)
        result = h.feed(north(8), T0 + 600)
        assert result.outcome is Outcome.COMMITTED
        assert result.speed_kmh == pytest.approx(28.8, rel=0.01)
