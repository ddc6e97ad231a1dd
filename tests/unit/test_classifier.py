"""
Movement Mode Classifier Unit Tests
===================================

Upgrades are immediate; downgrades wait for the switch delay.
"""

import asyncio
import math

import pytest

from triptrack.config import MovementConfig
from triptrack.core.events import EventBus, EventType
from triptrack.domain.models import MovementMode, ProgressState
from triptrack.tracking.classifier import MovementModeClassifier
from triptrack.tracking.store import ProgressStore

DELAY = 0.05


def make_classifier(mode=MovementMode.STATIONARY, **movement):
    movement.setdefault("mode_switch_delay_s", DELAY)
    bus = EventBus()
    store = ProgressStore(ProgressState(current_mode=mode), bus=bus)
    return MovementModeClassifier(store, MovementConfig(**movement), bus=bus), store, bus


class TestClassify:
    @pytest.mark.parametrize(
        "speed, expected",
        [
            (0.0, MovementMode.STATIONARY),
            (0.5, MovementMode.STATIONARY),
            (0.6, MovementMode.WALKING),
            (10.0, MovementMode.WALKING),
            (20.0, MovementMode.CYCLING),
            (120.0, MovementMode.CYCLING),
        ],
    )
    def test_vehicle_disabled(self, speed, expected):
        classifier, _, _ = make_classifier()
        assert classifier.classify(speed) is expected

    def test_vehicle_enabled(self):
        classifier, _, _ = make_classifier(enable_vehicle=True)
        assert classifier.classify(120.0) is MovementMode.VEHICLE
        assert classifier.classify(500.0) is MovementMode.VEHICLE
        assert classifier.classify(30.0) is MovementMode.CYCLING

    def test_mode_in_effect_is_the_faster(self):
        classifier, _, _ = make_classifier(mode=MovementMode.CYCLING)
        assert classifier.mode_in_effect(3.0) is MovementMode.CYCLING
        classifier, _, _ = make_classifier(mode=MovementMode.WALKING)
        assert classifier.mode_in_effect(25.0) is MovementMode.CYCLING


class TestUpdate:
    def test_upgrade_is_immediate(self):
        classifier, store, bus = make_classifier()
        decision = classifier.update(20.0)
        assert decision.changed
        assert store.current_mode is MovementMode.CYCLING

        event = bus.get_history(EventType.MODE_CHANGED)[-1]
        assert event.data["previous"] is MovementMode.STATIONARY
        assert event.data["current"] is MovementMode.CYCLING
        assert event.data["delayed"] is False
        assert event.data["avatar"] == "/cycling.gif"

    @pytest.mark.parametrize("speed", [math.nan, math.inf, -1.0])
    def test_unusable_speed_is_ignored(self, speed):
        classifier, store, _ = make_classifier(mode=MovementMode.WALKING)
        assert classifier.update(speed) is None
        assert store.current_mode is MovementMode.WALKING
        assert classifier.pending_mode is None

    def test_same_mode_is_a_no_op(self):
        classifier, store, bus = make_classifier(mode=MovementMode.WALKING)
        decision = classifier.update(4.0)
        assert not decision.changed
        assert decision.pending is None
        assert bus.get_history(EventType.MODE_CHANGED) == []

    @pytest.mark.asyncio
    async def test_downgrade_waits_for_delay(self):
        classifier, store, bus = make_classifier(mode=MovementMode.CYCLING)
        decision = classifier.update(4.0)
        assert decision.pending is MovementMode.WALKING
        assert store.current_mode is MovementMode.CYCLING
        assert bus.get_history(EventType.MODE_DOWNGRADE_PENDING)

        await asyncio.sleep(DELAY * 3)
        assert store.current_mode is MovementMode.WALKING
        assert classifier.pending_mode is None
        assert bus.get_history(EventType.MODE_CHANGED)[-1].data["delayed"] is True

    @pytest.mark.asyncio
    async def test_speed_recovery_cancels_downgrade(self):
        classifier, store, bus = make_classifier(mode=MovementMode.CYCLING)
        classifier.update(4.0)
        classifier.update(20.0)  # back in CYCLING range
        assert classifier.pending_mode is None
        assert bus.get_history(EventType.MODE_DOWNGRADE_CANCELLED)

        await asyncio.sleep(DELAY * 3)
        assert store.current_mode is MovementMode.CYCLING

    @pytest.mark.asyncio
    async def test_repeated_slow_samples_keep_deadline(self):
        """A slower candidate during a pending downgrade retargets it without restarting the delay."""
        classifier, store, bus = make_classifier(mode=MovementMode.CYCLING, mode_switch_delay_s=0.2)
        classifier.update(4.0)
        await asyncio.sleep(0.1)
        classifier.update(0.0)
        assert classifier.pending_mode is MovementMode.STATIONARY
        assert len(bus.get_history(EventType.MODE_DOWNGRADE_PENDING)) == 1

        await asyncio.sleep(0.15)
        assert store.current_mode is MovementMode.STATIONARY
        changes = bus.get_history(EventType.MODE_CHANGED)
        assert len(changes) == 1
        assert changes[0].data["previous"] is MovementMode.CYCLING

    @pytest.mark.asyncio
    async def test_force_cancels_pending(self):
        classifier, store, _ = make_classifier(mode=MovementMode.CYCLING)
        classifier.update(4.0)
        classifier.force(MovementMode.STATIONARY)
        assert store.current_mode is MovementMode.STATIONARY

        await asyncio.sleep(DELAY * 3)
        assert store.current_mode is MovementMode.STATIONARY
        assert classifier.changes == 1

    def test_downgrade_without_loop_applies_now(self):
        classifier, store, _ = make_classifier(mode=MovementMode.CYCLING)
        classifier.update(4.0)
        assert store.current_mode is MovementMode.WALKING
        assert classifier.pending_mode is None

    @pytest.mark.asyncio
    async def test_flush_commits_pending_downgrade(self):
        classifier, store, _ = make_classifier(mode=MovementMode.CYCLING, mode_switch_delay_s=5.0)
        classifier.update(4.0)
        assert classifier.flush() is True
        assert store.current_mode is MovementMode.WALKING
        assert classifier.pending_mode is None
        assert classifier.flush() is False

    def test_no_loop_warning_is_logged_once(self, caplog):
        caplog.set_level("WARNING", logger="triptrack.tracking.classifier")
        classifier, store, _ = make_classifier(mode=MovementMode.CYCLING)
        classifier.update(4.0)
        classifier.update(20.0)
        classifier.update(0.0)
        assert store.current_mode is MovementMode.STATIONARY
        warnings = [r for r in caplog.records if r.levelname == "WARNING"]
        assert len(warnings) == 1
