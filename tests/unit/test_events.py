"""
Event Bus Unit Tests
====================
"""

import asyncio

import pytest

from triptrack.core.events import EventBus, EventType


def test_priority_order():
    bus = EventBus()
    calls = []
    bus.subscribe(EventType.MODE_CHANGED, lambda e: calls.append("late"), priority=200)
    bus.subscribe(EventType.MODE_CHANGED, lambda e: calls.append("early"), priority=10)
    bus.publish(EventType.MODE_CHANGED, {"current": "WALKING"})
    assert calls == ["early", "late"]


def test_only_matching_type_is_called():
    bus = EventBus()
    calls = []
    bus.subscribe(EventType.STATE_SAVED, calls.append)
    bus.publish(EventType.SAVE_FAILED)
    assert calls == []


def test_subscription_unsubscribe():
    bus = EventBus()
    calls = []
    sub = bus.subscribe(EventType.PROGRESS_UPDATED, calls.append)
    bus.publish(EventType.PROGRESS_UPDATED, 1)
    assert sub.unsubscribe() is True
    assert sub.unsubscribe() is False
    bus.publish(EventType.PROGRESS_UPDATED, 2)
    assert [e.data for e in calls] == [1]


def test_unsubscribe_by_handler():
    bus = EventBus()
    calls = []

    def handler(event):
        calls.append(event)

    bus.subscribe(EventType.DAY_ROLLOVER, handler)
    assert bus.unsubscribe(EventType.DAY_ROLLOVER, handler) is True
    assert bus.unsubscribe(EventType.DAY_ROLLOVER, handler) is False
    bus.publish(EventType.DAY_ROLLOVER)
    assert calls == []


def test_once_handler():
    bus = EventBus()
    calls = []

    @bus.on(EventType.STATE_LOADED, once=True)
    def loaded(event):
        calls.append(event.data)

    bus.publish(EventType.STATE_LOADED, "a")
    bus.publish(EventType.STATE_LOADED, "b")
    assert calls == ["a"]


def test_handler_error_is_isolated():
    bus = EventBus()
    calls = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(EventType.SAMPLE_REJECTED, broken, priority=1)
    bus.subscribe(EventType.SAMPLE_REJECTED, calls.append, priority=2)
    bus.publish(EventType.SAMPLE_REJECTED)

    assert len(calls) == 1
    assert bus.get_stats()["handler_errors"] == 1


def test_history_filter_and_limit():
    bus = EventBus(max_history=3)
    for i in range(5):
        bus.publish(EventType.PROGRESS_UPDATED, i)
    bus.publish(EventType.MODE_CHANGED)

    assert [e.data for e in bus.get_history(EventType.PROGRESS_UPDATED)] == [3, 4]
    assert len(bus.get_history()) == 3
    bus.clear_history()
    assert bus.get_history() == []


@pytest.mark.asyncio
async def test_coroutine_handler_is_scheduled():
    bus = EventBus()
    seen = []

    async def handler(event):
        await asyncio.sleep(0)
        seen.append(event.data)

    bus.subscribe(EventType.CONNECTION_CHANGED, handler)
    bus.publish(EventType.CONNECTION_CHANGED, {"connected": True})
    assert seen == []
    await bus.drain()
    assert seen == [{"connected": True}]


def test_coroutine_handler_without_loop_is_dropped():
    bus = EventBus()

    async def handler(event):
        raise AssertionError("should not run")

    bus.subscribe(EventType.CONNECTION_CHANGED, handler)
    bus.publish(EventType.CONNECTION_CHANGED)
    assert bus.get_stats()["pending_tasks"] == 0
