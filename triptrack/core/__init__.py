"""triptrack core - event bus and timers."""

from .events import Event, EventBus, EventType, Subscription
from .timers import ResettableTimer

__all__ = [
    "Event",
    "EventBus",
    "EventType",
    "ResettableTimer",
    "Subscription",
]
