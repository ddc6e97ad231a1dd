"""
Trip Event Bus - Typed Pub/Sub
==============================

Decoupled notification between the engine and its readers (render layer,
CLI, diagnostics). Replaces per-module callback lists with one bus.

Features:
- Synchronous, in-order dispatch (the engine is single-threaded)
- Priority-based handlers
- Explicit unsubscribe handles
- Coroutine handlers scheduled on the running loop
- Event history for debugging
- Handler errors isolated and logged

Usage:
    bus = EventBus()

    @bus.on(EventType.PROGRESS_UPDATED)
    def render(event: Event):
        print(event.data.progress_percent)

    sub = bus.subscribe(EventType.SAMPLE_REJECTED, log_rejection)
    ...
    sub.unsubscribe()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, TypeAlias

logger = logging.getLogger(__name__)

Handler: TypeAlias = Callable[["Event"], Any]


class EventType(Enum):
    """All event types published by the engine."""

    # Location source
    CONNECTION_CHANGED = auto()

    # Samples
    START_LOCATION_SET = auto()
    SAMPLE_REJECTED = auto()
    PROGRESS_UPDATED = auto()

    # Movement mode
    MODE_CHANGED = auto()
    MODE_DOWNGRADE_PENDING = auto()
    MODE_DOWNGRADE_CANCELLED = auto()

    # Persistence
    STATE_SAVED = auto()
    SAVE_FAILED = auto()
    STATE_LOADED = auto()
    DAY_ROLLOVER = auto()

    # Control surface
    CONTROL_APPLIED = auto()

    # Lifecycle
    ENGINE_STOPPING = auto()


@dataclass
class Event:
    """Event with metadata."""

    type: EventType
    data: Any = None
    timestamp: float = field(default_factory=time.time)
    source: str = "engine"
    correlation_id: str | None = None

    def __post_init__(self) -> None:
        if self.correlation_id is None:
            self.correlation_id = str(uuid.uuid4())[:8]


@dataclass
class HandlerInfo:
    """Handler registration info."""

    handler: Handler
    priority: int = 100  # Lower = higher priority
    once: bool = False  # Remove after first call


@dataclass
class Subscription:
    """Handle returned by ``EventBus.subscribe``."""

    bus: EventBus
    event_type: EventType
    info: HandlerInfo
    active: bool = True

    def unsubscribe(self) -> bool:
        """Remove the handler. Returns True if it was still registered."""
        if not self.active:
            return False
        self.active = False
        return self.bus._remove(self.event_type, self.info)


class EventBus:
    """
    Pub/sub event bus.

    Handlers run synchronously in priority order when ``publish`` is called,
    so readers observe events in the order the engine produced them. A
    handler returning a coroutine is scheduled on the running loop.
    """

    def __init__(self, max_history: int = 500) -> None:
        self._handlers: dict[EventType, list[HandlerInfo]] = {}
        self._history: list[Event] = []
        self._max_history = max_history
        self._tasks: set[asyncio.Task] = set()
        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "handler_errors": 0,
        }

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        priority: int = 100,
        once: bool = False,
    ) -> Subscription:
        """
        Subscribe to an event type.

        Args:
            event_type: Event to listen for
            handler: Callable taking the ``Event``
            priority: Lower = called first (default 100)
            once: Remove handler after first call

        Returns:
            Subscription handle with ``unsubscribe()``
        """
        info = HandlerInfo(handler=handler, priority=priority, once=once)
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(info)
        handlers.sort(key=lambda h: h.priority)

        logger.debug(
            "Subscribed to %s: %s (priority=%d)",
            event_type.name,
            getattr(handler, "__name__", repr(handler)),
            priority,
        )
        return Subscription(bus=self, event_type=event_type, info=info)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> bool:
        """Remove the first registration of ``handler``. Returns True if found."""
        for info in self._handlers.get(event_type, []):
            if info.handler == handler:
                return self._remove(event_type, info)
        return False

    def _remove(self, event_type: EventType, info: HandlerInfo) -> bool:
        handlers = self._handlers.get(event_type, [])
        if info in handlers:
            handlers.remove(info)
            return True
        return False

    def on(
        self, event_type: EventType, priority: int = 100, once: bool = False
    ) -> Callable[[Handler], Handler]:
        """
        Decorator for subscribing to events.

        Usage:
            @bus.on(EventType.MODE_CHANGED)
            def handle_mode(event: Event):
                print(event.data)
        """
        def decorator(handler: Handler) -> Handler:
            self.subscribe(event_type, handler, priority, once)
            return handler
        return decorator

    def publish(
        self,
        event_type: EventType,
        data: Any = None,
        source: str = "engine",
    ) -> Event:
        """Publish an event to all current subscribers and return it."""
        event = Event(type=event_type, data=data, source=source)
        self._stats["events_published"] += 1
        self._dispatch(event)
        return event

    def _dispatch(self, event: Event) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event.type, []))
        if not handlers:
            return

        for info in handlers:
            if info.once:
                self._remove(event.type, info)
            try:
                result = info.handler(event)
                if inspect.isawaitable(result):
                    self._schedule(result, event)
                self._stats["events_processed"] += 1
            except Exception as e:
                logger.error(
                    "Handler error for %s: %s - %s",
                    event.type.name,
                    getattr(info.handler, "__name__", repr(info.handler)),
                    e,
                )
                self._stats["handler_errors"] += 1

    def _schedule(self, awaitable: Any, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Async handler for %s dropped: no running loop", event.type.name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async handler error: %s", exc)
            self._stats["handler_errors"] += 1

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_history(
        self,
        event_type: EventType | None = None,
        limit: int = 100,
    ) -> list[Event]:
        """Get recent events, optionally filtered by type."""
        events = self._history
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        return {
            **self._stats,
            "pending_tasks": len(self._tasks),
            "handler_count": sum(len(h) for h in self._handlers.values()),
            "history_size": len(self._history),
        }

    def clear_history(self) -> None:
        """Clear event history."""
        self._history.clear()
