"""
Event Emission
==============

Per-instance observer registration. Each orchestration component owns its own
EventEmitter; wiring between components and subscribers (UI, automation, the
durable event log) is done explicitly at composition time.

Usage:
    events = EventEmitter()
    events.on("task-queued", lambda event: print(event.data))
    events.on("*", event_log.handle)   # every event
    await events.emit("task-queued", {"task_id": "task_1"})
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

WILDCARD = "*"

Handler = Callable[["Event"], Union[None, Awaitable[None]]]


@dataclass
class Event:
    """A single emitted event."""
    name: str
    data: dict = field(default_factory=dict)
    source: str = "system"
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def project_id(self) -> Optional[str]:
        return self.data.get("project_id")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "data": self.data,
            "source": self.source,
            "timestamp": self.timestamp,
        }


class EventEmitter:
    """
    Observer registry for one component instance.

    Handlers may be plain functions or coroutine functions; coroutine results
    are awaited in registration order. A failing handler is logged and does not
    stop delivery to the remaining handlers.
    """

    def __init__(self, source: str = "system"):
        self.source = source
        self._handlers: dict[str, list[Handler]] = {}

    def on(self, name: str, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a function that unregisters it."""
        self._handlers.setdefault(name, []).append(handler)

        def unsubscribe() -> None:
            self.off(name, handler)

        return unsubscribe

    def off(self, name: str, handler: Handler) -> None:
        """Remove a previously registered handler (no-op if absent)."""
        handlers = self._handlers.get(name, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, name: str) -> int:
        return len(self._handlers.get(name, []))

    async def emit(self, name: str, data: Optional[dict[str, Any]] = None) -> Event:
        """Deliver an event to its named handlers, then to wildcard handlers."""
        event = Event(name=name, data=dict(data or {}), source=self.source)
        handlers = list(self._handlers.get(name, [])) + list(self._handlers.get(WILDCARD, []))

        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", name)

        return event
