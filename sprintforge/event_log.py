"""
Event Log
=========

Durable record of orchestration events. Subscribe it to each component's
emitter with the wildcard and every event lands in the `events` table, where
the CLI and dashboards can query it.

    log = EventLog(store)
    log.attach(scheduler.events)
    log.attach(planner.events)
"""

import json
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select

from sprintforge.db.models import EventModel
from sprintforge.db.store import DurableStore
from sprintforge.events import WILDCARD, Event, EventEmitter

logger = logging.getLogger(__name__)


def _json_safe(data: dict) -> dict:
    return json.loads(json.dumps(data, default=str))


class EventLog:
    """Persists every event it is attached to."""

    def __init__(self, store: DurableStore):
        self.store = store
        self._subscriptions: list[Callable[[], None]] = []

    def attach(self, emitter: EventEmitter) -> Callable[[], None]:
        unsubscribe = emitter.on(WILDCARD, self.handle)
        self._subscriptions.append(unsubscribe)
        return unsubscribe

    def detach_all(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()

    async def handle(self, event: Event) -> None:
        values = {
            "timestamp": datetime.fromisoformat(event.timestamp),
            "name": event.name,
            "source": event.source,
            "project_id": event.project_id,
            "payload": _json_safe(event.data),
        }

        async def _insert(session):
            session.add(EventModel(**values))

        await self.store.write(_insert, label="log event")

    async def recent(
        self,
        project_id: Optional[str] = None,
        limit: int = 50,
        name: Optional[str] = None,
    ) -> list[Event]:
        """Newest events first."""
        stmt = select(EventModel).order_by(EventModel.id.desc()).limit(limit)
        if project_id is not None:
            stmt = stmt.where(EventModel.project_id == project_id)
        if name is not None:
            stmt = stmt.where(EventModel.name == name)

        async with self.store.session() as session:
            rows = (await session.execute(stmt)).scalars().all()

        return [
            Event(name=row.name, data=row.payload or {}, source=row.source, timestamp=row.timestamp.isoformat())
            for row in rows
        ]


def format_event_summary(event: Event) -> str:
    """One-line human-readable rendering."""
    parts = [f"[{event.timestamp[:19]}]", event.name, f"({event.source})"]
    for key in ("task_id", "sprint_id", "pattern_id", "session_id"):
        if event.data.get(key):
            parts.append(f"{key.split('_')[0]}={event.data[key]}")
    return " ".join(parts)
