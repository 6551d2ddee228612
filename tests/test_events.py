"""
Tests for Event Emission and the Durable Event Log
==================================================
"""

import pytest

from sprintforge.event_log import EventLog, format_event_summary
from sprintforge.events import Event, EventEmitter

PROJECT = "proj_events"


# =============================================================================
# EventEmitter Tests
# =============================================================================

class TestEventEmitter:
    @pytest.mark.asyncio
    async def test_named_handlers_before_wildcard(self):
        emitter = EventEmitter("scheduler")
        seen = []
        emitter.on("*", lambda e: seen.append(("wild", e.name)))
        emitter.on("task-queued", lambda e: seen.append(("named", e.name)))

        event = await emitter.emit("task-queued", {"project_id": PROJECT, "task_id": "task_1"})

        assert seen == [("named", "task-queued"), ("wild", "task-queued")]
        assert event.source == "scheduler"
        assert event.project_id == PROJECT

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited(self):
        emitter = EventEmitter()
        seen = []

        async def handler(event):
            seen.append(event.data["n"])

        emitter.on("tick", handler)
        await emitter.emit("tick", {"n": 1})
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        emitter = EventEmitter()
        seen = []
        unsubscribe = emitter.on("tick", seen.append)
        assert emitter.listener_count("tick") == 1

        unsubscribe()
        unsubscribe()
        await emitter.emit("tick")
        assert seen == []
        assert emitter.listener_count("tick") == 0

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_delivery(self):
        emitter = EventEmitter()
        seen = []

        def broken(event):
            raise RuntimeError("handler bug")

        emitter.on("tick", broken)
        emitter.on("tick", seen.append)
        await emitter.emit("tick")
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_emitters_are_isolated(self):
        first, second = EventEmitter("a"), EventEmitter("b")
        seen = []
        first.on("*", seen.append)
        await second.emit("tick")
        assert seen == []

    @pytest.mark.asyncio
    async def test_payload_is_copied(self):
        emitter = EventEmitter()
        data = {"project_id": PROJECT}
        event = await emitter.emit("tick", data)
        data["project_id"] = "changed"
        assert event.data["project_id"] == PROJECT


# =============================================================================
# EventLog Tests
# =============================================================================

class TestEventLog:
    @pytest.mark.asyncio
    async def test_attached_events_are_persisted(self, store):
        log = EventLog(store)
        scheduler_events = EventEmitter("scheduler")
        planner_events = EventEmitter("planner")
        log.attach(scheduler_events)
        log.attach(planner_events)

        await scheduler_events.emit("task-queued", {"project_id": PROJECT, "task_id": "task_1"})
        await planner_events.emit("sprint-created", {"project_id": PROJECT, "sprint_id": "sprint_1"})
        await planner_events.emit("sprint-created", {"project_id": "other", "sprint_id": "sprint_2"})

        events = await log.recent(PROJECT)
        assert [e.name for e in events] == ["sprint-created", "task-queued"]
        assert events[1].source == "scheduler"
        assert events[1].data["task_id"] == "task_1"

        only_sprints = await log.recent(name="sprint-created")
        assert len(only_sprints) == 2
        assert len(await log.recent(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_non_json_payloads_are_stringified(self, store):
        log = EventLog(store)
        emitter = EventEmitter()
        log.attach(emitter)
        await emitter.emit("odd", {"project_id": PROJECT, "tags": {"a"}, "when": object})

        (event,) = await log.recent(PROJECT)
        assert isinstance(event.data["tags"], str)

    @pytest.mark.asyncio
    async def test_detach_all(self, store):
        log = EventLog(store)
        emitter = EventEmitter()
        log.attach(emitter)
        log.detach_all()
        await emitter.emit("tick", {"project_id": PROJECT})
        assert await log.recent(PROJECT) == []
        assert emitter.listener_count("*") == 0

    def test_format_event_summary(self):
        event = Event(
            name="task-started",
            data={"task_id": "task_1", "sprint_id": None},
            source="scheduler",
            timestamp="2026-01-05T10:00:00.123456+00:00",
        )
        assert format_event_summary(event) == "[2026-01-05T10:00:00] task-started (scheduler) task=task_1"
