"""
Tests for the Task Scheduler
============================

Priority ordering, dependency gating, approval gating, retries, cancellation
and the execution loop.
"""

import asyncio

import pytest
from sqlalchemy import select

from conftest import FakeBackend, names, record_events
from sprintforge.db.models import TaskModel
from sprintforge.errors import ConflictError, InvalidTransitionError, ValidationError
from sprintforge.execution import ExecutionResult, build_task_prompt
from sprintforge.learning import AutoApproveDecision
from sprintforge.memory import DecisionType
from sprintforge.models import AutonomyLevel, PatternKind, Priority, Task, TaskSpec, TaskStatus
from sprintforge.scheduler import BLOCKED_BY_DEPENDENCY, TaskScheduler

PROJECT = "proj_sched"


def spec(title, **kwargs) -> TaskSpec:
    kwargs.setdefault("autonomy_level", AutonomyLevel.AUTO)
    return TaskSpec(project_id=PROJECT, title=title, **kwargs)


class HeldLearning:
    """Learning stand-in whose auto-approve decision waits for `release`."""

    def __init__(self):
        self.pending = asyncio.Event()
        self.release = asyncio.Event()

    async def should_auto_approve(self, project_id, item_type, text):
        self.pending.set()
        await self.release.wait()
        return AutoApproveDecision(auto_approve=True, confidence=0.9)

    async def record_outcome(self, pattern_id, success):
        return None


async def settle(rounds: int = 10):
    for _ in range(rounds):
        await asyncio.sleep(0)


# =============================================================================
# Enqueue Tests
# =============================================================================

class TestEnqueue:
    @pytest.mark.asyncio
    async def test_requires_title_and_project(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.enqueue(spec("   "))
        with pytest.raises(ValidationError):
            await scheduler.enqueue(TaskSpec(project_id="", title="Build"))

    @pytest.mark.asyncio
    async def test_unknown_dependency_rejected(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.enqueue(spec("Build", dependencies=["task_missing"]))

    @pytest.mark.asyncio
    async def test_cross_project_dependency_rejected(self, scheduler):
        other = await scheduler.enqueue(TaskSpec(project_id="other", title="Elsewhere"))
        with pytest.raises(ValidationError):
            await scheduler.enqueue(spec("Build", dependencies=[other.id]))

    @pytest.mark.asyncio
    async def test_enqueue_persists_and_emits(self, scheduler, store):
        events = record_events(scheduler.events)
        task = await scheduler.enqueue(spec("Build", priority=Priority.HIGH))

        assert task.status == TaskStatus.QUEUED
        assert task.max_retries == 3
        assert names(events) == ["task-queued"]

        async with store.session() as session:
            row = await session.get(TaskModel, task.id)
        assert row.title == "Build"
        assert row.priority == "high"

    @pytest.mark.asyncio
    async def test_require_review_gates_supervised_tasks(self, scheduler):
        task = await scheduler.enqueue(
            spec("Build", autonomy_level=AutonomyLevel.SUPERVISED), require_review=True,
        )
        assert task.status == TaskStatus.AWAITING_APPROVAL

        auto = await scheduler.enqueue(spec("Lint"), require_review=True)
        assert auto.status == TaskStatus.QUEUED


# =============================================================================
# Selection Tests
# =============================================================================

class TestDequeue:
    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, scheduler):
        low = await scheduler.enqueue(spec("Low", priority=Priority.LOW))
        high_1 = await scheduler.enqueue(spec("High 1", priority=Priority.HIGH))
        high_2 = await scheduler.enqueue(spec("High 2", priority=Priority.HIGH))

        assert scheduler.dequeue_next(PROJECT).id == high_1.id
        await scheduler.mark_running(high_1.id)
        assert scheduler.dequeue_next(PROJECT).id == high_2.id
        await scheduler.mark_running(high_2.id)
        assert scheduler.dequeue_next(PROJECT).id == low.id

    @pytest.mark.asyncio
    async def test_empty_queue(self, scheduler):
        assert scheduler.dequeue_next(PROJECT) is None

    @pytest.mark.asyncio
    async def test_dependency_gating(self, scheduler):
        design = await scheduler.enqueue(spec("Design", priority=Priority.LOW))
        build = await scheduler.enqueue(spec("Build", priority=Priority.CRITICAL, dependencies=[design.id]))

        assert scheduler.dequeue_next(PROJECT).id == design.id
        with pytest.raises(ValidationError):
            await scheduler.mark_running(build.id)

        await scheduler.mark_running(design.id)
        assert scheduler.dequeue_next(PROJECT) is None

        await scheduler.mark_completed(design.id)
        assert scheduler.dequeue_next(PROJECT).id == build.id

    @pytest.mark.asyncio
    async def test_queue_stats(self, scheduler):
        design = await scheduler.enqueue(spec("Design"))
        await scheduler.enqueue(spec("Build", dependencies=[design.id]))
        stats = scheduler.get_queue_stats(PROJECT)
        assert stats["queued"] == 2
        assert stats["runnable"] == 1
        assert stats["total"] == 2


# =============================================================================
# Approval Gate Tests
# =============================================================================

class TestApprovalGate:
    @pytest.mark.asyncio
    async def test_auto_tasks_skip_the_gate(self, scheduler):
        task = await scheduler.enqueue(spec("Lint"))
        started = await scheduler.mark_running(task.id)
        assert started.status == TaskStatus.RUNNING

    @pytest.mark.asyncio
    async def test_untrusted_task_waits_for_approval(self, scheduler):
        events = record_events(scheduler.events)
        task = await scheduler.enqueue(spec("Migrate billing tables", autonomy_level=AutonomyLevel.SUPERVISED))

        result = await scheduler.mark_running(task.id)
        assert result.status == TaskStatus.AWAITING_APPROVAL
        assert names(events) == ["task-queued", "task-awaiting-approval"]
        assert scheduler.dequeue_next(PROJECT) is None

    @pytest.mark.asyncio
    async def test_approve_requeues_and_learns(self, scheduler, learning):
        task = await scheduler.enqueue(
            spec("Migrate billing tables", autonomy_level=AutonomyLevel.APPROVAL_GATES), require_review=True,
        )
        approved = await scheduler.approve(task.id, approved_by="alice")

        assert approved.status == TaskStatus.QUEUED
        assert approved.approved_by == "alice"
        patterns = await learning.get_patterns(PROJECT, PatternKind.APPROVAL)
        assert len(patterns) == 1

        started = await scheduler.mark_running(task.id)
        assert started.status == TaskStatus.RUNNING

    @pytest.mark.asyncio
    async def test_reject_cancels_and_records(self, scheduler, learning, memory):
        session_id = await memory.start_session(PROJECT, "orchestrator")
        scheduler.attach_memory_session(PROJECT, session_id)
        task = await scheduler.enqueue(
            spec("Rewrite in Rust", autonomy_level=AutonomyLevel.SUPERVISED), require_review=True,
        )

        rejected = await scheduler.reject(task.id, "not worth it")
        assert rejected.status == TaskStatus.CANCELLED
        assert len(await learning.get_patterns(PROJECT, PatternKind.REJECTION)) == 1

        session = await memory.get_session(session_id)
        assert [d.type for d in session.recent_decisions] == [DecisionType.REJECTED]
        assert "Rewrite in Rust" in session.rejected_suggestions

    @pytest.mark.asyncio
    async def test_approve_wrong_state(self, scheduler):
        task = await scheduler.enqueue(spec("Lint"))
        with pytest.raises(InvalidTransitionError):
            await scheduler.approve(task.id)
        assert await scheduler.approve("task_missing") is None

    @pytest.mark.asyncio
    async def test_trusted_pattern_auto_approves(self, scheduler, learning):
        title = "Update dependency lockfile versions"
        for _ in range(6):
            await learning.learn_from_approval(PROJECT, "task", title)

        events = record_events(scheduler.events)
        task = await scheduler.enqueue(spec(title, autonomy_level=AutonomyLevel.SUPERVISED))
        started = await scheduler.mark_running(task.id)

        assert started.status == TaskStatus.RUNNING
        assert started.approved_by == "auto"
        assert started.auto_approved_pattern_id is not None
        assert names(events) == ["task-queued", "auto-approve-triggered", "task-started"]

        before = await learning.get_pattern(started.auto_approved_pattern_id)
        await scheduler.mark_completed(task.id)
        after = await learning.get_pattern(started.auto_approved_pattern_id)
        assert after.usage_count == before.usage_count + 1
        assert after.confidence >= before.confidence

    @pytest.mark.asyncio
    async def test_lowering_autonomy_releases_waiting_task(self, scheduler):
        task = await scheduler.enqueue(
            spec("Build", autonomy_level=AutonomyLevel.SUPERVISED), require_review=True,
        )
        updated = await scheduler.set_autonomy_level(task.id, AutonomyLevel.AUTO)
        assert updated.status == TaskStatus.QUEUED


# =============================================================================
# Failure & Retry Tests
# =============================================================================

class TestRetries:
    @pytest.mark.asyncio
    async def test_retries_then_fails_with_dependents(self, scheduler):
        design = await scheduler.enqueue(spec("Design"))
        build = await scheduler.enqueue(spec("Build", dependencies=[design.id]))
        ship = await scheduler.enqueue(spec("Ship", dependencies=[build.id]))
        events = record_events(scheduler.events)

        for attempt in (1, 2):
            await scheduler.mark_running(design.id)
            task = await scheduler.mark_failed(design.id, "flaky")
            assert task.status == TaskStatus.QUEUED
            assert task.retry_count == attempt

        await scheduler.mark_running(design.id)
        task = await scheduler.mark_failed(design.id, "still broken")

        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 3
        assert build.status == TaskStatus.FAILED
        assert build.error == BLOCKED_BY_DEPENDENCY
        assert ship.status == TaskStatus.FAILED
        assert names(events).count("task-retrying") == 2
        assert names(events).count("task-failed") == 3

    @pytest.mark.asyncio
    async def test_dependency_on_failed_task_fails_immediately(self, scheduler):
        design = await scheduler.enqueue(spec("Design", max_retries=1))
        await scheduler.mark_running(design.id)
        await scheduler.mark_failed(design.id, "boom")

        late = await scheduler.enqueue(spec("Late", dependencies=[design.id]))
        assert late.status == TaskStatus.FAILED
        assert late.error == BLOCKED_BY_DEPENDENCY

    @pytest.mark.asyncio
    async def test_cannot_fail_queued_task(self, scheduler):
        task = await scheduler.enqueue(spec("Design"))
        with pytest.raises(InvalidTransitionError):
            await scheduler.mark_failed(task.id, "boom")


# =============================================================================
# Cancellation Tests
# =============================================================================

class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_queued(self, scheduler):
        task = await scheduler.enqueue(spec("Design"))
        assert await scheduler.cancel(task.id, "descoped") is True
        assert task.status == TaskStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            await scheduler.cancel(task.id)

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, scheduler):
        assert await scheduler.cancel("task_missing") is False

    @pytest.mark.asyncio
    async def test_cancel_running_execution(self, scheduler, backend):
        backend.gate = asyncio.Event()
        task = await scheduler.enqueue(spec("Long job"))

        runner = asyncio.create_task(scheduler.run_next(PROJECT))
        await asyncio.wait_for(backend.started.wait(), timeout=5)

        assert await scheduler.cancel(task.id) is True
        result = await asyncio.wait_for(runner, timeout=5)

        assert result.status == TaskStatus.CANCELLED
        assert result.retry_count == 0
        assert backend.cancelled == [task.id]

    @pytest.mark.asyncio
    async def test_cancel_while_gate_decision_pending(self, store, backend):
        learning = HeldLearning()
        scheduler = TaskScheduler(store, learning=learning, backend=backend)
        events = record_events(scheduler.events)
        task = await scheduler.enqueue(spec("Rotate credentials", autonomy_level=AutonomyLevel.SUPERVISED))

        starting = asyncio.create_task(scheduler.mark_running(task.id))
        await asyncio.wait_for(learning.pending.wait(), timeout=5)
        assert await scheduler.cancel(task.id, "descoped") is True
        learning.release.set()

        result = await asyncio.wait_for(starting, timeout=5)
        assert result.status == TaskStatus.CANCELLED
        assert result.approved is False
        assert "task-started" not in names(events)

    @pytest.mark.asyncio
    async def test_drain_survives_cancel_during_gate_decision(self, store, backend):
        learning = HeldLearning()
        scheduler = TaskScheduler(store, learning=learning, backend=backend)
        gated = await scheduler.enqueue(spec("Rotate credentials", autonomy_level=AutonomyLevel.SUPERVISED))
        lint = await scheduler.enqueue(spec("Lint"))

        drain = asyncio.create_task(scheduler.run_until_idle(PROJECT))
        await asyncio.wait_for(learning.pending.wait(), timeout=5)
        assert await scheduler.cancel(gated.id, "descoped") is True
        learning.release.set()

        processed = await asyncio.wait_for(drain, timeout=5)
        assert [t.id for t in processed] == [gated.id, lint.id]
        assert gated.status == TaskStatus.CANCELLED
        assert lint.status == TaskStatus.COMPLETED
        assert backend.executed == [lint.id]
        assert not scheduler.is_draining(PROJECT)


# =============================================================================
# Execution Loop Tests
# =============================================================================

class TestExecution:
    @pytest.mark.asyncio
    async def test_run_until_idle(self, store, learning, memory, config):
        backend = FakeBackend({
            "Build": [ExecutionResult(success=False, error="compile error")],
            "Test": [RuntimeError("runner crashed")],
        })
        scheduler = TaskScheduler(store, learning=learning, memory=memory, backend=backend, config=config)
        design = await scheduler.enqueue(spec("Design"))
        build = await scheduler.enqueue(spec("Build", dependencies=[design.id]))
        test = await scheduler.enqueue(spec("Test", dependencies=[build.id]))
        events = record_events(scheduler.events)

        await scheduler.run_until_idle(PROJECT)

        assert design.status == TaskStatus.COMPLETED
        assert design.result["output"] == "did Design"
        assert build.status == TaskStatus.COMPLETED
        assert build.retry_count == 1
        assert test.status == TaskStatus.COMPLETED
        assert test.retry_count == 1
        assert names(events)[0] == "queue-started"
        assert names(events)[-1] == "queue-idle"

    @pytest.mark.asyncio
    async def test_gated_task_stops_the_drain(self, scheduler, backend):
        await scheduler.enqueue(spec("Risky", autonomy_level=AutonomyLevel.SUPERVISED))
        processed = await scheduler.run_until_idle(PROJECT)
        assert [t.status for t in processed] == [TaskStatus.AWAITING_APPROVAL]
        assert backend.executed == []

    @pytest.mark.asyncio
    async def test_overlapping_drain_conflicts(self, scheduler, backend):
        backend.gate = asyncio.Event()
        await scheduler.enqueue(spec("Long job"))

        first = asyncio.create_task(scheduler.run_until_idle(PROJECT))
        await asyncio.wait_for(backend.started.wait(), timeout=5)
        with pytest.raises(ConflictError):
            await scheduler.run_until_idle(PROJECT)

        backend.gate.set()
        processed = await asyncio.wait_for(first, timeout=5)
        assert processed[0].status == TaskStatus.COMPLETED
        assert not scheduler.is_draining(PROJECT)

    @pytest.mark.asyncio
    async def test_run_next_without_backend(self, store):
        scheduler = TaskScheduler(store)
        with pytest.raises(ValidationError):
            await scheduler.run_next(PROJECT)

    def test_build_task_prompt(self):
        task = Task(
            id="task_1", project_id=PROJECT, title="Build", description="Build the API",
            input_data={"context": "Story: API", "parent_output": "schema.sql"},
        )
        prompt = build_task_prompt(task)
        assert prompt.startswith("Previous output:\nschema.sql")
        assert "Context:\nStory: API" in prompt
        assert prompt.endswith("Task:\nBuild the API")


# =============================================================================
# Drain Control Tests
# =============================================================================

class TestDrainControl:
    @pytest.mark.asyncio
    async def test_pause_holds_drain_between_tasks(self, scheduler, backend):
        backend.gate = asyncio.Event()
        design = await scheduler.enqueue(spec("Design"))
        await scheduler.enqueue(spec("Build"))
        completed = asyncio.Event()
        scheduler.events.on("task-completed", lambda event: completed.set())
        events = record_events(scheduler.events)

        drain = asyncio.create_task(scheduler.run_until_idle(PROJECT))
        await asyncio.wait_for(backend.started.wait(), timeout=5)
        assert await scheduler.pause(PROJECT) is True
        assert await scheduler.pause(PROJECT) is False

        backend.gate.set()
        await asyncio.wait_for(completed.wait(), timeout=5)
        await settle()

        assert backend.executed == [design.id]
        assert not drain.done()
        assert scheduler.get_drain_state(PROJECT) == {
            "project_id": PROJECT, "running": True, "paused": True, "stopping": False,
        }

        assert await scheduler.resume(PROJECT) is True
        processed = await asyncio.wait_for(drain, timeout=5)
        assert [t.status for t in processed] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]
        assert not scheduler.is_paused(PROJECT)
        assert {"queue-paused", "queue-resumed"} <= set(names(events))

    @pytest.mark.asyncio
    async def test_resume_when_not_paused(self, scheduler):
        assert await scheduler.resume(PROJECT) is False

    @pytest.mark.asyncio
    async def test_stop_cancels_running_and_keeps_queue(self, scheduler, backend):
        backend.gate = asyncio.Event()
        design = await scheduler.enqueue(spec("Design"))
        build = await scheduler.enqueue(spec("Build"))
        events = record_events(scheduler.events)

        drain = asyncio.create_task(scheduler.run_until_idle(PROJECT))
        await asyncio.wait_for(backend.started.wait(), timeout=5)
        assert await scheduler.stop(PROJECT) is True

        processed = await asyncio.wait_for(drain, timeout=5)
        assert [t.id for t in processed] == [design.id]
        assert design.status == TaskStatus.CANCELLED
        assert design.error == "queue stopped"
        assert build.status == TaskStatus.QUEUED
        assert backend.cancelled == [design.id]

        stopped = [e for e in events if e.name == "queue-stopped"]
        assert stopped[0].data["cancelled"] == [design.id]
        assert names(events)[-1] == "queue-idle"
        assert await scheduler.stop(PROJECT) is False

    @pytest.mark.asyncio
    async def test_stop_wakes_a_paused_drain(self, scheduler, backend):
        await scheduler.enqueue(spec("Design"))
        await scheduler.pause(PROJECT)

        drain = asyncio.create_task(scheduler.run_until_idle(PROJECT))
        await settle()
        assert scheduler.is_draining(PROJECT)
        assert not drain.done()

        assert await scheduler.stop(PROJECT) is True
        assert await asyncio.wait_for(drain, timeout=5) == []
        assert scheduler.is_paused(PROJECT)
        assert backend.executed == []

        await scheduler.resume(PROJECT)
        processed = await scheduler.run_until_idle(PROJECT)
        assert [t.status for t in processed] == [TaskStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_release_project_once_quiet(self, scheduler):
        task = await scheduler.enqueue(spec("Design"))
        assert scheduler.release_project(PROJECT) is False
        assert PROJECT in scheduler._locks

        await scheduler.cancel(task.id)
        assert scheduler.release_project(PROJECT) is True
        assert PROJECT not in scheduler._locks
        assert scheduler.get_task(task.id).status == TaskStatus.CANCELLED

        again = await scheduler.enqueue(spec("Design again"))
        assert again.status == TaskStatus.QUEUED


# =============================================================================
# Persistence Tests
# =============================================================================

class TestLoadProject:
    @pytest.mark.asyncio
    async def test_rehydrates_and_requeues_orphans(self, store, scheduler):
        design = await scheduler.enqueue(spec("Design"))
        build = await scheduler.enqueue(spec("Build", dependencies=[design.id]))
        await scheduler.mark_running(design.id)

        restarted = TaskScheduler(store)
        assert await restarted.load_project(PROJECT) == 2

        reloaded = restarted.get_task(design.id)
        assert reloaded.status == TaskStatus.QUEUED
        assert restarted.get_task(build.id).dependencies == {design.id}

        newer = await restarted.enqueue(spec("Ship"))
        assert newer.sequence > build.sequence

        async with store.session() as session:
            status = (await session.execute(
                select(TaskModel.status).where(TaskModel.id == design.id)
            )).scalar()
        assert status == "queued"

    @pytest.mark.asyncio
    async def test_task_tree(self, scheduler):
        parent = await scheduler.enqueue(spec("Epic"))
        child = await scheduler.enqueue(spec("Story", parent_task_id=parent.id))
        roots = scheduler.get_task_tree(PROJECT)
        assert [n.task.id for n in roots] == [parent.id]
        assert [n.task.id for n in roots[0].children] == [child.id]
