"""
Task Scheduler
==============

Dependency-aware priority queue with approval gating and bounded retries.

Task lifecycle:

    queued ──► running ──► completed
      │  ▲        │
      │  └────────┤ mark_failed (retry_count < max_retries)
      │           ▼
      │         failed ──► dependents failed ("blocked by dependency failure")
      ▼
    awaiting_approval ──approve──► queued
      │
      └──reject──► cancelled

    cancel(): any non-terminal state ──► cancelled

Gated tasks (autonomy approval_gates / supervised) consult the Learning Engine
before they start; trusted patterns let them skip human review.

run_until_idle() drains one project at a time; pause(), resume() and stop() act
between tasks.

Transitions for one project are serialized by a per-project asyncio.Lock and
mirrored to the durable store. Events and learning feedback run after the lock
is released so handlers may call back into the scheduler.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import select

from sprintforge.concurrency import SingleFlight
from sprintforge.config import OrchestrationConfig
from sprintforge.db.models import TaskModel
from sprintforge.db.store import DurableStore
from sprintforge.errors import InvalidTransitionError, ValidationError
from sprintforge.events import EventEmitter
from sprintforge.execution import ExecutionBackend, ExecutionResult
from sprintforge.learning import AutoApproveDecision, LearningEngine
from sprintforge.memory import DecisionType, ItemKind, MemoryStore
from sprintforge.models import AutonomyLevel, Priority, Task, TaskSpec, TaskStatus, new_id, utc_now

logger = logging.getLogger(__name__)

BLOCKED_BY_DEPENDENCY = "blocked by dependency failure"
LEARNING_ITEM_TYPE = "task"


@dataclass
class TaskNode:
    """A task and its subtasks."""
    task: Task
    children: list["TaskNode"] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {**self.task.to_dict(), "children": [c.to_dict() for c in self.children]}


class TaskScheduler:
    """
    Holds tasks for many projects and decides what may run next.

    Collaborators are optional: without a learning engine every gated task
    waits for a human; without a memory store decisions are not recorded;
    without a backend run_next() is unavailable.
    """

    def __init__(
        self,
        store: DurableStore,
        learning: Optional[LearningEngine] = None,
        memory: Optional[MemoryStore] = None,
        backend: Optional[ExecutionBackend] = None,
        config: Optional[OrchestrationConfig] = None,
        events: Optional[EventEmitter] = None,
    ):
        self.store = store
        self.learning = learning
        self.memory = memory
        self.backend = backend
        self.config = config or OrchestrationConfig()
        self.events = events or EventEmitter("scheduler")

        self._tasks: dict[str, Task] = {}
        self._paused: set[str] = set()
        # Kept until release_project() drops them
        self._locks: dict[str, asyncio.Lock] = {}
        self._resume_events: dict[str, asyncio.Event] = {}
        self._stop_requested: set[str] = set()
        self._sequence = itertools.count(1)
        self._executions: dict[str, asyncio.Future] = {}
        self._drain = SingleFlight("queue")
        self._memory_sessions: dict[str, str] = {}

    def _lock(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock

    def _resume_event(self, project_id: str) -> asyncio.Event:
        event = self._resume_events.get(project_id)
        if event is None:
            event = self._resume_events[project_id] = asyncio.Event()
            if project_id not in self._paused:
                event.set()
        return event

    def attach_memory_session(self, project_id: str, session_id: str) -> None:
        """Record approval decisions for `project_id` into this memory session."""
        self._memory_sessions[project_id] = session_id

    def is_draining(self, project_id: str) -> bool:
        return self._drain.is_running(project_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def list_tasks(self, project_id: str, status: Optional[TaskStatus] = None) -> list[Task]:
        tasks = [
            t for t in self._tasks.values()
            if t.project_id == project_id and (status is None or t.status is status)
        ]
        return sorted(tasks, key=lambda t: t.sequence)

    def get_task_tree(self, project_id: str) -> list[TaskNode]:
        """Tasks arranged by parent_task_id. Orphans become roots."""
        nodes = {t.id: TaskNode(t) for t in self.list_tasks(project_id)}
        roots = []
        for node in nodes.values():
            parent = nodes.get(node.task.parent_task_id) if node.task.parent_task_id else None
            if parent is not None:
                parent.children.append(node)
            else:
                roots.append(node)
        return roots

    def get_queue_stats(self, project_id: str) -> dict:
        tasks = self.list_tasks(project_id)
        stats = {status.value: 0 for status in TaskStatus}
        for task in tasks:
            stats[task.status.value] += 1
        stats["total"] = len(tasks)
        stats["runnable"] = sum(1 for t in tasks if self._is_runnable(t))
        return stats

    def _dependencies_met(self, task: Task) -> bool:
        for dep_id in task.dependencies:
            dep = self._tasks.get(dep_id)
            if dep is None or dep.status is not TaskStatus.COMPLETED:
                return False
        return True

    def _is_runnable(self, task: Task) -> bool:
        return task.status is TaskStatus.QUEUED and self._dependencies_met(task)

    def dequeue_next(self, project_id: str) -> Optional[Task]:
        """
        Highest-priority queued task whose dependencies are all completed.

        Ties are broken by enqueue order. Selection does not change the task's
        state; mark_running() does.
        """
        runnable = [t for t in self.list_tasks(project_id, TaskStatus.QUEUED) if self._dependencies_met(t)]
        if not runnable:
            return None
        return min(runnable, key=lambda t: (-t.priority.rank, t.sequence))

    # =========================================================================
    # Enqueue
    # =========================================================================

    async def enqueue(self, spec: TaskSpec, require_review: bool = False) -> Task:
        """
        Add a task.

        `require_review` puts a gated task straight into awaiting_approval; it
        has no effect on autonomy level auto.
        """
        if not spec.project_id:
            raise ValidationError("project_id is required")
        if not spec.title or not spec.title.strip():
            raise ValidationError("title is required")

        dependencies = set(spec.dependencies)
        for dep_id in dependencies:
            dep = self._tasks.get(dep_id)
            if dep is None:
                raise ValidationError(f"Unknown dependency: {dep_id}")
            if dep.project_id != spec.project_id:
                raise ValidationError(f"Dependency {dep_id} belongs to another project")
        if spec.parent_task_id and spec.parent_task_id not in self._tasks:
            raise ValidationError(f"Unknown parent task: {spec.parent_task_id}")

        task = Task(
            id=new_id("task"),
            project_id=spec.project_id,
            title=spec.title.strip(),
            description=spec.description,
            priority=spec.priority,
            autonomy_level=spec.autonomy_level,
            dependencies=dependencies,
            max_retries=self.config.max_task_retries if spec.max_retries is None else spec.max_retries,
            backlog_item_id=spec.backlog_item_id,
            parent_task_id=spec.parent_task_id,
            input_data=dict(spec.input_data),
        )

        async with self._lock(task.project_id):
            task.sequence = next(self._sequence)
            if any(self._tasks[d].status is TaskStatus.FAILED for d in dependencies):
                task.status = TaskStatus.FAILED
                task.error = BLOCKED_BY_DEPENDENCY
                task.completed_at = utc_now()
            elif require_review and task.autonomy_level.requires_approval:
                task.status = TaskStatus.AWAITING_APPROVAL
            self._tasks[task.id] = task
            await self._persist([task])

        logger.info("Queued task %s (%s, %s)", task.id, task.priority.value, task.status.value)
        await self.events.emit("task-queued", self._event_data(task))
        if task.status is TaskStatus.FAILED:
            await self.events.emit("task-failed", self._event_data(task, error=task.error))
        elif task.status is TaskStatus.AWAITING_APPROVAL:
            await self.events.emit("task-awaiting-approval", self._event_data(task))
        return task

    # =========================================================================
    # Approval
    # =========================================================================

    async def approve(self, task_id: str, approved_by: Optional[str] = None) -> Optional[Task]:
        """awaiting_approval -> queued. Feeds a positive signal to learning."""
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("Cannot approve unknown task %s", task_id)
            return None

        async with self._lock(task.project_id):
            self._require_status(task, TaskStatus.AWAITING_APPROVAL, TaskStatus.QUEUED)
            task.status = TaskStatus.QUEUED
            task.approved = True
            task.approved_by = approved_by or "human"
            await self._persist([task])

        if self.learning is not None:
            await self.learning.learn_from_approval(
                task.project_id, LEARNING_ITEM_TYPE, task.text, metadata={"task_id": task.id},
            )
        await self._record_decision(task, DecisionType.APPROVED)
        await self.events.emit("task-approved", self._event_data(task, approved_by=task.approved_by))
        return task

    async def reject(self, task_id: str, reason: Optional[str] = None) -> Optional[Task]:
        """awaiting_approval -> cancelled. Feeds a negative signal to learning."""
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("Cannot reject unknown task %s", task_id)
            return None

        async with self._lock(task.project_id):
            self._require_status(task, TaskStatus.AWAITING_APPROVAL, TaskStatus.CANCELLED)
            task.status = TaskStatus.CANCELLED
            task.error = reason or "rejected"
            task.completed_at = utc_now()
            await self._persist([task])

        if self.learning is not None:
            await self.learning.learn_from_rejection(task.project_id, LEARNING_ITEM_TYPE, task.text, reason)
        await self._record_decision(task, DecisionType.REJECTED, reason)
        if self.memory is not None and task.project_id in self._memory_sessions:
            await self.memory.record_rejection(self._memory_sessions[task.project_id], task.title)
        await self.events.emit("task-cancelled", self._event_data(task, reason=task.error, rejected=True))
        return task

    async def _record_decision(self, task: Task, decision: DecisionType, reason: Optional[str] = None) -> None:
        session_id = self._memory_sessions.get(task.project_id)
        if self.memory is None or session_id is None:
            return
        await self.memory.record_decision(session_id, decision, ItemKind.TASK, task.title, reason)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def mark_running(self, task_id: str) -> Optional[Task]:
        """
        queued -> running, applying the approval gate.

        A gated task that has not been approved asks the Learning Engine for a
        decision. When it is auto-approved it starts immediately; otherwise it
        moves to awaiting_approval and the returned task reflects that.

        A task cancelled or otherwise moved on while the decision was pending
        is returned as it is.
        """
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("Cannot start unknown task %s", task_id)
            return None

        self._require_status(task, TaskStatus.QUEUED, TaskStatus.RUNNING)

        decision: Optional[AutoApproveDecision] = None
        if self._needs_gate(task) and self.learning is not None:
            decision = await self.learning.should_auto_approve(task.project_id, LEARNING_ITEM_TYPE, task.text)

        auto_approved = False
        async with self._lock(task.project_id):
            if task.status is not TaskStatus.QUEUED:
                logger.info("Task %s left the queue before it could start (%s)", task.id, task.status.value)
                return task
            if not self._dependencies_met(task):
                raise ValidationError(f"Task {task.id} has unfinished dependencies")

            if self._needs_gate(task):
                if decision is not None and decision.auto_approve:
                    task.approved = True
                    task.approved_by = "auto"
                    task.auto_approved_pattern_id = decision.pattern.id if decision.pattern else None
                    auto_approved = True
                else:
                    task.status = TaskStatus.AWAITING_APPROVAL
                    await self._persist([task])

            if task.status is TaskStatus.QUEUED:
                task.status = TaskStatus.RUNNING
                task.started_at = utc_now()
                await self._persist([task])

        if task.status is TaskStatus.AWAITING_APPROVAL:
            logger.info("Task %s is waiting for approval", task.id)
            await self.events.emit("task-awaiting-approval", self._event_data(task))
            return task

        if auto_approved:
            await self.events.emit("auto-approve-triggered", self._event_data(
                task,
                pattern_id=task.auto_approved_pattern_id,
                confidence=decision.confidence,
            ))
        await self.events.emit("task-started", self._event_data(task))
        return task

    def _needs_gate(self, task: Task) -> bool:
        return task.autonomy_level.requires_approval and not task.approved

    async def mark_completed(self, task_id: str, result: Optional[dict] = None) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("Cannot complete unknown task %s", task_id)
            return None

        async with self._lock(task.project_id):
            self._require_status(task, TaskStatus.RUNNING, TaskStatus.COMPLETED)
            task.status = TaskStatus.COMPLETED
            task.completed_at = utc_now()
            task.result = result
            task.error = None
            await self._persist([task])

        logger.info("Task %s completed", task.id)
        await self.events.emit("task-completed", self._event_data(task, result=result))
        await self._record_pattern_outcome(task, success=True)
        return task

    async def mark_failed(self, task_id: str, error: str) -> Optional[Task]:
        """
        Record a failed attempt.

        The task is re-queued while retry_count < max_retries. Otherwise it is
        failed and every task depending on it, directly or transitively, is
        failed with "blocked by dependency failure".
        """
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("Cannot fail unknown task %s", task_id)
            return None

        blocked: list[Task] = []
        async with self._lock(task.project_id):
            self._require_status(task, TaskStatus.RUNNING, TaskStatus.FAILED)
            task.retry_count += 1
            task.error = error
            if task.retry_count < task.max_retries:
                task.status = TaskStatus.QUEUED
                task.started_at = None
            else:
                task.status = TaskStatus.FAILED
                task.completed_at = utc_now()
                for dependent in self._dependents(task):
                    dependent.status = TaskStatus.FAILED
                    dependent.error = BLOCKED_BY_DEPENDENCY
                    dependent.completed_at = task.completed_at
                    blocked.append(dependent)
            await self._persist([task, *blocked])

        if task.status is TaskStatus.QUEUED:
            logger.info("Task %s failed (attempt %d/%d), retrying", task.id, task.retry_count, task.max_retries)
            await self.events.emit("task-retrying", self._event_data(
                task, error=error, retry_count=task.retry_count, max_retries=task.max_retries,
            ))
            return task

        logger.warning("Task %s failed: %s", task.id, error)
        await self.events.emit("task-failed", self._event_data(task, error=error))
        for dependent in blocked:
            await self.events.emit("task-failed", self._event_data(
                dependent, error=BLOCKED_BY_DEPENDENCY, blocked_by=task.id,
            ))
        await self._record_pattern_outcome(task, success=False)
        return task

    def _dependents(self, failed: Task) -> list[Task]:
        """Non-terminal tasks depending on `failed`, directly or transitively."""
        found: dict[str, Task] = {}
        frontier = [failed.id]
        while frontier:
            current = frontier.pop()
            for task in self._tasks.values():
                if (
                    task.project_id == failed.project_id
                    and current in task.dependencies
                    and task.id not in found
                    and not task.status.is_terminal
                ):
                    found[task.id] = task
                    frontier.append(task.id)
        return sorted(found.values(), key=lambda t: t.sequence)

    async def cancel(self, task_id: str, reason: Optional[str] = None) -> bool:
        """
        Cancel a non-terminal task.

        A running task's backend is signalled, and the task is recorded
        cancelled immediately without waiting for acknowledgment. No retry
        follows. Returns False for unknown ids.
        """
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("Cannot cancel unknown task %s", task_id)
            return False

        async with self._lock(task.project_id):
            if task.status.is_terminal:
                raise InvalidTransitionError(task.id, task.status.value, TaskStatus.CANCELLED.value)
            was_running = task.status is TaskStatus.RUNNING
            task.status = TaskStatus.CANCELLED
            task.error = reason or "cancelled"
            task.completed_at = utc_now()
            await self._persist([task])

        if was_running:
            if self.backend is not None:
                self.backend.cancel(task.id)
            execution = self._executions.get(task.id)
            if execution is not None and not execution.done():
                execution.cancel()

        logger.info("Task %s cancelled", task.id)
        await self.events.emit("task-cancelled", self._event_data(task, reason=task.error, was_running=was_running))
        return True

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def reorder(self, task_id: str, priority: Priority) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        async with self._lock(task.project_id):
            if task.status.is_terminal:
                raise InvalidTransitionError(task.id, task.status.value, "reprioritized")
            task.priority = priority
            await self._persist([task])
        return task

    async def set_autonomy_level(self, task_id: str, level: AutonomyLevel) -> Optional[Task]:
        """
        Change a task's autonomy level.

        Lowering a waiting task to `auto` releases it back to the queue, since
        only gated tasks may wait for approval.
        """
        task = self._tasks.get(task_id)
        if task is None:
            return None
        async with self._lock(task.project_id):
            if task.status.is_terminal or task.status is TaskStatus.RUNNING:
                raise InvalidTransitionError(task.id, task.status.value, f"autonomy {level.value}")
            task.autonomy_level = level
            if level is AutonomyLevel.AUTO and task.status is TaskStatus.AWAITING_APPROVAL:
                task.status = TaskStatus.QUEUED
            await self._persist([task])
        return task

    async def load_project(self, project_id: str) -> int:
        """
        Rehydrate a project's tasks from the durable store.

        Tasks left running by a previous process are re-queued.
        """
        stmt = select(TaskModel).where(TaskModel.project_id == project_id).order_by(TaskModel.sequence)
        async with self.store.session() as session:
            rows = (await session.execute(stmt)).scalars().all()

        orphaned = []
        async with self._lock(project_id):
            for row in rows:
                task = Task.from_row(row)
                if task.status is TaskStatus.RUNNING:
                    task.status = TaskStatus.QUEUED
                    task.started_at = None
                    orphaned.append(task)
                self._tasks[task.id] = task
            highest = max((t.sequence for t in self._tasks.values()), default=0)
            self._sequence = itertools.count(highest + 1)
            if orphaned:
                logger.warning("Re-queued %d task(s) interrupted while running", len(orphaned))
                await self._persist(orphaned)

        return len(rows)

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_next(self, project_id: str) -> Optional[Task]:
        """
        Start the next runnable task and drive it through the backend.

        Returns the task (completed, re-queued, failed, cancelled or waiting
        for approval) or None when nothing is runnable. Backend exceptions are
        recorded as failed attempts.
        """
        if self.backend is None:
            raise ValidationError("No execution backend configured")

        candidate = self.dequeue_next(project_id)
        if candidate is None:
            return None

        task = await self.mark_running(candidate.id)
        if task is None or task.status is not TaskStatus.RUNNING:
            return task

        execution = asyncio.ensure_future(self.backend.execute(task))
        self._executions[task.id] = execution
        try:
            result: ExecutionResult = await execution
        except asyncio.CancelledError:
            if task.status is TaskStatus.CANCELLED:
                return task
            raise
        except Exception as e:
            logger.exception("Execution of %s raised", task.id)
            if task.status is TaskStatus.RUNNING:
                await self.mark_failed(task.id, str(e) or type(e).__name__)
            return task
        finally:
            self._executions.pop(task.id, None)

        if task.status is not TaskStatus.RUNNING:
            return task
        if result.success:
            await self.mark_completed(task.id, result.to_dict())
        else:
            await self.mark_failed(task.id, result.error or "execution failed")
        return task

    async def run_until_idle(self, project_id: str) -> list[Task]:
        """
        Run tasks until nothing is runnable or the drain is stopped.

        Single-flight per project: an overlapping call raises ConflictError.
        A paused project holds the drain before its next task until resumed.
        """
        processed = []
        async with self._drain.guard(project_id):
            self._stop_requested.discard(project_id)
            await self.events.emit("queue-started", {"project_id": project_id})
            try:
                while True:
                    await self._resume_event(project_id).wait()
                    if project_id in self._stop_requested:
                        logger.info("Queue for %s stopped after %d task(s)", project_id, len(processed))
                        break
                    task = await self.run_next(project_id)
                    if task is None:
                        break
                    processed.append(task)
            finally:
                self._stop_requested.discard(project_id)
                if project_id in self._paused:
                    self._resume_event(project_id).clear()
            await self.events.emit("queue-idle", {
                "project_id": project_id,
                "processed": len(processed),
                **self.get_queue_stats(project_id),
            })
        return processed

    # =========================================================================
    # Drain Control
    # =========================================================================

    def is_paused(self, project_id: str) -> bool:
        return project_id in self._paused

    def get_drain_state(self, project_id: str) -> dict:
        return {
            "project_id": project_id,
            "running": self.is_draining(project_id),
            "paused": self.is_paused(project_id),
            "stopping": project_id in self._stop_requested,
        }

    async def pause(self, project_id: str) -> bool:
        """
        Hold the project's drain before its next task.

        A task already running finishes normally. The pause also applies to
        drains started later. Returns False if the project is already paused.
        """
        if project_id in self._paused:
            return False
        self._paused.add(project_id)
        self._resume_event(project_id).clear()
        logger.info("Queue for %s paused", project_id)
        await self.events.emit("queue-paused", self.get_drain_state(project_id))
        return True

    async def resume(self, project_id: str) -> bool:
        """Let a paused drain continue. Returns False if it was not paused."""
        if project_id not in self._paused:
            return False
        self._paused.discard(project_id)
        self._resume_event(project_id).set()
        logger.info("Queue for %s resumed", project_id)
        await self.events.emit("queue-resumed", self.get_drain_state(project_id))
        return True

    async def stop(self, project_id: str, cancel_running: bool = True) -> bool:
        """
        End the project's drain before its next task.

        Running tasks of the project are cancelled unless `cancel_running` is
        False; queued tasks stay queued. A paused drain is woken so it can
        exit, and the project stays paused. Returns False when no drain is
        running.
        """
        if not self.is_draining(project_id):
            return False

        self._stop_requested.add(project_id)
        self._resume_event(project_id).set()

        cancelled = []
        if cancel_running:
            for task in self.list_tasks(project_id, TaskStatus.RUNNING):
                try:
                    await self.cancel(task.id, "queue stopped")
                except InvalidTransitionError:
                    logger.debug("Task %s finished before it could be stopped", task.id)
                    continue
                cancelled.append(task.id)

        logger.info("Queue for %s stopping", project_id)
        await self.events.emit("queue-stopped", {"project_id": project_id, "cancelled": cancelled})
        return True

    def release_project(self, project_id: str) -> bool:
        """
        Drop the per-project lock and drain state once a project is quiet.

        Allowed only when every task of the project is terminal, no drain is
        running and the lock is free. Task records are kept. Returns whether
        anything was released.
        """
        if self.is_draining(project_id) or any(
            not t.status.is_terminal for t in self.list_tasks(project_id)
        ):
            return False
        lock = self._locks.get(project_id)
        if lock is not None and lock.locked():
            return False

        self._locks.pop(project_id, None)
        self._resume_events.pop(project_id, None)
        self._stop_requested.discard(project_id)
        return True

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_status(self, task: Task, expected: TaskStatus, requested: TaskStatus) -> None:
        if task.status is not expected:
            raise InvalidTransitionError(task.id, task.status.value, requested.value)

    async def _record_pattern_outcome(self, task: Task, success: bool) -> None:
        if self.learning is None or not task.auto_approved_pattern_id:
            return
        await self.learning.record_outcome(task.auto_approved_pattern_id, success)

    def _event_data(self, task: Task, **extra) -> dict:
        return {
            "task_id": task.id,
            "project_id": task.project_id,
            "title": task.title,
            "status": task.status.value,
            "priority": task.priority.value,
            **extra,
        }

    async def _persist(self, tasks: Iterable[Task]) -> None:
        snapshots = [_row_values(t) for t in tasks]

        async def _upsert(session):
            for values in snapshots:
                row = await session.get(TaskModel, values["id"])
                if row is None:
                    session.add(TaskModel(**values))
                else:
                    for key, value in values.items():
                        setattr(row, key, value)

        await self.store.write(_upsert, label="save task")


def _row_values(task: Task) -> dict:
    return {
        "id": task.id,
        "project_id": task.project_id,
        "sequence": task.sequence,
        "title": task.title,
        "description": task.description,
        "priority": task.priority.value,
        "autonomy_level": task.autonomy_level.value,
        "status": task.status.value,
        "dependencies": sorted(task.dependencies),
        "retry_count": task.retry_count,
        "max_retries": task.max_retries,
        "created_at": task.created_at,
        "started_at": task.started_at,
        "completed_at": task.completed_at,
        "result": task.result,
        "error": task.error,
        "approved": task.approved,
        "approved_by": task.approved_by,
        "auto_approved_pattern_id": task.auto_approved_pattern_id,
        "backlog_item_id": task.backlog_item_id,
        "parent_task_id": task.parent_task_id,
        "input_data": task.input_data,
    }
