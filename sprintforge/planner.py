"""
Sprint Planner
==============

Turns the "now" lane of the backlog into capacity-bounded sprints and keeps
them moving:

1. generate_next_sprint selects candidates greedily (priority, then fewest
   points first) until capacity is used, creates an active sprint, and
   optionally decomposes each item into scheduler tasks
2. get_sprint_progress reports completion and velocity (points per week)
3. monitor_and_continue closes a finished sprint and plans the next one

The greedy order intentionally favors packing more, smaller items over
maximizing committed points; it is not a bin-packing optimum.

Only one planning run per project may be in flight; an overlapping call raises
ConflictError.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import func, select

from sprintforge.backlog import BacklogStore, CandidateFilter
from sprintforge.concurrency import SingleFlight
from sprintforge.config import OrchestrationConfig
from sprintforge.db.models import SprintModel
from sprintforge.db.store import DurableStore
from sprintforge.decomposer import Decomposer, Subtask
from sprintforge.errors import NoCandidatesError, ValidationError
from sprintforge.events import EventEmitter
from sprintforge.models import (
    AutonomyLevel,
    BacklogItem,
    ItemStatus,
    Priority,
    Sprint,
    SprintStatus,
    Task,
    TaskSpec,
    TaskStatus,
    new_id,
    utc_now,
)
from sprintforge.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

CAPACITY_HISTORY = 3


# =============================================================================
# Results
# =============================================================================

@dataclass
class SprintPlan:
    """Outcome of one planning run."""
    sprint: Sprint
    selected_items: list[BacklogItem]
    total_points: int
    decomposed_tasks: int = 0
    enqueued_tasks: list[Task] = field(default_factory=list)
    decomposition_errors: dict[str, str] = field(default_factory=dict)  # item id -> error

    def to_dict(self) -> dict:
        return {
            "sprint": self.sprint.to_dict(),
            "selected_items": [i.to_dict() for i in self.selected_items],
            "total_points": self.total_points,
            "decomposed_tasks": self.decomposed_tasks,
            "enqueued_tasks": [t.id for t in self.enqueued_tasks],
            "decomposition_errors": dict(self.decomposition_errors),
        }


@dataclass
class SprintProgress:
    sprint_id: str
    total_stories: int = 0
    completed_stories: int = 0
    in_progress_stories: int = 0
    blocked_stories: int = 0
    total_points: int = 0
    completed_points: int = 0
    percent_complete: float = 0.0
    velocity: float = 0.0          # points per week
    estimated_completion: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "sprint_id": self.sprint_id,
            "total_stories": self.total_stories,
            "completed_stories": self.completed_stories,
            "in_progress_stories": self.in_progress_stories,
            "blocked_stories": self.blocked_stories,
            "total_points": self.total_points,
            "completed_points": self.completed_points,
            "percent_complete": self.percent_complete,
            "velocity": self.velocity,
            "estimated_completion": self.estimated_completion.isoformat() if self.estimated_completion else None,
        }


# =============================================================================
# Selection helpers
# =============================================================================

def select_items(candidates: Sequence[BacklogItem], capacity: int) -> tuple[list[BacklogItem], int]:
    """
    Greedy capacity-bounded selection.

    Candidates are ordered by priority (critical first) then story points
    ascending; each item is taken if it still fits, otherwise skipped.
    """
    ordered = sorted(candidates, key=lambda i: (-i.priority.rank, i.story_points))
    selected = []
    total = 0
    for item in ordered:
        points = max(0, item.story_points)
        if total + points <= capacity:
            selected.append(item)
            total += points
    return selected, total


def generate_sprint_goal(items: Sequence[BacklogItem]) -> str:
    if not items:
        return "Complete planned development work"
    urgent = [i for i in items if i.priority in (Priority.CRITICAL, Priority.HIGH)]
    if urgent:
        return "Deliver " + " and ".join(i.title.lower() for i in urgent[:2])
    return f"Complete {len(items)} user stories"


def derive_item_status(tasks: Sequence[Task]) -> Optional[ItemStatus]:
    """Backlog item status implied by its tasks. Cancelled tasks are ignored."""
    live = [t for t in tasks if t.status is not TaskStatus.CANCELLED]
    if not live:
        return None
    if all(t.status is TaskStatus.COMPLETED for t in live):
        return ItemStatus.DONE
    if any(t.status is TaskStatus.FAILED for t in live):
        return ItemStatus.BLOCKED
    if any(t.status in (TaskStatus.RUNNING, TaskStatus.AWAITING_APPROVAL, TaskStatus.COMPLETED) for t in live):
        return ItemStatus.IN_PROGRESS
    return ItemStatus.PLANNED


# =============================================================================
# Planner
# =============================================================================

class SprintPlanner:
    """Plans sprints for many projects; one planning run per project at a time."""

    def __init__(
        self,
        store: DurableStore,
        backlog: BacklogStore,
        scheduler: Optional[TaskScheduler] = None,
        decomposer: Optional[Decomposer] = None,
        config: Optional[OrchestrationConfig] = None,
        events: Optional[EventEmitter] = None,
    ):
        self.store = store
        self.backlog = backlog
        self.scheduler = scheduler
        self.decomposer = decomposer
        self.config = config or OrchestrationConfig()
        self.events = events or EventEmitter("planner")
        self._planning = SingleFlight("planning")

    def is_planning(self, project_id: str) -> bool:
        return self._planning.is_running(project_id)

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    async def generate_next_sprint(
        self,
        project_id: str,
        capacity: Optional[int] = None,
        duration_days: Optional[int] = None,
        default_autonomy_level: AutonomyLevel = AutonomyLevel.SUPERVISED,
        auto_decompose: bool = False,
        auto_enqueue: bool = False,
    ) -> SprintPlan:
        """
        Plan the next sprint for a project.

        `capacity` defaults to estimate_capacity(). Raises NoCandidatesError
        when nothing is eligible or nothing fits, and ConflictError when a
        planning run for the project is already in flight. Decomposition
        failures are reported through `decomposition-error` events and the
        plan's decomposition_errors; they never abort planning.
        """
        if not project_id:
            raise ValidationError("project_id is required")
        if capacity is not None and capacity < 0:
            raise ValidationError(f"capacity must not be negative, got {capacity}")
        duration_days = self.config.default_duration_days if duration_days is None else duration_days
        if duration_days < 1:
            raise ValidationError(f"duration_days must be at least 1, got {duration_days}")

        async with self._planning.guard(project_id):
            await self.events.emit("sprint-planning-started", {"project_id": project_id, "capacity": capacity})

            if capacity is None:
                capacity = await self.estimate_capacity(project_id)

            candidates = await self.backlog.list_candidates(project_id, CandidateFilter())
            if not candidates:
                raise NoCandidatesError(project_id)

            selected, total_points = select_items(candidates, capacity)
            if not selected:
                raise NoCandidatesError(
                    project_id, f"No backlog items fit within a capacity of {capacity} points",
                )

            sprint = await self._create_sprint(project_id, selected, capacity, total_points, duration_days)
            plan = SprintPlan(sprint=sprint, selected_items=selected, total_points=total_points)
            logger.info(
                "Created %s for %s: %d item(s), %d/%d points",
                sprint.name, project_id, len(selected), total_points, capacity,
            )
            await self.events.emit("sprint-created", {
                "project_id": project_id,
                "sprint_id": sprint.id,
                "name": sprint.name,
                "goal": sprint.goal,
                "item_ids": [i.id for i in selected],
                "total_points": total_points,
                "capacity_points": capacity,
            })

            if auto_decompose and self.decomposer is not None:
                for item in selected:
                    await self._decompose_item(plan, item, default_autonomy_level, auto_enqueue)

            return plan

    async def _create_sprint(
        self,
        project_id: str,
        items: list[BacklogItem],
        capacity: int,
        total_points: int,
        duration_days: int,
    ) -> Sprint:
        start = utc_now()
        number = await self.count_sprints(project_id) + 1
        sprint = Sprint(
            id=new_id("sprint"),
            project_id=project_id,
            name=f"Sprint {number}",
            goal=generate_sprint_goal(items),
            start_date=start,
            end_date=start + timedelta(days=duration_days),
            status=SprintStatus.ACTIVE,
            capacity_points=capacity,
            committed_points=total_points,
        )

        async def _insert(session):
            session.add(SprintModel(
                id=sprint.id,
                project_id=sprint.project_id,
                name=sprint.name,
                goal=sprint.goal,
                start_date=sprint.start_date,
                end_date=sprint.end_date,
                status=sprint.status.value,
                capacity_points=sprint.capacity_points,
                committed_points=sprint.committed_points,
                created_at=start,
            ))

        await self.store.write(_insert, label="create sprint")
        await self.backlog.assign_to_sprint([i.id for i in items], sprint.id)
        for item in items:
            item.sprint_id = sprint.id
        return sprint

    async def _decompose_item(
        self,
        plan: SprintPlan,
        item: BacklogItem,
        autonomy_level: AutonomyLevel,
        auto_enqueue: bool,
    ) -> None:
        try:
            result = await self.decomposer.decompose(item, autonomy_level)
        except Exception as e:
            logger.warning("Decomposition of %s failed: %s", item.id, e)
            plan.decomposition_errors[item.id] = str(e) or type(e).__name__
            await self.events.emit("decomposition-error", {
                "project_id": item.project_id,
                "sprint_id": plan.sprint.id,
                "item_id": item.id,
                "error": plan.decomposition_errors[item.id],
            })
            return

        plan.decomposed_tasks += len(result.subtasks)
        enqueued = list(result.enqueued_tasks)
        if auto_enqueue and self.scheduler is not None and not enqueued:
            enqueued = await self._enqueue_subtasks(item, result.subtasks, autonomy_level)
        plan.enqueued_tasks.extend(enqueued)

        await self.events.emit("story-decomposed", {
            "project_id": item.project_id,
            "sprint_id": plan.sprint.id,
            "item_id": item.id,
            "subtask_count": len(result.subtasks),
            "enqueued_count": len(enqueued),
        })

    async def _enqueue_subtasks(
        self,
        item: BacklogItem,
        subtasks: list[Subtask],
        autonomy_level: AutonomyLevel,
    ) -> list[Task]:
        """Enqueue subtasks in order, mapping dependency indices to task ids."""
        ids_by_index: dict[int, str] = {}
        tasks = []
        for index, subtask in enumerate(subtasks):
            task = await self.scheduler.enqueue(TaskSpec(
                project_id=item.project_id,
                title=subtask.title,
                description=subtask.description,
                priority=subtask.priority,
                autonomy_level=autonomy_level,
                dependencies=[ids_by_index[i] for i in subtask.depends_on if i in ids_by_index],
                backlog_item_id=item.id,
                input_data={"context": f"Backlog item: {item.title}\nStory points: {item.story_points}"},
            ))
            ids_by_index[index] = task.id
            tasks.append(task)
        return tasks

    async def estimate_capacity(self, project_id: str) -> int:
        """Mean completed points of the last three completed sprints (default when none)."""
        stmt = (
            select(SprintModel.id)
            .where(SprintModel.project_id == project_id, SprintModel.status == SprintStatus.COMPLETED.value)
            .order_by(SprintModel.end_date.desc())
            .limit(CAPACITY_HISTORY)
        )
        async with self.store.session() as session:
            sprint_ids = list((await session.execute(stmt)).scalars().all())

        if not sprint_ids:
            return self.config.default_capacity

        totals = []
        for sprint_id in sprint_ids:
            items = await self.backlog.list_sprint_items(sprint_id)
            totals.append(sum(i.story_points for i in items if i.status is ItemStatus.DONE))
        return round(sum(totals) / len(totals)) or self.config.default_capacity

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_sprint(self, sprint_id: str) -> Optional[Sprint]:
        async with self.store.session() as session:
            row = await session.get(SprintModel, sprint_id)
        return Sprint.from_row(row) if row else None

    async def get_active_sprint(self, project_id: str) -> Optional[Sprint]:
        stmt = (
            select(SprintModel)
            .where(SprintModel.project_id == project_id, SprintModel.status == SprintStatus.ACTIVE.value)
            .order_by(SprintModel.start_date.desc())
            .limit(1)
        )
        async with self.store.session() as session:
            row = (await session.execute(stmt)).scalars().first()
        return Sprint.from_row(row) if row else None

    async def list_sprints(self, project_id: str, status: Optional[SprintStatus] = None) -> list[Sprint]:
        stmt = select(SprintModel).where(SprintModel.project_id == project_id)
        if status is not None:
            stmt = stmt.where(SprintModel.status == status.value)
        stmt = stmt.order_by(SprintModel.start_date)
        async with self.store.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [Sprint.from_row(row) for row in rows]

    async def get_sprint_items(self, sprint_id: str) -> list[BacklogItem]:
        return await self.backlog.list_sprint_items(sprint_id)

    async def count_sprints(self, project_id: str) -> int:
        async with self.store.session() as session:
            return (await session.execute(
                select(func.count()).select_from(SprintModel).where(SprintModel.project_id == project_id)
            )).scalar() or 0

    async def get_sprint_progress(self, sprint_id: str) -> SprintProgress:
        """Completion and velocity for a sprint; zeroed for unknown ids."""
        sprint = await self.get_sprint(sprint_id)
        if sprint is None:
            return SprintProgress(sprint_id=sprint_id)

        items = await self.backlog.list_sprint_items(sprint_id)
        done = [i for i in items if i.status is ItemStatus.DONE]
        total_points = sum(i.story_points for i in items)
        completed_points = sum(i.story_points for i in done)

        now = utc_now()
        elapsed_days = max(1.0, (now - sprint.start_date).total_seconds() / 86400)
        velocity = completed_points / elapsed_days * 7

        remaining = total_points - completed_points
        estimated = None
        if velocity > 0 and remaining > 0:
            estimated = now + timedelta(days=remaining / (velocity / 7))

        return SprintProgress(
            sprint_id=sprint_id,
            total_stories=len(items),
            completed_stories=len(done),
            in_progress_stories=sum(1 for i in items if i.status is ItemStatus.IN_PROGRESS),
            blocked_stories=sum(1 for i in items if i.status is ItemStatus.BLOCKED),
            total_points=total_points,
            completed_points=completed_points,
            percent_complete=round(completed_points / total_points * 100, 1) if total_points else 0.0,
            velocity=round(velocity, 1),
            estimated_completion=estimated,
        )

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    async def sync_item_status_from_tasks(self, project_id: str) -> int:
        """Derive backlog item status from scheduler tasks. Returns items changed."""
        if self.scheduler is None:
            return 0

        by_item: dict[str, list[Task]] = {}
        for task in self.scheduler.list_tasks(project_id):
            if task.backlog_item_id:
                by_item.setdefault(task.backlog_item_id, []).append(task)

        changed = 0
        for item_id, tasks in by_item.items():
            item = await self.backlog.get_item(item_id)
            if item is None or item.status.is_terminal:
                continue
            status = derive_item_status(tasks)
            if status is not None and status is not item.status:
                await self.backlog.update_status(item_id, status)
                changed += 1
        return changed

    async def check_sprint_completion(self, project_id: str) -> Optional[Sprint]:
        """
        Complete the active sprint if every item is done or cancelled.

        Returns the completed sprint, or None if there is no active sprint or
        it still has open items.
        """
        sprint = await self.get_active_sprint(project_id)
        if sprint is None:
            return None

        items = await self.backlog.list_sprint_items(sprint.id)
        if not items or not all(i.status.is_terminal for i in items):
            return None

        progress = await self.get_sprint_progress(sprint.id)
        completed_at = utc_now()

        async def _complete(session):
            row = await session.get(SprintModel, sprint.id)
            row.status = SprintStatus.COMPLETED.value
            row.completed_at = completed_at

        await self.store.write(_complete, label="complete sprint")
        sprint.status = SprintStatus.COMPLETED
        sprint.completed_at = completed_at

        logger.info("%s completed for %s", sprint.name, project_id)
        await self.events.emit("sprint-completed", {
            "project_id": project_id,
            "sprint_id": sprint.id,
            "progress": progress.to_dict(),
        })
        return sprint

    async def monitor_and_continue(
        self,
        project_id: str,
        capacity: Optional[int] = None,
        duration_days: Optional[int] = None,
        default_autonomy_level: AutonomyLevel = AutonomyLevel.SUPERVISED,
        auto_decompose: bool = False,
        auto_enqueue: bool = False,
    ) -> Optional[SprintPlan]:
        """
        Sync item status, close the active sprint when finished, and plan the
        next one. Returns None when the sprint is still open or no candidates
        remain.
        """
        await self.sync_item_status_from_tasks(project_id)
        if await self.check_sprint_completion(project_id) is None:
            return None

        try:
            return await self.generate_next_sprint(
                project_id,
                capacity=capacity,
                duration_days=duration_days,
                default_autonomy_level=default_autonomy_level,
                auto_decompose=auto_decompose,
                auto_enqueue=auto_enqueue,
            )
        except NoCandidatesError as e:
            logger.info("No follow-on sprint for %s: %s", project_id, e)
            return None
