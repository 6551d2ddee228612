"""
Domain Models
=============

Enums and dataclasses shared by the scheduler, planner, learning engine and
memory store. Rows in `sprintforge.db.models` mirror these; conversion lives in
the `from_row()` / `to_dict()` helpers.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on round trip; treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# Enums
# =============================================================================

class Priority(Enum):
    """Priority shared by tasks and backlog items."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Higher rank sorts first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


class AutonomyLevel(Enum):
    """Per-task policy controlling whether execution needs human sign-off."""
    AUTO = "auto"
    APPROVAL_GATES = "approval_gates"
    SUPERVISED = "supervised"

    @property
    def requires_approval(self) -> bool:
        return self is not AutonomyLevel.AUTO


class TaskStatus(Enum):
    QUEUED = "queued"
    AWAITING_APPROVAL = "awaiting_approval"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class SprintStatus(Enum):
    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ItemStatus(Enum):
    """Backlog item status."""
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.DONE, ItemStatus.CANCELLED)


class Lane(Enum):
    NOW = "now"
    NEXT = "next"
    LATER = "later"
    DONE = "done"


class PatternKind(Enum):
    APPROVAL = "approval"
    REJECTION = "rejection"
    EDIT_FORMAT = "edit_format"


# =============================================================================
# Tasks
# =============================================================================

@dataclass
class TaskSpec:
    """Input to TaskScheduler.enqueue()."""
    project_id: str
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    autonomy_level: AutonomyLevel = AutonomyLevel.SUPERVISED
    dependencies: list[str] = field(default_factory=list)
    max_retries: Optional[int] = None
    backlog_item_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    input_data: dict = field(default_factory=dict)


@dataclass
class Task:
    """A unit of work held by the scheduler."""
    id: str
    project_id: str
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    autonomy_level: AutonomyLevel = AutonomyLevel.SUPERVISED
    status: TaskStatus = TaskStatus.QUEUED
    dependencies: set[str] = field(default_factory=set)
    retry_count: int = 0
    max_retries: int = 3
    sequence: int = 0
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[dict] = None
    error: Optional[str] = None

    # Approval tracking
    approved: bool = False
    approved_by: Optional[str] = None
    auto_approved_pattern_id: Optional[str] = None

    # Traceability
    backlog_item_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    input_data: dict = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Text used for pattern matching."""
        return f"{self.title} {self.description}".strip()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "autonomy_level": self.autonomy_level.value,
            "status": self.status.value,
            "dependencies": sorted(self.dependencies),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "sequence": self.sequence,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "result": self.result,
            "error": self.error,
            "approved": self.approved,
            "approved_by": self.approved_by,
            "auto_approved_pattern_id": self.auto_approved_pattern_id,
            "backlog_item_id": self.backlog_item_id,
            "parent_task_id": self.parent_task_id,
        }

    @classmethod
    def from_row(cls, row: Any) -> "Task":
        return cls(
            id=row.id,
            project_id=row.project_id,
            title=row.title,
            description=row.description or "",
            priority=Priority(row.priority),
            autonomy_level=AutonomyLevel(row.autonomy_level),
            status=TaskStatus(row.status),
            dependencies=set(row.dependencies or []),
            retry_count=row.retry_count or 0,
            max_retries=row.max_retries if row.max_retries is not None else 3,
            sequence=row.sequence or 0,
            created_at=as_utc(row.created_at) or utc_now(),
            started_at=as_utc(row.started_at),
            completed_at=as_utc(row.completed_at),
            result=row.result,
            error=row.error,
            approved=bool(row.approved),
            approved_by=row.approved_by,
            auto_approved_pattern_id=row.auto_approved_pattern_id,
            backlog_item_id=row.backlog_item_id,
            parent_task_id=row.parent_task_id,
            input_data=row.input_data or {},
        )


# =============================================================================
# Backlog & Sprints
# =============================================================================

@dataclass
class BacklogItem:
    """A prioritized backlog (roadmap) item."""
    id: str
    project_id: str
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    story_points: int = 0
    status: ItemStatus = ItemStatus.PLANNED
    lane: Lane = Lane.NOW
    sprint_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "story_points": self.story_points,
            "status": self.status.value,
            "lane": self.lane.value,
            "sprint_id": self.sprint_id,
        }

    @classmethod
    def from_row(cls, row: Any) -> "BacklogItem":
        return cls(
            id=row.id,
            project_id=row.project_id,
            title=row.title,
            description=row.description or "",
            priority=Priority(row.priority),
            story_points=row.story_points or 0,
            status=ItemStatus(row.status),
            lane=Lane(row.lane),
            sprint_id=row.sprint_id,
            created_at=as_utc(row.created_at) or utc_now(),
        )


@dataclass
class Sprint:
    """A time-boxed batch of backlog items."""
    id: str
    project_id: str
    name: str
    goal: str
    start_date: datetime
    end_date: datetime
    status: SprintStatus = SprintStatus.ACTIVE
    capacity_points: int = 0
    committed_points: int = 0
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "goal": self.goal,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "status": self.status.value,
            "capacity_points": self.capacity_points,
            "committed_points": self.committed_points,
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_row(cls, row: Any) -> "Sprint":
        return cls(
            id=row.id,
            project_id=row.project_id,
            name=row.name,
            goal=row.goal or "",
            start_date=as_utc(row.start_date),
            end_date=as_utc(row.end_date),
            status=SprintStatus(row.status),
            capacity_points=row.capacity_points or 0,
            committed_points=row.committed_points or 0,
            completed_at=as_utc(row.completed_at),
        )
