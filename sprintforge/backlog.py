"""
Backlog Store
=============

The Sprint Planner only reads backlog items and links them to sprints; it never
edits them. `BacklogStore` is the narrow interface it consumes and
`SqlBacklogStore` is the implementation backed by the DurableStore.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, runtime_checkable

from sqlalchemy import select, update

from sprintforge.db.models import BacklogItemModel
from sprintforge.db.store import DurableStore
from sprintforge.models import BacklogItem, ItemStatus, Lane, Priority, new_id

logger = logging.getLogger(__name__)


@dataclass
class CandidateFilter:
    """Which backlog items are eligible for planning."""
    status: ItemStatus = ItemStatus.PLANNED
    lane: Lane = Lane.NOW
    unassigned_only: bool = True


@runtime_checkable
class BacklogStore(Protocol):
    """Read interface (plus sprint linking) consumed by the Sprint Planner."""

    async def list_candidates(
        self, project_id: str, filter: Optional[CandidateFilter] = None
    ) -> list[BacklogItem]:
        ...

    async def get_item(self, item_id: str) -> Optional[BacklogItem]:
        ...

    async def list_sprint_items(self, sprint_id: str) -> list[BacklogItem]:
        ...

    async def assign_to_sprint(self, item_ids: Sequence[str], sprint_id: str) -> None:
        ...

    async def update_status(self, item_id: str, status: ItemStatus) -> bool:
        ...


class SqlBacklogStore:
    """BacklogStore backed by the `backlog_items` table."""

    def __init__(self, store: DurableStore):
        self.store = store

    async def add_item(
        self,
        project_id: str,
        title: str,
        *,
        description: str = "",
        priority: Priority = Priority.MEDIUM,
        story_points: int = 0,
        lane: Lane = Lane.NOW,
        status: ItemStatus = ItemStatus.PLANNED,
    ) -> BacklogItem:
        """Insert a backlog item. Used for seeding; editing is out of scope."""
        item = BacklogItem(
            id=new_id("item"),
            project_id=project_id,
            title=title,
            description=description,
            priority=priority,
            story_points=story_points,
            status=status,
            lane=lane,
        )

        async def _insert(session):
            session.add(BacklogItemModel(
                id=item.id,
                project_id=item.project_id,
                title=item.title,
                description=item.description,
                priority=item.priority.value,
                story_points=item.story_points,
                status=item.status.value,
                lane=item.lane.value,
                created_at=item.created_at,
            ))

        await self.store.write(_insert, label="add backlog item")
        return item

    async def list_candidates(
        self, project_id: str, filter: Optional[CandidateFilter] = None
    ) -> list[BacklogItem]:
        filter = filter or CandidateFilter()
        stmt = select(BacklogItemModel).where(
            BacklogItemModel.project_id == project_id,
            BacklogItemModel.status == filter.status.value,
            BacklogItemModel.lane == filter.lane.value,
        )
        if filter.unassigned_only:
            stmt = stmt.where(BacklogItemModel.sprint_id.is_(None))
        stmt = stmt.order_by(BacklogItemModel.created_at)

        async with self.store.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [BacklogItem.from_row(row) for row in rows]

    async def list_items(self, project_id: str) -> list[BacklogItem]:
        stmt = (
            select(BacklogItemModel)
            .where(BacklogItemModel.project_id == project_id)
            .order_by(BacklogItemModel.created_at)
        )
        async with self.store.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [BacklogItem.from_row(row) for row in rows]

    async def get_item(self, item_id: str) -> Optional[BacklogItem]:
        async with self.store.session() as session:
            row = await session.get(BacklogItemModel, item_id)
        return BacklogItem.from_row(row) if row else None

    async def list_sprint_items(self, sprint_id: str) -> list[BacklogItem]:
        stmt = (
            select(BacklogItemModel)
            .where(BacklogItemModel.sprint_id == sprint_id)
            .order_by(BacklogItemModel.created_at)
        )
        async with self.store.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [BacklogItem.from_row(row) for row in rows]

    async def assign_to_sprint(self, item_ids: Sequence[str], sprint_id: str) -> None:
        if not item_ids:
            return

        async def _assign(session):
            await session.execute(
                update(BacklogItemModel)
                .where(BacklogItemModel.id.in_(list(item_ids)))
                .values(sprint_id=sprint_id)
            )

        await self.store.write(_assign, label="assign items to sprint")

    async def update_status(self, item_id: str, status: ItemStatus) -> bool:
        async def _update(session):
            row = await session.get(BacklogItemModel, item_id)
            if row is None:
                return False
            row.status = status.value
            if status is ItemStatus.DONE:
                row.lane = Lane.DONE.value
            return True

        updated = await self.store.write(_update, label="update backlog item status")
        if not updated:
            logger.warning("Backlog item not found: %s", item_id)
        return updated
