"""
Agent Memory Store
==================

Per-session working memory for agents: recent decisions, created items,
rejected suggestions and recently discussed stories. It is:
- Held in-process while a session is live
- Mirrored to the `agent_memory` table on every mutating call
- Reconstructed from persisted records when a session is not live
- Logically destroyed on expiration or explicit clear

Reconstruction replays persisted records, in order, through the same bounded
collections used for live sessions, so a reconstructed session matches the
live one it came from.
"""

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Generic, Iterator, Optional, TypeVar

from sqlalchemy import delete, func, or_, select

from sprintforge.config import OrchestrationConfig
from sprintforge.db.models import MemoryRecordModel
from sprintforge.db.store import DurableStore
from sprintforge.errors import ValidationError
from sprintforge.events import EventEmitter
from sprintforge.models import as_utc, new_id, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """
    Fixed-capacity, insertion-ordered buffer.

    When full, adding an item evicts the oldest. With `dedup=True`, adding an
    item that is already present moves it to the most-recent position instead
    of storing it twice. Iteration yields most-recent first.
    """

    def __init__(self, capacity: int, *, dedup: bool = False):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.dedup = dedup
        self._items: deque[T] = deque(maxlen=capacity)

    def add(self, item: T) -> bool:
        """Add an item. Returns False if it was already present (dedup mode)."""
        if self.dedup and item in self._items:
            self._items.remove(item)
            self._items.append(item)
            return False
        self._items.append(item)
        return True

    def clear(self) -> None:
        self._items.clear()

    def oldest_first(self) -> list[T]:
        return list(self._items)

    def __iter__(self) -> Iterator[T]:
        return reversed(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __repr__(self) -> str:
        return f"RingBuffer(capacity={self.capacity}, items={list(self)!r})"


class DecisionType(Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"
    DEFERRED = "deferred"


class ItemKind(Enum):
    """Kinds of items an agent decides on or creates."""
    STORY = "story"
    TASK = "task"
    TEST = "test"
    ROADMAP = "roadmap"


class MemoryType(Enum):
    DECISION = "decision"
    CREATED_ITEM = "created_item"
    REJECTION = "rejection"
    STORY_DISCUSSION = "story_discussion"


@dataclass
class Decision:
    """A human or agent decision about an item."""
    id: str
    type: DecisionType
    item_type: ItemKind
    item_title: str
    reason: Optional[str] = None
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "item_type": self.item_type.value,
            "item_title": self.item_title,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Decision":
        return cls(
            id=data["id"],
            type=DecisionType(data["type"]),
            item_type=ItemKind(data["item_type"]),
            item_title=data.get("item_title", ""),
            reason=data.get("reason"),
            timestamp=data.get("timestamp", utc_now().isoformat()),
        )


@dataclass
class CreatedItem:
    """An item created during a session."""
    id: str
    type: ItemKind
    title: str
    created_at: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CreatedItem":
        return cls(
            id=data["id"],
            type=ItemKind(data["type"]),
            title=data.get("title", ""),
            created_at=data.get("created_at", utc_now().isoformat()),
        )


@dataclass
class MemorySession:
    """Working memory for one agent session."""
    session_id: str
    project_id: str
    agent_type: str
    recent_decisions: RingBuffer[Decision]
    created_items: RingBuffer[CreatedItem]
    recent_story_ids: RingBuffer[str]
    rejected_suggestions: dict[str, None] = field(default_factory=dict)  # ordered set
    started_at: datetime = field(default_factory=utc_now)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utc_now())

    def apply(self, memory_type: MemoryType, content: dict) -> bool:
        """Apply one record to the bounded collections. Returns False for duplicates."""
        if memory_type is MemoryType.DECISION:
            return self.recent_decisions.add(Decision.from_dict(content))
        if memory_type is MemoryType.CREATED_ITEM:
            return self.created_items.add(CreatedItem.from_dict(content))
        if memory_type is MemoryType.REJECTION:
            suggestion = content["suggestion"]
            is_new = suggestion not in self.rejected_suggestions
            self.rejected_suggestions[suggestion] = None
            return is_new
        return self.recent_story_ids.add(content["story_id"])

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "session_id": self.session_id,
            "project_id": self.project_id,
            "agent_type": self.agent_type,
            "recent_decisions": [d.to_dict() for d in self.recent_decisions],
            "created_items": [i.to_dict() for i in self.created_items],
            "rejected_suggestions": list(self.rejected_suggestions),
            "recent_story_ids": list(self.recent_story_ids),
            "started_at": self.started_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class MemoryStore:
    """
    Owns every MemorySession.

    In-memory state is updated before the record is persisted: if the durable
    write fails with PersistenceError, the live session keeps the new entry.
    """

    def __init__(
        self,
        store: DurableStore,
        config: Optional[OrchestrationConfig] = None,
        events: Optional[EventEmitter] = None,
    ):
        self.store = store
        self.config = config or OrchestrationConfig()
        self.events = events or EventEmitter("memory")
        self._sessions: dict[str, MemorySession] = {}
        self._sequence = itertools.count()

    def _new_session(
        self,
        session_id: str,
        project_id: str,
        agent_type: str,
        expires_at: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
    ) -> MemorySession:
        return MemorySession(
            session_id=session_id,
            project_id=project_id,
            agent_type=agent_type,
            recent_decisions=RingBuffer(self.config.max_recent_decisions),
            created_items=RingBuffer(self.config.max_created_items),
            recent_story_ids=RingBuffer(self.config.max_recent_stories, dedup=True),
            started_at=started_at or utc_now(),
            expires_at=expires_at,
        )

    @property
    def active_session_ids(self) -> list[str]:
        return list(self._sessions)

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def start_session(
        self,
        project_id: str,
        agent_type: str,
        ttl: Optional[timedelta] = None,
    ) -> str:
        """Create a live session and return its id."""
        if not project_id or not agent_type:
            raise ValidationError("project_id and agent_type are required to start a session")

        if ttl is None and self.config.memory_ttl_days is not None:
            ttl = timedelta(days=self.config.memory_ttl_days)
        expires_at = utc_now() + ttl if ttl is not None else None

        session_id = new_id("agent_session")
        self._sessions[session_id] = self._new_session(session_id, project_id, agent_type, expires_at)

        logger.info("Started %s memory session %s for %s", agent_type, session_id, project_id)
        await self.events.emit("session-started", {
            "session_id": session_id,
            "project_id": project_id,
            "agent_type": agent_type,
            "expires_at": expires_at.isoformat() if expires_at else None,
        })
        return session_id

    async def end_session(self, session_id: str) -> bool:
        """Remove a live session. Unknown ids are a no-op."""
        memory = self._sessions.pop(session_id, None)
        if memory is None:
            logger.warning("Session %s not found", session_id)
            return False
        await self.events.emit("session-ended", {
            "session_id": session_id,
            "project_id": memory.project_id,
        })
        return True

    async def get_session(self, session_id: str) -> Optional[MemorySession]:
        """Live session if present, else reconstructed from unexpired records."""
        memory = self._sessions.get(session_id)
        if memory is not None:
            if not memory.is_expired():
                return memory
            del self._sessions[session_id]
        return await self._load_session(session_id)

    async def _get_or_load(self, session_id: str) -> Optional[MemorySession]:
        memory = await self.get_session(session_id)
        if memory is not None:
            self._sessions[session_id] = memory
        return memory

    async def _load_session(self, session_id: str) -> Optional[MemorySession]:
        now = utc_now()
        stmt = (
            select(MemoryRecordModel)
            .where(
                MemoryRecordModel.session_id == session_id,
                or_(MemoryRecordModel.expires_at.is_(None), MemoryRecordModel.expires_at > now),
            )
            .order_by(MemoryRecordModel.created_at, MemoryRecordModel.sequence)
        )
        async with self.store.session() as session:
            records = (await session.execute(stmt)).scalars().all()

        if not records:
            return None

        first = records[0]
        memory = self._new_session(
            session_id,
            first.project_id,
            first.agent_type,
            expires_at=as_utc(first.expires_at),
            started_at=as_utc(first.created_at),
        )
        for record in records:
            try:
                memory.apply(MemoryType(record.memory_type), record.content or {})
            except (KeyError, ValueError) as e:
                logger.error("Skipping unreadable memory record %s: %s", record.id, e)
        return memory

    # =========================================================================
    # Recording
    # =========================================================================

    async def record_decision(
        self,
        session_id: str,
        decision_type: DecisionType,
        item_type: ItemKind,
        item_title: str,
        reason: Optional[str] = None,
    ) -> Optional[Decision]:
        memory = await self._get_or_load(session_id)
        if memory is None:
            logger.warning("Cannot record decision: session %s not found", session_id)
            return None

        decision = Decision(
            id=new_id("decision"),
            type=decision_type,
            item_type=item_type,
            item_title=item_title,
            reason=reason,
        )
        memory.recent_decisions.add(decision)
        await self._save_record(memory, MemoryType.DECISION, decision.to_dict())

        await self.events.emit("decision-recorded", {
            "session_id": session_id,
            "project_id": memory.project_id,
            "decision": decision.to_dict(),
        })
        return decision

    async def record_created_item(
        self,
        session_id: str,
        item_id: str,
        item_type: ItemKind,
        title: str,
    ) -> Optional[CreatedItem]:
        memory = await self._get_or_load(session_id)
        if memory is None:
            logger.warning("Cannot record created item: session %s not found", session_id)
            return None

        item = CreatedItem(id=item_id, type=item_type, title=title)
        memory.created_items.add(item)
        await self._save_record(memory, MemoryType.CREATED_ITEM, item.to_dict())

        await self.events.emit("item-created", {
            "session_id": session_id,
            "project_id": memory.project_id,
            "item": item.to_dict(),
        })
        return item

    async def record_rejection(self, session_id: str, suggestion: str) -> Optional[str]:
        memory = await self._get_or_load(session_id)
        if memory is None:
            logger.warning("Cannot record rejection: session %s not found", session_id)
            return None

        content = {"suggestion": suggestion}
        memory.apply(MemoryType.REJECTION, content)
        await self._save_record(memory, MemoryType.REJECTION, content)

        await self.events.emit("rejection-recorded", {
            "session_id": session_id,
            "project_id": memory.project_id,
            "suggestion": suggestion,
        })
        return suggestion

    async def record_story_discussion(self, session_id: str, story_id: str) -> Optional[bool]:
        """
        Note that a story was discussed.

        Returns True for a newly tracked story, False when it was already in
        the recent list (it becomes the most recent), None for an unknown
        session.
        """
        memory = await self._get_or_load(session_id)
        if memory is None:
            logger.warning("Cannot record story discussion: session %s not found", session_id)
            return None

        content = {"story_id": story_id}
        is_new = memory.apply(MemoryType.STORY_DISCUSSION, content)
        await self._save_record(memory, MemoryType.STORY_DISCUSSION, content)

        await self.events.emit("story-discussed", {
            "session_id": session_id,
            "project_id": memory.project_id,
            "story_id": story_id,
        })
        return is_new

    async def _save_record(self, memory: MemorySession, memory_type: MemoryType, content: dict) -> None:
        values = dict(
            id=new_id("mem"),
            session_id=memory.session_id,
            project_id=memory.project_id,
            agent_type=memory.agent_type,
            memory_type=memory_type.value,
            content=content,
            sequence=next(self._sequence),
            created_at=utc_now(),
            expires_at=memory.expires_at,
        )

        async def _insert(session):
            session.add(MemoryRecordModel(**values))

        await self.store.write(_insert, label=f"save {memory_type.value} memory")

    # =========================================================================
    # Clearing
    # =========================================================================

    async def clear_session_memory(self, session_id: str) -> int:
        """Delete persisted and in-memory records for one session."""
        async def _delete(session):
            result = await session.execute(
                delete(MemoryRecordModel).where(MemoryRecordModel.session_id == session_id)
            )
            return result.rowcount or 0

        deleted = await self.store.write(_delete, label="clear session memory")
        self._sessions.pop(session_id, None)

        await self.events.emit("session-cleared", {"session_id": session_id, "deleted_count": deleted})
        return deleted

    async def clear_project_memory(self, project_id: str) -> int:
        """Delete persisted and in-memory records for every session of a project."""
        async def _delete(session):
            result = await session.execute(
                delete(MemoryRecordModel).where(MemoryRecordModel.project_id == project_id)
            )
            return result.rowcount or 0

        deleted = await self.store.write(_delete, label="clear project memory")
        for session_id in [sid for sid, m in self._sessions.items() if m.project_id == project_id]:
            del self._sessions[session_id]

        await self.events.emit("project-memory-cleared", {"project_id": project_id, "deleted_count": deleted})
        return deleted

    async def cleanup_expired_memory(self) -> int:
        """Delete records past their expiration. Returns the deleted count."""
        now = utc_now()

        async def _delete(session):
            result = await session.execute(
                delete(MemoryRecordModel).where(
                    MemoryRecordModel.expires_at.is_not(None),
                    MemoryRecordModel.expires_at <= now,
                )
            )
            return result.rowcount or 0

        deleted = await self.store.write(_delete, label="cleanup expired memory")
        for session_id in [sid for sid, m in self._sessions.items() if m.is_expired(now)]:
            del self._sessions[session_id]

        if deleted > 0:
            logger.info("Removed %d expired memory record(s)", deleted)
            await self.events.emit("memory-cleaned", {"deleted_count": deleted})
        return deleted

    # =========================================================================
    # Project-level queries
    # =========================================================================

    async def _recent_content(self, project_id: str, memory_type: MemoryType, limit: int) -> list[dict]:
        now = utc_now()
        stmt = (
            select(MemoryRecordModel.content)
            .where(
                MemoryRecordModel.project_id == project_id,
                MemoryRecordModel.memory_type == memory_type.value,
                or_(MemoryRecordModel.expires_at.is_(None), MemoryRecordModel.expires_at > now),
            )
            .order_by(MemoryRecordModel.created_at.desc(), MemoryRecordModel.sequence.desc())
            .limit(limit)
        )
        async with self.store.session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def get_recent_decisions(self, project_id: str, limit: int = 20) -> list[Decision]:
        """Most recent decisions across all sessions of a project."""
        return [Decision.from_dict(c) for c in await self._recent_content(project_id, MemoryType.DECISION, limit)]

    async def get_recently_created_items(self, project_id: str, limit: int = 20) -> list[CreatedItem]:
        return [
            CreatedItem.from_dict(c)
            for c in await self._recent_content(project_id, MemoryType.CREATED_ITEM, limit)
        ]

    async def get_project_memory(self, project_id: str) -> list[MemorySession]:
        """Every session of a project with persisted records, newest first."""
        stmt = (
            select(MemoryRecordModel.session_id, func.max(MemoryRecordModel.created_at).label("latest"))
            .where(MemoryRecordModel.project_id == project_id)
            .group_by(MemoryRecordModel.session_id)
            .order_by(func.max(MemoryRecordModel.created_at).desc())
        )
        async with self.store.session() as session:
            session_ids = [row.session_id for row in (await session.execute(stmt)).all()]

        sessions = []
        for session_id in session_ids:
            memory = await self.get_session(session_id)
            if memory is not None:
                sessions.append(memory)
        return sessions

    async def get_project_stats(self, project_id: str) -> dict:
        """Get memory statistics for a project."""
        async with self.store.session() as session:
            total_sessions = (await session.execute(
                select(func.count(func.distinct(MemoryRecordModel.session_id)))
                .where(MemoryRecordModel.project_id == project_id)
            )).scalar()
            type_counts = (await session.execute(
                select(MemoryRecordModel.memory_type, func.count())
                .where(MemoryRecordModel.project_id == project_id)
                .group_by(MemoryRecordModel.memory_type)
            )).all()

        counts = {memory_type: count for memory_type, count in type_counts}
        return {
            "total_sessions": total_sessions or 0,
            "total_decisions": counts.get(MemoryType.DECISION.value, 0),
            "total_created_items": counts.get(MemoryType.CREATED_ITEM.value, 0),
            "total_rejections": counts.get(MemoryType.REJECTION.value, 0),
            "total_story_discussions": counts.get(MemoryType.STORY_DISCUSSION.value, 0),
            "active_sessions": sum(1 for m in self._sessions.values() if m.project_id == project_id),
        }

    async def build_context(self, session_id: str, max_items: int = 5) -> str:
        """Summarize a session as prompt-ready text. Empty for unknown sessions."""
        memory = await self.get_session(session_id)
        if memory is None:
            return ""

        lines = []
        decisions = list(memory.recent_decisions)[:max_items]
        if decisions:
            lines.append("Recent decisions:")
            for d in decisions:
                reason = f" ({d.reason})" if d.reason else ""
                lines.append(f"- {d.type.value} {d.item_type.value}: {d.item_title}{reason}")

        created = list(memory.created_items)[:max_items]
        if created:
            lines.append("Recently created:")
            lines.extend(f"- {i.type.value}: {i.title}" for i in created)

        if memory.rejected_suggestions:
            lines.append("Do not suggest again:")
            lines.extend(f"- {s}" for s in list(memory.rejected_suggestions)[-max_items:])

        if len(memory.recent_story_ids):
            lines.append("Recently discussed stories: " + ", ".join(memory.recent_story_ids))

        return "\n".join(lines)
