"""
Database Models for SprintForge
===============================

SQLAlchemy models for persisting tasks, sprints, backlog items, learned
patterns, agent memory records and the event log.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import String, Integer, Float, DateTime, JSON, Text, Boolean
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


# =============================================================================
# Scheduler Tables
# =============================================================================

class TaskModel(Base):
    """A scheduled unit of work."""
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(100), index=True)
    sequence: Mapped[int] = mapped_column(Integer, default=0)  # FIFO tie breaker

    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[str] = mapped_column(String(20), default="medium")
    autonomy_level: Mapped[str] = mapped_column(String(20), default="supervised")
    status: Mapped[str] = mapped_column(String(20), default="queued", index=True)
    dependencies: Mapped[List[str]] = mapped_column(JSON, default=list)

    # Retry tracking
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)

    # Lifecycle timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Outcome
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Approval
    approved: Mapped[bool] = mapped_column(Boolean, default=False)
    approved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    auto_approved_pattern_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Traceability
    backlog_item_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    parent_task_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    input_data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)


# =============================================================================
# Planner Tables
# =============================================================================

class SprintModel(Base):
    """A time-boxed sprint."""
    __tablename__ = "sprints"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(100), index=True)
    name: Mapped[str] = mapped_column(String(255))
    goal: Mapped[str] = mapped_column(Text, default="")
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)  # planning, active, completed, cancelled
    capacity_points: Mapped[int] = mapped_column(Integer, default=0)
    committed_points: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class BacklogItemModel(Base):
    """A backlog (roadmap) item that may be pulled into a sprint."""
    __tablename__ = "backlog_items"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(100), index=True)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[str] = mapped_column(String(20), default="medium")
    story_points: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="planned", index=True)
    lane: Mapped[str] = mapped_column(String(20), default="now", index=True)
    sprint_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# =============================================================================
# Learning Tables
# =============================================================================

class PatternModel(Base):
    """A learned keyword-to-outcome association."""
    __tablename__ = "learned_patterns"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(100), index=True)
    kind: Mapped[str] = mapped_column(String(20), index=True)  # approval, rejection, edit_format
    item_type: Mapped[str] = mapped_column(String(50), default="")
    keywords: Mapped[List[str]] = mapped_column(JSON, default=list)

    original_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    corrected_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    # Statistics
    confidence: Mapped[float] = mapped_column(Float, default=0.5, index=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# =============================================================================
# Memory Tables
# =============================================================================

class MemoryRecordModel(Base):
    """One persisted agent-memory entry (decision, created item, rejection, story discussion)."""
    __tablename__ = "agent_memory"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(100), index=True)
    project_id: Mapped[str] = mapped_column(String(100), index=True)
    agent_type: Mapped[str] = mapped_column(String(50))
    memory_type: Mapped[str] = mapped_column(String(30), index=True)  # decision, created_item, rejection, story_discussion
    content: Mapped[Dict[str, Any]] = mapped_column(JSON)
    sequence: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)


# =============================================================================
# Event Log
# =============================================================================

class EventModel(Base):
    """A single emitted orchestration event."""
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    name: Mapped[str] = mapped_column(String(50), index=True)
    source: Mapped[str] = mapped_column(String(50), default="system")
    project_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON)
