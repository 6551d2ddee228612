"""
Database Package
================

Exports key database components.
"""

from sprintforge.db.models import (
    # Base
    Base,
    # Scheduler / planner tables
    TaskModel, SprintModel, BacklogItemModel,
    # Learning tables
    PatternModel,
    # Memory tables
    MemoryRecordModel,
    # Event log
    EventModel,
)
from sprintforge.db.connection import project_database_url, create_tables
from sprintforge.db.store import DurableStore, is_contention_error
