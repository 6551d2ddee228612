"""
Shared fixtures: a throwaway project database plus in-process fakes for the
execution backend and the decomposer.
"""

import asyncio
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from sprintforge.backlog import SqlBacklogStore
from sprintforge.config import OrchestrationConfig
from sprintforge.db.store import DurableStore
from sprintforge.decomposer import DecompositionResult, Subtask
from sprintforge.errors import ExternalServiceError
from sprintforge.execution import ExecutionResult
from sprintforge.learning import LearningEngine
from sprintforge.memory import MemoryStore
from sprintforge.scheduler import TaskScheduler


class FakeBackend:
    """
    Execution backend driven by a script of outcomes per task title.

    Outcomes are ExecutionResult instances or exceptions to raise; titles
    without a script succeed. Set `gate` to an asyncio.Event to hold every
    execution until it is set.
    """

    def __init__(self, outcomes=None):
        self.outcomes = {title: list(results) for title, results in (outcomes or {}).items()}
        self.executed: list[str] = []
        self.cancelled: list[str] = []
        self.started = asyncio.Event()
        self.gate = None

    async def execute(self, task):
        self.executed.append(task.id)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        script = self.outcomes.get(task.title)
        outcome = script.pop(0) if script else ExecutionResult(success=True, output=f"did {task.title}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def cancel(self, task_id):
        self.cancelled.append(task_id)


class FakeDecomposer:
    """Returns a fixed design -> build -> test chain; fails for titles in `failing`."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls: list[str] = []

    async def decompose(self, item, autonomy_level):
        self.calls.append(item.id)
        if item.title in self.failing:
            raise ExternalServiceError("decomposer", "model unavailable")
        return DecompositionResult(subtasks=[
            Subtask(title=f"Design {item.title}"),
            Subtask(title=f"Build {item.title}", depends_on=[0]),
            Subtask(title=f"Test {item.title}", depends_on=[1]),
        ])


def record_events(emitter) -> list:
    """Collect every event an emitter delivers."""
    events = []
    emitter.on("*", events.append)
    return events


def names(events) -> list[str]:
    return [e.name for e in events]


@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config():
    return OrchestrationConfig()


@pytest_asyncio.fixture
async def store(temp_project, config):
    """DurableStore backed by a SQLite file in the temp project."""
    store = await DurableStore.for_project(temp_project, config).init()
    yield store
    await store.close()


@pytest.fixture
def learning(store, config):
    return LearningEngine(store, config)


@pytest.fixture
def memory(store, config):
    return MemoryStore(store, config)


@pytest.fixture
def backlog(store):
    return SqlBacklogStore(store)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def scheduler(store, learning, memory, backend, config):
    return TaskScheduler(store, learning=learning, memory=memory, backend=backend, config=config)
