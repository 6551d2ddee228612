"""
Orchestrator
============

Composition root. Builds one DurableStore and wires the Learning Engine,
Memory Store, Task Scheduler and Sprint Planner around it, with every
component's events mirrored into the durable event log.

    async with await create_orchestrator(project_dir) as forge:
        await forge.open_project("proj_1")
        await forge.run_cycle("proj_1", auto_decompose=True, auto_enqueue=True)
"""

import logging
from pathlib import Path
from typing import Optional

from sprintforge.backlog import SqlBacklogStore
from sprintforge.config import OrchestrationConfig
from sprintforge.db.store import DurableStore
from sprintforge.decomposer import ClaudeDecomposer, Decomposer
from sprintforge.errors import NoCandidatesError
from sprintforge.event_log import EventLog
from sprintforge.execution import ClaudeExecutionBackend, ExecutionBackend
from sprintforge.learning import LearningEngine
from sprintforge.memory import MemoryStore
from sprintforge.models import AutonomyLevel, Task
from sprintforge.planner import SprintPlan, SprintPlanner
from sprintforge.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

ORCHESTRATOR_AGENT = "orchestrator"


class Orchestrator:
    """Holds the wired components for one database."""

    def __init__(
        self,
        project_dir: Path,
        store: DurableStore,
        config: Optional[OrchestrationConfig] = None,
        backend: Optional[ExecutionBackend] = None,
        decomposer: Optional[Decomposer] = None,
    ):
        self.project_dir = Path(project_dir)
        self.config = config or OrchestrationConfig()
        self.store = store

        self.backlog = SqlBacklogStore(store)
        self.learning = LearningEngine(store, self.config)
        self.memory = MemoryStore(store, self.config)
        self.scheduler = TaskScheduler(
            store,
            learning=self.learning,
            memory=self.memory,
            backend=backend,
            config=self.config,
        )
        self.planner = SprintPlanner(
            store,
            self.backlog,
            scheduler=self.scheduler,
            decomposer=decomposer,
            config=self.config,
        )

        self.event_log = EventLog(store)
        for emitter in self.emitters:
            self.event_log.attach(emitter)

        self._sessions: dict[str, str] = {}

    @property
    def emitters(self):
        return [self.learning.events, self.memory.events, self.scheduler.events, self.planner.events]

    async def __aenter__(self) -> "Orchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open_project(self, project_id: str) -> str:
        """
        Load a project's tasks and start the orchestrator's memory session.

        Returns the memory session id. Calling again for an open project
        returns the existing session.
        """
        if project_id in self._sessions:
            return self._sessions[project_id]

        loaded = await self.scheduler.load_project(project_id)
        session_id = await self.memory.start_session(project_id, ORCHESTRATOR_AGENT)
        self.scheduler.attach_memory_session(project_id, session_id)
        self._sessions[project_id] = session_id
        logger.info("Opened project %s (%d task(s) loaded)", project_id, loaded)
        return session_id

    async def run_cycle(
        self,
        project_id: str,
        capacity: Optional[int] = None,
        default_autonomy_level: AutonomyLevel = AutonomyLevel.SUPERVISED,
        auto_decompose: bool = False,
        auto_enqueue: bool = False,
    ) -> tuple[Optional[SprintPlan], list[Task]]:
        """
        One pass of the planning loop.

        Plans a sprint when none is active (or the active one just finished),
        then drains the task queue if an execution backend is configured.
        """
        await self.open_project(project_id)
        plan_kwargs = dict(
            capacity=capacity,
            default_autonomy_level=default_autonomy_level,
            auto_decompose=auto_decompose,
            auto_enqueue=auto_enqueue,
        )

        if await self.planner.get_active_sprint(project_id) is None:
            try:
                plan = await self.planner.generate_next_sprint(project_id, **plan_kwargs)
            except NoCandidatesError as e:
                logger.info("Nothing to plan for %s: %s", project_id, e)
                plan = None
        else:
            plan = await self.planner.monitor_and_continue(project_id, **plan_kwargs)

        processed: list[Task] = []
        if self.scheduler.backend is not None:
            processed = await self.scheduler.run_until_idle(project_id)
            await self.planner.sync_item_status_from_tasks(project_id)
        return plan, processed

    async def cleanup(self, project_id: str) -> dict:
        """Drop low-confidence patterns and expired memory."""
        return {
            "patterns": await self.learning.cleanup_low_confidence_patterns(project_id),
            "memory": await self.memory.cleanup_expired_memory(),
        }

    async def close(self) -> None:
        for project_id, session_id in list(self._sessions.items()):
            await self.memory.end_session(session_id)
            del self._sessions[project_id]
        self.event_log.detach_all()
        await self.store.close()


async def create_orchestrator(
    project_dir: Path,
    config: Optional[OrchestrationConfig] = None,
    *,
    backend: Optional[ExecutionBackend] = None,
    decomposer: Optional[Decomposer] = None,
    use_claude: bool = True,
) -> Orchestrator:
    """
    Build an Orchestrator for a project directory.

    With `use_claude` the Claude Code SDK backend and decomposer fill in
    whichever of `backend` / `decomposer` was not supplied.
    """
    project_dir = Path(project_dir)
    config = config or OrchestrationConfig.load(project_dir)
    store = await DurableStore.for_project(project_dir, config).init()

    if use_claude:
        if backend is None:
            backend = ClaudeExecutionBackend(
                project_dir,
                model=config.executor_model,
                max_turns=config.executor_max_turns,
            )
        if decomposer is None:
            decomposer = ClaudeDecomposer(project_dir, model=config.executor_model)

    return Orchestrator(project_dir, store, config, backend=backend, decomposer=decomposer)
