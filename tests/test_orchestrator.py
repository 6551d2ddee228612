"""
Tests for the Orchestrator and CLI
==================================

End-to-end runs through the composition root with fake execution and
decomposition, plus the CLI commands that do not reach the Claude SDK.
"""

import pytest

from conftest import FakeBackend, FakeDecomposer
from sprintforge.cli import main
from sprintforge.config import OrchestrationConfig
from sprintforge.execution import ExecutionResult
from sprintforge.models import AutonomyLevel, ItemStatus, SprintStatus, TaskStatus
from sprintforge.orchestrator import ORCHESTRATOR_AGENT, create_orchestrator

PROJECT = "proj_e2e"


async def make_forge(temp_project, backend=None):
    return await create_orchestrator(
        temp_project,
        OrchestrationConfig(),
        backend=backend or FakeBackend(),
        decomposer=FakeDecomposer(),
        use_claude=False,
    )


# =============================================================================
# Orchestrator Tests
# =============================================================================

class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_open_project_starts_one_session(self, temp_project):
        async with await make_forge(temp_project) as forge:
            first = await forge.open_project(PROJECT)
            assert await forge.open_project(PROJECT) == first

            session = await forge.memory.get_session(first)
            assert session.agent_type == ORCHESTRATOR_AGENT

    @pytest.mark.asyncio
    async def test_autonomous_cycle(self, temp_project):
        async with await make_forge(temp_project) as forge:
            login = await forge.backlog.add_item(PROJECT, "Login", story_points=3)

            plan, processed = await forge.run_cycle(
                PROJECT, capacity=5, default_autonomy_level=AutonomyLevel.AUTO,
                auto_decompose=True, auto_enqueue=True,
            )

            assert plan is not None
            assert [i.id for i in plan.selected_items] == [login.id]
            assert len(processed) == 3
            assert all(t.status is TaskStatus.COMPLETED for t in processed)
            assert (await forge.backlog.get_item(login.id)).status == ItemStatus.DONE

            plan, processed = await forge.run_cycle(PROJECT, capacity=5)
            assert plan is None
            assert processed == []
            sprints = await forge.planner.list_sprints(PROJECT)
            assert [s.status for s in sprints] == [SprintStatus.COMPLETED]

            names = {e.name for e in await forge.event_log.recent(PROJECT, limit=200)}
            assert {"sprint-created", "story-decomposed", "task-completed", "sprint-completed"} <= names

    @pytest.mark.asyncio
    async def test_supervised_cycle_waits_for_approval(self, temp_project):
        async with await make_forge(temp_project) as forge:
            await forge.backlog.add_item(PROJECT, "Login", story_points=3)

            _, processed = await forge.run_cycle(PROJECT, capacity=5, auto_decompose=True, auto_enqueue=True)

            assert len(processed) == 1
            assert processed[0].status is TaskStatus.AWAITING_APPROVAL
            stats = forge.scheduler.get_queue_stats(PROJECT)
            assert stats["awaiting_approval"] == 1

            await forge.scheduler.approve(processed[0].id)
            decisions = await forge.memory.get_recent_decisions(PROJECT)
            assert [d.item_title for d in decisions] == ["Design Login"]

    @pytest.mark.asyncio
    async def test_failures_block_the_item(self, temp_project):
        backend = FakeBackend({"Design Login": [ExecutionResult(success=False, error="broken build")] * 3})
        async with await make_forge(temp_project, backend) as forge:
            login = await forge.backlog.add_item(PROJECT, "Login", story_points=3)

            await forge.run_cycle(
                PROJECT, capacity=5, default_autonomy_level=AutonomyLevel.AUTO,
                auto_decompose=True, auto_enqueue=True,
            )

            assert (await forge.backlog.get_item(login.id)).status == ItemStatus.BLOCKED
            assert (await forge.planner.get_active_sprint(PROJECT)) is not None

    @pytest.mark.asyncio
    async def test_nothing_to_plan(self, temp_project):
        async with await make_forge(temp_project) as forge:
            plan, processed = await forge.run_cycle(PROJECT)
            assert plan is None
            assert processed == []

    @pytest.mark.asyncio
    async def test_tasks_survive_restart(self, temp_project):
        async with await make_forge(temp_project) as forge:
            await forge.backlog.add_item(PROJECT, "Login", story_points=3)
            await forge.run_cycle(PROJECT, capacity=5, auto_decompose=True, auto_enqueue=True)

        async with await make_forge(temp_project) as forge:
            await forge.open_project(PROJECT)
            tasks = forge.scheduler.list_tasks(PROJECT)
            assert len(tasks) == 3
            assert [t.status for t in tasks].count(TaskStatus.AWAITING_APPROVAL) == 1

    @pytest.mark.asyncio
    async def test_cleanup(self, temp_project):
        async with await make_forge(temp_project) as forge:
            assert await forge.cleanup(PROJECT) == {"patterns": 0, "memory": 0}


# =============================================================================
# CLI Tests
# =============================================================================

class TestCli:
    def run(self, temp_project, *argv) -> int:
        return main(["--project-dir", str(temp_project), "--project", PROJECT, *argv])

    def test_backlog_plan_and_inspect(self, temp_project):
        assert self.run(temp_project, "backlog", "add", "Login", "--points", "3", "--priority", "high") == 0
        assert self.run(temp_project, "backlog", "add", "Billing", "--points", "13") == 0
        assert self.run(temp_project, "backlog", "list") == 0

        assert self.run(temp_project, "plan", "--capacity", "5") == 0
        assert self.run(temp_project, "sprint") == 0
        assert self.run(temp_project, "tasks") == 0
        assert self.run(temp_project, "patterns") == 0
        assert self.run(temp_project, "memory") == 0
        assert self.run(temp_project, "events", "--name", "sprint-created") == 0
        assert self.run(temp_project, "cleanup") == 0

    def test_plan_without_candidates(self, temp_project):
        assert self.run(temp_project, "plan", "--capacity", "5") == 1

    def test_unknown_task(self, temp_project):
        assert self.run(temp_project, "approve", "task_missing") == 1
        assert self.run(temp_project, "reject", "task_missing", "--reason", "nope") == 1

    def test_invalid_arguments(self, temp_project):
        assert self.run(temp_project, "plan", "--capacity", "-3") == 1

    def test_usage_errors_exit(self, temp_project):
        with pytest.raises(SystemExit):
            self.run(temp_project, "plan", "--autonomy", "reckless")
