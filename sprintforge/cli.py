#!/usr/bin/env python
"""
SprintForge CLI - Plan sprints, run the task queue and inspect what was learned.

Usage:
    sprintforge backlog add TITLE [--points N] [--priority P] [--lane L]
    sprintforge backlog list
    sprintforge plan [--capacity N] [--duration DAYS] [--decompose] [--enqueue]
    sprintforge sprint
    sprintforge tasks [--status STATUS]
    sprintforge approve TASK_ID
    sprintforge reject TASK_ID [--reason TEXT]
    sprintforge run [--decompose] [--enqueue]
    sprintforge patterns [--limit N]
    sprintforge memory
    sprintforge cleanup
    sprintforge events [--limit N] [--name NAME]

Every command accepts --project-dir (default: current directory) and
--project (default: the project directory's name).
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from sprintforge import __version__
from sprintforge.config import OrchestrationConfig
from sprintforge.errors import NoCandidatesError, NotFoundError, SprintForgeError
from sprintforge.event_log import format_event_summary
from sprintforge.models import AutonomyLevel, Lane, Priority, TaskStatus
from sprintforge.orchestrator import Orchestrator, create_orchestrator
from sprintforge.output import (
    console,
    create_table,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_muted,
    print_progress_bar,
    print_success,
    print_table,
    print_warning,
    setup_rich_logging,
    spinner,
    status_text,
)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sprintforge",
        description="SprintForge - autonomous sprint planning and task orchestration",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--project-dir", "-p", type=Path, default=Path.cwd(), help="Project directory")
    parser.add_argument("--project", help="Project id (default: project directory name)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    backlog = sub.add_parser("backlog", help="Manage backlog items")
    backlog_sub = backlog.add_subparsers(dest="backlog_command", required=True)
    add = backlog_sub.add_parser("add", help="Add a backlog item")
    add.add_argument("title")
    add.add_argument("--description", default="")
    add.add_argument("--points", type=int, default=1)
    add.add_argument("--priority", choices=[p.value for p in Priority], default=Priority.MEDIUM.value)
    add.add_argument("--lane", choices=[l.value for l in Lane], default=Lane.NOW.value)
    add.set_defaults(func=cmd_backlog_add)
    backlog_list = backlog_sub.add_parser("list", help="List backlog items")
    backlog_list.set_defaults(func=cmd_backlog_list)

    for name, help_text, func in (
        ("plan", "Plan the next sprint", cmd_plan),
        ("run", "Plan if needed, then drain the task queue", cmd_run),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--capacity", type=int, help="Story point capacity (default: estimated)")
        p.add_argument(
            "--autonomy",
            choices=[a.value for a in AutonomyLevel],
            default=AutonomyLevel.SUPERVISED.value,
        )
        p.add_argument("--decompose", action="store_true", help="Decompose selected items into tasks")
        p.add_argument("--enqueue", action="store_true", help="Enqueue decomposed tasks")
        p.set_defaults(func=func)
    sub.choices["plan"].add_argument("--duration", type=int, help="Sprint length in days")

    sprint = sub.add_parser("sprint", help="Show the active sprint")
    sprint.set_defaults(func=cmd_sprint)

    tasks = sub.add_parser("tasks", help="List tasks")
    tasks.add_argument("--status", choices=[s.value for s in TaskStatus])
    tasks.set_defaults(func=cmd_tasks)

    approve = sub.add_parser("approve", help="Approve a task waiting for review")
    approve.add_argument("task_id")
    approve.set_defaults(func=cmd_approve)

    reject = sub.add_parser("reject", help="Reject a task waiting for review")
    reject.add_argument("task_id")
    reject.add_argument("--reason")
    reject.set_defaults(func=cmd_reject)

    patterns = sub.add_parser("patterns", help="Show learned patterns")
    patterns.add_argument("--limit", type=int, default=10)
    patterns.set_defaults(func=cmd_patterns)

    memory = sub.add_parser("memory", help="Show agent memory statistics")
    memory.set_defaults(func=cmd_memory)

    cleanup = sub.add_parser("cleanup", help="Drop low-confidence patterns and expired memory")
    cleanup.set_defaults(func=cmd_cleanup)

    events = sub.add_parser("events", help="Show recent events")
    events.add_argument("--limit", type=int, default=25)
    events.add_argument("--name")
    events.set_defaults(func=cmd_events)

    return parser.parse_args(argv)


# =============================================================================
# Commands
# =============================================================================

async def cmd_backlog_add(forge: Orchestrator, project_id: str, args) -> int:
    item = await forge.backlog.add_item(
        project_id,
        args.title,
        description=args.description,
        priority=Priority(args.priority),
        story_points=args.points,
        lane=Lane(args.lane),
    )
    print_success(f"Added {item.id}: {item.title} ({item.story_points} pts)")
    return 0


async def cmd_backlog_list(forge: Orchestrator, project_id: str, args) -> int:
    items = await forge.backlog.list_items(project_id)
    if not items:
        print_info("Backlog is empty")
        return 0

    table = create_table(title=f"Backlog ({len(items)})", columns=["Id", "Title", "Priority", "Points", "Lane", "Status", "Sprint"])
    for item in items:
        table.add_row(
            item.id, item.title, item.priority.value, str(item.story_points),
            item.lane.value, status_text(item.status.value), item.sprint_id or "",
        )
    print_table(table)
    return 0


async def cmd_plan(forge: Orchestrator, project_id: str, args) -> int:
    await forge.open_project(project_id)
    try:
        with spinner("Planning sprint..."):
            plan = await forge.planner.generate_next_sprint(
                project_id,
                capacity=args.capacity,
                duration_days=args.duration,
                default_autonomy_level=AutonomyLevel(args.autonomy),
                auto_decompose=args.decompose,
                auto_enqueue=args.enqueue,
            )
    except NoCandidatesError as e:
        print_warning(str(e))
        return 1

    print_header(plan.sprint.name)
    print_key_value_table({
        "Goal": plan.sprint.goal,
        "Items": len(plan.selected_items),
        "Points": f"{plan.total_points}/{plan.sprint.capacity_points}",
        "Ends": plan.sprint.end_date.strftime("%Y-%m-%d"),
        "Subtasks": plan.decomposed_tasks,
        "Enqueued": len(plan.enqueued_tasks),
    })
    for item_id, error in plan.decomposition_errors.items():
        print_warning(f"Could not decompose {item_id}: {error}")
    return 0


async def cmd_run(forge: Orchestrator, project_id: str, args) -> int:
    plan, processed = await forge.run_cycle(
        project_id,
        capacity=args.capacity,
        default_autonomy_level=AutonomyLevel(args.autonomy),
        auto_decompose=args.decompose,
        auto_enqueue=args.enqueue,
    )
    if plan is not None:
        print_success(f"Planned {plan.sprint.name}: {plan.sprint.goal}")
    stats = forge.scheduler.get_queue_stats(project_id)
    print_info(
        f"Processed {len(processed)} task(s); {stats['completed']} completed, "
        f"{stats['failed']} failed, {stats['awaiting_approval']} awaiting approval"
    )
    return 0


async def cmd_sprint(forge: Orchestrator, project_id: str, args) -> int:
    sprint = await forge.planner.get_active_sprint(project_id)
    if sprint is None:
        print_info("No active sprint")
        return 0

    progress = await forge.planner.get_sprint_progress(sprint.id)
    print_header(sprint.name)
    print_muted(sprint.goal)
    print_progress_bar(progress.completed_points, progress.total_points, title="Points")
    print_key_value_table({
        "Stories": f"{progress.completed_stories}/{progress.total_stories} done",
        "In progress": progress.in_progress_stories,
        "Blocked": progress.blocked_stories,
        "Velocity": f"{progress.velocity} pts/week",
        "Estimated completion": (
            progress.estimated_completion.strftime("%Y-%m-%d") if progress.estimated_completion else "N/A"
        ),
    })

    items = await forge.planner.get_sprint_items(sprint.id)
    table = create_table(columns=["Id", "Title", "Points", "Status"])
    for item in items:
        table.add_row(item.id, item.title, str(item.story_points), status_text(item.status.value))
    print_table(table)
    return 0


async def cmd_tasks(forge: Orchestrator, project_id: str, args) -> int:
    await forge.open_project(project_id)
    status = TaskStatus(args.status) if args.status else None
    tasks = forge.scheduler.list_tasks(project_id, status)
    if not tasks:
        print_info("No tasks")
        return 0

    table = create_table(title=f"Tasks ({len(tasks)})", columns=["Id", "Title", "Priority", "Autonomy", "Status", "Retries"])
    for task in tasks:
        table.add_row(
            task.id, task.title, task.priority.value, task.autonomy_level.value,
            status_text(task.status.value), f"{task.retry_count}/{task.max_retries}",
        )
    print_table(table)
    return 0


async def cmd_approve(forge: Orchestrator, project_id: str, args) -> int:
    await forge.open_project(project_id)
    task = await forge.scheduler.approve(args.task_id, approved_by="cli")
    if task is None:
        raise NotFoundError(f"Task not found: {args.task_id}")
    print_success(f"Approved {task.id}: {task.title}")
    return 0


async def cmd_reject(forge: Orchestrator, project_id: str, args) -> int:
    await forge.open_project(project_id)
    task = await forge.scheduler.reject(args.task_id, args.reason)
    if task is None:
        raise NotFoundError(f"Task not found: {args.task_id}")
    print_success(f"Rejected {task.id}: {task.title}")
    return 0


async def cmd_patterns(forge: Orchestrator, project_id: str, args) -> int:
    stats = await forge.learning.get_project_stats(project_id)
    print_header("Learned Patterns")
    print_key_value_table({
        "Total": stats["total_patterns"],
        "High confidence": stats["high_confidence_patterns"],
        "Auto-approve eligible": stats["auto_approve_eligible_patterns"],
        "Average confidence": f"{stats['average_confidence']:.2f}",
    })

    patterns = await forge.learning.get_top_patterns(project_id, limit=args.limit)
    if patterns:
        table = create_table(columns=["Kind", "Keywords", "Confidence", "Used", "Success", "Failure"])
        for pattern in patterns:
            table.add_row(
                pattern.kind.value, ", ".join(pattern.keywords[:5]), f"{pattern.confidence:.2f}",
                str(pattern.usage_count), str(pattern.success_count), str(pattern.failure_count),
            )
        print_table(table)
    return 0


async def cmd_memory(forge: Orchestrator, project_id: str, args) -> int:
    stats = await forge.memory.get_project_stats(project_id)
    print_header("Agent Memory")
    print_key_value_table({key.replace("_", " ").capitalize(): value for key, value in stats.items()})
    return 0


async def cmd_cleanup(forge: Orchestrator, project_id: str, args) -> int:
    removed = await forge.cleanup(project_id)
    print_success(f"Removed {removed['patterns']} pattern(s) and {removed['memory']} memory record(s)")
    return 0


async def cmd_events(forge: Orchestrator, project_id: str, args) -> int:
    events = await forge.event_log.recent(project_id, limit=args.limit, name=args.name)
    if not events:
        print_info("No matching events found")
        return 0
    print_header(f"Events ({len(events)})")
    for event in events:
        console.print(format_event_summary(event), markup=False)
    return 0


# =============================================================================
# Entry point
# =============================================================================

async def _run(args) -> int:
    project_dir = args.project_dir.resolve()
    project_id = args.project or project_dir.name
    config = OrchestrationConfig.load(project_dir)

    async with await create_orchestrator(project_dir, config) as forge:
        return await args.func(forge, project_id, args)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_rich_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        return asyncio.run(_run(args))
    except SprintForgeError as e:
        print_error(str(e))
        return 1
    except ValueError as e:
        print_error(f"Invalid configuration: {e}")
        return 2
    except KeyboardInterrupt:
        print_warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
