"""
Story Decomposition
===================

Breaks a backlog item into ordered, dependency-linked subtasks.

`Decomposer` is the contract the Sprint Planner consumes. `ClaudeDecomposer`
asks a Claude Code SDK session for subtasks in a marker format and parses the
reply with `parse_subtasks()`.

Dependencies between subtasks are expressed as indices into the returned list;
the planner maps them to task ids when it enqueues.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from claude_code_sdk import ClaudeCodeOptions, ClaudeSDKClient, ClaudeSDKError

from sprintforge.config import DEFAULT_MODEL
from sprintforge.errors import ExternalServiceError
from sprintforge.models import AutonomyLevel, BacklogItem, Priority, Task

logger = logging.getLogger(__name__)

SUBTASK_MARKER = "---SUBTASK---"


@dataclass
class Subtask:
    """One suggested unit of work."""
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    depends_on: list[int] = field(default_factory=list)  # indices of earlier subtasks
    estimated_minutes: int = 30

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "depends_on": list(self.depends_on),
            "estimated_minutes": self.estimated_minutes,
        }


@dataclass
class DecompositionResult:
    subtasks: list[Subtask] = field(default_factory=list)
    enqueued_tasks: list[Task] = field(default_factory=list)


@runtime_checkable
class Decomposer(Protocol):
    async def decompose(self, item: BacklogItem, autonomy_level: AutonomyLevel) -> DecompositionResult:
        ...


def priority_from_score(score: int) -> Priority:
    """Map a 1-100 urgency score onto a priority."""
    if score >= 80:
        return Priority.CRITICAL
    if score >= 60:
        return Priority.HIGH
    if score >= 40:
        return Priority.MEDIUM
    return Priority.LOW


def _field(block: str, name: str) -> Optional[str]:
    match = re.search(rf"^\s*{name}:\s*(.+)$", block, re.IGNORECASE | re.MULTILINE)
    return match.group(1).strip() if match else None


def parse_subtasks(output: str) -> list[Subtask]:
    """
    Parse marker-delimited subtasks.

    Blocks without a TITLE are skipped. Dependency indices that do not point
    at an earlier subtask are dropped.
    """
    subtasks: list[Subtask] = []
    for block in output.split(SUBTASK_MARKER)[1:]:
        block = block.split("---END---")[0]
        title = _field(block, "TITLE")
        if not title:
            continue

        depends = _field(block, "DEPENDS_ON") or "none"
        indices = []
        if depends.lower() != "none":
            for part in depends.split(","):
                part = part.strip()
                if part.isdigit() and int(part) < len(subtasks):
                    indices.append(int(part))

        minutes = _field(block, "ESTIMATED_MINUTES") or "30"
        score = _field(block, "PRIORITY") or "50"
        subtasks.append(Subtask(
            title=title,
            description=_field(block, "DESCRIPTION") or "",
            priority=priority_from_score(int(score)) if score.isdigit() else Priority.MEDIUM,
            depends_on=indices,
            estimated_minutes=int(minutes) if minutes.isdigit() else 30,
        ))
    return subtasks


def build_decomposition_prompt(item: BacklogItem) -> str:
    return f"""You are a technical lead. Break down the following backlog item into smaller, actionable subtasks.

Item: {item.title}
Description: {item.description or '(none)'}
Story points: {item.story_points}

For each subtask, provide the details in this EXACT format (use exactly these markers):

{SUBTASK_MARKER}
INDEX: [0-based index number]
TITLE: [Short, actionable title]
DESCRIPTION: [What needs to be done]
ESTIMATED_MINUTES: [number]
DEPENDS_ON: [comma-separated indices of prerequisite subtasks, or "none"]
PRIORITY: [1-100, higher is more urgent]
---END---

Requirements:
1. Break down into 3-8 actionable subtasks
2. Order subtasks so prerequisites come first
3. Treat testing as its own subtask"""


class ClaudeDecomposer:
    """Decomposer backed by a short Claude Code SDK session."""

    def __init__(self, project_dir: Path, model: str = DEFAULT_MODEL):
        self.project_dir = Path(project_dir)
        self.model = model

    def create_client(self) -> ClaudeSDKClient:
        return ClaudeSDKClient(
            options=ClaudeCodeOptions(
                model=self.model,
                system_prompt="You plan software work. Reply only in the requested format.",
                allowed_tools=[],
                max_turns=1,
                cwd=str(self.project_dir.resolve()),
            )
        )

    async def decompose(self, item: BacklogItem, autonomy_level: AutonomyLevel) -> DecompositionResult:
        response_text = ""
        try:
            async with self.create_client() as client:
                await client.query(build_decomposition_prompt(item))
                async for msg in client.receive_response():
                    if type(msg).__name__ == "AssistantMessage" and hasattr(msg, "content"):
                        for block in msg.content:
                            if type(block).__name__ == "TextBlock" and hasattr(block, "text"):
                                response_text += block.text
        except ClaudeSDKError as e:
            raise ExternalServiceError("decomposer", str(e)) from e

        subtasks = parse_subtasks(response_text)
        if not subtasks:
            raise ExternalServiceError("decomposer", f"no subtasks returned for '{item.title}'")
        logger.info("Decomposed %s into %d subtask(s)", item.id, len(subtasks))
        return DecompositionResult(subtasks=subtasks)
