"""
Execution Backend
=================

The scheduler only needs start / cancel / await-result semantics from whatever
actually performs a task's work. `ExecutionBackend` is that contract;
`ClaudeExecutionBackend` fulfils it with a Claude Code SDK session per task.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from claude_code_sdk import ClaudeCodeOptions, ClaudeSDKClient, ClaudeSDKError

from sprintforge.config import DEFAULT_MODEL
from sprintforge.errors import ExternalServiceError
from sprintforge.models import Task

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are an expert software engineer working through a sprint backlog. "
    "Complete the task you are given, keeping changes focused on it."
)

DEFAULT_ALLOWED_TOOLS = ["Read", "Write", "Edit", "MultiEdit", "Glob", "Grep", "Bash(*)"]


@dataclass
class ExecutionResult:
    """Outcome reported by an execution backend."""
    success: bool
    output: str = ""
    error: Optional[str] = None
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            **self.data,
        }


@runtime_checkable
class ExecutionBackend(Protocol):
    """Performs the work for a running task."""

    async def execute(self, task: Task) -> ExecutionResult:
        """Run the task to completion and report the outcome."""
        ...

    def cancel(self, task_id: str) -> None:
        """Request cancellation. Must not block waiting for acknowledgment."""
        ...


def build_task_prompt(task: Task) -> str:
    """
    Build the prompt sent to the backend.

    input_data may override the prompt and may carry extra context or the
    output of a parent task; both are prepended.
    """
    prompt = task.description or task.title
    data = task.input_data or {}

    if data.get("prompt"):
        prompt = data["prompt"]
    if data.get("context"):
        prompt = f"Context:\n{data['context']}\n\nTask:\n{prompt}"
    if data.get("parent_output"):
        prompt = f"Previous output:\n{data['parent_output']}\n\n{prompt}"

    return prompt


class ClaudeExecutionBackend:
    """Runs each task as a Claude Code SDK session in the project directory."""

    def __init__(
        self,
        project_dir: Path,
        model: str = DEFAULT_MODEL,
        max_turns: int = 100,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        allowed_tools: Optional[list[str]] = None,
    ):
        self.project_dir = Path(project_dir)
        self.model = model
        self.max_turns = max_turns
        self.system_prompt = system_prompt
        self.allowed_tools = allowed_tools or list(DEFAULT_ALLOWED_TOOLS)
        self._running: dict[str, asyncio.Task] = {}

    def create_client(self) -> ClaudeSDKClient:
        return ClaudeSDKClient(
            options=ClaudeCodeOptions(
                model=self.model,
                system_prompt=self.system_prompt,
                allowed_tools=self.allowed_tools,
                max_turns=self.max_turns,
                cwd=str(self.project_dir.resolve()),
            )
        )

    async def execute(self, task: Task) -> ExecutionResult:
        current = asyncio.current_task()
        if current is not None:
            self._running[task.id] = current

        prompt = build_task_prompt(task)
        response_text = ""
        is_error = False
        cost = None

        try:
            async with self.create_client() as client:
                await client.query(prompt)

                async for msg in client.receive_response():
                    msg_type = type(msg).__name__

                    if msg_type == "AssistantMessage" and hasattr(msg, "content"):
                        for block in msg.content:
                            if type(block).__name__ == "TextBlock" and hasattr(block, "text"):
                                response_text += block.text

                    elif msg_type == "ResultMessage":
                        is_error = bool(getattr(msg, "is_error", False))
                        cost = getattr(msg, "total_cost_usd", None)
                        result = getattr(msg, "result", None)
                        if result and not response_text:
                            response_text = result
        except ClaudeSDKError as e:
            raise ExternalServiceError("execution backend", str(e)) from e
        finally:
            self._running.pop(task.id, None)

        data = {"cost_usd": cost} if cost is not None else {}
        if is_error:
            return ExecutionResult(success=False, output=response_text, error="session ended with an error", data=data)
        return ExecutionResult(success=True, output=response_text, data=data)

    def cancel(self, task_id: str) -> None:
        running = self._running.get(task_id)
        if running is not None and not running.done():
            logger.info("Cancelling execution of %s", task_id)
            running.cancel()
