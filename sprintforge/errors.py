"""
Error Taxonomy
==============

Exceptions raised by the orchestration components.

- ValidationError: malformed input, rejected synchronously and never retried
- ConflictError: an overlapping single-flight operation is already running
- NotFoundError: unknown id where an explicit error is the contract
- ExternalServiceError: decomposer or execution backend failure
- PersistenceError: durable store write failed after exhausting retries
"""

from typing import Optional


class SprintForgeError(Exception):
    """Base class for all orchestration errors."""


class ValidationError(SprintForgeError):
    """Malformed input (missing field, unknown dependency, bad value)."""


class InvalidTransitionError(ValidationError):
    """A state transition was requested from a state that does not allow it."""

    def __init__(self, task_id: str, current: str, requested: str):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Task {task_id} cannot move from '{current}' to '{requested}'"
        )


class NoCandidatesError(ValidationError):
    """No backlog items are available for sprint planning."""

    def __init__(self, project_id: str, message: Optional[str] = None):
        self.project_id = project_id
        super().__init__(
            message or f"No backlog items available for sprint planning in project {project_id}"
        )


class ConflictError(SprintForgeError):
    """A single-flight operation for the same key is already in progress."""

    def __init__(self, key: str, operation: str):
        self.key = key
        self.operation = operation
        super().__init__(f"{operation} already in progress for {key}")


class NotFoundError(SprintForgeError):
    """An unknown id was passed where the caller requires it to exist."""


class ExternalServiceError(SprintForgeError):
    """An external collaborator (decomposer, execution backend) failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class PersistenceError(SprintForgeError):
    """A durable store operation failed after all retries were used."""

    def __init__(self, operation: str, attempts: int, cause: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        detail = f": {cause}" if cause else ""
        super().__init__(f"{operation} failed after {attempts} attempt(s){detail}")
