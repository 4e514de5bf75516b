"""Validation errors surfaced to callers of the engine.

Per-task failures (spawn errors, timeouts) are reported as result values
and never raised; these exceptions cover the cases a caller must handle.
"""

from __future__ import annotations

from typing import Optional


class PhaseRunnerError(Exception):
    """Base class for engine errors."""


class InvalidTransitionError(PhaseRunnerError, ValueError):
    def __init__(self, task_id: str, from_status: str, to_status: str) -> None:
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid status transition from '{from_status}' to '{to_status}' for task {task_id}")


class TaskNotFoundError(PhaseRunnerError, KeyError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(task_id)

    def __str__(self) -> str:
        return f"Task not found: {self.task_id}"


class LockHeldError(PhaseRunnerError, ValueError):
    def __init__(self, file: str, holder: str, task: Optional[str]) -> None:
        self.file = file
        self.holder = holder
        self.task = task
        super().__init__(f"File {file} is already locked by {holder} ({task})")


class StateConflictError(PhaseRunnerError, RuntimeError):
    def __init__(self, project: str, expected: int, actual: int) -> None:
        self.project = project
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"State for {project} changed concurrently (expected revision {expected}, found {actual})"
        )


class DependencyOrderError(PhaseRunnerError, ValueError):
    def __init__(self, issues: list[str]) -> None:
        self.issues = list(issues)
        super().__init__("Task dependencies conflict with phase order: " + "; ".join(self.issues))
