"""Task status transition rules."""

from __future__ import annotations

from ..errors import InvalidTransitionError
from .models import ProgressEntry, Task


VALID_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"in_progress", "blocked"},
    "in_progress": {"pending", "blocked", "qa", "completed"},
    "blocked": {"pending", "in_progress"},
    "qa": {"in_progress", "completed"},
    "completed": {"in_progress"},  # reopen
}


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def apply_transition(task: Task, to_status: str, *, now: str, actor: str | None = None, note: str | None = None) -> Task:
    """Move ``task`` to ``to_status`` in place.

    Raises ``InvalidTransitionError`` without touching the task when the
    transition is not allowed.
    """
    if not is_valid_transition(task.status, to_status):
        raise InvalidTransitionError(task.id, task.status, to_status)

    task.status = to_status
    task.updated_at = now
    if to_status == "in_progress" and not task.started_at:
        task.started_at = now
    elif to_status == "completed":
        task.completed_at = now

    task.progress.append(
        ProgressEntry(
            timestamp=now,
            actor=actor or task.worker_type,
            action=f"status_{to_status}",
            note=note or f"Status changed to {to_status}",
        )
    )
    return task
