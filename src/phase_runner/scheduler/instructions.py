from __future__ import annotations

from typing import Any

from ..domain.models import Task


def _file_lines(files: Any) -> list[str]:
    lines: list[str] = []
    if isinstance(files, (list, tuple)):
        lines.extend(f"- {path}" for path in files)
    elif isinstance(files, dict):
        for key, label in (("create", "**Create:**"), ("modify", "**Modify:**")):
            paths = files.get(key)
            if paths:
                lines.append(label)
                lines.extend(f"- {path}" for path in paths)
    return lines


def build_task_instructions(task: Task) -> str:
    """Render the brief handed to a worker as its prompt."""
    parts: list[str] = [
        f"You are the {task.worker_type} agent executing task {task.id}.",
        "",
        f"## Task: {task.title}",
        f"**ID:** {task.id}",
        f"**Priority:** {task.priority}",
        f"**Phase:** {task.phase}",
        "",
    ]

    if task.instructions:
        parts.extend(["## Instructions", task.instructions, ""])

    file_lines = _file_lines(task.files)
    if file_lines:
        parts.append("## Files to modify")
        parts.extend(file_lines)
        parts.append("")

    checklist = task.qa.checklist_items()
    if checklist:
        parts.append("## Success Criteria")
        parts.extend(f"- [ ] {item}" for item in checklist)
        parts.append("")

    if task.depends_on:
        parts.append(f"**Note:** This task depends on: {', '.join(task.depends_on)}")
        parts.append("Ensure those tasks are complete before proceeding.")
        parts.append("")

    parts.append("---")
    parts.append("When complete, ensure all success criteria are met and files are properly saved.")
    return "\n".join(parts)
