"""Phase bucketing and dependency checks for a task set.

Tasks are grouped strictly by their caller-assigned ``phase``; nothing here
reorders them topologically. ``find_ordering_issues`` reports task sets whose
dependencies contradict that phase order.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from dataclasses import dataclass, field
from typing import Optional

from ..domain.models import Task


@dataclass
class DependencyGraph:
    tasks: dict[str, Task] = field(default_factory=dict)
    depends_on: dict[str, set[str]] = field(default_factory=dict)
    blocks: dict[str, set[str]] = field(default_factory=dict)


def build_dependency_graph(tasks: Iterable[Task]) -> DependencyGraph:
    graph = DependencyGraph()
    for task in tasks:
        graph.tasks[task.id] = task
        graph.depends_on[task.id] = set(task.depends_on)
        graph.blocks[task.id] = set(task.blocks)
    return graph


def group_by_phase(tasks: Iterable[Task]) -> dict[int, list[Task]]:
    """Bucket tasks by phase, ascending, keeping input order within a bucket."""
    buckets: dict[int, list[Task]] = {}
    for task in tasks:
        buckets.setdefault(task.phase or 1, []).append(task)
    return {phase: buckets[phase] for phase in sorted(buckets)}


def can_execute(task: Task, completed: Collection[str]) -> bool:
    return all(dep in completed for dep in task.depends_on)


def _find_cycle(graph: DependencyGraph) -> Optional[list[str]]:
    # 0 = unvisited, 1 = visiting, 2 = done
    state: dict[str, int] = {task_id: 0 for task_id in graph.tasks}

    def dfs(node: str, path: list[str]) -> Optional[list[str]]:
        if state[node] == 1:
            return path[path.index(node):] + [node]
        if state[node] == 2:
            return None
        state[node] = 1
        path.append(node)
        for dep in sorted(graph.depends_on.get(node, ())):
            if dep not in graph.tasks:
                continue
            cycle = dfs(dep, path)
            if cycle:
                return cycle
        path.pop()
        state[node] = 2
        return None

    for task_id in graph.tasks:
        if state[task_id] == 0:
            cycle = dfs(task_id, [])
            if cycle:
                return cycle
    return None


def find_ordering_issues(tasks: Iterable[Task]) -> list[str]:
    """Describe dependencies that cannot be honored by phase order.

    Flags a dependency on a task in a strictly later phase, and any
    dependency cycle. Dependencies on unknown ids or on same-phase tasks
    are left to the run's "dependencies not met" handling.
    """
    graph = build_dependency_graph(tasks)
    issues: list[str] = []
    for task_id, task in graph.tasks.items():
        for dep in sorted(graph.depends_on[task_id]):
            other = graph.tasks.get(dep)
            if other is not None and (other.phase or 1) > (task.phase or 1):
                issues.append(
                    f"{task_id} (phase {task.phase}) depends on {dep} in later phase {other.phase}"
                )
    cycle = _find_cycle(graph)
    if cycle:
        issues.append(f"Circular dependency detected: {' -> '.join(cycle)}")
    return issues
