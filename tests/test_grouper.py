from __future__ import annotations

from conftest import make_task

from phase_runner.domain.models import QAConfig, Task
from phase_runner.scheduler.grouper import (
    build_dependency_graph,
    can_execute,
    find_ordering_issues,
    group_by_phase,
)
from phase_runner.scheduler.instructions import build_task_instructions


def test_group_by_phase_orders_phases_and_keeps_task_order() -> None:
    tasks = [
        make_task("T3", phase=2),
        make_task("T1", phase=1),
        make_task("T4", phase=3),
        make_task("T2", phase=1),
    ]

    groups = group_by_phase(tasks)

    assert list(groups) == [1, 2, 3]
    assert [t.id for t in groups[1]] == ["T1", "T2"]
    assert [t.id for t in groups[2]] == ["T3"]


def test_group_by_phase_is_idempotent() -> None:
    tasks = [make_task("A", phase=2), make_task("B", phase=1), make_task("C", phase=2)]

    first = {phase: [t.id for t in bucket] for phase, bucket in group_by_phase(tasks).items()}
    second = {phase: [t.id for t in bucket] for phase, bucket in group_by_phase(tasks).items()}

    assert first == second


def test_group_by_phase_ignores_dependencies() -> None:
    # T1 depends on T2 but both stay in phase 1; no topological reordering.
    tasks = [make_task("T1", phase=1, depends_on=["T2"]), make_task("T2", phase=1)]
    assert [t.id for t in group_by_phase(tasks)[1]] == ["T1", "T2"]


def test_can_execute() -> None:
    task = make_task("T3", depends_on=["T1", "T2"])
    assert not can_execute(task, set())
    assert not can_execute(task, {"T1"})
    assert can_execute(task, {"T1", "T2", "T9"})
    assert can_execute(make_task("T4"), set())


def test_build_dependency_graph() -> None:
    graph = build_dependency_graph([make_task("T1", blocks=["T2"]), make_task("T2", depends_on=["T1", "T1"])])
    assert set(graph.tasks) == {"T1", "T2"}
    assert graph.depends_on["T2"] == {"T1"}
    assert graph.blocks["T1"] == {"T2"}


def test_ordering_issues_flag_dependency_on_later_phase() -> None:
    issues = find_ordering_issues([make_task("T1", phase=1, depends_on=["T2"]), make_task("T2", phase=2)])
    assert len(issues) == 1
    assert "T1" in issues[0] and "later phase 2" in issues[0]


def test_ordering_issues_flag_cycles() -> None:
    issues = find_ordering_issues(
        [make_task("A", depends_on=["B"]), make_task("B", depends_on=["C"]), make_task("C", depends_on=["A"])]
    )
    assert any(issue.startswith("Circular dependency detected") for issue in issues)


def test_ordering_issues_ignore_unknown_and_same_phase_dependencies() -> None:
    tasks = [
        make_task("T1", phase=1, depends_on=["T9"]),
        make_task("T2", phase=1, depends_on=["T1"]),
        make_task("T3", phase=2, depends_on=["T1"]),
    ]
    assert find_ordering_issues(tasks) == []


def test_task_instructions_include_brief_sections() -> None:
    task = Task(
        id="T7",
        worker_type="FRONTEND",
        title="Build login form",
        priority="high",
        phase=2,
        instructions="Use the shared form components.",
        files={"create": ["src/Login.tsx"], "modify": ["src/App.tsx"]},
        depends_on=["T3"],
        qa=QAConfig(checklist=["Form validates email", {"item": "Errors are announced"}]),
    )

    brief = build_task_instructions(task)

    assert brief.startswith("You are the FRONTEND agent executing task T7.")
    assert "## Task: Build login form" in brief
    assert "**Priority:** high" in brief
    assert "**Phase:** 2" in brief
    assert "Use the shared form components." in brief
    assert "**Create:**\n- src/Login.tsx" in brief
    assert "**Modify:**\n- src/App.tsx" in brief
    assert "- [ ] Form validates email" in brief
    assert "- [ ] Errors are announced" in brief
    assert "**Note:** This task depends on: T3" in brief
    assert brief.rstrip().endswith("files are properly saved.")


def test_task_instructions_with_flat_file_list_and_no_extras() -> None:
    brief = build_task_instructions(Task(id="T1", worker_type="DATA", title="Schema", files=["db/schema.sql"]))
    assert "## Files to modify\n- db/schema.sql" in brief
    assert "## Instructions" not in brief
    assert "Success Criteria" not in brief
