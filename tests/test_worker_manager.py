"""Worker process manager tests against real short-lived Python children."""

from __future__ import annotations

import sys
import textwrap
import time
from pathlib import Path
from typing import Any

import pytest

from phase_runner.workers import manager as manager_module
from phase_runner.workers.manager import WorkerProcessManager, build_worker_argv
from phase_runner.workers.pid_registry import PidRegistry

FAKE_AGENT = textwrap.dedent(
    """
    import os
    import sys
    import time

    args = sys.argv[1:]
    prompt = args[args.index("-p") + 1]
    print("prompt:" + prompt.splitlines()[0])
    print("mode:" + ("resume" if "--resume" in args else "new"))
    print("skip:" + str("--dangerously-skip-permissions" in args))
    print("token:" + os.environ.get("PHASE_RUNNER_TEST_TOKEN", ""))
    print("line-one")
    print("line-two")
    print("oops", file=sys.stderr)
    sys.stdout.flush()
    if "sleep" in prompt:
        time.sleep(30)
    sys.exit(3 if "fail" in prompt else 0)
    """
)


# Leaves a child holding stdout for <prompt> seconds, then exits 1.
LINGERING_AGENT = textwrap.dedent(
    """
    import subprocess
    import sys

    delay = sys.argv[sys.argv.index("-p") + 1]
    subprocess.Popen([sys.executable, "-c", f"import time; time.sleep({delay}); print('late', flush=True)"])
    print("early", flush=True)
    sys.exit(1)
    """
)


def _make_manager(tmp_path: Path, source: str, **kwargs: Any) -> WorkerProcessManager:
    script = tmp_path / "fake_agent.py"
    script.write_text(source, encoding="utf-8")
    return WorkerProcessManager(
        [sys.executable, str(script)],
        tmp_path / "logs",
        PidRegistry(tmp_path / "pids.json"),
        poll_interval=0.05,
        **kwargs,
    )


@pytest.fixture
def manager(tmp_path: Path) -> WorkerProcessManager:
    return _make_manager(tmp_path, FAKE_AGENT)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


def _log_lines(manager: WorkerProcessManager, session_id: str) -> list[str]:
    return manager.log_path(session_id).read_text(encoding="utf-8").splitlines()


def test_build_worker_argv() -> None:
    assert build_worker_argv(["claude"], "sid", "do it") == ["claude", "--session-id", "sid", "-p", "do it"]
    assert build_worker_argv(["claude"], "sid", "again", resume=True, skip_permissions=True) == [
        "claude",
        "--dangerously-skip-permissions",
        "--resume",
        "sid",
        "-p",
        "again",
    ]


def test_spawn_runs_to_completion_and_logs_output(
    manager: WorkerProcessManager,
    project: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PHASE_RUNNER_TEST_TOKEN", "secret-123")

    result = manager.spawn(str(project), "T1", "BACKEND", "hello world")

    assert result.success
    session = result.session
    assert session is not None and session.pid

    outcome = manager.wait_for(session.session_id, 10)

    assert outcome.completed
    assert outcome.status == "completed"
    assert session.exit_code == 0
    assert not manager.is_running(session.session_id)
    assert manager.registry.get(session.session_id) is None

    lines = _log_lines(manager, session.session_id)
    assert lines[0].startswith("[START] ")
    assert f"task=T1 worker=BACKEND session={session.session_id}" in lines[0]
    assert "[OUT] prompt:hello world" in lines
    assert "[OUT] mode:new" in lines
    assert "[OUT] skip:False" in lines
    assert "[OUT] token:secret-123" in lines
    assert "[ERR] oops" in lines
    assert all(line.startswith(("[START]", "[OUT] ", "[ERR] ")) for line in lines)


def test_non_zero_exit_is_failed(manager: WorkerProcessManager, project: Path) -> None:
    result = manager.spawn(str(project), "T2", "QA", "please fail", skip_permissions=True)
    assert result.session is not None

    outcome = manager.wait_for(result.session.session_id, 10)

    assert outcome.completed
    assert outcome.status == "failed"
    assert result.session.exit_code == 3
    assert "[OUT] skip:True" in _log_lines(manager, result.session.session_id)


def test_resume_reuses_session_id(manager: WorkerProcessManager, project: Path) -> None:
    result = manager.spawn(str(project), "T1", "BACKEND", "continue", resume_session_id="existing-session")

    assert result.session is not None
    assert result.session.session_id == "existing-session"
    manager.wait_for("existing-session", 10)
    assert "[OUT] mode:resume" in _log_lines(manager, "existing-session")


def test_missing_working_directory_is_reported(manager: WorkerProcessManager, tmp_path: Path) -> None:
    missing = tmp_path / "does-not-exist"

    result = manager.spawn(str(missing), "T1", "BACKEND", "hello")

    assert not result.success
    assert result.session is None
    assert result.error == f"Project path does not exist: {missing}"
    assert manager.list_active_sessions() == []
    assert manager.registry.load() == {}


def test_launch_failure_is_a_result_not_an_exception(tmp_path: Path, project: Path) -> None:
    manager = WorkerProcessManager(
        [str(tmp_path / "no-such-binary")],
        tmp_path / "logs",
        PidRegistry(tmp_path / "pids.json"),
    )

    result = manager.spawn(str(project), "T1", "BACKEND", "hello")

    assert not result.success
    assert result.error and result.error.startswith("Failed to spawn worker")
    assert manager.list_active_sessions() == []


def test_timeout_leaves_process_running_until_killed(manager: WorkerProcessManager, project: Path) -> None:
    result = manager.spawn(str(project), "T1", "BACKEND", "sleep please")
    assert result.session is not None
    session_id = result.session.session_id

    outcome = manager.wait_for(session_id, 0.5)

    assert not outcome.completed
    assert outcome.status == "timeout"
    assert manager.is_running(session_id)
    assert [s.session_id for s in manager.list_active_sessions()] == [session_id]

    assert manager.kill(session_id)
    after_kill = manager.wait_for(session_id, 10)

    assert after_kill.completed
    assert after_kill.status == "failed"
    assert not manager.is_running(session_id)
    assert manager.registry.get(session_id) is None


def test_kill_project_sessions(manager: WorkerProcessManager, project: Path) -> None:
    first = manager.spawn(str(project), "T1", "BACKEND", "sleep one")
    second = manager.spawn(str(project), "T2", "DATA", "sleep two")
    assert first.session is not None and second.session is not None

    assert len(manager.list_project_sessions(str(project))) == 2
    assert manager.kill_project_sessions(str(project)) == 2

    for session in (first.session, second.session):
        manager.wait_for(session.session_id, 10)
        assert not manager.is_running(session.session_id)


def test_unknown_sessions(manager: WorkerProcessManager) -> None:
    assert manager.wait_for("nope", 0.1).status == "not_found"
    assert not manager.kill("nope")
    assert not manager.is_running("nope")
    assert manager.get_session("nope") is None
    assert manager.read_log("nope") == []


def test_read_log_returns_tail(manager: WorkerProcessManager, project: Path) -> None:
    result = manager.spawn(str(project), "T1", "BACKEND", "hello")
    assert result.session is not None
    manager.wait_for(result.session.session_id, 10)

    tail = manager.read_log(result.session.session_id, max_lines=1)

    assert len(tail) == 1
    assert tail[0].startswith(("[OUT] ", "[ERR] "))


def test_spawn_discovery_uses_setup_brief(manager: WorkerProcessManager, project: Path) -> None:
    result = manager.spawn_discovery(str(project))
    assert result.session is not None
    assert result.session.task_id == "DISCOVERY"
    assert result.session.worker_type == "DISCOVERY"

    manager.wait_for(result.session.session_id, 10)

    assert "[OUT] prompt:/setup" in _log_lines(manager, result.session.session_id)


def test_failed_exit_is_reported_while_child_holds_output(tmp_path: Path, project: Path) -> None:
    manager = _make_manager(tmp_path, LINGERING_AGENT)
    result = manager.spawn(str(project), "T1", "BACKEND", "3")
    assert result.session is not None

    outcome = manager.wait_for(result.session.session_id, 10)

    assert outcome.completed
    assert outcome.status == "failed"
    assert result.session.exit_code == 1
    assert result.session.status == "failed"
    assert not manager.is_running(result.session.session_id)


def test_output_after_exit_still_reaches_log(
    tmp_path: Path,
    project: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(manager_module, "_READER_JOIN_SECONDS", 0.2)
    manager = _make_manager(tmp_path, LINGERING_AGENT)
    result = manager.spawn(str(project), "T1", "BACKEND", "1")
    assert result.session is not None
    session_id = result.session.session_id

    outcome = manager.wait_for(session_id, 10)

    assert outcome.status == "failed"
    assert "[OUT] early" in _log_lines(manager, session_id)

    deadline = time.monotonic() + 10
    while "[OUT] late" not in _log_lines(manager, session_id):
        assert time.monotonic() < deadline, "late output never logged"
        time.sleep(0.05)


def test_finished_sessions_are_forgotten_beyond_limit(tmp_path: Path, project: Path) -> None:
    manager = _make_manager(tmp_path, FAKE_AGENT, max_finished_sessions=1)
    session_ids = []
    for idx in range(3):
        result = manager.spawn(str(project), f"T{idx}", "BACKEND", "hello")
        assert result.session is not None
        manager.wait_for(result.session.session_id, 10)
        session_ids.append(result.session.session_id)

    assert manager.get_session(session_ids[0]) is None
    assert [manager.get_session(sid) is not None for sid in session_ids[1:]] == [True, True]
    assert manager.wait_for(session_ids[0], 0.1).status == "not_found"
    assert manager.read_log(session_ids[0])
