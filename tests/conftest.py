from __future__ import annotations

import itertools
import threading
import time
from pathlib import Path
from typing import Any, Optional

import pytest
from loguru import logger

from phase_runner.domain.models import SpawnResult, Task, WaitResult, WorkerSession
from phase_runner.workers.interfaces import WorkerManager


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the default pid registry out of the real home directory."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.delenv("PHASE_RUNNER_WORKER_COMMAND", raising=False)


@pytest.fixture(autouse=True)
def _reset_logging():
    """Drop sinks a test configured so later tests never write to closed streams."""
    yield
    logger.remove()


def make_task(task_id: str, phase: int = 1, depends_on: Optional[list[str]] = None, **kwargs: Any) -> Task:
    kwargs.setdefault("worker_type", "BACKEND")
    kwargs.setdefault("title", f"Task {task_id}")
    kwargs.setdefault("feature_id", "feat-1")
    return Task(id=task_id, phase=phase, depends_on=list(depends_on or []), **kwargs)


class FakeWorkers(WorkerManager):
    """In-memory worker backend with controllable completion timing.

    outcomes: task id -> terminal status reported by wait_for ("completed",
        "failed", or "timeout" for a session that never finishes).
    hold: task ids whose sessions stay alive until killed or released.
    barrier: task ids that must all be alive at once; records a failure
        when they are not.
    """

    def __init__(
        self,
        *,
        outcomes: Optional[dict[str, str]] = None,
        spawn_errors: Optional[dict[str, str]] = None,
        hold: Optional[set[str]] = None,
        barrier: Optional[set[str]] = None,
        duration: float = 0.0,
        raise_on_spawn: Optional[Exception] = None,
    ) -> None:
        self.outcomes = outcomes or {}
        self.spawn_errors = spawn_errors or {}
        self.hold = hold or set()
        self.duration = duration
        self.raise_on_spawn = raise_on_spawn
        self._barrier_tasks = barrier or set()
        self._barrier = threading.Barrier(len(self._barrier_tasks), timeout=5) if self._barrier_tasks else None
        self.barrier_broken = False
        self._lock = threading.Lock()
        self._pids = itertools.count(4000)
        self.sessions: dict[str, WorkerSession] = {}
        self._release: dict[str, threading.Event] = {}
        self.active = 0
        self.max_active = 0
        self.spawned: list[str] = []
        self.killed: list[str] = []
        self.events: list[tuple[str, str]] = []
        self.instructions: dict[str, str] = {}
        self.skip_permissions: dict[str, bool] = {}

    def spawn(
        self,
        working_directory: str,
        task_id: str,
        worker_type: str,
        instructions: str,
        *,
        resume_session_id: Optional[str] = None,
        skip_permissions: bool = False,
    ) -> SpawnResult:
        if self.raise_on_spawn is not None:
            raise self.raise_on_spawn
        if task_id in self.spawn_errors:
            return SpawnResult(False, error=self.spawn_errors[task_id])
        session = WorkerSession(
            session_id=f"s-{task_id}",
            pid=next(self._pids),
            project_path=working_directory,
            task_id=task_id,
            worker_type=worker_type,
            status="running",
        )
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.spawned.append(task_id)
            self.events.append(("spawn", task_id))
            self.sessions[session.session_id] = session
            self._release[session.session_id] = threading.Event()
            self.instructions[task_id] = instructions
            self.skip_permissions[task_id] = skip_permissions
        return SpawnResult(True, session=session)

    def release(self, task_id: str) -> None:
        self._release[f"s-{task_id}"].set()

    def is_running(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        return session is not None and session.status == "running"

    def kill(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        with self._lock:
            self.killed.append(session_id)
            session.status = "failed"
        self._release[session_id].set()
        return True

    def get_session(self, session_id: str) -> Optional[WorkerSession]:
        return self.sessions.get(session_id)

    def wait_for(self, session_id: str, timeout_seconds: float) -> WaitResult:
        session = self.sessions.get(session_id)
        if session is None:
            return WaitResult(False, "not_found")
        task_id = session.task_id
        outcome = self.outcomes.get(task_id, "completed")

        if self._barrier is not None and task_id in self._barrier_tasks:
            try:
                self._barrier.wait()
            except threading.BrokenBarrierError:
                self.barrier_broken = True

        if task_id in self.hold or outcome == "timeout":
            if not self._release[session_id].wait(timeout_seconds):
                return WaitResult(False, "timeout")
        elif self.duration:
            time.sleep(self.duration)

        with self._lock:
            self.active -= 1
            self.events.append(("done", task_id))
            if session.status == "running":
                session.status = "completed" if outcome == "completed" else "failed"
        return WaitResult(True, session.status)
