"""Launch, observe, and terminate coding-agent worker processes.

Each worker runs detached in its own session with the parent's environment.
Its output is captured line by line into ``<log_dir>/<session_id>.log`` with
``[OUT] `` / ``[ERR] `` prefixes. A watcher thread per session records the
exit code and signals completion, so waiting on a session never busy-polls.
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import IO, Any, Optional

from loguru import logger

from ..constants import (
    DEFAULT_LOG_LINES,
    DEFAULT_POLL_INTERVAL_SECONDS,
    MAX_FINISHED_SESSIONS,
    SKIP_PERMISSIONS_FLAG,
)
from ..domain.models import SpawnResult, WaitResult, WorkerSession
from ..io_utils import _read_tail_lines
from ..utils import now_iso
from .interfaces import ProcessLauncher, WorkerManager, WorkerProcess
from .pid_registry import PidRegistry, pid_alive

DISCOVERY_TASK_ID = "DISCOVERY"
DISCOVERY_WORKER_TYPE = "DISCOVERY"
DISCOVERY_INSTRUCTIONS = """/setup

Start the discovery process for this project. Follow the agent workflow to:
1. Read any existing plans/CURRENT.md
2. Gather requirements through conversation
3. Generate PRD and user stories
4. Create feature breakdown with tasks"""

_READER_JOIN_SECONDS = 5.0


class SubprocessLauncher(ProcessLauncher):
    def launch(self, argv: list[str], cwd: Path) -> WorkerProcess:
        return subprocess.Popen(
            argv,
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env=os.environ.copy(),
            start_new_session=True,
        )


class _LogSink:
    """A session's log file, shared by its reader threads.

    The last reader to finish closes the file, so output a lingering child
    writes after the worker exits still lands in the log.
    """

    def __init__(self, handle: IO[str], readers: int) -> None:
        self._handle = handle
        self._open = readers
        self._lock = threading.Lock()
        if readers == 0:
            handle.close()

    def write(self, text: str) -> None:
        with self._lock:
            self._handle.write(text)
            self._handle.flush()

    def release(self) -> None:
        with self._lock:
            self._open -= 1
            if self._open == 0:
                self._handle.close()


def _stream_pipe(pipe: Any, sink: _LogSink, prefix: str) -> None:
    try:
        for line in iter(pipe.readline, ""):
            sink.write(prefix + (line if line.endswith("\n") else line + "\n"))
    finally:
        try:
            pipe.close()
        except OSError:
            pass
        sink.release()


def build_worker_argv(
    command: list[str],
    session_id: str,
    instructions: str,
    *,
    resume: bool = False,
    skip_permissions: bool = False,
) -> list[str]:
    argv = list(command)
    if skip_permissions:
        argv.append(SKIP_PERMISSIONS_FLAG)
    argv.extend(["--resume" if resume else "--session-id", session_id])
    argv.extend(["-p", instructions])
    return argv


class WorkerProcessManager(WorkerManager):
    def __init__(
        self,
        command: list[str],
        log_dir: Path,
        registry: PidRegistry,
        *,
        launcher: Optional[ProcessLauncher] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_finished_sessions: int = MAX_FINISHED_SESSIONS,
    ) -> None:
        if not command:
            raise ValueError("Worker command must not be empty")
        self.command = list(command)
        self.log_dir = log_dir
        self.registry = registry
        self.launcher = launcher or SubprocessLauncher()
        self.poll_interval = poll_interval
        self.max_finished_sessions = max_finished_sessions
        self._lock = threading.Lock()
        self._sessions: dict[str, WorkerSession] = {}
        self._done: dict[str, threading.Event] = {}
        self._killed: set[str] = set()

    def log_path(self, session_id: str) -> Path:
        return self.log_dir / f"{session_id}.log"

    # -- Spawning ------------------------------------------------------------

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
        cwd = Path(working_directory)
        if not cwd.is_dir():
            return SpawnResult(False, error=f"Project path does not exist: {working_directory}")

        session_id = resume_session_id or str(uuid.uuid4())
        argv = build_worker_argv(
            self.command,
            session_id,
            instructions,
            resume=bool(resume_session_id),
            skip_permissions=skip_permissions,
        )
        log_path = self.log_path(session_id)
        session = WorkerSession(
            session_id=session_id,
            project_path=str(working_directory),
            task_id=task_id,
            worker_type=worker_type,
            started_at=now_iso(),
            status="spawning",
            log_path=str(log_path),
            automated=True,
        )

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            handle = open(log_path, "a", encoding="utf-8")
        except OSError as exc:
            logger.error("Cannot open worker log {}: {}", log_path, exc)
            return SpawnResult(False, error=f"Cannot open worker log: {exc}")
        handle.write(f"[START] {session.started_at} task={task_id} worker={worker_type} session={session_id}\n")
        handle.flush()

        try:
            process = self.launcher.launch(argv, cwd)
        except OSError as exc:
            handle.write(f"[ERR] Failed to start worker: {exc}\n")
            handle.close()
            logger.error("Failed to spawn {} worker for task {}: {}", worker_type, task_id, exc)
            return SpawnResult(False, error=f"Failed to spawn worker: {exc}")

        session.pid = process.pid
        session.status = "running"
        done = threading.Event()
        with self._lock:
            self._forget_finished()
            self._sessions[session_id] = session
            self._done[session_id] = done
            self._killed.discard(session_id)

        try:
            self.registry.set(
                session_id,
                process.pid,
                project_path=session.project_path,
                task_id=task_id,
                worker_type=worker_type,
            )
        except OSError as exc:
            logger.warning("Could not record pid for session {}: {}", session_id, exc)

        pipes = [
            (pipe, prefix)
            for pipe, prefix in ((process.stdout, "[OUT] "), (process.stderr, "[ERR] "))
            if pipe is not None
        ]
        sink = _LogSink(handle, len(pipes))
        readers = [
            threading.Thread(target=_stream_pipe, args=(pipe, sink, prefix), daemon=True)
            for pipe, prefix in pipes
        ]
        for reader in readers:
            reader.start()
        threading.Thread(
            target=self._watch,
            args=(session, process, readers, done),
            daemon=True,
        ).start()

        logger.info(
            "Spawned {} worker for task {} (session={}, pid={})",
            worker_type,
            task_id,
            session_id,
            process.pid,
        )
        return SpawnResult(True, session=session)

    def _forget_finished(self) -> None:
        """Drop the oldest finished sessions beyond the retention limit. Caller holds the lock."""
        finished = [sid for sid, done in self._done.items() if done.is_set()]
        for session_id in finished[: max(0, len(finished) - self.max_finished_sessions)]:
            self._sessions.pop(session_id, None)
            self._done.pop(session_id, None)
            self._killed.discard(session_id)

    def spawn_discovery(self, working_directory: str, **kwargs: Any) -> SpawnResult:
        return self.spawn(
            working_directory,
            DISCOVERY_TASK_ID,
            DISCOVERY_WORKER_TYPE,
            DISCOVERY_INSTRUCTIONS,
            **kwargs,
        )

    def _watch(
        self,
        session: WorkerSession,
        process: WorkerProcess,
        readers: list[threading.Thread],
        done: threading.Event,
    ) -> None:
        try:
            exit_code = process.wait()
            with self._lock:
                session.exit_code = exit_code
                killed = session.session_id in self._killed
                session.status = "completed" if exit_code == 0 and not killed else "failed"
            logger.info(
                "Worker session {} exited with code {} ({})",
                session.session_id,
                exit_code,
                session.status,
            )
            try:
                self.registry.remove(session.session_id)
            except OSError as exc:
                logger.warning("Could not clear pid for session {}: {}", session.session_id, exc)
            # A child that inherited the pipes can hold them open past the exit.
            for reader in readers:
                reader.join(timeout=_READER_JOIN_SECONDS)
        finally:
            done.set()

    # -- Queries -------------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[WorkerSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def is_running(self, session_id: str) -> bool:
        session = self.get_session(session_id)
        if session is None or not session.pid:
            return False
        if session.exit_code is not None:
            return False
        done = self._done.get(session_id)
        if done is not None and done.is_set():
            return False
        return pid_alive(session.pid)

    def list_active_sessions(self) -> list[WorkerSession]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [s for s in sessions if s.status in ("spawning", "running")]

    def list_project_sessions(self, project_path: str) -> list[WorkerSession]:
        target = Path(project_path).resolve()
        with self._lock:
            sessions = list(self._sessions.values())
        return [s for s in sessions if Path(s.project_path).resolve() == target]

    def read_log(self, session_id: str, max_lines: int = DEFAULT_LOG_LINES) -> list[str]:
        return _read_tail_lines(self.log_path(session_id), max_lines)

    # -- Control -------------------------------------------------------------

    def kill(self, session_id: str) -> bool:
        session = self.get_session(session_id)
        if session is None or not session.pid:
            return False
        try:
            os.kill(session.pid, signal.SIGTERM)
        except OSError as exc:
            logger.warning("Failed to signal worker session {} (pid {}): {}", session_id, session.pid, exc)
            return False
        with self._lock:
            self._killed.add(session_id)
            session.status = "failed"
        try:
            self.registry.remove(session_id)
        except OSError as exc:
            logger.warning("Could not clear pid for session {}: {}", session_id, exc)
        logger.info("Killed worker session {} (pid {})", session_id, session.pid)
        return True

    def kill_project_sessions(self, project_path: str) -> int:
        killed = 0
        for session in self.list_project_sessions(project_path):
            if session.status in ("spawning", "running") and self.kill(session.session_id):
                killed += 1
        return killed

    def wait_for(self, session_id: str, timeout_seconds: float) -> WaitResult:
        """Block until the session ends or ``timeout_seconds`` elapse.

        A timeout leaves the process running.
        """
        done = self._done.get(session_id)
        session = self.get_session(session_id)
        if done is None or session is None:
            return WaitResult(False, "not_found")

        deadline = time.monotonic() + timeout_seconds
        while not done.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return WaitResult(False, "timeout")
            if done.wait(min(self.poll_interval, remaining)):
                break
            if session.exit_code is not None or not pid_alive(session.pid):
                # Exited; let the watcher settle the status and drain output.
                done.wait(max(0.0, min(_READER_JOIN_SECONDS, deadline - time.monotonic())))
                break

        with self._lock:
            status = session.status
        # An exit the watcher has not recorded is never reported as success.
        return WaitResult(True, status if status in ("completed", "failed") else "failed")
