from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Optional, Protocol

from ..constants import DEFAULT_LOG_LINES
from ..domain.models import SpawnResult, WaitResult, WorkerSession


class WorkerProcess(Protocol):
    """The slice of ``subprocess.Popen`` the manager relies on."""

    pid: int
    stdout: Optional[IO[str]]
    stderr: Optional[IO[str]]

    def wait(self, timeout: Optional[float] = None) -> int: ...

    def poll(self) -> Optional[int]: ...


class ProcessLauncher(ABC):
    @abstractmethod
    def launch(self, argv: list[str], cwd: Path) -> WorkerProcess:
        """Start ``argv`` detached from the caller, with piped output."""
        raise NotImplementedError


class WorkerManager(ABC):
    """What the scheduler needs from a worker backend."""

    @abstractmethod
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
        raise NotImplementedError

    @abstractmethod
    def is_running(self, session_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def kill(self, session_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def wait_for(self, session_id: str, timeout_seconds: float) -> WaitResult:
        raise NotImplementedError

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[WorkerSession]:
        raise NotImplementedError

    def read_log(self, session_id: str, max_lines: int = DEFAULT_LOG_LINES) -> list[str]:
        return []
