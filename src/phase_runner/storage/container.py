from __future__ import annotations

from pathlib import Path

from loguru import logger

from ..config import (
    get_poll_interval,
    load_runner_config,
    resolve_log_dir,
    resolve_pid_registry_path,
    resolve_state_base_dir,
    resolve_worker_command,
)
from ..constants import LOGS_DIR, RUNS_FILE, TASKS_FILE
from ..state.store import ProjectStateStore
from ..workers.manager import WorkerProcessManager
from ..workers.pid_registry import PidRegistry
from .bootstrap import ensure_state_root
from .file_repos import FileRunRepository, FileTaskRepository, InMemoryRunRepository


class Container:
    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir.resolve()
        self.state_root = ensure_state_root(self.project_dir)
        self.config, err = load_runner_config(self.project_dir)
        if err:
            logger.warning("Ignoring unreadable runner config: {}", err)

        self.tasks = FileTaskRepository(self.state_root / TASKS_FILE, self.state_root / "tasks.lock")
        self.run_archive = FileRunRepository(self.state_root / RUNS_FILE, self.state_root / "runs.lock")
        self.runs = InMemoryRunRepository()
        self.state = ProjectStateStore(resolve_state_base_dir(self.config, self.project_dir))
        self.pid_registry = PidRegistry(resolve_pid_registry_path(self.config, self.project_dir))
        self.workers = WorkerProcessManager(
            resolve_worker_command(self.config),
            resolve_log_dir(self.config, self.project_dir, self.state_root / LOGS_DIR),
            self.pid_registry,
            poll_interval=get_poll_interval(self.config),
        )

    @property
    def project_id(self) -> str:
        return self.project_dir.name
