from __future__ import annotations

from pathlib import Path

from ..constants import (
    CONFIG_FILE,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_TASK_TIMEOUT_SECONDS,
    DEFAULT_WORKER_COMMAND,
    LOGS_DIR,
    RUNS_FILE,
    STATE_DIR_NAME,
    TASKS_FILE,
)
from ..io_utils import FileLock, _load_data_with_error, _save_data


STATE_FILES = {
    "tasks": TASKS_FILE,
    "runs": RUNS_FILE,
    "config": CONFIG_FILE,
}


def ensure_state_root(project_dir: Path) -> Path:
    """Create `<project>/.phase_runner` with its YAML files and default config.

    An unreadable config file is left untouched.
    """
    state_root = project_dir / STATE_DIR_NAME
    state_root.mkdir(parents=True, exist_ok=True)
    (state_root / LOGS_DIR).mkdir(exist_ok=True)

    for file_name in STATE_FILES.values():
        target = state_root / file_name
        if not target.exists():
            target.write_text("version: 1\n", encoding="utf-8")

    config_path = state_root / CONFIG_FILE
    with FileLock(state_root / "config.lock"):
        config, err = _load_data_with_error(config_path, {})
        if err:
            return state_root
        config.setdefault("version", 1)
        config.setdefault(
            "orchestrator",
            {
                "max_concurrent": DEFAULT_MAX_CONCURRENT,
                "task_timeout_seconds": DEFAULT_TASK_TIMEOUT_SECONDS,
                "poll_interval_seconds": DEFAULT_POLL_INTERVAL_SECONDS,
            },
        )
        config.setdefault("workers", {"command": DEFAULT_WORKER_COMMAND, "skip_permissions": False})
        config.setdefault("logging", {"level": "INFO"})
        _save_data(config_path, config)

    return state_root
