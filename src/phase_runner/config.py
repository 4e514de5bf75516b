"""Load optional runner configuration from `.phase_runner/config.yaml`."""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_WORKER_COMMAND,
    PID_REGISTRY_FILE,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error

WORKER_COMMAND_ENV = "PHASE_RUNNER_WORKER_COMMAND"


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Project root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _section(config: dict[str, Any], name: str) -> dict[str, Any]:
    raw = _get_nested(config, name)
    return raw if isinstance(raw, dict) else {}


def get_orchestrator_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the orchestrator block (concurrency, timeouts, polling).

    Args:
        config: Runner configuration dictionary.

    Returns:
        The `orchestrator` config mapping, or an empty dict if not present.
    """
    return _section(config, "orchestrator")


def get_workers_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the workers configuration block from the runner config.

    Args:
        config: Runner configuration dictionary.

    Returns:
        The `workers` config mapping, or an empty dict if not present.
    """
    return _section(config, "workers")


def get_state_config(config: dict[str, Any]) -> dict[str, Any]:
    return _section(config, "state")


def get_logging_config(config: dict[str, Any]) -> dict[str, Any]:
    return _section(config, "logging")


def get_poll_interval(config: dict[str, Any]) -> float:
    raw = get_orchestrator_config(config).get("poll_interval_seconds")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_POLL_INTERVAL_SECONDS
    return value if value > 0 else DEFAULT_POLL_INTERVAL_SECONDS


def resolve_worker_command(config: dict[str, Any]) -> list[str]:
    """Return the worker executable (plus fixed leading args) as argv.

    `PHASE_RUNNER_WORKER_COMMAND` wins over the config file.
    """
    raw: Any = os.environ.get(WORKER_COMMAND_ENV) or get_workers_config(config).get("command")
    if isinstance(raw, list) and raw:
        return [str(part) for part in raw]
    if isinstance(raw, str) and raw.strip():
        return shlex.split(raw)
    return [DEFAULT_WORKER_COMMAND]


def _optional_path(raw: Any, base: Path) -> Optional[Path]:
    if not isinstance(raw, str) or not raw.strip():
        return None
    path = Path(raw).expanduser()
    return path if path.is_absolute() else (base / path)


def resolve_log_dir(config: dict[str, Any], project_dir: Path, default: Path) -> Path:
    return _optional_path(get_workers_config(config).get("log_dir"), project_dir) or default


def resolve_pid_registry_path(config: dict[str, Any], project_dir: Path) -> Path:
    default = Path.home() / STATE_DIR_NAME / PID_REGISTRY_FILE
    return _optional_path(get_workers_config(config).get("pid_registry"), project_dir) or default


def resolve_state_base_dir(config: dict[str, Any], project_dir: Path) -> Path:
    return _optional_path(get_state_config(config).get("base_dir"), project_dir) or project_dir.parent
