"""Per-project shared state document (`STATE.yaml`).

The document is the coordination point between the scheduler, worker
completion handlers and humans looking at the project. Every mutator is
one read-modify-write cycle over the whole document: load, apply a single
change, stamp `updated_at`, bump `revision`, write everything back.

Writers inside one process are serialized by a lock and writers across
processes by an advisory file lock. Callers that hold a document across
their own edits can pass `expected_revision` to `save` to detect a
concurrent writer instead of silently overwriting it.
"""

from __future__ import annotations

import copy
import hashlib
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from ..constants import (
    CONTRACT_FILES,
    DEFAULT_LOCK_TTL_MINUTES,
    MAX_RECENT_ACTIVITY,
    ORCHESTRATOR_ACTOR,
    STATE_FILE,
    WORKER_TYPES,
)
from ..errors import LockHeldError, StateConflictError
from ..io_utils import FileLock, _atomic_write_yaml, _load_data_with_error
from ..utils import now_iso

ProjectState = dict[str, Any]

EXECUTION_MODES = {"idle", "running", "paused"}
AGENT_STATUSES = {"idle", "working", "blocked", "waiting"}
ONBOARDING_STATUSES = {"not_started", "awaiting_answers", "processing", "complete"}


def _default_agent_state() -> dict[str, Any]:
    return {
        "status": "idle",
        "current_task": None,
        "last_activity": None,
        "blocked_by": None,
    }


def default_state(worker_types: Iterable[str] = WORKER_TYPES) -> ProjectState:
    return {
        "version": "1.0",
        "revision": 0,
        "updated_at": now_iso(),
        "status": {
            "project": "active",
            "onboarding": "not_started",
            "execution": "idle",
        },
        "current_work": {
            "feature": None,
            "feature_title": None,
            "phase": None,
            "tasks_in_progress": [],
        },
        "progress": {
            "features": {"total": 0, "completed": 0, "in_progress": 0},
            "tasks": {
                "total": 0,
                "pending": 0,
                "in_progress": 0,
                "blocked": 0,
                "qa": 0,
                "completed": 0,
            },
        },
        "agents": {worker_type: _default_agent_state() for worker_type in worker_types},
        "active_locks": [],
        "queue": {"next_tasks": []},
        "recent_activity": [],
        "blockers": [],
        "contracts": {key: {"updated_at": None, "hash": None} for key in CONTRACT_FILES},
        "sessions": {
            "orchestrator": {"session_id": None, "started_at": None, "status": None},
            "agents": {},
        },
    }


def _backfill(target: dict[str, Any], defaults: dict[str, Any]) -> None:
    for key, value in defaults.items():
        if key not in target or target[key] is None and isinstance(value, (dict, list)):
            target[key] = copy.deepcopy(value)
        elif isinstance(value, dict) and isinstance(target[key], dict):
            _backfill(target[key], value)


def _file_md5(path: Path) -> Optional[str]:
    try:
        if not path.exists():
            return None
        return hashlib.md5(path.read_bytes()).hexdigest()
    except OSError:
        return None


class ProjectStateStore:
    """Read-modify-write access to each project's `STATE.yaml`."""

    def __init__(
        self,
        base_dir: Path,
        *,
        max_recent_activity: int = MAX_RECENT_ACTIVITY,
        worker_types: Iterable[str] = WORKER_TYPES,
    ) -> None:
        self.base_dir = base_dir
        self.max_recent_activity = max_recent_activity
        self.worker_types = tuple(worker_types)
        self._thread_lock = threading.RLock()

    # -- Paths ---------------------------------------------------------------

    def project_dir(self, project: str) -> Path:
        return self.base_dir / project

    def state_path(self, project: str) -> Path:
        return self.project_dir(project) / STATE_FILE

    def _lock(self, project: str) -> FileLock:
        return FileLock(self.project_dir(project) / ".STATE.lock")

    # -- Load / save ---------------------------------------------------------

    def load(self, project: str) -> ProjectState:
        """Return the project's document, or a fresh default one.

        Missing sections in an older document are filled with defaults.
        """
        path = self.state_path(project)
        if not path.exists():
            return default_state(self.worker_types)
        data, err = _load_data_with_error(path, {})
        if err:
            logger.error("Error loading state for {}: {}", project, err)
            return default_state(self.worker_types)
        _backfill(data, default_state(self.worker_types))
        return data

    def save(self, project: str, state: ProjectState, *, expected_revision: Optional[int] = None) -> ProjectState:
        """Replace the document; the revision follows the one on disk."""
        with self._thread_lock:
            with self._lock(project):
                current = int(self.load(project).get("revision") or 0)
                if expected_revision is not None and current != expected_revision:
                    raise StateConflictError(project, expected_revision, current)
                return self._write(project, state, current)

    def _write(self, project: str, state: ProjectState, current_revision: int) -> ProjectState:
        state["revision"] = current_revision + 1
        state["updated_at"] = now_iso()
        _atomic_write_yaml(self.state_path(project), state)
        return state

    def _mutate(self, project: str, fn: Callable[[ProjectState], None]) -> ProjectState:
        with self._thread_lock:
            with self._lock(project):
                state = self.load(project)
                revision = int(state.get("revision") or 0)
                fn(state)
                return self._write(project, state, revision)

    def initialize(self, project: str) -> ProjectState:
        return self.save(project, default_state(self.worker_types))

    # -- Helpers -------------------------------------------------------------

    def add_activity(self, state: ProjectState, entry: dict[str, Any]) -> None:
        """Prepend an activity entry, keeping only the newest entries."""
        activity = state.setdefault("recent_activity", [])
        activity.insert(0, entry)
        del activity[self.max_recent_activity:]

    def _activity(
        self,
        state: ProjectState,
        actor: str,
        action: str,
        *,
        task: Optional[str] = None,
        note: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> None:
        entry: dict[str, Any] = {"timestamp": timestamp or now_iso(), "agent": actor, "action": action}
        if task is not None:
            entry["task"] = task
        if note is not None:
            entry["note"] = note
        self.add_activity(state, entry)

    @staticmethod
    def _agents(state: ProjectState) -> dict[str, Any]:
        return state.setdefault("agents", {})

    # -- Agent activity ------------------------------------------------------

    def agent_start_work(self, project: str, worker_type: str, task_id: str) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            now = now_iso()
            self._agents(state)[worker_type] = {
                "status": "working",
                "current_task": task_id,
                "last_activity": now,
                "blocked_by": None,
            }
            in_progress = state["current_work"].setdefault("tasks_in_progress", [])
            if task_id not in in_progress:
                in_progress.append(task_id)
            self._activity(state, worker_type, "started", task=task_id, note=f"Started working on {task_id}", timestamp=now)

        return self._mutate(project, _apply)

    def agent_complete_work(self, project: str, worker_type: str, task_id: str, note: Optional[str] = None) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            now = now_iso()
            self._agents(state)[worker_type] = {
                "status": "idle",
                "current_task": None,
                "last_activity": now,
                "blocked_by": None,
            }
            current = state["current_work"]
            current["tasks_in_progress"] = [t for t in current.get("tasks_in_progress") or [] if t != task_id]
            self._activity(state, worker_type, "completed", task=task_id, note=note or f"Completed {task_id}", timestamp=now)

        return self._mutate(project, _apply)

    def agent_blocked(
        self,
        project: str,
        worker_type: str,
        task_id: str,
        blocked_by_task: str,
        reason: str,
    ) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            now = now_iso()
            self._agents(state)[worker_type] = {
                "status": "blocked",
                "current_task": task_id,
                "last_activity": now,
                "blocked_by": blocked_by_task,
            }
            state["blockers"].append({"task": task_id, "agent": worker_type, "reason": reason, "since": now})
            self._activity(state, worker_type, "blocked", task=task_id, note=reason, timestamp=now)

        return self._mutate(project, _apply)

    def clear_blocker(self, project: str, task_id: str) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            state["blockers"] = [b for b in state.get("blockers") or [] if b.get("task") != task_id]
            for agent_state in self._agents(state).values():
                if agent_state.get("current_task") == task_id and agent_state.get("status") == "blocked":
                    agent_state["status"] = "waiting"
                    agent_state["blocked_by"] = None

        return self._mutate(project, _apply)

    # -- Execution / onboarding / progress -----------------------------------

    def set_execution_mode(
        self,
        project: str,
        mode: str,
        feature_id: Optional[str] = None,
        feature_title: Optional[str] = None,
        phase: Optional[int] = None,
    ) -> ProjectState:
        if mode not in EXECUTION_MODES:
            raise ValueError(f"Unsupported execution mode: {mode}")

        def _apply(state: ProjectState) -> None:
            state["status"]["execution"] = mode
            current = state["current_work"]
            if mode == "running" and feature_id:
                current["feature"] = feature_id
                current["feature_title"] = feature_title
                current["phase"] = phase or 1
            elif mode == "idle":
                current["feature"] = None
                current["feature_title"] = None
                current["phase"] = None
                current["tasks_in_progress"] = []
            self._activity(
                state,
                ORCHESTRATOR_ACTOR,
                "execution_started" if mode == "running" else "execution_stopped",
                note=f"Feature: {feature_id}" if feature_id else None,
            )

        return self._mutate(project, _apply)

    def set_current_phase(self, project: str, phase: int) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            state["current_work"]["phase"] = phase
            self._activity(state, ORCHESTRATOR_ACTOR, "phase_started", note=f"Phase {phase}")

        return self._mutate(project, _apply)

    def set_onboarding_status(self, project: str, status: str) -> ProjectState:
        if status not in ONBOARDING_STATUSES:
            raise ValueError(f"Unsupported onboarding status: {status}")

        def _apply(state: ProjectState) -> None:
            state["status"]["onboarding"] = status

        return self._mutate(project, _apply)

    def sync_progress(self, project: str, metrics: dict[str, int]) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            state["progress"] = {
                "features": {
                    "total": int(metrics.get("features_total", 0)),
                    "completed": int(metrics.get("features_completed", 0)),
                    "in_progress": int(metrics.get("features_in_progress", 0)),
                },
                "tasks": {
                    "total": int(metrics.get("tasks_total", 0)),
                    "pending": int(metrics.get("tasks_pending", 0)),
                    "in_progress": int(metrics.get("tasks_in_progress", 0)),
                    "blocked": int(metrics.get("tasks_blocked", 0)),
                    "qa": int(metrics.get("tasks_qa", 0)),
                    "completed": int(metrics.get("tasks_completed", 0)),
                },
            }

        return self._mutate(project, _apply)

    # -- Advisory file locks -------------------------------------------------

    def add_lock(
        self,
        project: str,
        file: str,
        worker_type: str,
        task_id: str,
        ttl_minutes: int = DEFAULT_LOCK_TTL_MINUTES,
    ) -> ProjectState:
        """Record an advisory lock on ``file``.

        Raises ``LockHeldError`` naming the current holder when another
        entry already covers the file. Expiry is recorded only; nothing
        sweeps expired entries.
        """

        def _apply(state: ProjectState) -> None:
            for existing in state.get("active_locks") or []:
                if existing.get("file") == file:
                    raise LockHeldError(file, str(existing.get("agent")), existing.get("task"))
            expires_at = datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)
            state["active_locks"].append(
                {
                    "file": file,
                    "agent": worker_type,
                    "task": task_id,
                    "expires_at": expires_at.isoformat(),
                }
            )

        return self._mutate(project, _apply)

    def release_lock(self, project: str, file: str) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            state["active_locks"] = [lock for lock in state.get("active_locks") or [] if lock.get("file") != file]

        return self._mutate(project, _apply)

    def release_task_locks(self, project: str, task_id: str) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            state["active_locks"] = [lock for lock in state.get("active_locks") or [] if lock.get("task") != task_id]

        return self._mutate(project, _apply)

    # -- Queue / sessions / contracts ----------------------------------------

    def update_queue(self, project: str, next_tasks: list[dict[str, Any]]) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            state["queue"]["next_tasks"] = list(next_tasks)

        return self._mutate(project, _apply)

    def register_session(
        self,
        project: str,
        worker_type: str,
        session_id: str,
        task_id: Optional[str] = None,
        pid: Optional[int] = None,
    ) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            now = now_iso()
            sessions = state["sessions"]
            if worker_type == ORCHESTRATOR_ACTOR:
                sessions["orchestrator"] = {"session_id": session_id, "started_at": now, "status": "active"}
                return
            entry: dict[str, Any] = {"session_id": session_id, "started_at": now}
            if task_id is not None:
                entry["task"] = task_id
            if pid is not None:
                entry["pid"] = pid
            sessions.setdefault("agents", {})[worker_type] = entry

        return self._mutate(project, _apply)

    def unregister_session(self, project: str, worker_type: str) -> ProjectState:
        def _apply(state: ProjectState) -> None:
            sessions = state["sessions"]
            if worker_type == ORCHESTRATOR_ACTOR:
                sessions["orchestrator"] = {"session_id": None, "started_at": None, "status": "completed"}
                return
            sessions.setdefault("agents", {}).pop(worker_type, None)

        return self._mutate(project, _apply)

    def sync_contract_hashes(self, project: str) -> ProjectState:
        contracts_dir = self.project_dir(project) / "contracts"

        def _apply(state: ProjectState) -> None:
            now = now_iso()
            contracts = state["contracts"]
            for key, file_name in CONTRACT_FILES.items():
                digest = _file_md5(contracts_dir / file_name)
                current = contracts.setdefault(key, {"updated_at": None, "hash": None})
                if digest and digest != current.get("hash"):
                    contracts[key] = {"updated_at": now, "hash": digest}

        return self._mutate(project, _apply)

    # -- Summary -------------------------------------------------------------

    def get_summary(self, project: str) -> str:
        state = self.load(project)
        status = state["status"]
        lines: list[str] = [
            f"# Project State: {project}",
            f"Updated: {state.get('updated_at')}",
            "",
            "## Status",
            f"- Project: {status.get('project')}",
            f"- Onboarding: {status.get('onboarding')}",
            f"- Execution: {status.get('execution')}",
            "",
        ]

        current = state["current_work"]
        if current.get("feature"):
            lines.append("## Current Work")
            lines.append(f"- Feature: {current['feature']}")
            if current.get("feature_title"):
                lines.append(f"  Title: {current['feature_title']}")
            lines.append(f"- Phase: {current.get('phase')}")
            if current.get("tasks_in_progress"):
                lines.append(f"- Active Tasks: {', '.join(current['tasks_in_progress'])}")
            lines.append("")

        features = state["progress"]["features"]
        tasks = state["progress"]["tasks"]
        lines.extend(
            [
                "## Progress",
                f"- Features: {features.get('completed', 0)}/{features.get('total', 0)}",
                f"- Tasks: {tasks.get('completed', 0)}/{tasks.get('total', 0)}",
                f"  - Pending: {tasks.get('pending', 0)}",
                f"  - In Progress: {tasks.get('in_progress', 0)}",
                f"  - Blocked: {tasks.get('blocked', 0)}",
                f"  - QA: {tasks.get('qa', 0)}",
                "",
            ]
        )

        active = {name: a for name, a in self._agents(state).items() if a.get("status") != "idle"}
        if active:
            lines.append("## Active Agents")
            for name, agent_state in active.items():
                lines.append(f"- {name}: {agent_state.get('status')} ({agent_state.get('current_task') or 'no task'})")
            lines.append("")

        if state.get("blockers"):
            lines.append("## Blockers")
            for blocker in state["blockers"]:
                lines.append(f"- {blocker.get('task')} ({blocker.get('agent')}): {blocker.get('reason')}")
            lines.append("")

        if state.get("recent_activity"):
            lines.append("## Recent Activity")
            for entry in state["recent_activity"][:5]:
                task_info = f" [{entry['task']}]" if entry.get("task") else ""
                lines.append(f"- {entry.get('agent')}: {entry.get('action')}{task_info}")

        return "\n".join(lines)
