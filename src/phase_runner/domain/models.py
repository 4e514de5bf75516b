from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Optional

from ..constants import (
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_TASK_TIMEOUT_SECONDS,
    TASK_STATUSES,
)
from ..utils import new_id, now_iso


TaskStatus = Literal["pending", "in_progress", "blocked", "qa", "completed"]
Priority = Literal["high", "medium", "low"]
TaskExecutionStatus = Literal["pending", "spawning", "running", "completed", "failed"]
PhaseStatus = Literal["pending", "running", "completed", "failed", "partial"]
RunStatus = Literal["pending", "running", "completed", "failed", "partial"]
SessionStatus = Literal["spawning", "running", "completed", "failed"]


def _str_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value]
    return [str(value)]


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class ProgressEntry:
    timestamp: str = field(default_factory=now_iso)
    actor: str = ""
    action: str = ""
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgressEntry":
        return cls(
            timestamp=str(data.get("timestamp") or now_iso()),
            actor=str(data.get("actor") or data.get("agent") or ""),
            action=str(data.get("action") or ""),
            note=str(data.get("note") or ""),
        )


@dataclass
class QAConfig:
    required: bool = False
    status: str = "pending"
    checklist: list[Any] = field(default_factory=list)
    notes: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QAConfig":
        return cls(
            required=bool(data.get("required", False)),
            status=str(data.get("status") or "pending"),
            checklist=list(data.get("checklist") or []),
            notes=data.get("notes"),
        )

    def checklist_items(self) -> list[str]:
        items: list[str] = []
        for entry in self.checklist:
            if isinstance(entry, dict):
                text = entry.get("item")
            else:
                text = entry
            if text:
                items.append(str(text))
        return items


@dataclass
class Task:
    id: str = field(default_factory=lambda: new_id("task"))
    feature_id: str = ""
    title: str = ""
    worker_type: str = ""
    status: TaskStatus = "pending"
    priority: Priority = "medium"
    task_type: str = "implementation"
    phase: int = 1
    estimated_minutes: Optional[int] = None
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    files: Any = None
    contracts: list[Any] = field(default_factory=list)
    instructions: str = ""
    progress: list[ProgressEntry] = field(default_factory=list)
    qa: QAConfig = field(default_factory=QAConfig)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["progress"] = [entry.to_dict() for entry in self.progress]
        data["qa"] = self.qa.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        status = str(data.get("status") or "pending")
        if status not in TASK_STATUSES:
            status = "pending"
        phase = _optional_int(data.get("phase")) or 1
        progress = [ProgressEntry.from_dict(p) for p in list(data.get("progress") or []) if isinstance(p, dict)]
        qa_raw = data.get("qa")
        return cls(
            id=str(data.get("id") or new_id("task")),
            feature_id=str(data.get("feature_id") or ""),
            title=str(data.get("title") or ""),
            worker_type=str(data.get("worker_type") or data.get("agent") or ""),
            status=status,
            priority=str(data.get("priority") or "medium"),
            task_type=str(data.get("task_type") or data.get("type") or "implementation"),
            phase=max(phase, 1),
            estimated_minutes=_optional_int(data.get("estimated_minutes")),
            depends_on=_str_list(data.get("depends_on")),
            blocks=_str_list(data.get("blocks")),
            files=data.get("files"),
            contracts=list(data.get("contracts") or []),
            instructions=str(data.get("instructions") or ""),
            progress=progress,
            qa=QAConfig.from_dict(qa_raw) if isinstance(qa_raw, dict) else QAConfig(),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class TaskExecution:
    task_id: str = ""
    worker_type: str = ""
    phase: int = 1
    session_id: Optional[str] = None
    pid: Optional[int] = None
    status: TaskExecutionStatus = "pending"
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    result_status: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskExecution":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


@dataclass
class PhaseExecution:
    phase: int = 1
    tasks: list[TaskExecution] = field(default_factory=list)
    status: PhaseStatus = "pending"
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tasks"] = [task.to_dict() for task in self.tasks]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseExecution":
        return cls(
            phase=int(data.get("phase") or 1),
            tasks=[TaskExecution.from_dict(t) for t in list(data.get("tasks") or []) if isinstance(t, dict)],
            status=str(data.get("status") or "pending"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class FeatureExecution:
    id: str = field(default_factory=lambda: new_id("run"))
    feature_id: str = ""
    project_path: str = ""
    status: RunStatus = "pending"
    phases: list[PhaseExecution] = field(default_factory=list)
    started_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None
    tasks_total: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    cancelled: bool = False
    dry_run: bool = False
    error: Optional[str] = None

    def task_executions(self) -> list[TaskExecution]:
        return [task for phase in self.phases for task in phase.tasks]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phases"] = [phase.to_dict() for phase in self.phases]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeatureExecution":
        return cls(
            id=str(data.get("id") or new_id("run")),
            feature_id=str(data.get("feature_id") or ""),
            project_path=str(data.get("project_path") or ""),
            status=str(data.get("status") or "pending"),
            phases=[PhaseExecution.from_dict(p) for p in list(data.get("phases") or []) if isinstance(p, dict)],
            started_at=str(data.get("started_at") or now_iso()),
            completed_at=data.get("completed_at"),
            tasks_total=int(data.get("tasks_total") or 0),
            tasks_completed=int(data.get("tasks_completed") or 0),
            tasks_failed=int(data.get("tasks_failed") or 0),
            cancelled=bool(data.get("cancelled", False)),
            dry_run=bool(data.get("dry_run", False)),
            error=data.get("error"),
        )


@dataclass
class WorkerSession:
    session_id: str = ""
    pid: Optional[int] = None
    project_path: str = ""
    task_id: str = ""
    worker_type: str = ""
    started_at: str = field(default_factory=now_iso)
    status: SessionStatus = "spawning"
    exit_code: Optional[int] = None
    log_path: Optional[str] = None
    automated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SpawnResult:
    success: bool
    session: Optional[WorkerSession] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class WaitResult:
    completed: bool
    status: str


@dataclass
class ExecuteOptions:
    """Recognized options for a scheduling run.

    Empty ``worker_types`` / ``phases`` mean "no filter".
    """

    worker_types: list[str] = field(default_factory=list)
    phases: list[int] = field(default_factory=list)
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    task_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS
    dry_run: bool = False
    skip_permissions: bool = False

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {self.max_concurrent}")
        if self.task_timeout_seconds <= 0:
            raise ValueError(f"task_timeout_seconds must be positive, got {self.task_timeout_seconds}")

    @classmethod
    def from_config(cls, config: dict[str, Any], **overrides: Any) -> "ExecuteOptions":
        orchestrator_cfg = config.get("orchestrator") if isinstance(config.get("orchestrator"), dict) else {}
        workers_cfg = config.get("workers") if isinstance(config.get("workers"), dict) else {}
        values: dict[str, Any] = {
            "max_concurrent": int(orchestrator_cfg.get("max_concurrent") or DEFAULT_MAX_CONCURRENT),
            "task_timeout_seconds": float(
                orchestrator_cfg.get("task_timeout_seconds") or DEFAULT_TASK_TIMEOUT_SECONDS
            ),
            "skip_permissions": bool(workers_cfg.get("skip_permissions", False)),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
