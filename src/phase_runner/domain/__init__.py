from .models import (
    ExecuteOptions,
    FeatureExecution,
    PhaseExecution,
    ProgressEntry,
    QAConfig,
    SpawnResult,
    Task,
    TaskExecution,
    WaitResult,
    WorkerSession,
)
from .transitions import VALID_TRANSITIONS, apply_transition, is_valid_transition

__all__ = [
    "ExecuteOptions",
    "FeatureExecution",
    "PhaseExecution",
    "ProgressEntry",
    "QAConfig",
    "SpawnResult",
    "Task",
    "TaskExecution",
    "VALID_TRANSITIONS",
    "WaitResult",
    "WorkerSession",
    "apply_transition",
    "is_valid_transition",
]
