from .interfaces import ProcessLauncher, WorkerManager, WorkerProcess
from .manager import SubprocessLauncher, WorkerProcessManager, build_worker_argv
from .pid_registry import PidRegistry, pid_alive

__all__ = [
    "PidRegistry",
    "ProcessLauncher",
    "SubprocessLauncher",
    "WorkerManager",
    "WorkerProcess",
    "WorkerProcessManager",
    "build_worker_argv",
    "pid_alive",
]
