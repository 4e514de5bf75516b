from .bootstrap import ensure_state_root
from .file_repos import FileRunRepository, FileTaskRepository, InMemoryRunRepository
from .interfaces import RunRepository, TaskRepository

__all__ = [
    "FileRunRepository",
    "FileTaskRepository",
    "InMemoryRunRepository",
    "RunRepository",
    "TaskRepository",
    "ensure_state_root",
]
