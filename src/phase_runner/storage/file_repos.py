from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

import yaml

from ..domain.models import FeatureExecution, ProgressEntry, Task
from ..domain.transitions import apply_transition
from ..errors import TaskNotFoundError
from ..io_utils import FileLock, _atomic_write_yaml
from ..utils import now_iso
from .interfaces import RunRepository, TaskRepository


T = TypeVar("T")


class _YamlCollection(Generic[T]):
    """One YAML file holding a list of records under a single key.

    Every operation re-reads the file, so several processes can share it.
    """

    def __init__(
        self,
        path: Path,
        lock_path: Path,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
        id_of: Callable[[T], str],
    ) -> None:
        self.path = path
        self.lock_path = lock_path
        self.key = key
        self._loader = loader
        self._dumper = dumper
        self._id_of = id_of
        self._mutex = threading.RLock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._mutex, FileLock(self.lock_path):
            yield

    def _read(self) -> list[T]:
        if not self.path.exists():
            return []
        raw = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        items = raw.get(self.key) if isinstance(raw, dict) else None
        if not isinstance(items, list):
            return []
        return [self._loader(item) for item in items if isinstance(item, dict)]

    def _write(self, items: list[T]) -> None:
        _atomic_write_yaml(self.path, {"version": 1, self.key: [self._dumper(item) for item in items]})

    def all(self) -> list[T]:
        with self._locked():
            return self._read()

    def find(self, item_id: str) -> Optional[T]:
        return next((item for item in self.all() if self._id_of(item) == item_id), None)

    def upsert(self, item: T) -> T:
        with self._locked():
            items = self._read()
            ids = [self._id_of(existing) for existing in items]
            if self._id_of(item) in ids:
                items[ids.index(self._id_of(item))] = item
            else:
                items.append(item)
            self._write(items)
        return item

    def delete(self, item_id: str) -> bool:
        with self._locked():
            items = self._read()
            keep = [item for item in items if self._id_of(item) != item_id]
            if len(keep) == len(items):
                return False
            self._write(keep)
        return True

    def mutate(self, item_id: str, fn: Callable[[T], None]) -> Optional[T]:
        """Apply ``fn`` to the stored record and persist it; None if absent.

        An exception from ``fn`` leaves the file untouched.
        """
        with self._locked():
            items = self._read()
            for item in items:
                if self._id_of(item) == item_id:
                    fn(item)
                    self._write(items)
                    return item
        return None


class FileTaskRepository(TaskRepository):
    """Tasks stored in ``.phase_runner/tasks.yaml``."""

    def __init__(self, path: Path, lock_path: Path) -> None:
        self._tasks = _YamlCollection[Task](
            path,
            lock_path,
            "tasks",
            loader=Task.from_dict,
            dumper=lambda task: task.to_dict(),
            id_of=lambda task: task.id,
        )

    def list(self) -> list[Task]:
        return self._tasks.all()

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.find(task_id)

    def upsert(self, task: Task) -> Task:
        task.updated_at = now_iso()
        return self._tasks.upsert(task)

    def delete(self, task_id: str) -> bool:
        return self._tasks.delete(task_id)

    def _mutate(self, task_id: str, fn: Callable[[Task], None]) -> Task:
        task = self._tasks.mutate(task_id, fn)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def update_status(self, task_id: str, status: str, *, actor: Optional[str] = None, note: Optional[str] = None) -> Task:
        return self._mutate(task_id, lambda task: apply_transition(task, status, now=now_iso(), actor=actor, note=note))

    def append_progress(self, task_id: str, entry: ProgressEntry) -> Task:
        def _append(task: Task) -> None:
            task.progress.append(entry)
            task.updated_at = entry.timestamp

        return self._mutate(task_id, _append)


class FileRunRepository(RunRepository):
    """Archive of finished runs in ``.phase_runner/runs.yaml``."""

    def __init__(self, path: Path, lock_path: Path) -> None:
        self._runs = _YamlCollection[FeatureExecution](
            path,
            lock_path,
            "runs",
            loader=FeatureExecution.from_dict,
            dumper=lambda run: run.to_dict(),
            id_of=lambda run: run.id,
        )

    def list(self) -> list[FeatureExecution]:
        return self._runs.all()

    def get(self, run_id: str) -> Optional[FeatureExecution]:
        return self._runs.find(run_id)

    def upsert(self, run: FeatureExecution) -> FeatureExecution:
        return self._runs.upsert(run)

    def delete(self, run_id: str) -> bool:
        return self._runs.delete(run_id)


class InMemoryRunRepository(RunRepository):
    """Registry of live run records.

    Stores the same objects the scheduler mutates, so readers observe
    progress without a save round-trip.
    """

    def __init__(self) -> None:
        self._runs: dict[str, FeatureExecution] = {}
        self._lock = threading.Lock()

    def list(self) -> list[FeatureExecution]:
        with self._lock:
            return list(self._runs.values())

    def get(self, run_id: str) -> Optional[FeatureExecution]:
        with self._lock:
            return self._runs.get(run_id)

    def upsert(self, run: FeatureExecution) -> FeatureExecution:
        with self._lock:
            self._runs[run.id] = run
        return run

    def delete(self, run_id: str) -> bool:
        with self._lock:
            return self._runs.pop(run_id, None) is not None
