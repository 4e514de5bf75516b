from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from ..domain.models import FeatureExecution, ProgressEntry, Task


class TaskRepository(ABC):
    @abstractmethod
    def list(self) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    def get(self, task_id: str) -> Optional[Task]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, task: Task) -> Task:
        raise NotImplementedError

    @abstractmethod
    def delete(self, task_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def update_status(self, task_id: str, status: str, *, actor: Optional[str] = None, note: Optional[str] = None) -> Task:
        raise NotImplementedError

    @abstractmethod
    def append_progress(self, task_id: str, entry: ProgressEntry) -> Task:
        raise NotImplementedError

    def for_feature(self, feature_id: str) -> list[Task]:
        return [task for task in self.list() if task.feature_id == feature_id]


class RunRepository(ABC):
    @abstractmethod
    def list(self) -> list[FeatureExecution]:
        raise NotImplementedError

    @abstractmethod
    def get(self, run_id: str) -> Optional[FeatureExecution]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, run: FeatureExecution) -> FeatureExecution:
        raise NotImplementedError

    @abstractmethod
    def delete(self, run_id: str) -> bool:
        raise NotImplementedError
