"""Phase-by-phase execution of a feature's tasks on worker processes.

Phases run strictly in ascending order. Within a phase, tasks are launched
in listed order through a bounded semaphore, each on a pool thread that
spawns a worker and waits for it. The phase ends only when every launch has
settled, so nothing in phase N+1 starts while phase N still has work alive.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from loguru import logger

from ..constants import (
    CANCELLED_BY_USER,
    DEFAULT_TASK_ESTIMATE_MINUTES,
    DEPENDENCIES_NOT_MET,
    RUNNABLE_TASK_STATUSES,
    TASK_STATUS_COMPLETED,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_PENDING,
)
from ..domain.models import (
    ExecuteOptions,
    FeatureExecution,
    PhaseExecution,
    Task,
    TaskExecution,
)
from ..errors import DependencyOrderError
from ..state.store import ProjectStateStore
from ..storage.interfaces import RunRepository, TaskRepository
from ..utils import now_iso, project_name_for
from ..workers.interfaces import WorkerManager
from .grouper import can_execute, find_ordering_issues, group_by_phase
from .instructions import build_task_instructions

if TYPE_CHECKING:
    from ..storage.container import Container


@dataclass
class PhasePlan:
    phase: int
    tasks: list[dict[str, Any]] = field(default_factory=list)
    can_run_parallel: bool = True
    estimated_minutes: int = 0


@dataclass
class RunAnalysis:
    phases: list[PhasePlan] = field(default_factory=list)
    total_tasks: int = 0
    estimated_minutes: int = 0
    ordering_issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def select_tasks(tasks: Iterable[Task], options: ExecuteOptions) -> list[Task]:
    """Runnable tasks matching the worker-type and phase filters."""
    selected = [task for task in tasks if task.status in RUNNABLE_TASK_STATUSES]
    if options.worker_types:
        wanted = set(options.worker_types)
        selected = [task for task in selected if task.worker_type in wanted]
    if options.phases:
        phases = set(options.phases)
        selected = [task for task in selected if task.phase in phases]
    return selected


class OrchestratorService:
    def __init__(
        self,
        tasks: TaskRepository,
        runs: RunRepository,
        state: ProjectStateStore,
        workers: WorkerManager,
        *,
        archive: Optional[RunRepository] = None,
    ) -> None:
        self.tasks = tasks
        self.runs = runs
        self.state = state
        self.workers = workers
        self.archive = archive
        self._lock = threading.Lock()
        self._run_locks: dict[str, threading.Lock] = {}

    def _run_lock(self, run_id: str) -> threading.Lock:
        with self._lock:
            return self._run_locks.setdefault(run_id, threading.Lock())

    # -- Planning ------------------------------------------------------------

    def plan(self, feature_id: str, project_path: str, tasks: list[Task]) -> FeatureExecution:
        groups = group_by_phase(tasks)
        return FeatureExecution(
            feature_id=feature_id,
            project_path=project_path,
            status="pending",
            phases=[
                PhaseExecution(
                    phase=phase,
                    tasks=[
                        TaskExecution(task_id=task.id, worker_type=task.worker_type, phase=task.phase)
                        for task in phase_tasks
                    ],
                )
                for phase, phase_tasks in groups.items()
            ],
            tasks_total=len(tasks),
        )

    def analyze(self, tasks: Iterable[Task], options: Optional[ExecuteOptions] = None) -> RunAnalysis:
        """Read-only plan with duration estimates.

        Tasks of earlier phases are assumed complete when judging whether a
        task can execute. A phase takes as long as its slowest task.
        """
        options = options or ExecuteOptions()
        selected = select_tasks(tasks, options)
        completed: set[str] = set()
        analysis = RunAnalysis(total_tasks=len(selected), ordering_issues=find_ordering_issues(selected))

        for phase, phase_tasks in group_by_phase(selected).items():
            summaries = [
                {
                    "id": task.id,
                    "worker_type": task.worker_type,
                    "title": task.title,
                    "depends_on": list(task.depends_on),
                    "can_execute": can_execute(task, completed),
                }
                for task in phase_tasks
            ]
            minutes = max(task.estimated_minutes or DEFAULT_TASK_ESTIMATE_MINUTES for task in phase_tasks)
            analysis.phases.append(
                PhasePlan(
                    phase=phase,
                    tasks=summaries,
                    can_run_parallel=all(item["can_execute"] for item in summaries),
                    estimated_minutes=minutes,
                )
            )
            analysis.estimated_minutes += minutes
            completed.update(task.id for task in phase_tasks)

        return analysis

    # -- Execution -----------------------------------------------------------

    def execute_run(
        self,
        project_path: str,
        feature_id: str,
        tasks: Iterable[Task],
        options: Optional[ExecuteOptions] = None,
        *,
        feature_title: Optional[str] = None,
        run: Optional[FeatureExecution] = None,
    ) -> FeatureExecution:
        """Run every selected task, phase by phase, and return the run record.

        Raises ``DependencyOrderError`` before anything starts when the task
        set contradicts its own phase order. Failures after that point are
        reported through the returned record. ``run`` may carry a record
        prepared by ``prepare_run`` so callers can hand out its id first.
        """
        options = options or ExecuteOptions()
        selected = select_tasks(tasks, options)
        issues = find_ordering_issues(selected)
        if issues:
            raise DependencyOrderError(issues)

        if run is None:
            run = self.plan(feature_id, project_path, selected)
        if options.dry_run:
            run.dry_run = True
            logger.info("Dry run for feature {}: {} task(s) in {} phase(s)", feature_id, run.tasks_total, len(run.phases))
            return run

        project = project_name_for(project_path)
        lock = self._run_lock(run.id)
        by_id = {task.id: task for task in selected}
        with lock:
            run.status = "running"
            run.started_at = now_iso()
        self.runs.upsert(run)
        logger.info(
            "Starting run {} for feature {} ({} task(s), {} phase(s), max_concurrent={})",
            run.id,
            feature_id,
            run.tasks_total,
            len(run.phases),
            options.max_concurrent,
        )

        try:
            first_phase = run.phases[0].phase if run.phases else None
            self._safe_state(
                "start execution",
                self.state.set_execution_mode,
                project,
                "running",
                feature_id,
                feature_title,
                first_phase,
            )
            completed: set[str] = set()
            for phase_exec in run.phases:
                if run.cancelled:
                    logger.info("Run {} cancelled; skipping phase {} and later", run.id, phase_exec.phase)
                    break
                self._run_phase(run, phase_exec, by_id, completed, options, project, lock)
            with lock:
                self._finalize(run)
        except Exception as exc:
            logger.exception("Run {} for feature {} failed", run.id, feature_id)
            with lock:
                run.status = "failed"
                run.error = str(exc)
        finally:
            with lock:
                run.completed_at = run.completed_at or now_iso()
            self._safe_state("reset execution mode", self.state.set_execution_mode, project, "idle")
            self._retire(run)

        logger.info(
            "Run {} finished: status={} completed={} failed={} total={}",
            run.id,
            run.status,
            run.tasks_completed,
            run.tasks_failed,
            run.tasks_total,
        )
        return run

    def prepare_run(
        self,
        project_path: str,
        feature_id: str,
        tasks: Iterable[Task],
        options: Optional[ExecuteOptions] = None,
    ) -> FeatureExecution:
        """Validate and plan a run without starting it."""
        options = options or ExecuteOptions()
        selected = select_tasks(tasks, options)
        issues = find_ordering_issues(selected)
        if issues:
            raise DependencyOrderError(issues)
        return self.plan(feature_id, project_path, selected)

    def _run_phase(
        self,
        run: FeatureExecution,
        phase_exec: PhaseExecution,
        by_id: dict[str, Task],
        completed: set[str],
        options: ExecuteOptions,
        project: str,
        lock: threading.Lock,
    ) -> None:
        with lock:
            phase_exec.status = "running"
            phase_exec.started_at = now_iso()
        self._safe_state("record phase", self.state.set_current_phase, project, phase_exec.phase)
        logger.info("Run {}: phase {} started with {} task(s)", run.id, phase_exec.phase, len(phase_exec.tasks))

        # Dependencies are judged against what finished before this phase began.
        satisfied = frozenset(completed)
        gate = threading.BoundedSemaphore(options.max_concurrent)
        futures: list[Future] = []

        with ThreadPoolExecutor(
            max_workers=options.max_concurrent,
            thread_name_prefix=f"phase-{phase_exec.phase}",
        ) as pool:
            for task_exec in phase_exec.tasks:
                task = by_id[task_exec.task_id]
                if not can_execute(task, satisfied):
                    with lock:
                        task_exec.status = "pending"
                        task_exec.error = DEPENDENCIES_NOT_MET
                    missing = [dep for dep in task.depends_on if dep not in satisfied]
                    logger.warning("Task {} skipped: dependencies not met ({})", task.id, ", ".join(missing))
                    continue

                gate.acquire()
                with lock:
                    if run.cancelled:
                        gate.release()
                        break
                    task_exec.status = "spawning"
                    task_exec.started_at = now_iso()
                futures.append(
                    pool.submit(self._execute_task, run, task, task_exec, options, project, lock, gate, completed)
                )

            wait(futures)

        for future in futures:
            # Surfaces unexpected handler errors as a run failure.
            future.result()

        with lock:
            done = sum(1 for t in phase_exec.tasks if t.status == "completed")
            failed = sum(1 for t in phase_exec.tasks if t.status == "failed")
            if phase_exec.tasks and done == len(phase_exec.tasks):
                phase_exec.status = "completed"
            elif failed and not done:
                phase_exec.status = "failed"
            else:
                phase_exec.status = "partial"
            phase_exec.completed_at = now_iso()
        logger.info(
            "Run {}: phase {} {} ({} completed, {} failed)",
            run.id,
            phase_exec.phase,
            phase_exec.status,
            done,
            failed,
        )

    def _execute_task(
        self,
        run: FeatureExecution,
        task: Task,
        task_exec: TaskExecution,
        options: ExecuteOptions,
        project: str,
        lock: threading.Lock,
        gate: threading.BoundedSemaphore,
        completed: set[str],
    ) -> None:
        try:
            result = self.workers.spawn(
                run.project_path,
                task.id,
                task.worker_type,
                build_task_instructions(task),
                skip_permissions=options.skip_permissions,
            )
            if not result.success or result.session is None:
                with lock:
                    task_exec.status = "failed"
                    task_exec.error = result.error or "Failed to spawn session"
                    task_exec.completed_at = now_iso()
                    run.tasks_failed += 1
                logger.warning("Task {} failed to spawn: {}", task.id, task_exec.error)
                return

            session = result.session
            with lock:
                task_exec.session_id = session.session_id
                task_exec.pid = session.pid
                cancelled = run.cancelled
                if cancelled:
                    task_exec.status = "failed"
                    task_exec.error = CANCELLED_BY_USER
                    task_exec.completed_at = now_iso()
                    run.tasks_failed += 1
                else:
                    task_exec.status = "running"
            if cancelled:
                self.workers.kill(session.session_id)
                return

            self._mark_started(project, task)
            outcome = self.workers.wait_for(session.session_id, options.task_timeout_seconds)

            with lock:
                task_exec.completed_at = now_iso()
                task_exec.result_status = outcome.status
                if task_exec.status == "failed":
                    # Cancelled while waiting.
                    run.tasks_failed += 1
                elif outcome.completed and outcome.status == "completed":
                    task_exec.status = "completed"
                    completed.add(task.id)
                    run.tasks_completed += 1
                else:
                    task_exec.status = "failed"
                    task_exec.error = f"Session ended with status: {outcome.status}"
                    run.tasks_failed += 1
                final_status = task_exec.status
                error = task_exec.error

            if final_status == "completed":
                logger.info("Task {} completed (session={})", task.id, session.session_id)
            else:
                logger.warning("Task {} failed (session={}): {}", task.id, session.session_id, error)
            self._mark_finished(project, task, final_status == "completed", error, outcome.status)
        finally:
            gate.release()

    def _finalize(self, run: FeatureExecution) -> None:
        if run.cancelled:
            run.status = "failed"
        elif all(phase.status == "completed" for phase in run.phases):
            run.status = "completed"
        elif run.tasks_completed > 0:
            run.status = "partial"
        else:
            run.status = "failed"
        run.completed_at = now_iso()

    # -- Side effects on the task repository and state document --------------

    def _safe_state(self, what: str, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Failed to update project state ({})", what)

    def _mark_started(self, project: str, task: Task) -> None:
        try:
            current = self.tasks.get(task.id)
            if current is not None and current.status != TASK_STATUS_IN_PROGRESS:
                self.tasks.update_status(task.id, TASK_STATUS_IN_PROGRESS, actor=task.worker_type, note="Worker session started")
        except Exception:
            logger.exception("Failed to update task status for {}", task.id)
        self._safe_state("agent start", self.state.agent_start_work, project, task.worker_type, task.id)

    def _mark_finished(self, project: str, task: Task, succeeded: bool, error: Optional[str], status: str) -> None:
        try:
            current = self.tasks.get(task.id)
            if current is not None and succeeded and current.status != TASK_STATUS_COMPLETED:
                self.tasks.update_status(task.id, TASK_STATUS_COMPLETED, actor=task.worker_type, note=f"Completed {task.title}")
            elif current is not None and not succeeded and current.status == TASK_STATUS_IN_PROGRESS:
                # Failed or timed-out work goes back to the queue.
                self.tasks.update_status(task.id, TASK_STATUS_PENDING, actor=task.worker_type, note=error)
        except Exception:
            logger.exception("Failed to update task status for {}", task.id)
        note = f"Completed {task.title}" if succeeded else f"Failed: {status}"
        self._safe_state("agent complete", self.state.agent_complete_work, project, task.worker_type, task.id, note)

    def _retire(self, run: FeatureExecution) -> None:
        """Move a finished run from the live registry to the archive.

        A run whose archive write fails stays live so it remains readable.
        """
        if self.archive is not None:
            try:
                self.archive.upsert(run)
            except Exception:
                logger.exception("Failed to archive run {}", run.id)
                return
        self.runs.delete(run.id)
        with self._lock:
            self._run_locks.pop(run.id, None)

    # -- Queries and control -------------------------------------------------

    def get_run(self, run_id: str) -> Optional[FeatureExecution]:
        run = self.runs.get(run_id)
        if run is None and self.archive is not None:
            run = self.archive.get(run_id)
        return run

    def list_active_runs(self) -> list[FeatureExecution]:
        return [run for run in self.runs.list() if run.status == "running"]

    def list_runs(self) -> list[FeatureExecution]:
        runs = {run.id: run for run in (self.archive.list() if self.archive is not None else [])}
        runs.update({run.id: run for run in self.runs.list()})
        return sorted(runs.values(), key=lambda run: run.started_at)

    def cancel_run(self, run_id: str) -> bool:
        """Stop a running run and kill its live worker sessions.

        Returns False for unknown or already finished runs.
        """
        run = self.runs.get(run_id)
        if run is None or run.status != "running":
            return False
        with self._lock:
            lock = self._run_locks.get(run_id)
        if lock is None:
            return False
        with lock:
            if run.status != "running":
                return False
            run.cancelled = True
            to_kill: list[str] = []
            for task_exec in run.task_executions():
                if task_exec.session_id and task_exec.status == "running":
                    task_exec.status = "failed"
                    task_exec.error = CANCELLED_BY_USER
                    to_kill.append(task_exec.session_id)
            run.status = "failed"
            run.completed_at = now_iso()

        for session_id in to_kill:
            if not self.workers.kill(session_id):
                logger.warning("Could not kill session {} while cancelling run {}", session_id, run_id)
        logger.info("Cancelled run {} ({} session(s) killed)", run_id, len(to_kill))
        return True


def create_orchestrator(container: "Container") -> OrchestratorService:
    return OrchestratorService(
        container.tasks,
        container.runs,
        container.state,
        container.workers,
        archive=container.run_archive,
    )
