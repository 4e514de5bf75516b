from __future__ import annotations

import threading
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

from ..constants import DEFAULT_LOCK_TTL_MINUTES, DEFAULT_LOG_LINES
from ..domain.models import ExecuteOptions, Task
from ..errors import DependencyOrderError, LockHeldError
from ..scheduler.service import OrchestratorService
from ..storage.container import Container


class RunRequest(BaseModel):
    feature_id: str
    feature_title: Optional[str] = None
    worker_types: list[str] = Field(default_factory=list)
    phases: list[int] = Field(default_factory=list)
    max_concurrent: Optional[int] = Field(None, ge=1, le=64)
    task_timeout_seconds: Optional[float] = Field(None, gt=0)
    dry_run: bool = False
    skip_permissions: Optional[bool] = None


class AnalyzeRequest(BaseModel):
    feature_id: Optional[str] = None
    worker_types: list[str] = Field(default_factory=list)
    phases: list[int] = Field(default_factory=list)


class LockRequest(BaseModel):
    file: str
    worker_type: str
    task_id: str
    ttl_minutes: int = Field(DEFAULT_LOCK_TTL_MINUTES, ge=1)


def _feature_tasks(container: Container, feature_id: Optional[str]) -> list[Task]:
    if feature_id:
        return container.tasks.for_feature(feature_id)
    return container.tasks.list()


def create_router(resolve_container: Any, resolve_orchestrator: Any) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["api"])

    def _ctx(project_dir: Optional[str]) -> tuple[Container, OrchestratorService]:
        container: Container = resolve_container(project_dir)
        orchestrator: OrchestratorService = resolve_orchestrator(project_dir)
        return container, orchestrator

    @router.post("/runs")
    async def start_run(body: RunRequest, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container, orchestrator = _ctx(project_dir)
        try:
            options = ExecuteOptions.from_config(
                container.config,
                worker_types=body.worker_types,
                phases=body.phases,
                max_concurrent=body.max_concurrent,
                task_timeout_seconds=body.task_timeout_seconds,
                dry_run=body.dry_run,
                skip_permissions=body.skip_permissions,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        tasks = _feature_tasks(container, body.feature_id)
        project_path = str(container.project_dir)
        try:
            run = orchestrator.prepare_run(project_path, body.feature_id, tasks, options)
        except DependencyOrderError as exc:
            raise HTTPException(status_code=400, detail={"error": str(exc), "issues": exc.issues}) from exc

        if options.dry_run:
            run = orchestrator.execute_run(project_path, body.feature_id, tasks, options, run=run)
            return {"run": run.to_dict()}

        run.status = "running"
        orchestrator.runs.upsert(run)

        def _execute() -> None:
            orchestrator.execute_run(
                project_path,
                body.feature_id,
                tasks,
                options,
                feature_title=body.feature_title,
                run=run,
            )

        threading.Thread(target=_execute, daemon=True, name=f"run-{run.id}").start()
        logger.info("Run {} started in background for feature {}", run.id, body.feature_id)
        return {"run": run.to_dict()}

    @router.post("/runs/analyze")
    async def analyze_run(body: AnalyzeRequest, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container, orchestrator = _ctx(project_dir)
        options = ExecuteOptions(worker_types=body.worker_types, phases=body.phases)
        analysis = orchestrator.analyze(_feature_tasks(container, body.feature_id), options)
        return analysis.to_dict()

    @router.get("/runs")
    async def list_runs(
        project_dir: Optional[str] = Query(None),
        active: bool = Query(False),
    ) -> dict[str, Any]:
        _, orchestrator = _ctx(project_dir)
        runs = orchestrator.list_active_runs() if active else orchestrator.list_runs()
        return {"runs": [run.to_dict() for run in runs]}

    @router.get("/runs/{run_id}")
    async def get_run(run_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        _, orchestrator = _ctx(project_dir)
        run = orchestrator.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return {"run": run.to_dict()}

    @router.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        _, orchestrator = _ctx(project_dir)
        run = orchestrator.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        if not orchestrator.cancel_run(run_id):
            raise HTTPException(status_code=409, detail=f"Run is not running (status: {run.status})")
        return {"run": run.to_dict(), "cancelled": True}

    @router.get("/state")
    async def get_state(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container, _ = _ctx(project_dir)
        project = container.project_id
        return {
            "project": project,
            "state": container.state.load(project),
            "summary": container.state.get_summary(project),
        }

    @router.post("/state/locks")
    async def add_lock(body: LockRequest, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container, _ = _ctx(project_dir)
        try:
            state = container.state.add_lock(
                container.project_id,
                body.file,
                body.worker_type,
                body.task_id,
                ttl_minutes=body.ttl_minutes,
            )
        except LockHeldError as exc:
            raise HTTPException(
                status_code=409,
                detail={"error": str(exc), "holder": exc.holder, "task": exc.task},
            ) from exc
        return {"active_locks": state["active_locks"]}

    @router.delete("/state/locks")
    async def release_lock(file: str = Query(...), project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container, _ = _ctx(project_dir)
        state = container.state.release_lock(container.project_id, file)
        return {"active_locks": state["active_locks"]}

    @router.get("/sessions")
    async def list_sessions(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container, _ = _ctx(project_dir)
        sessions = container.workers.list_project_sessions(str(container.project_dir))
        return {"sessions": [session.to_dict() for session in sessions]}

    @router.get("/sessions/{session_id}/log")
    async def session_log(
        session_id: str,
        project_dir: Optional[str] = Query(None),
        lines: int = Query(DEFAULT_LOG_LINES, ge=1, le=5000),
    ) -> dict[str, Any]:
        container, _ = _ctx(project_dir)
        if not container.workers.log_path(session_id).exists():
            raise HTTPException(status_code=404, detail="Session log not found")
        return {"session_id": session_id, "lines": container.workers.read_log(session_id, lines)}

    @router.post("/sessions/{session_id}/kill")
    async def kill_session(session_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container, _ = _ctx(project_dir)
        if not container.workers.kill(session_id):
            raise HTTPException(status_code=404, detail="Session not running")
        return {"session_id": session_id, "killed": True}

    return router
