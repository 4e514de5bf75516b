"""HTTP surface over the scheduler, worker sessions and project state."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from ..scheduler.service import OrchestratorService, create_orchestrator
from ..storage.container import Container
from .router import create_router


def create_app(project_dir: Optional[Path] = None) -> FastAPI:
    """Create the FastAPI application.

    Containers and orchestrators are cached per resolved project directory so
    live runs stay visible across requests.
    """
    app = FastAPI(
        title="Phase Runner",
        description="Run feature tasks phase by phase on coding-agent workers",
        version="0.1.0",
    )
    app.state.default_project_dir = project_dir

    lock = threading.Lock()
    containers: dict[Path, Container] = {}
    orchestrators: dict[Path, OrchestratorService] = {}

    def _project_dir(project_dir_param: Optional[str]) -> Path:
        if project_dir_param:
            return Path(project_dir_param).resolve()
        if app.state.default_project_dir:
            return Path(app.state.default_project_dir).resolve()
        return Path.cwd().resolve()

    def resolve_container(project_dir_param: Optional[str] = None) -> Container:
        key = _project_dir(project_dir_param)
        with lock:
            if key not in containers:
                containers[key] = Container(key)
            return containers[key]

    def resolve_orchestrator(project_dir_param: Optional[str] = None) -> OrchestratorService:
        container = resolve_container(project_dir_param)
        with lock:
            key = container.project_dir
            if key not in orchestrators:
                orchestrators[key] = create_orchestrator(container)
            return orchestrators[key]

    app.include_router(create_router(resolve_container, resolve_orchestrator))

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


__all__ = ["create_app", "create_router"]
