"""Configure loguru and summarize run records for logs."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .domain.models import FeatureExecution

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Route loguru output to stderr, and optionally to a rotating file."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(str(log_file), level=level.upper(), rotation="10 MB", retention=5, enqueue=True)


def summarize_run(run: Optional[FeatureExecution]) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a run.

    Args:
        run: Run record (or None).

    Returns:
        A dictionary with the run's status, counters and per-phase outcome.
    """
    if run is None:
        return {"run": None}

    d: dict[str, Any] = {
        "run": run.id,
        "feature": run.feature_id,
        "status": run.status,
        "tasks": f"{run.tasks_completed}/{run.tasks_total} completed, {run.tasks_failed} failed",
        "phases": {str(phase.phase): phase.status for phase in run.phases},
    }
    if run.cancelled:
        d["cancelled"] = True
    if run.error:
        d["error"] = run.error
    failures = {t.task_id: t.error for t in run.task_executions() if t.error}
    if failures:
        d["task_errors"] = failures
    return d


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs; fall back to `str(obj)`."""
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
