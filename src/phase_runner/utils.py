"""Timestamp, id and naming helpers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def project_name_for(project_path: str) -> str:
    """Last path component of ``project_path``; names the project's state document."""
    name = str(project_path).rstrip("/\\").replace("\\", "/").split("/")[-1]
    return name or "unknown"
