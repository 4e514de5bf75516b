"""Persisted map of live worker sessions to their OS process ids.

Lets another process (the CLI, a restarted server) find and signal
workers it did not start.
"""

from __future__ import annotations

import os
import signal
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..io_utils import FileLock, _atomic_write_json, _load_data
from ..utils import now_iso


def pid_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        os.kill(int(pid), 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return False
    return True


class PidRegistry:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock_path = path.with_suffix(path.suffix + ".lock")

    def load(self) -> dict[str, dict[str, Any]]:
        data = _load_data(self.path, {})
        return {str(k): v for k, v in data.items() if isinstance(v, dict)}

    def get(self, session_id: str) -> Optional[dict[str, Any]]:
        return self.load().get(session_id)

    def set(
        self,
        session_id: str,
        pid: int,
        *,
        project_path: str,
        task_id: str,
        worker_type: str,
        automated: bool = True,
    ) -> None:
        with FileLock(self._lock_path):
            entries = self.load()
            entries[session_id] = {
                "pid": pid,
                "project_path": project_path,
                "start_time": now_iso(),
                "task_id": task_id,
                "worker_type": worker_type,
                "automated": automated,
            }
            _atomic_write_json(self.path, entries)

    def remove(self, session_id: str) -> bool:
        with FileLock(self._lock_path):
            entries = self.load()
            if entries.pop(session_id, None) is None:
                return False
            _atomic_write_json(self.path, entries)
        return True

    def prune_stale(self) -> list[str]:
        """Drop entries whose pid no longer answers; return their session ids."""
        with FileLock(self._lock_path):
            entries = self.load()
            stale = [sid for sid, entry in entries.items() if not pid_alive(entry.get("pid"))]
            if not stale:
                return []
            for sid in stale:
                entries.pop(sid, None)
            _atomic_write_json(self.path, entries)
        logger.info("Pruned {} stale worker session(s) from {}", len(stale), self.path)
        return stale

    def terminate(self, session_id: str) -> bool:
        """SIGTERM a registered session from any process and forget it."""
        entry = self.get(session_id)
        if entry is None or not entry.get("pid"):
            return False
        try:
            os.kill(int(entry["pid"]), signal.SIGTERM)
        except OSError as exc:
            logger.warning("Failed to signal session {} (pid {}): {}", session_id, entry["pid"], exc)
            self.remove(session_id)
            return False
        self.remove(session_id)
        return True
