"""File helpers shared by every on-disk store.

Writes go to a sibling ``.tmp`` file that is fsynced and renamed over the
target, so readers never see a half-written document. Cross-process
exclusion uses advisory locks on a separate lock file.
"""

from __future__ import annotations

import json
import os
from collections import deque
from pathlib import Path
from typing import IO, Any, Callable, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES

if os.name == "nt":
    import msvcrt
else:
    import fcntl


def _acquire(handle: IO[str]) -> None:
    if os.name == "nt":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, WINDOWS_LOCK_BYTES)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)


def _release(handle: IO[str]) -> None:
    if os.name == "nt":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, WINDOWS_LOCK_BYTES)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class FileLock:
    """Exclusive advisory lock held on ``lock_path`` for the ``with`` block.

    Not reentrant: taking a second lock on the same path from the thread
    that already holds one blocks forever.
    """

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._handle: Optional[IO[str]] = None

    def __enter__(self) -> "FileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+", encoding="utf-8")
        try:
            _acquire(handle)
        except OSError:
            handle.close()
            raise
        self._handle = handle
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            _release(handle)
        finally:
            handle.close()


def _atomic_write(path: Path, dump: Callable[[IO[str]], None]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        dump(handle)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    _atomic_write(path, lambda handle: json.dump(data, handle, indent=2))


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    _atomic_write(
        path,
        lambda handle: yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, width=120),
    )


def _is_yaml(path: Path) -> bool:
    return path.suffix in {".yaml", ".yml"}


def _save_data(path: Path, data: dict[str, Any]) -> None:
    (_atomic_write_yaml if _is_yaml(path) else _atomic_write_json)(path, data)


def _load_data_with_error(path: Path, default: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    """Load a JSON or YAML mapping from ``path``.

    Returns ``(data, error)``. A missing or empty file yields ``(default, None)``.
    Unreadable or non-mapping content yields ``(default, message)`` so callers
    can refuse to overwrite a file they could not parse.
    """
    if not path.exists():
        return default, None
    try:
        text = path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) if _is_yaml(path) else json.loads(text) if text.strip() else None
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    except (OSError, ValueError) as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected object, got {type(data).__name__}"
    return data, None


def _load_data(path: Path, default: dict[str, Any]) -> dict[str, Any]:
    return _load_data_with_error(path, default)[0]


def _read_tail_lines(path: Path, max_lines: int) -> list[str]:
    """Last ``max_lines`` lines of a text file, without trailing newlines."""
    if max_lines <= 0 or not path.exists():
        return []
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            tail = deque(handle, maxlen=max_lines)
    except OSError:
        return []
    return [line.rstrip("\n") for line in tail]
