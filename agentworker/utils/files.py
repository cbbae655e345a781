"""
Shared-file helpers

Several daemons and short-lived CLI processes touch the same files (registry,
channel log, inbox cursors). Writers take an advisory ``fcntl.flock`` on a
sidecar ``.lock`` file and replace JSON documents atomically, so readers never
see a half-written file.
"""

import fcntl
import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, Optional


def _lock_path(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


@contextmanager
def file_lock(path: Path, shared: bool = False) -> Iterator[None]:
    """Hold an advisory lock associated with ``path`` for the duration of the block."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(_lock_path(path), "a") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def read_json(path: Path, default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Read a JSON object from ``path``.

    A missing, empty or corrupt file yields ``default`` (or ``{}``).
    """
    fallback = dict(default) if default is not None else {}
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return fallback
    if not raw.strip():
        return fallback
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return fallback
    return data if isinstance(data, dict) else fallback


def atomic_write_json(path: Path, payload: Dict[str, Any]) -> None:
    """Write ``payload`` to a temp file next to ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)


def locked_update_json(
    path: Path, update_fn: Callable[[Dict[str, Any]], Dict[str, Any]]
) -> Dict[str, Any]:
    """
    Locked read-modify-write of a JSON object file.

    Args:
        path: JSON file to update (created if missing)
        update_fn: Receives the current object, returns the new one

    Returns:
        The object that was written
    """
    with file_lock(path):
        updated = update_fn(read_json(path))
        atomic_write_json(path, updated)
        return updated


def locked_append(path: Path, text: str) -> None:
    """Append ``text`` to ``path`` while holding its lock."""
    with file_lock(path):
        with open(path, "a", encoding="utf-8") as f:
            f.write(text)


def remove_files(paths: Iterable[Optional[Path]]) -> None:
    """Delete files that exist; missing ones are ignored."""
    for path in paths:
        if path is not None:
            Path(path).unlink(missing_ok=True)
