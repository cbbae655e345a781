"""Utilities for agent-worker."""

from agentworker.utils.files import (
    atomic_write_json,
    file_lock,
    locked_append,
    locked_update_json,
    read_json,
    remove_files,
)

__all__ = [
    "atomic_write_json",
    "file_lock",
    "locked_append",
    "locked_update_json",
    "read_json",
    "remove_files",
]
