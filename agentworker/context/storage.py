"""Storage backends for workflow context.

Keys are logical paths such as ``channel.jsonl``, ``documents/notes.md`` or
``_state/inbox.json``. Backends map them onto memory or files.
"""

from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional

from agentworker.errors import InvalidArgumentError
from agentworker.utils.files import file_lock, locked_append

Updater = Callable[[Optional[str]], str]


def normalize_key(key: str) -> str:
    """
    Validate a logical key and return it in canonical form.

    Raises:
        InvalidArgumentError: Empty key, absolute path or ``..`` component
    """
    path = PurePosixPath(key or "")
    if not key or path.is_absolute() or ".." in path.parts:
        raise InvalidArgumentError(f"Invalid storage key: {key!r}")
    return str(path)


class StorageBackend(ABC):
    """Minimal primitives used by the context provider."""

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        """Content for ``key``, or None when it does not exist."""

    @abstractmethod
    def write(self, key: str, content: str) -> None:
        """Create or overwrite ``key``."""

    @abstractmethod
    def append(self, key: str, content: str) -> None:
        """Append to ``key``, creating it if needed."""

    @abstractmethod
    def append_with(self, key: str, fn: Updater) -> str:
        """
        Append ``fn(current)`` to ``key`` as one locked step.

        Writers appending through here see every earlier append, so content
        derived from the current tail (timestamps, sequence numbers) stays
        ordered across processes. Returns the appended text.
        """

    @abstractmethod
    def update(self, key: str, fn: Updater) -> str:
        """Atomically replace ``key`` with ``fn(current)``; returns the new content."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def list(self, prefix: str) -> List[str]:
        """Keys under ``prefix``, relative to it, sorted."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""


class MemoryStorage(StorageBackend):
    """In-memory backend for tests and throwaway workflows."""

    def __init__(self):
        self.data: Dict[str, str] = {}

    def read(self, key: str) -> Optional[str]:
        return self.data.get(normalize_key(key))

    def write(self, key: str, content: str) -> None:
        self.data[normalize_key(key)] = content

    def append(self, key: str, content: str) -> None:
        key = normalize_key(key)
        self.data[key] = self.data.get(key, "") + content

    def append_with(self, key: str, fn: Updater) -> str:
        key = normalize_key(key)
        text = fn(self.data.get(key))
        self.data[key] = self.data.get(key, "") + text
        return text

    def update(self, key: str, fn: Updater) -> str:
        key = normalize_key(key)
        self.data[key] = fn(self.data.get(key))
        return self.data[key]

    def exists(self, key: str) -> bool:
        return normalize_key(key) in self.data

    def list(self, prefix: str) -> List[str]:
        prefix = prefix if prefix.endswith("/") else prefix + "/"
        return sorted(k[len(prefix):] for k in self.data if k.startswith(prefix))

    def delete(self, key: str) -> None:
        self.data.pop(normalize_key(key), None)


class FileStorage(StorageBackend):
    """
    File backend rooted at a context directory.

    Appends and updates take an advisory lock so several daemons of one
    workflow can share the directory.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        return self.base_dir / normalize_key(key)

    def read(self, key: str) -> Optional[str]:
        path = self._resolve(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write(self, key: str, content: str) -> None:
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with file_lock(path):
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(path)

    def append(self, key: str, content: str) -> None:
        locked_append(self._resolve(key), content)

    def append_with(self, key: str, fn: Updater) -> str:
        path = self._resolve(key)
        with file_lock(path):
            current = path.read_text(encoding="utf-8") if path.exists() else None
            text = fn(current)
            with open(path, "a", encoding="utf-8") as f:
                f.write(text)
        return text

    def update(self, key: str, fn: Updater) -> str:
        path = self._resolve(key)
        with file_lock(path):
            current = path.read_text(encoding="utf-8") if path.exists() else None
            content = fn(current)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(path)
        return content

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def list(self, prefix: str) -> List[str]:
        root = self._resolve(prefix)
        if not root.is_dir():
            return []
        return sorted(
            p.relative_to(root).as_posix()
            for p in root.rglob("*")
            if p.is_file() and not p.name.endswith((".lock", ".tmp"))
        )

    def delete(self, key: str) -> None:
        self._resolve(key).unlink(missing_ok=True)
