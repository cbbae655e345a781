"""Session registry: service discovery for running daemons.

``<home>/registry.json`` maps every session id (and name, when it has one)
to its SessionInfo, plus the id of the default session:

    {
        "sessions": {"<id>": {...}, "alice@review:main": {...}},
        "defaultSession": "<id>"
    }

Daemons and CLI processes share the file, so every write is a locked
read-modify-write followed by an atomic rename.
"""

import asyncio
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from agentworker.target import DEFAULT_TAG, DEFAULT_WORKFLOW
from agentworker.utils.files import locked_update_json, read_json, remove_files

DEFAULT_KEY = "defaultSession"
READY_POLL_INTERVAL = 0.05


@dataclass
class SessionInfo:
    id: str
    model: str
    backend: str
    socket_path: str
    pid_file: str
    ready_file: str
    pid: int
    created_at: str
    name: Optional[str] = None
    system: str = ""
    idle_timeout: float = 0.0  # seconds, 0 = never
    workflow: str = DEFAULT_WORKFLOW
    tag: str = DEFAULT_TAG
    context_dir: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionInfo":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class SessionPaths:
    """Per-daemon files under the sessions directory."""
    socket: Path
    pid: Path
    ready: Path
    log: Path
    state: Path


class Registry:
    """
    Registry rooted at an agent-worker home directory.

    Lookups read the file without locking; the atomic rename on write
    guarantees they see either the old or the new document.
    """

    def __init__(self, home: Path):
        self.home = Path(home).expanduser()
        self.path = self.home / "registry.json"
        self.sessions_dir = self.home / "sessions"

    def ensure_dirs(self) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def paths_for(self, session_id: str) -> SessionPaths:
        base = self.sessions_dir / session_id
        return SessionPaths(
            socket=base.with_suffix(".sock"),
            pid=base.with_suffix(".pid"),
            ready=base.with_suffix(".ready"),
            log=base.with_suffix(".log"),
            state=self.sessions_dir / f"{session_id}.state.json",
        )

    def _load(self) -> Dict[str, Any]:
        data = read_json(self.path)
        if not isinstance(data.get("sessions"), dict):
            data["sessions"] = {}
        return data

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def register_session(self, info: SessionInfo) -> None:
        """Upsert ``info`` under its id and name; the first session becomes default."""
        self.ensure_dirs()

        def update(data: Dict[str, Any]) -> Dict[str, Any]:
            sessions = data.setdefault("sessions", {})
            entry = info.to_dict()
            sessions[info.id] = entry
            if info.name:
                sessions[info.name] = entry
            if data.get(DEFAULT_KEY) not in sessions:
                data[DEFAULT_KEY] = info.id
            return data

        locked_update_json(self.path, update)

    def unregister_session(self, id_or_name: str) -> bool:
        """
        Remove a session's id and name keys.

        When it was the default, the first remaining session takes over.

        Returns:
            True if an entry was removed
        """
        removed = []

        def update(data: Dict[str, Any]) -> Dict[str, Any]:
            sessions = data.setdefault("sessions", {})
            info = self._lookup(data, id_or_name)
            if info is None:
                return data
            removed.append(info)
            sessions.pop(info.id, None)
            if info.name and sessions.get(info.name, {}).get("id") == info.id:
                sessions.pop(info.name, None)
            if data.get(DEFAULT_KEY) == info.id:
                remaining = list(sessions.values())
                if remaining:
                    data[DEFAULT_KEY] = remaining[0]["id"]
                else:
                    data.pop(DEFAULT_KEY, None)
            return data

        locked_update_json(self.path, update)
        return bool(removed)

    def set_default_session(self, id_or_name: str) -> bool:
        found = []

        def update(data: Dict[str, Any]) -> Dict[str, Any]:
            info = self._lookup(data, id_or_name)
            if info is not None:
                found.append(info)
                data[DEFAULT_KEY] = info.id
            return data

        locked_update_json(self.path, update)
        return bool(found)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _lookup(data: Dict[str, Any], id_or_name: Optional[str]) -> Optional[SessionInfo]:
        sessions: Dict[str, Any] = data.get("sessions") or {}

        if not id_or_name:
            default_id = data.get(DEFAULT_KEY)
            if default_id and default_id in sessions:
                return SessionInfo.from_dict(sessions[default_id])
            unique = {entry["id"]: entry for entry in sessions.values()}
            if len(unique) == 1:
                return SessionInfo.from_dict(next(iter(unique.values())))
            return None

        if id_or_name in sessions:
            return SessionInfo.from_dict(sessions[id_or_name])

        # Short ids like "e8ab33e7"
        matches = {e["id"]: e for e in sessions.values() if e["id"].startswith(id_or_name)}
        if len(matches) == 1:
            return SessionInfo.from_dict(next(iter(matches.values())))
        return None

    def get_session_info(self, id_or_name: Optional[str] = None) -> Optional[SessionInfo]:
        """
        Find a session by id, name or unique id prefix.

        With no argument, returns the default session, else the only
        registered one, else None.
        """
        return self._lookup(self._load(), id_or_name)

    def get_default_session_id(self) -> Optional[str]:
        return self._load().get(DEFAULT_KEY)

    def list_sessions(self) -> List[SessionInfo]:
        unique: Dict[str, Dict[str, Any]] = {}
        for entry in self._load()["sessions"].values():
            unique.setdefault(entry["id"], entry)
        return [SessionInfo.from_dict(e) for e in unique.values()]

    def get_workflow_agents(
        self, workflow: str = DEFAULT_WORKFLOW, tag: str = DEFAULT_TAG
    ) -> List[SessionInfo]:
        return [s for s in self.list_sessions() if s.workflow == workflow and s.tag == tag]

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def is_session_running(self, id_or_name: Optional[str] = None) -> bool:
        """
        Check that the recorded pid is alive.

        A dead daemon's socket, pid and ready files are removed and its
        entry unregistered before returning False.
        """
        info = self.get_session_info(id_or_name)
        if info is None:
            return False

        try:
            if info.pid <= 0:
                raise ProcessLookupError(info.pid)
            os.kill(info.pid, 0)
            return True
        except PermissionError:
            # Alive but owned by someone else.
            return True
        except (ProcessLookupError, OSError):
            remove_files(
                [Path(info.socket_path), Path(info.pid_file), Path(info.ready_file)]
            )
            self.unregister_session(info.id)
            return False

    async def wait_for_ready(
        self, id_or_name: Optional[str], timeout: float = 5.0
    ) -> Optional[SessionInfo]:
        """
        Poll until the session's ready file exists.

        Returns:
            The SessionInfo once ready, or None after ``timeout`` seconds
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            info = self.get_session_info(id_or_name)
            if info is not None and info.ready_file and Path(info.ready_file).exists():
                return info
            await asyncio.sleep(READY_POLL_INTERVAL)
        return None
