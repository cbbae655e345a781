"""Lightweight client for daemon communication.

Connects to a session daemon's Unix socket and exchanges newline-delimited
JSON. Only the standard library is used so CLI startup stays fast.

Usage:
    client = DaemonClient.for_session(Registry(home), "alice@review")
    reply = client.send("Summarize the open issues")
"""

import logging
import socket
import subprocess
import sys
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from agentworker.core.configs import DaemonSettings
from agentworker.daemon.protocol import ProtocolError, decode_response, encode_request
from agentworker.daemon.registry import Registry, SessionInfo
from agentworker.errors import (
    AgentWorkerError,
    InvalidArgumentError,
    NotFoundError,
    UnavailableError,
)
from agentworker.target import DEFAULT_TAG, DEFAULT_WORKFLOW, is_valid_name, parse_target

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 3
DEFAULT_BACKOFF = 0.2

# Transport failures worth retrying: the daemon may still be binding its
# socket, or was restarted in between.
RETRYABLE_ERRORS = (ConnectionRefusedError, ConnectionResetError, FileNotFoundError)


class RequestFailedError(AgentWorkerError):
    """The daemon answered ``{"success": false}``."""


class DaemonClient:
    """
    Client for one session daemon.

    Each request opens a short-lived connection. Transport failures are
    retried with exponential backoff; application errors are not.
    """

    def __init__(
        self,
        socket_path: Path,
        timeout: float = 300.0,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF,
    ):
        """
        Initialize client.

        Args:
            socket_path: Path to the daemon's Unix socket
            timeout: Socket timeout in seconds (sends can run long tool loops)
            retries: Retries after the first failed connection attempt
            backoff: Base delay in seconds, doubled on each retry
        """
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff

    @classmethod
    def for_session(
        cls, registry: Registry, target: Optional[str] = None, **kwargs: Any
    ) -> "DaemonClient":
        """
        Client for a registered, running session.

        Raises:
            NotFoundError: No session matches ``target``
            UnavailableError: The session's daemon is gone
        """
        info = resolve_session(registry, target)
        if not registry.is_session_running(info.id):
            raise UnavailableError(f"Session {info.name or info.id} is not running")
        return cls(Path(info.socket_path), **kwargs)

    def request(self, action: str, payload: Any = None, timeout: Optional[float] = None) -> Any:
        """
        Send one request and return its ``data``.

        Raises:
            UnavailableError: The socket refused or reset the connection on every
                attempt, timed out, or could not be opened at all
            RequestFailedError: The daemon reported a failure
        """
        response = self._send_with_retry(encode_request(action, payload), timeout)
        if not response.get("success"):
            raise RequestFailedError(response.get("error") or "Unknown error")
        return response.get("data")

    def _send_with_retry(self, data: bytes, timeout: Optional[float]) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                return self._send_request(data, timeout)
            except RETRYABLE_ERRORS as e:
                last_error = e
                if attempt < self.retries:
                    delay = self.backoff * (2 ** attempt)
                    logger.debug(f"Connection failed ({e}), retrying in {delay:.1f}s")
                    time.sleep(delay)
            except socket.timeout as e:
                raise UnavailableError(f"Daemon at {self.socket_path} did not respond in time") from e
            except ProtocolError as e:
                raise RequestFailedError(str(e)) from e
            except OSError as e:
                raise UnavailableError(f"Cannot reach daemon at {self.socket_path}: {e}") from e
        raise UnavailableError(f"Cannot connect to daemon at {self.socket_path}: {last_error}")

    def _send_request(self, data: bytes, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Send request bytes and read one response line.

        Raises:
            ConnectionRefusedError: If daemon not running
            socket.timeout: If request times out
            OSError: Other socket errors
        """
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout or self.timeout)

        try:
            sock.connect(str(self.socket_path))
            sock.sendall(data)

            chunks = []
            while True:
                chunk = sock.recv(65536)
                if not chunk:
                    break
                chunks.append(chunk)
                if chunk.endswith(b"\n"):
                    break

            if not chunks:
                raise ConnectionResetError("Daemon closed the connection without a response")
            return decode_response(b"".join(chunks))

        finally:
            sock.close()

    # ------------------------------------------------------------------
    # Session actions
    # ------------------------------------------------------------------

    def ping(self) -> Dict[str, Any]:
        return self.request("ping", timeout=2.0)

    def send(self, message: str, auto_approve: bool = True) -> Dict[str, Any]:
        return self.request("send", {"message": message, "options": {"auto_approve": auto_approve}})

    def history(self) -> List[Dict[str, Any]]:
        return self.request("history")

    def stats(self) -> Dict[str, Any]:
        return self.request("stats")

    def export(self) -> Dict[str, Any]:
        return self.request("export")

    def clear(self) -> None:
        self.request("clear")

    def pending(self) -> List[Dict[str, Any]]:
        return self.request("pending")

    def approve(self, approval_id: str) -> Any:
        return self.request("approve", {"id": approval_id})

    def deny(self, approval_id: str, reason: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"id": approval_id}
        if reason:
            payload["reason"] = reason
        self.request("deny", payload)

    def tool_add(self, tool: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("tool_add", tool)

    def tool_mock(self, name: str, response: Any) -> Dict[str, Any]:
        return self.request("tool_mock", {"name": name, "response": response})

    def tool_list(self) -> List[Dict[str, Any]]:
        return self.request("tool_list")

    def tool_import(self, file_path: str) -> Dict[str, Any]:
        return self.request("tool_import", {"file_path": file_path})

    def shutdown(self) -> bool:
        """
        Request daemon shutdown.

        Returns True if shutdown was acknowledged.
        """
        try:
            self.request("shutdown", timeout=5.0)
            return True
        except UnavailableError:
            return False

    # ------------------------------------------------------------------
    # Workflow context actions
    # ------------------------------------------------------------------

    def channel_send(
        self,
        message: str,
        sender: Optional[str] = None,
        to: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {"message": message, "from": sender, "to": to, "kind": kind}
        return self.request("channel_send", {k: v for k, v in payload.items() if v})

    def channel_read(
        self,
        since: Optional[str] = None,
        limit: Optional[int] = None,
        agent: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        payload = {"since": since, "limit": limit, "agent": agent}
        return self.request("channel_read", {k: v for k, v in payload.items() if v})

    def inbox(self, agent: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.request("inbox", {"agent": agent} if agent else {})

    def inbox_peek(self, agent: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.request("inbox_peek", {"agent": agent} if agent else {})

    def inbox_ack(self, agent: Optional[str] = None, until: Optional[str] = None) -> Dict[str, Any]:
        payload = {"agent": agent, "until": until}
        return self.request("inbox_ack", {k: v for k, v in payload.items() if v})

    def inbox_seen(self, agent: Optional[str] = None, until: Optional[str] = None) -> Dict[str, Any]:
        payload = {"agent": agent, "until": until}
        return self.request("inbox_seen", {k: v for k, v in payload.items() if v})

    def doc_read(self, file: Optional[str] = None) -> str:
        return self.request("doc_read", {"file": file} if file else {})["content"]

    def doc_write(self, content: str, file: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"content": content}
        if file:
            payload["file"] = file
        self.request("doc_write", payload)

    def doc_append(self, content: str, file: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"content": content}
        if file:
            payload["file"] = file
        self.request("doc_append", payload)

    def doc_list(self) -> List[str]:
        return self.request("doc_list")

    def doc_create(self, file: str, content: str = "") -> Dict[str, Any]:
        return self.request("doc_create", {"file": file, "content": content})

    def resource_create(
        self, content: str, type_: str = "text", sender: Optional[str] = None
    ) -> Dict[str, Any]:
        payload = {"content": content, "type": type_}
        if sender:
            payload["from"] = sender
        return self.request("resource_create", payload)

    def resource_read(self, resource_id: str) -> str:
        return self.request("resource_read", {"id": resource_id})["content"]


def resolve_session(registry: Registry, target: Optional[str] = None) -> SessionInfo:
    """
    Find the session for a CLI target.

    ``target`` may be a session id, an id prefix, a registered name or an
    ``agent@workflow:tag`` address in any of its short forms. None selects
    the default session.

    Raises:
        NotFoundError: Nothing matches
    """
    info = registry.get_session_info(target)
    if info is None and target:
        parsed = parse_target(target)
        if parsed.agent:
            info = registry.get_session_info(parsed.full)
    if info is None:
        if target:
            raise NotFoundError(f"Session not found: {target}")
        raise NotFoundError("No default session. Start one with `agent-worker new`.")
    return info


def spawn_daemon(
    settings: DaemonSettings,
    model: str,
    system: str,
    backend: str = "sdk",
    agent: Optional[str] = None,
    workflow: str = DEFAULT_WORKFLOW,
    tag: str = DEFAULT_TAG,
    idle_timeout: Optional[float] = None,
    session_id: Optional[str] = None,
    resume: bool = False,
) -> str:
    """
    Start a detached daemon process.

    Output goes to ``<home>/sessions/<id>.log``. Use
    ``Registry.wait_for_ready`` to block until it serves requests.

    Returns:
        The session id the daemon was started with
    """
    for value in (agent, workflow, tag):
        if value is not None and not is_valid_name(value):
            raise InvalidArgumentError(f"Invalid name: {value!r}")

    session_id = session_id or str(uuid.uuid4())
    registry = Registry(settings.home)
    registry.ensure_dirs()
    log_path = registry.paths_for(session_id).log

    command = [
        sys.executable,
        "-m",
        "agentworker.daemon.server",
        "--model", model,
        "--system", system,
        "--backend", backend,
        "--workflow", workflow,
        "--tag", tag,
        "--session-id", session_id,
        "--home", str(settings.home),
    ]
    if agent:
        command += ["--agent", agent]
    if idle_timeout is not None:
        command += ["--idle-timeout", str(idle_timeout)]
    if resume:
        command.append("--resume")

    with open(log_path, "a") as log_file:
        subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    return session_id
