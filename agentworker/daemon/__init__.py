"""Daemon architecture for agent-worker.

One long-running process per agent session, reachable over a Unix socket.

Architecture:
- DaemonState: explicit in-memory state of one daemon
- DaemonServer: async Unix socket server and lifecycle (idle timeout, drain)
- Registry: registry.json service discovery plus pid/ready files
- DaemonClient: lightweight socket client with connection retry
"""

from agentworker.daemon.client import DaemonClient, resolve_session, spawn_daemon
from agentworker.daemon.protocol import (
    decode_request,
    decode_response,
    encode_request,
    encode_response,
)
from agentworker.daemon.registry import Registry, SessionInfo

__all__ = [
    "DaemonClient",
    "Registry",
    "SessionInfo",
    "decode_request",
    "decode_response",
    "encode_request",
    "encode_response",
    "resolve_session",
    "spawn_daemon",
]
