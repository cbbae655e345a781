"""In-memory state owned by one daemon process.

Everything the request handler and the lifecycle code share lives in a
single DaemonState created by DaemonServer and passed to the handler; there
are no module-level globals.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from agentworker.context.provider import ContextProvider
from agentworker.core.session import AgentSession
from agentworker.daemon.registry import SessionInfo, SessionPaths


@dataclass
class DaemonState:
    """
    Mutable daemon state.

    Thread safety: not thread-safe. Only touched from the daemon's event
    loop.
    """
    session: AgentSession
    info: SessionInfo
    paths: SessionPaths
    context: Optional[ContextProvider] = None
    agent: Optional[str] = None  # Agent name inside the workflow
    server: Optional[asyncio.AbstractServer] = None
    started_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    pending_requests: int = 0
    idle_handle: Optional[asyncio.TimerHandle] = None
    lifetime_handle: Optional[asyncio.TimerHandle] = None
    shutting_down: bool = False

    def cancel_timers(self) -> None:
        for handle in (self.idle_handle, self.lifetime_handle):
            if handle is not None:
                handle.cancel()
        self.idle_handle = None
        self.lifetime_handle = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": time.time() - self.started_at,
            "idle_seconds": time.time() - self.last_activity,
            "pending_requests": self.pending_requests,
        }
