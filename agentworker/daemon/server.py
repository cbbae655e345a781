"""Async Unix socket server for one agent session.

This module implements the long-running daemon process that:
1. Holds one AgentSession (and its workflow context) in memory
2. Serves newline-delimited JSON requests on ``<home>/sessions/<id>.sock``
3. Shuts itself down after ``idle_timeout`` seconds without requests

Lifecycle: starting (bind socket, write pid file, register, write ready
file) -> serving -> draining (stop accepting, wait for in-flight requests)
-> terminated (persist state, remove files, unregister).

Usage:
    python -m agentworker.daemon.server --model mistralai --system "..." [--agent NAME]

    Or use the CLI:
    agent-worker new --model mistralai
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional, Set

from agentworker.context.provider import create_file_context_provider
from agentworker.context.tools import build_context_tools
from agentworker.core.completer import Completer
from agentworker.core.configs import DaemonSettings, get_daemon_settings
from agentworker.core.session import AgentSession
from agentworker.core.types import SessionConfig, SessionState
from agentworker.daemon.handler import RequestHandler
from agentworker.daemon.protocol import (
    MAX_LINE_BYTES,
    ProtocolError,
    decode_request,
    encode_response,
)
from agentworker.daemon.registry import Registry, SessionInfo
from agentworker.daemon.state import DaemonState
from agentworker.errors import InvalidArgumentError
from agentworker.target import (
    DEFAULT_TAG,
    DEFAULT_WORKFLOW,
    build_target,
    get_workflow_context_dir,
    is_valid_name,
)
from agentworker.utils.files import atomic_write_json, read_json, remove_files

logger = logging.getLogger(__name__)

# Delay between answering "shutdown" and starting the drain.
SHUTDOWN_DELAY = 0.1
DRAIN_POLL_INTERVAL = 0.05


class DaemonServer:
    """
    Async Unix socket server for one session.

    Connections are long-lived: each carries any number of request lines,
    answered in order.
    """

    def __init__(
        self,
        state: DaemonState,
        registry: Registry,
        settings: DaemonSettings,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize daemon server.

        Args:
            state: Session, registry entry and file paths of this daemon
            registry: Registry the daemon announces itself in
            settings: Timeouts and directories
            install_signal_handlers: Handle SIGTERM/SIGINT (off inside tests)
        """
        self.state = state
        self.registry = registry
        self.settings = settings
        self.install_signal_handlers = install_signal_handlers
        self.handler = RequestHandler(
            state,
            registry,
            settings.tools_dir,
            on_activity=self._reset_idle_timer,
            on_shutdown=self._schedule_shutdown,
        )
        self._stopped = asyncio.Event()
        self._connections: Set[asyncio.StreamWriter] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cleaned_up = False

    async def start(self) -> None:
        """Start serving; returns once the daemon has terminated."""
        state = self.state
        paths = state.paths
        self._loop = asyncio.get_running_loop()

        logger.info(f"Starting agent daemon {state.info.id} (model {state.info.model})")

        self.registry.ensure_dirs()
        if paths.socket.exists():
            paths.socket.unlink()

        state.server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(paths.socket),
            limit=MAX_LINE_BYTES,
        )
        # Owner only
        os.chmod(paths.socket, 0o600)

        state.info.pid = os.getpid()
        paths.pid.write_text(str(state.info.pid))
        self.registry.register_session(state.info)
        paths.ready.write_text("ready")

        logger.info(f"Daemon listening on {paths.socket}")

        if self.install_signal_handlers:
            for sig in (signal.SIGTERM, signal.SIGINT):
                self._loop.add_signal_handler(sig, self._signal_handler)

        self._reset_idle_timer()
        if self.settings.max_lifetime > 0:
            state.lifetime_handle = self._loop.call_later(
                self.settings.max_lifetime, self._on_lifetime_exceeded
            )

        try:
            await self._stopped.wait()
        finally:
            await self._close_connections()
            if self.install_signal_handlers:
                for sig in (signal.SIGTERM, signal.SIGINT):
                    self._loop.remove_signal_handler(sig)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve request lines from one connection until the peer closes it."""
        self._connections.add(writer)
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    # Line longer than MAX_LINE_BYTES; the stream is unusable.
                    writer.write(encode_response(False, error="Request too large"))
                    await writer.drain()
                    break
                if not line:
                    break
                if not line.strip():
                    continue

                try:
                    request = decode_request(line)
                except ProtocolError as e:
                    self._reset_idle_timer()
                    response: Dict[str, Any] = {"success": False, "error": str(e)}
                else:
                    response = await self.handler.handle(request)

                writer.write(
                    encode_response(
                        response["success"], response.get("data"), response.get("error")
                    )
                )
                await writer.drain()

        except (ConnectionResetError, BrokenPipeError):
            logger.debug("Client disconnected")
        finally:
            self._connections.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    async def _close_connections(self) -> None:
        for writer in list(self._connections):
            writer.close()
        server = self.state.server
        if server is not None:
            server.close()
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for connections to close")

    # ------------------------------------------------------------------
    # Idle timeout and lifetime
    # ------------------------------------------------------------------

    def _reset_idle_timer(self) -> None:
        state = self.state
        state.last_activity = time.time()
        self._arm_idle_timer()

    def _arm_idle_timer(self, delay: Optional[float] = None) -> None:
        state = self.state
        if state.idle_handle is not None:
            state.idle_handle.cancel()
            state.idle_handle = None
        if self.settings.idle_timeout > 0 and not state.shutting_down and self._loop:
            state.idle_handle = self._loop.call_later(
                self.settings.idle_timeout if delay is None else delay, self._on_idle_timeout
            )

    def _on_idle_timeout(self) -> None:
        state = self.state
        state.idle_handle = None
        if state.shutting_down:
            return
        if state.pending_requests > 0:
            # A long request is still running; check again later.
            logger.debug(f"Idle timer fired with {state.pending_requests} pending request(s)")
            self._arm_idle_timer()
            return
        remaining = self.settings.idle_timeout - (time.time() - state.last_activity)
        if remaining > 0:
            # The last request finished after the timer was armed.
            self._arm_idle_timer(remaining)
            return
        logger.info(f"Idle timeout reached ({self.settings.idle_timeout:.1f}s), shutting down")
        self._spawn(self.graceful_shutdown())

    def _on_lifetime_exceeded(self) -> None:
        self.state.lifetime_handle = None
        logger.info(f"Maximum lifetime reached ({self.settings.max_lifetime:.0f}s), shutting down")
        self._spawn(self.graceful_shutdown())

    def _schedule_shutdown(self) -> None:
        self._loop.call_later(SHUTDOWN_DELAY, lambda: self._spawn(self.graceful_shutdown()))

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def graceful_shutdown(self) -> None:
        """Stop accepting, wait up to the drain timeout for requests, clean up."""
        state = self.state
        if state.shutting_down:
            return
        state.shutting_down = True
        state.cancel_timers()

        if state.server is not None:
            state.server.close()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.drain_timeout
        while state.pending_requests > 0 and loop.time() < deadline:
            await asyncio.sleep(DRAIN_POLL_INTERVAL)
        if state.pending_requests > 0:
            logger.warning(
                f"Drain timeout ({self.settings.drain_timeout:.0f}s) with "
                f"{state.pending_requests} request(s) still running"
            )

        self._cleanup()
        self._stopped.set()

    def _signal_handler(self) -> None:
        """Handle SIGTERM/SIGINT: clean up now, without draining."""
        logger.info("Received shutdown signal")
        state = self.state
        state.shutting_down = True
        state.cancel_timers()
        if state.server is not None:
            state.server.close()
        self._cleanup()
        self._stopped.set()

    def _cleanup(self) -> None:
        """Persist session state, remove socket/pid/ready files, unregister."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        state = self.state
        logger.info("Cleaning up...")

        try:
            atomic_write_json(state.paths.state, state.session.get_state().to_dict())
        except OSError as e:
            logger.error(f"Failed to persist session state: {e}")

        remove_files([state.paths.socket, state.paths.pid, state.paths.ready])
        self.registry.unregister_session(state.info.id)
        logger.info("Daemon stopped")


def load_saved_state(registry: Registry, session_id: str) -> Optional[SessionState]:
    """Session state persisted by a previous daemon with this id, if any."""
    path = registry.paths_for(session_id).state
    if not path.exists():
        return None
    data = read_json(path)
    if not data:
        return None
    return SessionState.from_dict(data)


def create_server(
    model: str,
    system: str = "You are a helpful assistant.",
    backend: str = "sdk",
    agent: Optional[str] = None,
    workflow: str = DEFAULT_WORKFLOW,
    tag: str = DEFAULT_TAG,
    session_id: Optional[str] = None,
    resume: bool = False,
    settings: Optional[DaemonSettings] = None,
    completer: Optional[Completer] = None,
    install_signal_handlers: bool = True,
) -> DaemonServer:
    """
    Build a DaemonServer and the session it serves.

    Args:
        model: Model identifier, e.g. "mistralai:mistral-small-latest"
        system: System prompt
        backend: "sdk" or "mock"
        agent: Agent name; named agents join the workflow context
        workflow: Workflow name
        tag: Workflow instance tag
        session_id: Id to use (generated when omitted)
        resume: Restore the state saved by a previous daemon with this id
        settings: Daemon settings (loaded from config when omitted)
        completer: Model backend override, mainly for tests
        install_signal_handlers: Handle SIGTERM/SIGINT

    Raises:
        InvalidArgumentError: Invalid agent, workflow or tag name
    """
    settings = settings or get_daemon_settings()
    for label, value in (("agent", agent), ("workflow", workflow), ("tag", tag)):
        if value is not None and not is_valid_name(value):
            raise InvalidArgumentError(
                f"Invalid {label} name: {value!r} (use letters, digits, '.', '_' or '-')"
            )

    registry = Registry(settings.home)
    restore = load_saved_state(registry, session_id) if resume and session_id else None

    config = SessionConfig(
        model=model,
        system=system,
        max_tokens=settings.max_tokens,
        max_steps=settings.max_steps,
    )
    session = AgentSession(
        config, restore=restore, completer=completer, backend=backend, session_id=session_id
    )
    paths = registry.paths_for(session.id)

    context = None
    context_dir = None
    if agent:
        context_dir = get_workflow_context_dir(settings.home, workflow, tag)
        context = create_file_context_provider(context_dir, [agent])
        for tool in build_context_tools(context, agent):
            session.add_tool(tool)

    info = SessionInfo(
        id=session.id,
        name=build_target(agent, workflow, tag) if agent else None,
        model=model,
        system=system,
        backend=backend,
        socket_path=str(paths.socket),
        pid_file=str(paths.pid),
        ready_file=str(paths.ready),
        pid=os.getpid(),
        created_at=session.created_at,
        idle_timeout=settings.idle_timeout,
        workflow=workflow,
        tag=tag,
        context_dir=str(context_dir) if context_dir else None,
    )

    state = DaemonState(session=session, info=info, paths=paths, context=context, agent=agent)
    return DaemonServer(state, registry, settings, install_signal_handlers)


def run_daemon(
    model: str,
    system: str = "You are a helpful assistant.",
    backend: str = "sdk",
    agent: Optional[str] = None,
    workflow: str = DEFAULT_WORKFLOW,
    tag: str = DEFAULT_TAG,
    session_id: Optional[str] = None,
    resume: bool = False,
    idle_timeout: Optional[float] = None,
    home: Optional[str] = None,
) -> None:
    """
    Run the daemon in the foreground until it terminates.

    The CLI starts this in a new session with output redirected to
    ``<home>/sessions/<id>.log``.
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    settings = get_daemon_settings()
    if home:
        settings.home = Path(home).expanduser()
    if idle_timeout is not None:
        settings.idle_timeout = idle_timeout

    try:
        server = create_server(
            model=model,
            system=system,
            backend=backend,
            agent=agent,
            workflow=workflow,
            tag=tag,
            session_id=session_id,
            resume=resume,
            settings=settings,
        )
    except InvalidArgumentError as e:
        logger.error(f"Failed to start daemon: {e}")
        sys.exit(1)

    asyncio.run(server.start())


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="agent-worker session daemon")
    parser.add_argument("--model", required=True, help="Model identifier")
    parser.add_argument("--system", default="You are a helpful assistant.", help="System prompt")
    parser.add_argument("--backend", default="sdk", help="Model backend (sdk or mock)")
    parser.add_argument("--agent", help="Agent name inside the workflow")
    parser.add_argument("--workflow", default=DEFAULT_WORKFLOW, help="Workflow name")
    parser.add_argument("--tag", default=DEFAULT_TAG, help="Workflow instance tag")
    parser.add_argument("--session-id", help="Session id to use")
    parser.add_argument("--resume", action="store_true", help="Restore saved session state")
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Shutdown after this many seconds idle (0 = never)",
    )
    parser.add_argument("--home", help="agent-worker home directory")

    args = parser.parse_args()

    run_daemon(
        model=args.model,
        system=args.system,
        backend=args.backend,
        agent=args.agent,
        workflow=args.workflow,
        tag=args.tag,
        session_id=args.session_id,
        resume=args.resume,
        idle_timeout=args.idle_timeout,
        home=args.home,
    )
