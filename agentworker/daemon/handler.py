"""Request dispatch for the daemon.

``RequestHandler.handle`` is the one place where exceptions become
``{"success": false, "error": ...}`` responses. A request can fail; the
daemon keeps serving.
"""

import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agentworker.context.provider import ContextProvider
from agentworker.core.tool_import import definition_from_dict, load_tool_descriptors
from agentworker.daemon.registry import Registry
from agentworker.daemon.state import DaemonState
from agentworker.errors import AgentWorkerError, InvalidArgumentError, NotFoundError

logger = logging.getLogger(__name__)

Action = Callable[[Dict[str, Any]], Awaitable[Any]]

# Default author for channel messages posted from outside the workflow.
USER_SENDER = "user"


def _require(payload: Dict[str, Any], key: str, allow_empty: bool = False) -> Any:
    value = payload.get(key)
    if value is None or (not allow_empty and isinstance(value, str) and not value.strip()):
        raise InvalidArgumentError(f"Missing '{key}' parameter")
    return value


def _optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"'{key}' must be an integer")


class RequestHandler:
    """
    Maps protocol actions onto the session and the workflow context.

    Args:
        state: The daemon's state record
        registry: Used to refresh the workflow's agent names
        tools_dir: Only directory ``tool_import`` reads from
        on_activity: Re-arms the idle timer
        on_shutdown: Schedules the graceful shutdown
    """

    def __init__(
        self,
        state: DaemonState,
        registry: Registry,
        tools_dir: Path,
        on_activity: Callable[[], None],
        on_shutdown: Callable[[], None],
    ):
        self.state = state
        self.registry = registry
        self.tools_dir = tools_dir
        self.on_activity = on_activity
        self.on_shutdown = on_shutdown
        self.actions: Dict[str, Action] = {
            "ping": self._ping,
            "send": self._send,
            "tool_add": self._tool_add,
            "tool_mock": self._tool_mock,
            "tool_list": self._tool_list,
            "tool_import": self._tool_import,
            "history": self._history,
            "stats": self._stats,
            "export": self._export,
            "clear": self._clear,
            "pending": self._pending,
            "approve": self._approve,
            "deny": self._deny,
            "channel_send": self._channel_send,
            "channel_read": self._channel_read,
            "inbox": self._inbox,
            "inbox_peek": self._inbox_peek,
            "inbox_ack": self._inbox_ack,
            "inbox_seen": self._inbox_seen,
            "doc_read": self._doc_read,
            "doc_write": self._doc_write,
            "doc_append": self._doc_append,
            "doc_list": self._doc_list,
            "doc_create": self._doc_create,
            "resource_create": self._resource_create,
            "resource_read": self._resource_read,
        }

    async def handle(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Run one request and build its response dict."""
        state = self.state
        action = request.get("action", "")
        payload = request.get("payload") or {}

        state.pending_requests += 1
        self.on_activity()
        counted = True
        try:
            if action == "shutdown":
                # Not in flight anymore: the drain must not wait for it.
                state.pending_requests -= 1
                counted = False
                logger.info("Shutdown requested via socket")
                self.on_shutdown()
                return {"success": True, "data": "Shutting down"}

            handler = self.actions.get(action)
            if handler is None:
                return {"success": False, "error": f"Unknown action: {action}"}
            if not isinstance(payload, dict):
                raise InvalidArgumentError("Payload must be a JSON object")

            data = await handler(payload)
            response: Dict[str, Any] = {"success": True}
            if data is not None:
                response["data"] = data
            return response

        except AgentWorkerError as e:
            logger.warning(f"{action} failed: {e}")
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.exception(f"Error handling {action}: {e}")
            return {"success": False, "error": str(e) or type(e).__name__}
        finally:
            if counted:
                state.pending_requests -= 1
            state.last_activity = time.time()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def _ping(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        info = self.state.info
        return {
            "id": info.id,
            "model": info.model,
            "backend": info.backend,
            "name": info.name,
            "workflow": info.workflow,
            "tag": info.tag,
        }

    async def _send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        message = _require(payload, "message")
        options = payload.get("options") or {}
        self._refresh_agents()
        response = await self.state.session.send(
            str(message), auto_approve=bool(options.get("auto_approve", True))
        )
        return response.to_dict()

    async def _tool_add(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        definition = definition_from_dict(payload)
        self.state.session.add_tool(definition)
        return {"name": definition.name}

    async def _tool_mock(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        name = _require(payload, "name")
        self.state.session.set_mock_response(name, payload.get("response"))
        return {"name": name}

    async def _tool_list(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self.state.session.get_tools()

    async def _tool_import(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        result = load_tool_descriptors(_require(payload, "file_path"), self.tools_dir)
        for definition in result.tools:
            self.state.session.add_tool(definition)
        logger.info(f"Imported {len(result.tools)} tool(s), skipped {len(result.skipped)}")
        return {"imported": result.imported, "skipped": result.skipped}

    async def _history(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self.state.session.history()

    async def _stats(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.state.session.stats()

    async def _export(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.state.session.export().to_dict()

    async def _clear(self, payload: Dict[str, Any]) -> None:
        self.state.session.clear()

    async def _pending(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.state.session.get_pending_approvals()]

    async def _approve(self, payload: Dict[str, Any]) -> Any:
        return await self.state.session.approve(_require(payload, "id"))

    async def _deny(self, payload: Dict[str, Any]) -> None:
        self.state.session.deny(_require(payload, "id"), payload.get("reason"))

    # ------------------------------------------------------------------
    # Workflow context
    # ------------------------------------------------------------------

    def _context(self) -> ContextProvider:
        if self.state.context is None:
            raise InvalidArgumentError("Session has no workflow context (start it with an agent name)")
        return self.state.context

    def _refresh_agents(self) -> None:
        """Agents join and leave at any time; re-read who can be mentioned."""
        if self.state.context is None:
            return
        info = self.state.info
        names = {
            s.name.split("@", 1)[0]
            for s in self.registry.get_workflow_agents(info.workflow, info.tag)
            if s.name
        }
        if self.state.agent:
            names.add(self.state.agent)
        self.state.context.set_valid_agents(sorted(names))

    def _agent_arg(self, payload: Dict[str, Any]) -> str:
        agent = payload.get("agent") or self.state.agent
        if not agent:
            raise InvalidArgumentError("Missing 'agent' parameter")
        return agent

    async def _channel_send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        context = self._context()
        self._refresh_agents()
        entry = context.smart_send(
            payload.get("from") or USER_SENDER,
            str(_require(payload, "message")),
            to=payload.get("to"),
            kind=payload.get("kind"),
        )
        return entry.to_dict()

    async def _channel_read(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        entries = self._context().read_channel(
            since=payload.get("since"),
            limit=_optional_int(payload, "limit"),
            agent=payload.get("agent"),
        )
        return [e.to_dict() for e in entries]

    async def _inbox(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self._context().get_inbox(self._agent_arg(payload))]

    async def _inbox_peek(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self._context().peek_inbox(self._agent_arg(payload))]

    async def _inbox_ack(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        context = self._context()
        agent = self._agent_arg(payload)
        until = payload.get("until") or context.newest_inbox_timestamp(agent)
        if not until:
            return {"agent": agent, "until": context.get_read_cursor(agent)}
        return {"agent": agent, "until": context.ack_inbox(agent, until)}

    async def _inbox_seen(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        context = self._context()
        agent = self._agent_arg(payload)
        until = payload.get("until") or context.newest_inbox_timestamp(agent)
        if not until:
            return {"agent": agent, "until": context.get_seen_cursor(agent)}
        return {"agent": agent, "until": context.mark_inbox_seen(agent, until)}

    async def _doc_read(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"content": self._context().read_document(payload.get("file"))}

    async def _doc_write(self, payload: Dict[str, Any]) -> None:
        content = _require(payload, "content", allow_empty=True)
        self._context().write_document(str(content), payload.get("file"))

    async def _doc_append(self, payload: Dict[str, Any]) -> None:
        content = _require(payload, "content", allow_empty=True)
        self._context().append_document(str(content), payload.get("file"))

    async def _doc_list(self, payload: Dict[str, Any]) -> List[str]:
        return self._context().list_documents()

    async def _doc_create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        file = _require(payload, "file")
        self._context().create_document(file, str(payload.get("content") or ""))
        return {"file": file}

    async def _resource_create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        content = _require(payload, "content", allow_empty=True)
        resource = self._context().create_resource(
            str(content), payload.get("from") or USER_SENDER, payload.get("type") or "text"
        )
        return resource.to_dict()

    async def _resource_read(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        resource_id = str(_require(payload, "id"))
        content = self._context().read_resource(resource_id)
        if content is None:
            raise NotFoundError(f"Resource not found: {resource_id}")
        return {"id": resource_id, "content": content}
