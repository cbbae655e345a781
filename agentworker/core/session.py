"""Stateful agent session: conversation history, usage and tool approvals."""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from agentworker.core.completer import Completer
from agentworker.core.tools import ApprovalGate, constant_tool, run_tool
from agentworker.core.types import (
    AgentResponse,
    ApprovalStatus,
    PendingApproval,
    SessionConfig,
    SessionState,
    TokenUsage,
    ToolDefinition,
    ToolFunction,
    Transcript,
    utc_now,
)
from agentworker.errors import AlreadyResolvedError, NotFoundError

logger = logging.getLogger(__name__)


class AgentSession:
    """
    One agent's conversation, owned by a single daemon process.

    State is kept in memory; ``get_state()`` returns a pure-data snapshot
    that can be passed back as ``restore`` after a restart.

    Thread safety: not thread-safe. The daemon runs everything on one
    asyncio loop, so no locking is needed.
    """

    def __init__(
        self,
        config: SessionConfig,
        restore: Optional[SessionState] = None,
        completer: Optional[Completer] = None,
        backend: str = "sdk",
        session_id: Optional[str] = None,
    ):
        """
        Initialize a session.

        Args:
            config: Model, system prompt, initial tools and limits
            restore: Saved state to resume (keeps its id and history)
            completer: Model backend; built lazily from ``model`` when omitted
            backend: Backend name used when building the completer lazily
            session_id: Id for a new session (ignored when restoring)
        """
        if restore is not None:
            self.id = restore.id
            self.created_at = restore.created_at
            self._messages: List[Dict[str, Any]] = [dict(m) for m in restore.messages]
            self._total_usage = restore.total_usage.copy()
            self._pending_approvals: List[PendingApproval] = list(restore.pending_approvals)
        else:
            self.id = session_id or str(uuid.uuid4())
            self.created_at = utc_now()
            self._messages = []
            self._total_usage = TokenUsage()
            self._pending_approvals = []

        self.model = config.model
        self.system = config.system
        self.max_tokens = config.max_tokens
        self.max_steps = config.max_steps
        self.backend = backend
        self._tools: Dict[str, ToolDefinition] = {t.name: t for t in config.tools}
        self._completer = completer

    def _get_completer(self) -> Completer:
        if self._completer is None:
            from agentworker.providers import create_completer
            self._completer = create_completer(self.model, self.backend)
        return self._completer

    def _request_approval(
        self, tool: ToolDefinition, arguments: Dict[str, Any], tool_call_id: str
    ) -> PendingApproval:
        approval = PendingApproval(
            id=str(uuid.uuid4()),
            tool_name=tool.name,
            tool_call_id=tool_call_id or str(uuid.uuid4()),
            arguments=dict(arguments),
            requested_at=utc_now(),
        )
        self._pending_approvals.append(approval)
        return approval

    async def send(self, content: str, auto_approve: bool = True) -> AgentResponse:
        """
        Send a user message and return the agent's reply.

        Appends one user entry and, on success, one assistant entry. When
        the completer fails, the user entry and any approvals requested
        during the turn are removed again and the error propagates unchanged.

        Args:
            content: The message to send
            auto_approve: Run tools that need approval without asking

        Returns:
            AgentResponse with text, executed tool calls, pending approvals,
            usage for this turn and latency in milliseconds
        """
        start = time.perf_counter()
        self._messages.append({"role": "user", "content": content})

        gate = ApprovalGate(auto_approve, self._request_approval)
        try:
            completion = await self._get_completer().complete(
                self.system,
                [dict(m) for m in self._messages],
                gate.wrap(list(self._tools.values())),
                self.max_tokens,
                self.max_steps,
            )
        except Exception:
            self._messages.pop()
            held = {a.id for a in gate.approvals}
            self._pending_approvals = [p for p in self._pending_approvals if p.id not in held]
            raise

        latency = int((time.perf_counter() - start) * 1000)

        self._messages.append({"role": "assistant", "content": completion.text})
        usage = TokenUsage.from_counts(completion.usage.input, completion.usage.output)
        self._total_usage.add(usage)

        logger.debug(
            f"Session {self.id}: {len(completion.steps)} step(s), "
            f"{len(gate.tool_calls)} tool call(s), {latency}ms"
        )

        return AgentResponse(
            content=completion.text,
            tool_calls=gate.tool_calls,
            pending_approvals=self.get_pending_approvals(),
            usage=usage,
            latency=latency,
        )

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def add_tool(self, tool: ToolDefinition) -> None:
        """Register a tool. A tool with the same name is replaced."""
        self._tools[tool.name] = tool

    def _require_tool(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if tool is None:
            raise NotFoundError(f"Tool not found: {name}")
        return tool

    def mock_tool(self, name: str, fn: ToolFunction) -> None:
        """Replace the execute function of an existing tool."""
        self._require_tool(name).execute = fn

    def set_mock_response(self, name: str, response: Any) -> None:
        """Make an existing tool always return ``response``."""
        self._require_tool(name).execute = constant_tool(response)

    def get_tools(self) -> List[Dict[str, Any]]:
        return [t.to_info() for t in self._tools.values()]

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def get_pending_approvals(self) -> List[PendingApproval]:
        return [p for p in self._pending_approvals if p.status == ApprovalStatus.PENDING]

    def _require_pending(self, approval_id: str) -> PendingApproval:
        approval = next((p for p in self._pending_approvals if p.id == approval_id), None)
        if approval is None:
            raise NotFoundError(f"Approval not found: {approval_id}")
        if approval.status != ApprovalStatus.PENDING:
            raise AlreadyResolvedError(f"Approval already {approval.status.value}: {approval_id}")
        return approval

    async def approve(self, approval_id: str) -> Any:
        """
        Approve a pending tool call and execute it.

        Returns:
            The tool's execution result

        Raises:
            NotFoundError: Unknown approval id, or its tool is gone
            AlreadyResolvedError: The approval is no longer pending
        """
        approval = self._require_pending(approval_id)
        tool = self._require_tool(approval.tool_name)

        result = await run_tool(tool, approval.arguments)
        approval.status = ApprovalStatus.APPROVED
        logger.info(f"Approved {approval.tool_name} ({approval_id})")
        return result

    def deny(self, approval_id: str, reason: Optional[str] = None) -> None:
        """Deny a pending tool call, recording an optional reason."""
        approval = self._require_pending(approval_id)
        approval.status = ApprovalStatus.DENIED
        approval.deny_reason = reason
        logger.info(f"Denied {approval.tool_name} ({approval_id})")

    # ------------------------------------------------------------------
    # Inspection and persistence
    # ------------------------------------------------------------------

    def history(self) -> List[Dict[str, Any]]:
        return [dict(m) for m in self._messages]

    def stats(self) -> Dict[str, Any]:
        return {
            "message_count": len(self._messages),
            "usage": self._total_usage.to_dict(),
        }

    def export(self) -> Transcript:
        return Transcript(
            session_id=self.id,
            model=self.model,
            system=self.system,
            messages=self.history(),
            total_usage=self._total_usage.copy(),
            created_at=self.created_at,
        )

    def get_state(self) -> SessionState:
        return SessionState(
            id=self.id,
            created_at=self.created_at,
            messages=self.history(),
            total_usage=self._total_usage.copy(),
            pending_approvals=[PendingApproval.from_dict(p.to_dict()) for p in self._pending_approvals],
        )

    def clear(self) -> None:
        """Drop history, usage and approvals. System prompt and tools stay."""
        self._messages = []
        self._total_usage = TokenUsage()
        self._pending_approvals = []
