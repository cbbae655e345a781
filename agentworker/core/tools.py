"""Tool schemas and the approval gate applied to every tool at dispatch time."""

import copy
import inspect
import logging
import time
from typing import Any, Callable, Dict, List

from agentworker.core.types import (
    NO_MOCK_RESULT,
    PendingApproval,
    ToolCall,
    ToolDefinition,
    ToolFunction,
)

logger = logging.getLogger(__name__)

ApprovalFactory = Callable[[ToolDefinition, Dict[str, Any], str], PendingApproval]


def build_tool_schema(definition: ToolDefinition) -> Dict[str, Any]:
    """
    Build the function-calling schema for one tool.

    Returns the OpenAI-style ``{"type": "function", "function": {...}}``
    shape, which LangChain chat models accept in ``bind_tools``.

    Example:
        >>> schema = build_tool_schema(ToolDefinition("get_weather", "Weather lookup"))
        >>> schema["function"]["name"]
        'get_weather'
    """
    parameters = definition.parameters or {"type": "object", "properties": {}}
    return {
        "type": "function",
        "function": {
            "name": definition.name,
            "description": definition.description,
            "parameters": parameters,
        },
    }


def constant_tool(value: Any) -> ToolFunction:
    """Execute function that always returns a copy of ``value``."""
    def execute(arguments: Dict[str, Any]) -> Any:
        return copy.deepcopy(value)
    return execute


def approval_required_marker(approval_id: str) -> Dict[str, Any]:
    """Result the model sees in place of a gated tool's real output."""
    return {"__approvalRequired": True, "approvalId": approval_id}


async def run_tool(definition: ToolDefinition, arguments: Dict[str, Any]) -> Any:
    """Run a tool's execute function, awaiting it if it is a coroutine."""
    if definition.execute is None:
        return dict(NO_MOCK_RESULT)
    result = definition.execute(arguments)
    if inspect.isawaitable(result):
        result = await result
    return result


class GatedTool:
    """A tool definition as handed to the completer for one send."""

    def __init__(self, definition: ToolDefinition, gate: "ApprovalGate"):
        self.definition = definition
        self.gate = gate

    @property
    def name(self) -> str:
        return self.definition.name

    def schema(self) -> Dict[str, Any]:
        return build_tool_schema(self.definition)

    async def __call__(self, arguments: Dict[str, Any], tool_call_id: str = "") -> Any:
        if not self.gate.auto_approve and self.definition.requires_approval(arguments):
            approval = self.gate.request_approval(self.definition, arguments, tool_call_id)
            self.gate.approvals.append(approval)
            logger.info(f"Tool '{self.name}' held for approval ({approval.id})")
            return approval_required_marker(approval.id)

        start = time.perf_counter()
        try:
            result = await run_tool(self.definition, arguments)
        except Exception as e:
            # Reported to the model as the tool result; the turn goes on.
            logger.warning(f"Tool '{self.name}' failed: {e}")
            result = {"error": str(e) or type(e).__name__}
        timing = int((time.perf_counter() - start) * 1000)
        self.gate.tool_calls.append(ToolCall(self.name, dict(arguments), result, timing))
        return result


class ApprovalGate:
    """
    Middleware deciding, per call, whether a tool runs or waits for approval.

    One gate is created per send so ``tool_calls`` and ``approvals`` only
    hold that turn's executions and held calls. ``request_approval`` records
    the pending approval on the owning session. A tool that raises is
    reported to the model as ``{"error": ...}`` instead of ending the turn.
    """

    def __init__(self, auto_approve: bool, request_approval: ApprovalFactory):
        self.auto_approve = auto_approve
        self.request_approval = request_approval
        self.tool_calls: List[ToolCall] = []
        self.approvals: List[PendingApproval] = []

    def wrap(self, definitions: List[ToolDefinition]) -> List[GatedTool]:
        return [GatedTool(d, self) for d in definitions]
