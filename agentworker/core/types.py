"""Data records for sessions, tools and approvals.

Everything that crosses the daemon socket or is persisted has a ``to_dict``
producing plain JSON-compatible data.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

ToolFunction = Callable[[Dict[str, Any]], Any]
ApprovalPredicate = Callable[[Dict[str, Any]], bool]

# Result handed to the model when a tool has no execute function.
NO_MOCK_RESULT = {"error": "No mock implementation provided"}


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class ApprovalStatus(str, Enum):
    """Lifecycle state of a pending approval."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.input += other.input
        self.output += other.output
        self.total += other.total

    def copy(self) -> "TokenUsage":
        return TokenUsage(self.input, self.output, self.total)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_counts(cls, input_tokens: int = 0, output_tokens: int = 0) -> "TokenUsage":
        return cls(input_tokens, output_tokens, input_tokens + output_tokens)


@dataclass
class ToolDefinition:
    """
    A tool the model may call.

    ``execute`` is the mock/real implementation (sync or async).
    ``needs_approval`` is either a flag or a predicate over the call arguments.
    """
    name: str
    description: str
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    execute: Optional[ToolFunction] = None
    needs_approval: Union[bool, ApprovalPredicate] = False

    def requires_approval(self, arguments: Dict[str, Any]) -> bool:
        if callable(self.needs_approval):
            return bool(self.needs_approval(arguments))
        return bool(self.needs_approval)

    def to_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "needs_approval": bool(self.needs_approval),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "needs_approval": self.needs_approval if isinstance(self.needs_approval, bool) else True,
        }


@dataclass
class PendingApproval:
    """A tool call held back until a caller approves or denies it."""
    id: str
    tool_name: str
    tool_call_id: str
    arguments: Dict[str, Any]
    requested_at: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    deny_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingApproval":
        return cls(
            id=data["id"],
            tool_name=data["tool_name"],
            tool_call_id=data.get("tool_call_id", ""),
            arguments=dict(data.get("arguments") or {}),
            requested_at=data.get("requested_at", ""),
            status=ApprovalStatus(data.get("status", "pending")),
            deny_reason=data.get("deny_reason"),
        )


@dataclass
class ToolCall:
    """A tool call that actually executed during a send."""
    name: str
    arguments: Dict[str, Any]
    result: Any
    timing: int = 0  # milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AgentResponse:
    content: str
    tool_calls: List[ToolCall]
    pending_approvals: List[PendingApproval]
    usage: TokenUsage
    latency: int  # milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "pending_approvals": [p.to_dict() for p in self.pending_approvals],
            "usage": self.usage.to_dict(),
            "latency": self.latency,
        }


@dataclass
class SessionConfig:
    model: str
    system: str
    tools: List[ToolDefinition] = field(default_factory=list)
    max_tokens: int = 4096
    max_steps: int = 10


@dataclass
class SessionState:
    """Persistable snapshot of a session (pure data)."""
    id: str
    created_at: str
    messages: List[Dict[str, Any]] = field(default_factory=list)
    total_usage: TokenUsage = field(default_factory=TokenUsage)
    pending_approvals: List[PendingApproval] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "messages": [dict(m) for m in self.messages],
            "total_usage": self.total_usage.to_dict(),
            "pending_approvals": [p.to_dict() for p in self.pending_approvals],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionState":
        usage = data.get("total_usage") or {}
        return cls(
            id=data["id"],
            created_at=data["created_at"],
            messages=[dict(m) for m in data.get("messages", [])],
            total_usage=TokenUsage(
                usage.get("input", 0), usage.get("output", 0), usage.get("total", 0)
            ),
            pending_approvals=[
                PendingApproval.from_dict(p) for p in data.get("pending_approvals", [])
            ],
        )


@dataclass
class Transcript:
    session_id: str
    model: str
    system: str
    messages: List[Dict[str, Any]]
    total_usage: TokenUsage
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "model": self.model,
            "system": self.system,
            "messages": [dict(m) for m in self.messages],
            "total_usage": self.total_usage.to_dict(),
            "created_at": self.created_at,
        }


@dataclass
class CompletionStep:
    """One model round: the tool calls it requested and their results."""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    tool_results: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class Completion:
    """Result of one ``Completer.complete`` call."""
    text: str
    steps: List[CompletionStep] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
