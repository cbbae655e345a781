"""Channel, inbox and resource records."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Entry kinds hidden from agents (operator-facing logs).
HIDDEN_KINDS = ("log", "debug")

DEFAULT_DOCUMENT = "notes.md"

# Channel messages longer than this are stored as a resource instead.
MESSAGE_LENGTH_THRESHOLD = 1200

RESOURCE_TYPES = ("markdown", "json", "text", "diff")


@dataclass
class ChannelEntry:
    """
    One message in the workflow channel.

    ``to`` makes the entry a direct message visible only to sender and
    recipient. ``kind`` marks operator logs that agents never see.
    """
    timestamp: str
    from_: str
    content: str
    mentions: List[str] = field(default_factory=list)
    to: Optional[str] = None
    kind: Optional[str] = None

    @property
    def hidden(self) -> bool:
        return self.kind in HIDDEN_KINDS

    def visible_to(self, agent: str) -> bool:
        if self.hidden:
            return False
        if self.to:
            return agent in (self.to, self.from_)
        return True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "from": self.from_,
            "content": self.content,
            "mentions": list(self.mentions),
        }
        if self.to:
            data["to"] = self.to
        if self.kind:
            data["kind"] = self.kind
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChannelEntry":
        return cls(
            timestamp=data["timestamp"],
            from_=data.get("from", ""),
            content=data.get("content", ""),
            mentions=list(data.get("mentions") or []),
            to=data.get("to"),
            kind=data.get("kind"),
        )


@dataclass
class InboxMessage:
    entry: ChannelEntry
    priority: str
    unread: bool = True
    seen: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry.to_dict(),
            "unread": self.unread,
            "seen": self.seen,
            "priority": self.priority,
        }


@dataclass
class ResourceRef:
    """Handle for stored content; ``ref`` is the ``resource:<id>`` form used in messages."""
    id: str
    ref: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "ref": self.ref}
