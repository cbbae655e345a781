"""Workflow context shared by collaborating agents.

Channel (what was said), Inbox (what concerns me) and Documents (what we
are working on) stay separate so each agent reads only what it needs.
Resources hold long content that channel messages refer to by id.
"""

from agentworker.context.mentions import (
    MENTION_PATTERN,
    calculate_priority,
    extract_mentions,
)
from agentworker.context.provider import (
    ContextProvider,
    create_file_context_provider,
    create_memory_context_provider,
)
from agentworker.context.storage import FileStorage, MemoryStorage, StorageBackend
from agentworker.context.tools import build_context_tools
from agentworker.context.types import ChannelEntry, InboxMessage, ResourceRef

__all__ = [
    "MENTION_PATTERN",
    "ChannelEntry",
    "ContextProvider",
    "FileStorage",
    "InboxMessage",
    "MemoryStorage",
    "ResourceRef",
    "StorageBackend",
    "build_context_tools",
    "calculate_priority",
    "create_file_context_provider",
    "create_memory_context_provider",
    "extract_mentions",
]
