"""@mention extraction and inbox priority."""

import re
from typing import Iterable, List

from agentworker.context.types import ChannelEntry

# Same characters as agent names; a trailing dot ends the sentence, not the name.
MENTION_PATTERN = re.compile(r"@([a-zA-Z0-9_-](?:[a-zA-Z0-9._-]*[a-zA-Z0-9_-])?)")

URGENT_PATTERN = re.compile(r"urgent|asap|blocked|critical", re.IGNORECASE)

PRIORITY_HIGH = "high"
PRIORITY_NORMAL = "normal"


def extract_mentions(message: str, valid_agents: Iterable[str]) -> List[str]:
    """
    Return the known agents mentioned in ``message``.

    Unknown names are dropped and duplicates collapse onto their first
    occurrence.

    Example:
        >>> extract_mentions("@alice @bob hi @alice @carol", ["alice", "bob"])
        ['alice', 'bob']
    """
    known = set(valid_agents)
    mentions: List[str] = []
    for name in MENTION_PATTERN.findall(message or ""):
        if name in known and name not in mentions:
            mentions.append(name)
    return mentions


def calculate_priority(entry: ChannelEntry) -> str:
    """High when several agents are mentioned or the text sounds urgent."""
    if len(entry.mentions) > 1 or URGENT_PATTERN.search(entry.content or ""):
        return PRIORITY_HIGH
    return PRIORITY_NORMAL
