"""
Context provider: channel, inbox, documents and resources for one workflow instance.

- Channel: append-only JSONL log of everything said (``channel.jsonl``)
- Inbox: per-agent view of the channel derived from cursors in
  ``_state/inbox.json``: ``readCursors`` (acknowledged) and ``seenCursors``
  (picked up but not yet handled)
- Documents: editable shared files under ``documents/``, untouched by
  mention routing
- Resources: immutable blobs under ``resources/`` referenced as ``resource:<id>``
"""

import json
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from agentworker.context.mentions import calculate_priority, extract_mentions
from agentworker.context.storage import FileStorage, MemoryStorage, StorageBackend
from agentworker.context.types import (
    DEFAULT_DOCUMENT,
    MESSAGE_LENGTH_THRESHOLD,
    RESOURCE_TYPES,
    ChannelEntry,
    InboxMessage,
    ResourceRef,
)
from agentworker.errors import InvalidArgumentError

logger = logging.getLogger(__name__)

CHANNEL_KEY = "channel.jsonl"
INBOX_STATE_KEY = "_state/inbox.json"
DOCUMENT_PREFIX = "documents/"
RESOURCE_PREFIX = "resources/"

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

READ_CURSORS = "readCursors"
SEEN_CURSORS = "seenCursors"

_RESOURCE_ID_RE = re.compile(r"^res_[A-Za-z0-9]+$")
_RESOURCE_EXTENSIONS = {"json": "json", "diff": "diff"}


def _format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def _parse_timestamp(value: str) -> Optional[datetime]:
    """Parse a channel timestamp or any ISO-8601 time; naive values are UTC."""
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        pass
    try:
        moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def normalize_timestamp(value: str) -> str:
    """
    Canonical channel form of a caller-supplied timestamp.

    Channel timestamps compare as strings, so ``2026-01-01T10:00:00Z`` has to
    become ``2026-01-01T10:00:00.000000Z`` before it is compared.

    Raises:
        InvalidArgumentError: ``value`` is not a timestamp
    """
    moment = _parse_timestamp(value)
    if moment is None:
        raise InvalidArgumentError(f"Invalid timestamp: {value!r}")
    return _format_timestamp(moment)


def _parse_entry(line: str) -> Optional[ChannelEntry]:
    try:
        return ChannelEntry.from_dict(json.loads(line))
    except (json.JSONDecodeError, KeyError, TypeError):
        return None


def _parse_jsonl(content: str) -> List[ChannelEntry]:
    entries: List[ChannelEntry] = []
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        entry = _parse_entry(line)
        if entry is None:
            logger.warning("Skipping malformed channel line")
            continue
        entries.append(entry)
    return entries


def _newest_entry(content: Optional[str]) -> Optional[ChannelEntry]:
    for line in reversed((content or "").splitlines()):
        line = line.strip()
        if line:
            entry = _parse_entry(line)
            if entry is not None:
                return entry
    return None


class ContextProvider:
    """
    Domain operations over a StorageBackend.

    Channel timestamps are strictly increasing across every writer of the
    channel: the newest entry is read and the new one written under the
    channel's lock, and when the clock has not moved past the newest entry
    the new one is stamped one microsecond after it.
    """

    def __init__(self, storage: StorageBackend, valid_agents: Iterable[str] = ()):
        self.storage = storage
        self.valid_agents: List[str] = list(valid_agents)
        self._last_timestamp: Optional[datetime] = None

    def set_valid_agents(self, agents: Iterable[str]) -> None:
        self.valid_agents = list(agents)

    # ------------------------------------------------------------------
    # Channel
    # ------------------------------------------------------------------

    def _entries(self) -> List[ChannelEntry]:
        return _parse_jsonl(self.storage.read(CHANNEL_KEY) or "")

    def _next_timestamp(self, content: Optional[str]) -> str:
        now = datetime.now(timezone.utc)
        newest_entry = _newest_entry(content)
        if newest_entry is not None:
            newest = _parse_timestamp(newest_entry.timestamp)
            if newest and (self._last_timestamp is None or newest > self._last_timestamp):
                self._last_timestamp = newest
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return _format_timestamp(now)

    def append_channel(
        self,
        from_: str,
        content: str,
        to: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> ChannelEntry:
        """
        Append a message to the channel.

        Args:
            from_: Author agent name (or "system")
            content: Message text; ``@name`` tokens of known agents become mentions
            to: Optional direct-message recipient
            kind: Optional entry kind; "log" entries are hidden from agents

        Returns:
            The stored ChannelEntry
        """
        if not from_:
            raise InvalidArgumentError("Sender is required")
        mentions = extract_mentions(content, self.valid_agents)
        stored: List[ChannelEntry] = []

        def stamp(current: Optional[str]) -> str:
            entry = ChannelEntry(
                timestamp=self._next_timestamp(current),
                from_=from_,
                content=content,
                mentions=mentions,
                to=to or None,
                kind=kind or None,
            )
            stored.append(entry)
            return json.dumps(entry.to_dict(), ensure_ascii=False) + "\n"

        self.storage.append_with(CHANNEL_KEY, stamp)
        logger.debug(f"Channel: {from_} -> {mentions or 'all'}")
        return stored[0]

    def smart_send(
        self,
        from_: str,
        content: str,
        to: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> ChannelEntry:
        """
        Append a message, moving long content into a resource.

        Content over MESSAGE_LENGTH_THRESHOLD characters is stored as a
        resource. The full text is logged as a hidden debug entry and the
        channel gets a short pointer that keeps the original @mentions, so
        the right inboxes are still notified.
        """
        if len(content or "") <= MESSAGE_LENGTH_THRESHOLD:
            return self.append_channel(from_, content, to=to, kind=kind)

        is_markdown = content.startswith("```") or "\n```" in content
        resource = self.create_resource(content, from_, "markdown" if is_markdown else "text")
        self.append_channel(
            "system",
            f"Created resource {resource.id} ({len(content)} chars) for @{from_}:\n{content}",
            kind="debug",
        )

        mentions = extract_mentions(content, self.valid_agents)
        prefix = " ".join(f"@{m}" for m in mentions) + " " if mentions else ""
        pointer = (
            f"{prefix}[Long content stored as resource]\n\n"
            f'Read the full content: resource_read("{resource.id}")\n\n'
            f"Reference: {resource.ref}"
        )
        return self.append_channel(from_, pointer, to=to, kind=kind)

    def read_channel(
        self,
        since: Optional[str] = None,
        limit: Optional[int] = None,
        agent: Optional[str] = None,
    ) -> List[ChannelEntry]:
        """
        Read channel entries without touching any cursor.

        Args:
            since: Only entries strictly after this time (any ISO-8601 form)
            limit: Keep only the last ``limit`` entries
            agent: Apply that agent's visibility (no logs, only its own DMs)
        """
        entries = self._entries()
        if agent:
            entries = [e for e in entries if e.visible_to(agent)]
        if since:
            cutoff = normalize_timestamp(since)
            entries = [e for e in entries if e.timestamp > cutoff]
        if limit is not None and limit > 0:
            entries = entries[-limit:]
        return entries

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def _load_inbox_state(self) -> Dict[str, Any]:
        raw = self.storage.read(INBOX_STATE_KEY)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Inbox state is corrupt; treating every agent as unread")
            return {}
        return data if isinstance(data, dict) else {}

    def _cursor(self, name: str, agent: str, state: Optional[Dict[str, Any]] = None) -> Optional[str]:
        state = self._load_inbox_state() if state is None else state
        cursors = state.get(name)
        return cursors.get(agent) if isinstance(cursors, dict) else None

    def get_read_cursor(self, agent: str) -> Optional[str]:
        return self._cursor(READ_CURSORS, agent)

    def get_seen_cursor(self, agent: str) -> Optional[str]:
        return self._cursor(SEEN_CURSORS, agent)

    def get_inbox(self, agent: str) -> List[InboxMessage]:
        """
        Unread messages for ``agent``: mentions of it and DMs to it, newer
        than its read cursor. Its own messages and log entries never appear.
        Messages at or before its seen cursor carry ``seen=True``.
        """
        state = self._load_inbox_state()
        read = self._cursor(READ_CURSORS, agent, state)
        seen = self._cursor(SEEN_CURSORS, agent, state)
        messages = []
        for entry in self._entries():
            if read and entry.timestamp <= read:
                continue
            if entry.hidden or entry.from_ == agent:
                continue
            if agent in entry.mentions or entry.to == agent:
                messages.append(
                    InboxMessage(
                        entry=entry,
                        priority=calculate_priority(entry),
                        seen=bool(seen) and entry.timestamp <= seen,
                    )
                )
        return messages

    def peek_inbox(self, agent: str) -> List[InboxMessage]:
        """Same view as ``get_inbox``; reading never moves a cursor."""
        return self.get_inbox(agent)

    def newest_inbox_timestamp(self, agent: str) -> Optional[str]:
        """Timestamp of the latest message in ``agent``'s inbox, if any."""
        messages = self.get_inbox(agent)
        return max(m.entry.timestamp for m in messages) if messages else None

    def _advance_cursor(self, name: str, agent: str, until: str) -> str:
        if not agent:
            raise InvalidArgumentError("Agent is required")
        if not until:
            raise InvalidArgumentError("Timestamp is required")
        until = normalize_timestamp(until)

        def advance(raw: Optional[str]) -> str:
            try:
                data = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                data = {}
            if not isinstance(data, dict):
                data = {}
            cursors = data.setdefault(name, {})
            current = cursors.get(agent)
            if current is None or until > current:
                cursors[agent] = until
            return json.dumps(data, indent=2)

        stored = json.loads(self.storage.update(INBOX_STATE_KEY, advance))
        return stored[name][agent]

    def ack_inbox(self, agent: str, until: str) -> str:
        """
        Mark everything up to and including ``until`` as read for ``agent``.

        The cursor only moves forward; an older timestamp leaves it in place.

        Returns:
            The cursor now stored for the agent
        """
        return self._advance_cursor(READ_CURSORS, agent, until)

    def mark_inbox_seen(self, agent: str, until: str) -> str:
        """
        Record that ``agent`` has picked up its inbox up to ``until``.

        Seen messages stay in the inbox until acknowledged; the flag only
        tells new arrivals apart from ones already being handled.

        Returns:
            The seen cursor now stored for the agent
        """
        return self._advance_cursor(SEEN_CURSORS, agent, until)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _document_key(self, file: Optional[str] = None) -> str:
        name = file or DEFAULT_DOCUMENT
        if name.startswith("/") or ".." in name.split("/"):
            raise InvalidArgumentError(f"Invalid document name: {name}")
        return DOCUMENT_PREFIX + name

    def read_document(self, file: Optional[str] = None) -> str:
        return self.storage.read(self._document_key(file)) or ""

    def write_document(self, content: str, file: Optional[str] = None) -> None:
        self.storage.write(self._document_key(file), content)

    def append_document(self, content: str, file: Optional[str] = None) -> None:
        self.storage.append(self._document_key(file), content)

    def list_documents(self) -> List[str]:
        return [f for f in self.storage.list(DOCUMENT_PREFIX) if f.endswith(".md")]

    def create_document(self, file: str, content: str = "") -> None:
        """
        Create a new document.

        Raises:
            InvalidArgumentError: The document already exists
        """
        key = self._document_key(file)
        if self.storage.exists(key):
            raise InvalidArgumentError(f"Document already exists: {file}")
        self.storage.write(key, content)

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def create_resource(self, content: str, created_by: str, type_: str = "text") -> ResourceRef:
        """
        Store ``content`` and return its reference.

        Args:
            content: Text to store
            created_by: Author, for the log only
            type_: One of RESOURCE_TYPES; picks the file extension
        """
        if type_ not in RESOURCE_TYPES:
            raise InvalidArgumentError(f"Unknown resource type: {type_}")
        resource_id = f"res_{uuid.uuid4().hex[:12]}"
        extension = _RESOURCE_EXTENSIONS.get(type_, "md")
        self.storage.write(f"{RESOURCE_PREFIX}{resource_id}.{extension}", content)
        logger.debug(f"Resource {resource_id} ({len(content)} chars) by {created_by}")
        return ResourceRef(id=resource_id, ref=f"resource:{resource_id}")

    def read_resource(self, resource_id: str) -> Optional[str]:
        """Content of a resource, or None when no such resource exists."""
        resource_id = (resource_id or "").strip()
        if resource_id.startswith("resource:"):
            resource_id = resource_id[len("resource:"):]
        if not _RESOURCE_ID_RE.match(resource_id):
            raise InvalidArgumentError(f"Invalid resource id: {resource_id!r}")
        for extension in ("md", "json", "diff", "txt"):
            content = self.storage.read(f"{RESOURCE_PREFIX}{resource_id}.{extension}")
            if content is not None:
                return content
        return None


def create_file_context_provider(context_dir: Path, valid_agents: Iterable[str] = ()) -> ContextProvider:
    """Provider persisting under ``context_dir`` (usually ``.workflow/<wf>/<tag>``)."""
    return ContextProvider(FileStorage(Path(context_dir)), valid_agents)


def create_memory_context_provider(valid_agents: Iterable[str] = ()) -> ContextProvider:
    return ContextProvider(MemoryStorage(), valid_agents)
