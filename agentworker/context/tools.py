"""Session tools that let an agent's model use the workflow context."""

from typing import Any, Dict, List

from agentworker.context.provider import ContextProvider
from agentworker.context.types import RESOURCE_TYPES
from agentworker.core.types import ToolDefinition


def _schema(properties: Dict[str, Any], required: List[str] = ()) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = list(required)
    return schema


def build_context_tools(provider: ContextProvider, agent: str) -> List[ToolDefinition]:
    """
    Build the channel, inbox, document and resource tools for one agent.

    Every tool acts as ``agent``: messages are sent from it, the channel is
    filtered by its visibility and the inbox is its own. Long messages are
    stored as resources and replaced by a pointer.
    """

    def channel_send(args: Dict[str, Any]) -> Dict[str, Any]:
        entry = provider.smart_send(agent, args.get("message", ""), to=args.get("to"))
        return {
            "status": "sent",
            "timestamp": entry.timestamp,
            "mentions": entry.mentions,
            "to": entry.to,
        }

    def channel_read(args: Dict[str, Any]) -> Dict[str, Any]:
        entries = provider.read_channel(
            since=args.get("since"), limit=args.get("limit"), agent=agent
        )
        return {"entries": [e.to_dict() for e in entries]}

    def inbox_check(args: Dict[str, Any]) -> Dict[str, Any]:
        messages = provider.peek_inbox(agent)
        if messages:
            provider.mark_inbox_seen(agent, max(m.entry.timestamp for m in messages))
        return {"messages": [m.to_dict() for m in messages]}

    def inbox_ack(args: Dict[str, Any]) -> Dict[str, Any]:
        until = args.get("until")
        if not until:
            until = provider.newest_inbox_timestamp(agent)
            if until is None:
                return {"status": "empty"}
        return {"status": "acknowledged", "until": provider.ack_inbox(agent, until)}

    def document_read(args: Dict[str, Any]) -> Dict[str, Any]:
        return {"content": provider.read_document(args.get("file"))}

    def document_write(args: Dict[str, Any]) -> Dict[str, Any]:
        provider.write_document(args.get("content", ""), args.get("file"))
        return {"status": "written"}

    def document_append(args: Dict[str, Any]) -> Dict[str, Any]:
        provider.append_document(args.get("content", ""), args.get("file"))
        return {"status": "appended"}

    def resource_create(args: Dict[str, Any]) -> Dict[str, Any]:
        resource = provider.create_resource(
            args.get("content", ""), agent, args.get("type") or "text"
        )
        hint = f"Use [description]({resource.ref}) in messages or documents"
        return {**resource.to_dict(), "hint": hint}

    def resource_read(args: Dict[str, Any]) -> Dict[str, Any]:
        resource_id = args.get("id", "")
        content = provider.read_resource(resource_id)
        if content is None:
            return {"error": f"Resource not found: {resource_id}"}
        return {"content": content}

    file_prop = {"type": "string", "description": "Document name (default notes.md)"}

    return [
        ToolDefinition(
            name="channel_send",
            description=(
                "Send a message to the shared channel. Use @agent to notify someone; "
                'use "to" for a private direct message.'
            ),
            parameters=_schema(
                {
                    "message": {"type": "string", "description": "Message text, may include @mentions"},
                    "to": {"type": "string", "description": "Recipient for a direct message"},
                },
                ["message"],
            ),
            execute=channel_send,
        ),
        ToolDefinition(
            name="channel_read",
            description="Read messages from the shared channel.",
            parameters=_schema(
                {
                    "since": {"type": "string", "description": "Only entries after this timestamp"},
                    "limit": {"type": "integer", "description": "Maximum entries to return"},
                }
            ),
            execute=channel_read,
        ),
        ToolDefinition(
            name="inbox_check",
            description=(
                "List unread messages that mention you. Marks them seen but does not "
                "acknowledge them."
            ),
            execute=inbox_check,
        ),
        ToolDefinition(
            name="inbox_ack",
            description="Acknowledge inbox messages up to a timestamp (default: all current ones).",
            parameters=_schema(
                {"until": {"type": "string", "description": "Timestamp of the last handled message"}}
            ),
            execute=inbox_ack,
        ),
        ToolDefinition(
            name="document_read",
            description="Read a shared document.",
            parameters=_schema({"file": file_prop}),
            execute=document_read,
        ),
        ToolDefinition(
            name="document_write",
            description="Replace the content of a shared document.",
            parameters=_schema({"content": {"type": "string"}, "file": file_prop}, ["content"]),
            execute=document_write,
        ),
        ToolDefinition(
            name="document_append",
            description="Append text to a shared document.",
            parameters=_schema({"content": {"type": "string"}, "file": file_prop}, ["content"]),
            execute=document_append,
        ),
        ToolDefinition(
            name="resource_create",
            description=(
                "Store large content as a resource. Returns a reference (resource:id) "
                "usable in channel messages or documents."
            ),
            parameters=_schema(
                {
                    "content": {"type": "string", "description": "Content to store"},
                    "type": {
                        "type": "string",
                        "enum": list(RESOURCE_TYPES),
                        "description": "Content type hint (default text)",
                    },
                },
                ["content"],
            ),
            execute=resource_create,
        ),
        ToolDefinition(
            name="resource_read",
            description="Read resource content by id. Use when you see resource:id references.",
            parameters=_schema(
                {"id": {"type": "string", "description": "Resource id, e.g. res_1a2b3c"}}, ["id"]
            ),
            execute=resource_read,
        ),
    ]
