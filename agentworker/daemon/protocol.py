"""Newline-delimited JSON protocol for daemon IPC.

One JSON object per line; a connection may carry many requests.

Request format:
    {
        "action": "ping" | "send" | "history" | ...,
        "payload": any          # Action-specific, optional
    }

Response format:
    {
        "success": bool,
        "data": any,            # Present on success when there is a result
        "error": str            # Present when success is false
    }
"""

import json
from typing import Any, Dict, Optional

# Requests and responses larger than this are rejected by the reader.
MAX_LINE_BYTES = 16 * 1024 * 1024


class ProtocolError(ValueError):
    """A line could not be decoded into a request or response."""


def encode_request(action: str, payload: Any = None) -> bytes:
    """
    Serialize a request to one newline-terminated line.

    Args:
        action: Action name
        payload: Action-specific data (omitted when None)

    Returns:
        UTF-8 encoded JSON line
    """
    request: Dict[str, Any] = {"action": action}
    if payload is not None:
        request["payload"] = payload
    return (json.dumps(request, default=str) + "\n").encode("utf-8")


def decode_request(line: bytes) -> Dict[str, Any]:
    """
    Deserialize a request line.

    Raises:
        ProtocolError: If the line is not a JSON object with a string "action"
    """
    try:
        request = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}")
    if not isinstance(request, dict):
        raise ProtocolError("Invalid request: expected a JSON object")
    if not isinstance(request.get("action"), str):
        raise ProtocolError("Invalid request: missing 'action'")
    return request


def encode_response(success: bool, data: Any = None, error: Optional[str] = None) -> bytes:
    """Serialize a response to one newline-terminated line."""
    response: Dict[str, Any] = {"success": success}
    if data is not None:
        response["data"] = data
    if error is not None:
        response["error"] = error
    return (json.dumps(response, default=str) + "\n").encode("utf-8")


def decode_response(line: bytes) -> Dict[str, Any]:
    """
    Deserialize a response line.

    Raises:
        ProtocolError: If the line is not a JSON object with a "success" flag
    """
    try:
        response = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid response from daemon: {e}")
    if not isinstance(response, dict) or "success" not in response:
        raise ProtocolError("Invalid response from daemon")
    return response
