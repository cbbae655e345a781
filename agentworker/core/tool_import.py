"""Load tool definitions from JSON descriptor files.

Descriptors live in the configured tools directory; nothing outside it is
read and no code is executed. A descriptor is either a list of tools or
``{"tools": [...]}``:

    {
      "tools": [
        {
          "name": "get_weather",
          "description": "Get current weather for a location",
          "parameters": {"type": "object", "properties": {"location": {"type": "string"}}},
          "needs_approval": false,
          "mock": {"temperature": 22, "condition": "sunny"}
        }
      ]
    }
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from agentworker.core.tools import constant_tool
from agentworker.core.types import ToolDefinition
from agentworker.errors import InvalidArgumentError, NotFoundError

REQUIRED_FIELDS = ("name", "description", "parameters")


@dataclass
class ImportResult:
    tools: List[ToolDefinition] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def imported(self) -> List[str]:
        return [t.name for t in self.tools]


def resolve_descriptor_path(file_path: Union[str, Path], tools_dir: Path) -> Path:
    """
    Resolve ``file_path`` inside ``tools_dir``.

    Relative paths are taken relative to the tools directory.

    Raises:
        InvalidArgumentError: Empty path, wrong suffix or path outside the directory
        NotFoundError: File does not exist
    """
    if not file_path or not str(file_path).strip():
        raise InvalidArgumentError("File path is required")

    root = Path(tools_dir).expanduser().resolve()
    candidate = Path(file_path).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()

    if resolved != root and root not in resolved.parents:
        raise InvalidArgumentError(f"Tool descriptors must live under {root}")
    if resolved.suffix != ".json":
        raise InvalidArgumentError("Tool descriptors must be .json files")
    if not resolved.is_file():
        raise NotFoundError(f"Tool descriptor not found: {resolved.name}")
    return resolved


def _to_definition(entry: Any) -> Optional[ToolDefinition]:
    if not isinstance(entry, dict):
        return None
    if not all(entry.get(key) for key in REQUIRED_FIELDS):
        return None
    if not isinstance(entry["name"], str) or not isinstance(entry["parameters"], dict):
        return None

    definition = ToolDefinition(
        name=entry["name"],
        description=str(entry["description"]),
        parameters=entry["parameters"],
        needs_approval=bool(entry.get("needs_approval", False)),
    )
    if "mock" in entry:
        definition.execute = constant_tool(entry["mock"])
    return definition


def definition_from_dict(entry: Any) -> ToolDefinition:
    """
    Build one tool from a descriptor dict.

    Raises:
        InvalidArgumentError: A required field is missing or malformed
    """
    definition = _to_definition(entry)
    if definition is None:
        raise InvalidArgumentError(
            "Tool requires 'name', 'description' and an object 'parameters'"
        )
    return definition


def parse_tool_descriptors(data: Any) -> ImportResult:
    """Validate descriptor data; invalid entries are reported in ``skipped``."""
    if isinstance(data, dict):
        data = data.get("tools")
    if not isinstance(data, list):
        raise InvalidArgumentError('No tools found. Provide a list or a "tools" list.')

    result = ImportResult()
    for entry in data:
        definition = _to_definition(entry)
        if definition is None:
            name = entry.get("name") if isinstance(entry, dict) else None
            result.skipped.append(name if isinstance(name, str) and name else "(unnamed)")
            continue
        result.tools.append(definition)
    return result


def load_tool_descriptors(file_path: Union[str, Path], tools_dir: Path) -> ImportResult:
    """Read and validate a descriptor file from the tools directory."""
    path = resolve_descriptor_path(file_path, tools_dir)
    try:
        data: Dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise InvalidArgumentError(f"Invalid tool descriptor JSON: {e}")
    return parse_tool_descriptors(data)
