"""
Target identifiers: ``agent@workflow:tag``.

Accepted forms:
    "alice"               -> alice, workflow=global, tag=main
    "alice@review"        -> alice, workflow=review, tag=main
    "alice@review:pr-123" -> alice, workflow=review, tag=pr-123
    "@review"             -> workflow-level target, tag=main
    "@review:pr-123"      -> workflow-level target, tag=pr-123

Display strings drop ``@global`` and ``:main`` where they are the defaults.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

DEFAULT_WORKFLOW = "global"
DEFAULT_TAG = "main"

# Dots are accepted for names created by older releases.
_NAME_RE = re.compile(r"^[a-zA-Z0-9._-]+$")


@dataclass(frozen=True)
class Target:
    """A parsed target. ``agent`` is None for workflow-level targets."""
    agent: Optional[str]
    workflow: str = DEFAULT_WORKFLOW
    tag: str = DEFAULT_TAG

    @property
    def full(self) -> str:
        return build_target(self.agent, self.workflow, self.tag)

    @property
    def display(self) -> str:
        return build_target_display(self.agent, self.workflow, self.tag)

    def __str__(self) -> str:
        return self.display


def _split_workflow(part: str) -> tuple:
    workflow, sep, tag = part.partition(":")
    return workflow or DEFAULT_WORKFLOW, (tag if sep else "") or DEFAULT_TAG


def parse_target(value: str) -> Target:
    """
    Parse a target string.

    Args:
        value: One of the accepted forms listed in the module docstring

    Returns:
        Target with defaults filled in
    """
    if value.startswith("@"):
        workflow, tag = _split_workflow(value[1:])
        return Target(agent=None, workflow=workflow, tag=tag)

    agent, sep, rest = value.partition("@")
    if not sep:
        return Target(agent=value)

    workflow, tag = _split_workflow(rest)
    return Target(agent=agent, workflow=workflow, tag=tag)


def build_target(
    agent: Optional[str],
    workflow: Optional[str] = None,
    tag: Optional[str] = None,
) -> str:
    """Build the full ``agent@workflow:tag`` (or ``@workflow:tag``) form."""
    wf = workflow or DEFAULT_WORKFLOW
    t = tag or DEFAULT_TAG
    if agent is None:
        return f"@{wf}:{t}"
    return f"{agent}@{wf}:{t}"


def build_target_display(
    agent: Optional[str],
    workflow: Optional[str] = None,
    tag: Optional[str] = None,
) -> str:
    """Build the short display form, omitting default workflow and tag."""
    wf = workflow or DEFAULT_WORKFLOW
    t = tag or DEFAULT_TAG
    is_global = wf == DEFAULT_WORKFLOW
    is_main = t == DEFAULT_TAG

    if agent is None:
        return f"@{wf}" if is_main else f"@{wf}:{t}"
    if is_global and is_main:
        return agent
    if is_main:
        return f"{agent}@{wf}"
    return f"{agent}@{wf}:{t}"


def is_valid_name(name: str) -> bool:
    """Check an agent, workflow or tag name."""
    return bool(name) and _NAME_RE.match(name) is not None


def get_workflow_context_dir(base_dir: Union[str, Path], workflow: str, tag: str) -> Path:
    """Context directory for one workflow instance: ``<base>/.workflow/<workflow>/<tag>``."""
    return Path(base_dir) / ".workflow" / workflow / tag
