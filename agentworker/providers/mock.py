"""Mock completer for tests and the ``mock`` backend.

With no script it echoes the last user message. With a script it plays back
replies in order, executing any tool calls they contain through the session's
gated tools, which makes approval flows testable without a model.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from agentworker.core.completer import Completer
from agentworker.core.tools import GatedTool
from agentworker.core.types import Completion, CompletionStep, TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class MockReply:
    """One scripted model round."""
    text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)  # {"name", "arguments"}
    input_tokens: int = 0
    output_tokens: int = 0


def _word_count(text: str) -> int:
    return len(text.split())


class MockCompleter(Completer):
    """Deterministic completer; records every call in ``calls``."""

    def __init__(self, replies: Optional[List[MockReply]] = None, error: Optional[Exception] = None):
        self.replies: List[MockReply] = list(replies or [])
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def _echo(self, messages: List[Dict[str, Any]]) -> MockReply:
        last_user = next(
            (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"), ""
        )
        text = f"[mock] Processed: {last_user[:200]}"
        prompt_words = sum(_word_count(str(m.get("content", ""))) for m in messages)
        return MockReply(text=text, input_tokens=prompt_words, output_tokens=_word_count(text))

    async def complete(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: List[GatedTool],
        max_tokens: int,
        max_steps: int,
    ) -> Completion:
        self.calls.append(
            {"system": system, "messages": [dict(m) for m in messages], "tools": [t.name for t in tools]}
        )
        if self.error is not None:
            raise self.error

        tools_by_name = {t.name: t for t in tools}
        steps: List[CompletionStep] = []
        usage = TokenUsage()
        text = ""

        for _ in range(max(1, max_steps)):
            reply = self.replies.pop(0) if self.replies else self._echo(messages)
            usage.add(TokenUsage.from_counts(reply.input_tokens, reply.output_tokens))
            text = reply.text
            if not reply.tool_calls:
                break

            step = CompletionStep()
            for call in reply.tool_calls:
                call_id = call.get("id") or f"call_{uuid.uuid4().hex[:8]}"
                arguments = dict(call.get("arguments") or {})
                step.tool_calls.append({"id": call_id, "name": call["name"], "arguments": arguments})
                tool = tools_by_name.get(call["name"])
                if tool is None:
                    output = {"error": f"Unknown tool: {call['name']}"}
                else:
                    output = await tool(arguments, call_id)
                step.tool_results.append({"tool_call_id": call_id, "output": output})
            steps.append(step)

            if not self.replies:
                # Scripted tool round with nothing after it: finish on its text.
                break

        logger.debug(f"[mock] {len(steps)} tool step(s)")
        return Completion(text=text, steps=steps, usage=usage)
