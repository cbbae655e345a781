"""Completer backed by LangChain chat models with native tool calling."""

import json
import logging
from typing import Any, Dict, List, Optional

from agentworker.core.completer import Completer
from agentworker.core.configs import get_api_key
from agentworker.core.tools import GatedTool
from agentworker.core.types import Completion, CompletionStep, TokenUsage
from agentworker.errors import UpstreamFailureError
from agentworker.providers.model import build_chat_model, parse_model_id

logger = logging.getLogger(__name__)


def message_text(message: Any) -> str:
    """Flatten a chat message's content (str or list of parts) into text."""
    content = getattr(message, "content", "")
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                if part.get("type") == "text":
                    parts.append(str(part.get("text", "")))
            else:
                parts.append(str(part))
        return "\n".join(parts).strip()
    return ("" if content is None else str(content)).strip()


def to_langchain_messages(system: str, messages: List[Dict[str, Any]]) -> list:
    """Convert ``{"role", "content"}`` history into LangChain message objects."""
    from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

    converted: list = [SystemMessage(content=system)] if system else []
    for message in messages:
        role = message.get("role")
        content = message.get("content", "")
        if role == "assistant":
            converted.append(AIMessage(content=content))
        elif role == "system":
            converted.append(SystemMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


class LangChainCompleter(Completer):
    """
    Completer using any LangChain chat model.

    Runs the tool loop itself: call the model, execute each requested tool
    through its gate in order, feed results back, repeat until the model
    answers without tool calls or ``max_steps`` rounds have run.
    """

    def __init__(self, model_id: str, chat_model: Optional[Any] = None, temperature: float = 0.2):
        """
        Initialize completer.

        Args:
            model_id: Model identifier; validated immediately
            chat_model: Pre-built chat model (tests or custom providers)
            temperature: Sampling temperature for lazily built models
        """
        self.provider, self.model_name = parse_model_id(model_id)
        self.model_id = model_id
        self.temperature = temperature
        self._chat_model = chat_model

    def _get_chat_model(self, max_tokens: int):
        if self._chat_model is None:
            self._chat_model = build_chat_model(
                self.provider,
                self.model_name,
                get_api_key(self.provider),
                max_tokens=max_tokens,
                temperature=self.temperature,
            )
        return self._chat_model

    async def complete(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: List[GatedTool],
        max_tokens: int,
        max_steps: int,
    ) -> Completion:
        from langchain_core.messages import ToolMessage

        chat_model = self._get_chat_model(max_tokens)
        runnable = chat_model.bind_tools([t.schema() for t in tools]) if tools else chat_model
        tools_by_name = {t.name: t for t in tools}

        history = to_langchain_messages(system, messages)
        steps: List[CompletionStep] = []
        usage = TokenUsage()
        text = ""

        for _ in range(max(1, max_steps)):
            try:
                reply = await runnable.ainvoke(history)
            except Exception as e:
                raise UpstreamFailureError(f"Model call failed: {e}") from e

            metadata = getattr(reply, "usage_metadata", None) or {}
            usage.add(
                TokenUsage.from_counts(
                    metadata.get("input_tokens", 0), metadata.get("output_tokens", 0)
                )
            )
            history.append(reply)
            text = message_text(reply)

            tool_calls = getattr(reply, "tool_calls", None) or []
            if not tool_calls:
                break

            step = CompletionStep()
            for call in tool_calls:
                call_id = call.get("id") or ""
                arguments = call.get("args") or {}
                step.tool_calls.append(
                    {"id": call_id, "name": call["name"], "arguments": arguments}
                )

                tool = tools_by_name.get(call["name"])
                if tool is None:
                    logger.warning(f"Model requested unknown tool '{call['name']}'")
                    output = {"error": f"Unknown tool: {call['name']}"}
                else:
                    output = await tool(arguments, call_id)

                step.tool_results.append({"tool_call_id": call_id, "output": output})
                history.append(
                    ToolMessage(content=json.dumps(output, default=str), tool_call_id=call_id)
                )
            steps.append(step)

        return Completion(text=text, steps=steps, usage=usage)
