"""Abstract model-invocation interface used by sessions."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from agentworker.core.tools import GatedTool
from agentworker.core.types import Completion


class Completer(ABC):
    """
    Abstract base class for language-model backends.

    Each backend (LangChain chat models, the mock backend, test stubs)
    implements this interface so sessions stay independent of any provider.
    """

    @abstractmethod
    async def complete(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: List[GatedTool],
        max_tokens: int,
        max_steps: int,
    ) -> Completion:
        """
        Run one conversational turn, including any tool-calling rounds.

        Args:
            system: System prompt
            messages: Full history as ``{"role", "content"}`` dicts
            tools: Gated tools; call ``await tool(arguments, tool_call_id)``
                for each tool call the model requests, in the order requested
            max_tokens: Output token limit per model call
            max_steps: Maximum number of model rounds

        Returns:
            Completion with the final text, per-step tool calls/results and usage

        Raises:
            UpstreamFailureError: If the model call fails. Not retried here.
        """
        pass
