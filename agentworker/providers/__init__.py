"""Model backends for agent sessions.

- ``sdk``: LangChain chat models (Mistral, Gemini, DeepInfra)
- ``mock``: deterministic echo/scripted completer
"""

from agentworker.core.completer import Completer
from agentworker.errors import InvalidArgumentError

BACKENDS = ("sdk", "mock")


def create_completer(model: str, backend: str = "sdk") -> Completer:
    """
    Build the completer for a backend.

    Raises:
        InvalidArgumentError: Unknown backend or malformed model identifier
    """
    backend = (backend or "sdk").strip().lower()
    if backend == "mock":
        from agentworker.providers.mock import MockCompleter
        return MockCompleter()
    if backend == "sdk":
        from agentworker.providers.chat import LangChainCompleter
        return LangChainCompleter(model)

    supported = ", ".join(BACKENDS)
    raise InvalidArgumentError(f"Unsupported backend '{backend}'. Supported: {supported}.")


__all__ = ["BACKENDS", "create_completer"]
