"""Model identifiers and LangChain chat model construction.

Supported identifier formats:
    provider             -> provider's default model ("mistralai")
    provider:model-name  -> "mistralai:mistral-small-latest"
    provider/model-name  -> "google/gemini-2.0-flash"
"""

from typing import Dict, List, Optional, Tuple

from agentworker.errors import InvalidArgumentError

# Canonical provider name for each accepted spelling.
PROVIDER_ALIASES: Dict[str, str] = {
    "mistral": "mistralai",
    "mistralai": "mistralai",
    "google": "google",
    "gemini": "google",
    "google_genai": "google",
    "deepinfra": "deepinfra",
}

# First entry is the default for provider-only identifiers.
PROVIDER_MODELS: Dict[str, List[str]] = {
    "mistralai": ["mistral-small-latest", "codestral-latest", "mistral-large-latest"],
    "google": ["gemini-2.0-flash", "gemini-2.5-pro"],
    "deepinfra": [
        "Qwen/Qwen2.5-Coder-32B-Instruct",
        "mistralai/Mistral-Small-24B-Instruct-2501",
    ],
}


def parse_model_id(model_id: str) -> Tuple[str, str]:
    """
    Split a model identifier into (provider, model name).

    Raises:
        InvalidArgumentError: Empty identifier, unknown provider or empty model name
    """
    value = (model_id or "").strip()
    if not value:
        raise InvalidArgumentError("Model identifier is required")

    if ":" in value:
        provider, _, name = value.partition(":")
    elif "/" in value:
        provider, _, name = value.partition("/")
    else:
        provider, name = value, None

    canonical = PROVIDER_ALIASES.get(provider.lower())
    if canonical is None:
        supported = ", ".join(sorted(PROVIDER_MODELS))
        raise InvalidArgumentError(f"Unknown provider: {provider}. Supported: {supported}")

    if name is None:
        return canonical, PROVIDER_MODELS[canonical][0]
    if not name.strip():
        raise InvalidArgumentError(f"Invalid model identifier: {model_id}. Model name is required.")
    return canonical, name.strip()


def get_available_models(provider: str) -> List[str]:
    """Return the known models for a provider."""
    canonical = PROVIDER_ALIASES.get((provider or "").lower())
    if canonical is None:
        raise InvalidArgumentError(
            f"Provider {provider} not supported. Available providers: {', '.join(PROVIDER_MODELS)}"
        )
    return list(PROVIDER_MODELS[canonical])


def build_chat_model(
    provider: str,
    model: str,
    api_key: Optional[str],
    max_tokens: int = 4096,
    temperature: float = 0.2,
):
    """
    Create a LangChain chat model for a canonical provider.

    Provider packages are imported lazily so daemons only pay for the one
    they use.
    """
    if not api_key:
        raise InvalidArgumentError(f"Missing API key for provider '{provider}'.")

    if provider == "mistralai":
        from langchain_mistralai import ChatMistralAI
        return ChatMistralAI(
            model=model, mistral_api_key=api_key, max_tokens=max_tokens, temperature=temperature
        )

    if provider == "google":
        from langchain_google_genai import ChatGoogleGenerativeAI
        return ChatGoogleGenerativeAI(
            model=model,
            google_api_key=api_key,
            max_output_tokens=max_tokens,
            temperature=temperature,
        )

    if provider == "deepinfra":
        from langchain_community.chat_models import ChatDeepInfra
        return ChatDeepInfra(
            model_name=model,
            deepinfra_api_token=api_key,
            max_tokens=max_tokens,
            temperature=temperature,
        )

    raise InvalidArgumentError(f"Provider {provider} not supported")
