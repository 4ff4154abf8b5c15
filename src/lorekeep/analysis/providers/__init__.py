"""LLM provider implementations for model-backed analysis.

Currently supported providers:
- Ollama (local, no consent needed)
- OpenAI (cloud)
- Anthropic (cloud)

Usage:
    from lorekeep.analysis.providers import create_provider

    provider = create_provider(
        provider_type="openai",
        allow_cloud=True,
        api_key="sk-xxx",
    )
"""

import logging
from typing import Literal, Optional

from lorekeep.analysis.providers.base import LLMProvider, LLMResponse
from lorekeep.exceptions import ConsentRequiredError

logger = logging.getLogger(__name__)

ProviderType = Literal["ollama", "openai", "anthropic"]

CLOUD_PROVIDERS = ("openai", "anthropic")


def create_provider(
    provider_type: str,
    allow_cloud: bool = False,
    api_key: str = "",
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: float = 30.0,
) -> LLMProvider:
    """Factory function to create LLM providers.

    Args:
        provider_type: "ollama", "openai" or "anthropic"
        allow_cloud: Cloud consent; required for openai and anthropic
        api_key: API key for cloud providers
        model: Optional model override (uses provider default if not specified)
        base_url: Server URL for ollama
        timeout: Request timeout in seconds

    Returns:
        Configured LLMProvider instance

    Raises:
        ConsentRequiredError: If a cloud provider is requested without consent
        ValueError: If provider_type is unknown or api_key is missing
    """
    if provider_type in CLOUD_PROVIDERS and not allow_cloud:
        raise ConsentRequiredError(
            f"{provider_type} sends conversation content off this machine; "
            f"set ALLOW_CLOUD_ANALYSIS=true to enable it"
        )

    if provider_type == "ollama":
        from lorekeep.analysis.providers.ollama_provider import OllamaProvider

        return OllamaProvider(
            base_url=base_url or "http://localhost:11434",
            model=model or "llama3.2",
            timeout=max(timeout, 60.0),
        )

    if provider_type in CLOUD_PROVIDERS and not api_key:
        raise ValueError(f"API key is required for {provider_type} provider")

    if provider_type == "openai":
        from lorekeep.analysis.providers.openai_provider import OpenAIProvider

        return OpenAIProvider(api_key=api_key, model=model or "gpt-4o-mini", timeout=timeout)

    elif provider_type == "anthropic":
        from lorekeep.analysis.providers.anthropic_provider import AnthropicProvider

        return AnthropicProvider(
            api_key=api_key,
            model=model or "claude-sonnet-4-5-20250514",
            timeout=timeout,
        )

    raise ValueError(
        f"Unknown provider type: {provider_type}. "
        f"Supported providers: ollama, openai, anthropic"
    )


__all__ = [
    "CLOUD_PROVIDERS",
    "LLMProvider",
    "LLMResponse",
    "ProviderType",
    "create_provider",
]
