"""Narrative provider protocol and factory.

A provider turns (system prompt, user prompt) into raw text. Narrative
replies are short JSON arrays, so the defaults favour a small token budget
and a low temperature; the SDK timeout follows the engine's narrative
deadline so an abandoned call does not linger in the background.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

# Providers whose calls send data outside this process.
EXTERNAL_PROVIDERS = frozenset({"anthropic", "openai"})

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-5-20250929",
    "openai": "gpt-4o",
}

# At most five insights of a few sentences each.
NARRATIVE_MAX_TOKENS = 800
NARRATIVE_TEMPERATURE = 0.2
DEFAULT_TIMEOUT_S = 8.0


@dataclass
class ProviderResponse:
    """Raw reply of one narrative call."""

    content: str
    input_tokens: int
    output_tokens: int
    model: str
    latency_ms: float
    truncated: bool = False


@runtime_checkable
class LLMProvider(Protocol):
    """Anything that can answer a narrative prompt."""

    async def generate(
        self,
        system_message: str,
        user_message: str,
        max_tokens: int = NARRATIVE_MAX_TOKENS,
        temperature: float = NARRATIVE_TEMPERATURE,
    ) -> ProviderResponse: ...


def create_provider(
    provider_name: str,
    api_key: str = "",
    model: str = "",
    *,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> LLMProvider:
    """Build the narrative provider named in settings.

    Args:
        provider_name: "anthropic", "openai", or "mock".
        api_key: API key for an external provider.
        model: Model override; ``DEFAULT_MODELS`` otherwise.
        timeout_s: Per-request SDK timeout.

    Raises:
        ValueError: Unknown provider, or an external provider without a key.
    """
    if provider_name in EXTERNAL_PROVIDERS and not api_key:
        raise ValueError(f"{provider_name} narrative provider requires an API key")

    if provider_name == "anthropic":
        from vitalsync.core.llm.providers.anthropic import AnthropicProvider

        return AnthropicProvider(
            api_key=api_key, model=model or DEFAULT_MODELS["anthropic"], timeout_s=timeout_s
        )
    if provider_name == "openai":
        from vitalsync.core.llm.providers.openai import OpenAIProvider

        return OpenAIProvider(
            api_key=api_key, model=model or DEFAULT_MODELS["openai"], timeout_s=timeout_s
        )
    if provider_name == "mock":
        from vitalsync.core.llm.providers.mock import MockProvider

        return MockProvider()
    raise ValueError(f"Unknown LLM provider: {provider_name}")
