"""Narrative LLM provider implementations."""

from vitalsync.core.llm.providers.anthropic import AnthropicProvider
from vitalsync.core.llm.providers.mock import MockProvider
from vitalsync.core.llm.providers.openai import OpenAIProvider

__all__ = ["AnthropicProvider", "MockProvider", "OpenAIProvider"]
