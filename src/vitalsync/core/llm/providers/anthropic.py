"""Anthropic Messages API narrative provider."""

from __future__ import annotations

import logging
import time

from vitalsync.core.llm.provider import (
    DEFAULT_MODELS,
    DEFAULT_TIMEOUT_S,
    NARRATIVE_MAX_TOKENS,
    NARRATIVE_TEMPERATURE,
    ProviderResponse,
)

logger = logging.getLogger(__name__)


class AnthropicProvider:
    """Claude provider using the Anthropic async SDK."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODELS["anthropic"],
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        import anthropic

        self.client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0, timeout=timeout_s)
        self.model = model

    async def generate(
        self,
        system_message: str,
        user_message: str,
        max_tokens: int = NARRATIVE_MAX_TOKENS,
        temperature: float = NARRATIVE_TEMPERATURE,
    ) -> ProviderResponse:
        started = time.monotonic()
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_message,
            messages=[{"role": "user", "content": user_message}],
        )
        latency_ms = (time.monotonic() - started) * 1000

        # Only text blocks carry the JSON answer.
        content = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        truncated = response.stop_reason == "max_tokens"
        if truncated:
            logger.warning("Anthropic narrative reply hit the %d token limit", max_tokens)
        return ProviderResponse(
            content=content,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=response.model or self.model,
            latency_ms=latency_ms,
            truncated=truncated,
        )
