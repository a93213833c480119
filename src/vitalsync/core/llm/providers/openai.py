"""OpenAI chat-completions narrative provider."""

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


class OpenAIProvider:
    """Single-shot chat completion; the SDK never retries behind the engine's deadline."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODELS["openai"],
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        import openai

        self.client = openai.AsyncOpenAI(api_key=api_key, max_retries=0, timeout=timeout_s)
        self.model = model

    async def generate(
        self,
        system_message: str,
        user_message: str,
        max_tokens: int = NARRATIVE_MAX_TOKENS,
        temperature: float = NARRATIVE_TEMPERATURE,
    ) -> ProviderResponse:
        started = time.monotonic()
        response = await self.client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            n=1,
            messages=[
                {"role": "system", "content": system_message},
                {"role": "user", "content": user_message},
            ],
        )
        latency_ms = (time.monotonic() - started) * 1000

        choice = response.choices[0] if response.choices else None
        truncated = choice is not None and choice.finish_reason == "length"
        if truncated:
            logger.warning("OpenAI narrative reply hit the %d token limit", max_tokens)
        usage = response.usage
        return ProviderResponse(
            content=(choice.message.content or "") if choice else "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            model=response.model or self.model,
            latency_ms=latency_ms,
            truncated=truncated,
        )
