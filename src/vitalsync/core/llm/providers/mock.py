"""Mock LLM provider for tests and offline runs."""

from __future__ import annotations

import asyncio
import json

from vitalsync.core.llm.provider import (
    NARRATIVE_MAX_TOKENS,
    NARRATIVE_TEMPERATURE,
    ProviderResponse,
)

DEFAULT_MOCK_INSIGHTS = json.dumps([
    {
        "type": "trend",
        "priority": "low",
        "title": "Consistency pays off",
        "description": "Your recent readings are steady. Keeping a regular routine helps keep them that way.",
        "recommendations": ["Keep a consistent wake-up time, including weekends"],
        "confidence": 0.6,
    }
])


class MockProvider:
    """Returns a canned response; can be told to fail or stall."""

    def __init__(
        self,
        response_content: str = DEFAULT_MOCK_INSIGHTS,
        *,
        error: Exception | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.response_content = response_content
        self.error = error
        self.delay_s = delay_s
        self.last_system_message: str = ""
        self.last_user_message: str = ""
        self.last_max_tokens: int = 0
        self.call_count: int = 0

    async def generate(
        self,
        system_message: str,
        user_message: str,
        max_tokens: int = NARRATIVE_MAX_TOKENS,
        temperature: float = NARRATIVE_TEMPERATURE,
    ) -> ProviderResponse:
        self.last_system_message = system_message
        self.last_user_message = user_message
        self.last_max_tokens = max_tokens
        self.call_count += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return ProviderResponse(
            content=self.response_content,
            input_tokens=len(system_message.split()) + len(user_message.split()),
            output_tokens=len(self.response_content.split()),
            model="mock",
            latency_ms=0.0,
        )
