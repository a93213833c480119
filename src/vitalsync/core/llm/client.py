"""Narrative LLM client — the bridge between the analysis engine and a provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from vitalsync.core.llm.provider import (
    NARRATIVE_MAX_TOKENS,
    NARRATIVE_TEMPERATURE,
    LLMProvider,
    ProviderResponse,
)
from vitalsync.core.llm.response import parse_narrative_insights
from vitalsync.core.llm.system_prompt import NARRATIVE_SYSTEM_PROMPT, build_user_message
from vitalsync.domains.health.domain_logic.metric_models import HealthInsight

logger = logging.getLogger(__name__)


@dataclass
class NarrativeResponse:
    """Parsed, guardrail-checked narrative output."""

    insights: list[HealthInsight]
    model: str
    guardrail_flags: list[str] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)


class NarrativeLLMClient:
    """Asks a provider for extra insights over an already-minimized context."""

    def __init__(self, provider: LLMProvider) -> None:
        self.provider = provider

    async def generate_insights(
        self,
        context: dict[str, Any],
        existing_types: list[str],
        max_tokens: int = NARRATIVE_MAX_TOKENS,
        temperature: float = NARRATIVE_TEMPERATURE,
    ) -> NarrativeResponse:
        """Call the provider and parse its reply.

        Raises:
            NarrativeParseError: The reply is not a JSON array.
            Exception: Whatever the provider SDK raises; callers treat the
                narrative path as best-effort.
        """
        provider_response: ProviderResponse = await self.provider.generate(
            system_message=NARRATIVE_SYSTEM_PROMPT,
            user_message=build_user_message(context, existing_types),
            max_tokens=max_tokens,
            temperature=temperature,
        )

        logger.info(
            "Narrative LLM call: model=%s, tokens=%d+%d, latency=%.0fms",
            provider_response.model,
            provider_response.input_tokens,
            provider_response.output_tokens,
            provider_response.latency_ms,
        )

        insights, flags = parse_narrative_insights(provider_response.content)
        if flags:
            logger.warning("Narrative output flags: %s", flags)

        return NarrativeResponse(
            insights=insights,
            model=provider_response.model,
            guardrail_flags=flags,
            usage={
                "input_tokens": provider_response.input_tokens,
                "output_tokens": provider_response.output_tokens,
            },
        )
