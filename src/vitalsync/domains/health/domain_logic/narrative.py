"""Narrative enrichment collaborator for the analysis engine."""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from vitalsync.core.llm.client import NarrativeLLMClient
from vitalsync.core.llm.provider import EXTERNAL_PROVIDERS
from vitalsync.core.privacy.policy import PrivacyMode, build_narrative_context
from vitalsync.domains.health.domain_logic.metric_models import HealthInsight, UserProfile

logger = logging.getLogger(__name__)


@runtime_checkable
class NarrativeEnricher(Protocol):
    """Optional source of free-text insights.

    ``generate`` returns ``None`` when it has nothing to offer. The engine
    bounds the call with a timeout and treats any failure as "unavailable".
    """

    provider_name: str

    @property
    def discloses_data(self) -> bool:
        """True when a call sends the summary outside this process."""
        ...

    async def generate(
        self,
        profile: UserProfile,
        metric_summary: dict[str, Any],
        existing_types: list[str],
    ) -> list[HealthInsight] | None: ...


class LLMNarrativeEnricher:
    """Privacy-filtered narrative insights from an LLM provider."""

    def __init__(
        self,
        client: NarrativeLLMClient,
        *,
        provider_name: str,
        privacy_mode: PrivacyMode = "strict",
    ) -> None:
        self._client = client
        self.provider_name = provider_name
        self.privacy_mode = privacy_mode

    @property
    def discloses_data(self) -> bool:
        return self.provider_name in EXTERNAL_PROVIDERS

    async def generate(
        self,
        profile: UserProfile,
        metric_summary: dict[str, Any],
        existing_types: list[str],
    ) -> list[HealthInsight] | None:
        context = build_narrative_context(
            summary=metric_summary, profile=profile, privacy_mode=self.privacy_mode
        )
        response = await self._client.generate_insights(context, existing_types)
        if not response.insights:
            return None
        return response.insights
