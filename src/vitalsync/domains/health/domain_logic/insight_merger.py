"""Insight merger — rank deterministic insights, append new narrative ones."""

from __future__ import annotations

from collections.abc import Iterable

from vitalsync.domains.health.domain_logic.metric_models import HealthInsight

PRIORITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}
MAX_NARRATIVE_INSIGHTS = 5


def rank_insights(insights: Iterable[HealthInsight]) -> list[HealthInsight]:
    """Order by priority, then confidence (highest first). Stable on ties."""
    return sorted(
        insights,
        key=lambda insight: (PRIORITY_RANK.get(insight.priority, len(PRIORITY_RANK)), -insight.confidence),
    )


def merge_insights(
    deterministic: Iterable[HealthInsight],
    narrative: Iterable[HealthInsight] | None,
    *,
    max_narrative: int = MAX_NARRATIVE_INSIGHTS,
) -> list[HealthInsight]:
    """Deterministic insights always survive; narrative ones only add new types.

    A narrative insight whose type is already covered deterministically (or
    by an earlier narrative insight) is dropped.
    """
    merged = rank_insights(deterministic)
    seen_types = {insight.type for insight in merged}

    added = 0
    for insight in narrative or ():
        if added >= max_narrative:
            break
        if insight.type in seen_types:
            continue
        seen_types.add(insight.type)
        merged.append(insight)
        added += 1
    return merged
