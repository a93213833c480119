"""Parsing and guardrail enforcement for narrative LLM output."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from vitalsync.domains.health.domain_logic.metric_models import HealthInsight

logger = logging.getLogger(__name__)

_INSIGHT_TYPES = {"recommendation", "alert", "trend", "anomaly"}
# Narrative output never claims critical priority.
_PRIORITIES = {"low", "medium", "high"}

PROHIBITED_INDICATORS: dict[str, tuple[str, ...]] = {
    "making medical diagnoses": (
        "you have been diagnosed",
        "you are suffering from",
        "you have a condition",
        "this is a sign of",
        "you have sleep apnea",
        "you have arrhythmia",
    ),
    "prescribing treatments": (
        "take this medication",
        "stop taking your medication",
        "increase your dose",
        "i prescribe",
    ),
    "making disease predictions": (
        "you will develop",
        "you are at high risk of dying",
        "guaranteed to cure",
    ),
}

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class NarrativeParseError(ValueError):
    """The LLM output was not a JSON array of insight objects."""


@dataclass
class GuardrailCheck:
    """Result of checking one insight's text against the guardrails."""

    passed: bool
    flags: list[str] = field(default_factory=list)


def check_guardrails(text: str) -> GuardrailCheck:
    """Flag prohibited diagnosis, prescription and prediction phrasing."""
    flags: list[str] = []
    text_lower = text.lower()
    for action, patterns in PROHIBITED_INDICATORS.items():
        for pattern in patterns:
            if pattern in text_lower:
                flags.append(f"prohibited_pattern_detected: {action} ('{pattern}')")
    return GuardrailCheck(passed=not flags, flags=flags)


def extract_json_array(content: str) -> list[Any]:
    """Pull the JSON array out of an LLM reply, tolerating code fences and chatter."""
    text = _FENCE.sub("", content.strip())
    start, end = text.find("["), text.rfind("]")
    if start == -1 or end < start:
        raise NarrativeParseError("no JSON array in narrative output")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as exc:
        raise NarrativeParseError(f"invalid JSON in narrative output: {exc}") from exc
    if not isinstance(data, list):
        raise NarrativeParseError("narrative output is not a list")
    return data


def parse_narrative_insights(content: str) -> tuple[list[HealthInsight], list[str]]:
    """Convert LLM output into narrative insights.

    Items with an unknown type, missing text, or guardrail hits are dropped.

    Returns:
        (insights, guardrail/parse flags)

    Raises:
        NarrativeParseError: The reply is not a JSON array at all.
    """
    insights: list[HealthInsight] = []
    flags: list[str] = []

    for item in extract_json_array(content):
        if not isinstance(item, dict):
            flags.append("skipped_non_object_item")
            continue
        insight_type = item.get("type")
        title = str(item.get("title") or "").strip()
        description = str(item.get("description") or "").strip()
        if insight_type not in _INSIGHT_TYPES or not title or not description:
            flags.append(f"skipped_invalid_item: {insight_type!r}")
            continue

        recommendations = [
            str(r).strip() for r in item.get("recommendations") or [] if str(r).strip()
        ]
        check = check_guardrails(" ".join([title, description, *recommendations]))
        if not check.passed:
            flags.extend(check.flags)
            logger.warning("Dropped narrative insight %r: %s", title, check.flags)
            continue

        priority = item.get("priority")
        try:
            confidence = float(item.get("confidence", 0.6))
        except (TypeError, ValueError):
            confidence = 0.6
        insights.append(HealthInsight(
            type=insight_type,
            priority=priority if priority in _PRIORITIES else "low",
            title=title[:120],
            description=description,
            recommendations=recommendations[:5],
            confidence=min(1.0, max(0.0, confidence)),
            origin="narrative",
        ))

    return insights, flags
