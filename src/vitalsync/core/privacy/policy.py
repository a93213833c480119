"""Privacy policy for what a narrative LLM may see.

The narrative LLM should generally operate on:
- the computed health score and trend directions
- alert severities (never raw samples)
- coarse bands of the main metrics

Averages, profile facts and medical conditions only reach a prompt when the
configured mode allows it. Raw metric rows never do.
"""

from __future__ import annotations

from typing import Any, Literal

from vitalsync.domains.health.domain_logic.metric_models import UserProfile

PrivacyMode = Literal["strict", "standard", "explicit"]


def _round_floats(obj: Any, ndigits: int = 1) -> Any:
    if isinstance(obj, float):
        return round(obj, ndigits)
    if isinstance(obj, dict):
        return {k: _round_floats(v, ndigits=ndigits) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_round_floats(v, ndigits=ndigits) for v in obj]
    return obj


def _band(value: float | None, edges: list[tuple[float, str]], top: str) -> str | None:
    if value is None:
        return None
    for edge, label in edges:
        if value < edge:
            return label
    return top


def _age_band(age: int | None) -> str | None:
    if age is None:
        return None
    decade = (int(age) // 10) * 10
    return f"{decade}-{decade + 9}"


def build_narrative_context(
    *,
    summary: dict[str, Any],
    profile: UserProfile,
    privacy_mode: PrivacyMode,
) -> dict[str, Any]:
    """Build the minimized context rendered into the narrative prompt.

    Args:
        summary: Metric summary computed by the analysis engine.
        profile: The user's profile.
        privacy_mode: 'strict', 'standard' or 'explicit'.
    """
    heart = summary.get("heart_rate") or {}
    sleep = summary.get("sleep") or {}
    activity = summary.get("activity") or {}

    base: dict[str, Any] = {
        "health_score": summary.get("health_score"),
        "trends": summary.get("trends", []),
        "alert_severities": summary.get("alert_severities", []),
        "bands": {
            "resting_heart_rate": _band(
                heart.get("avg_bpm"), [(60, "below_60"), (80, "60_to_80")], "above_80"
            ),
            "sleep": _band(
                sleep.get("avg_minutes"), [(420, "under_7h"), (540, "7h_to_9h")], "over_9h"
            ),
            "daily_steps": _band(
                activity.get("avg_daily_steps"),
                [(5000, "under_5k"), (8000, "5k_to_8k"), (10000, "8k_to_10k")],
                "over_10k",
            ),
        },
    }
    base["bands"] = {k: v for k, v in base["bands"].items() if v is not None}

    if privacy_mode == "strict":
        return base

    if privacy_mode == "standard":
        base.update({
            "heart_rate_avg_bpm": heart.get("avg_bpm"),
            "sleep_avg_minutes": sleep.get("avg_minutes"),
            "sleep_avg_score": sleep.get("avg_score"),
            "daily_steps_avg": activity.get("avg_daily_steps"),
            "age_band": _age_band(profile.age),
            "goal_types": sorted({goal.type for goal in profile.health_goals}),
        })
        return _round_floats({k: v for k, v in base.items() if v is not None})

    # explicit: the full summary plus profile facts the user opted to share
    explicit_ctx = dict(summary)
    explicit_ctx["bands"] = base["bands"]
    explicit_ctx["profile"] = {
        "age": profile.age,
        "gender": profile.gender,
        "activity_level": profile.activity_level,
        "goals": [{"type": g.type, "progress": g.progress} for g in profile.health_goals],
        "medical_conditions": list(profile.medical_conditions),
    }
    return _round_floats(explicit_ctx, ndigits=2)
