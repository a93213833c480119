"""MCP tools for health analysis over stored metrics."""

from __future__ import annotations

import dataclasses
import json
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from vitalsync.domains.health.domain_logic.metric_models import (
    AnalysisResult,
    HealthAlert,
    MetricType,
    UserProfile,
    utc_now,
)

if TYPE_CHECKING:
    from vitalsync.core.storage.repository import MetricRepository
    from vitalsync.domains.health.domain_logic.analysis_engine import HealthAnalysisEngine

logger = logging.getLogger(__name__)

MAX_ANALYSIS_DAYS = 365
MAX_EMERGENCY_HOURS = 72


def _alert_dict(alert: HealthAlert) -> dict[str, Any]:
    data = dataclasses.asdict(alert)
    data["created_at"] = alert.created_at.isoformat()
    return data


def result_to_dict(result: AnalysisResult) -> dict[str, Any]:
    """JSON-ready view of an analysis result."""
    return {
        "health_score": result.health_score,
        "confidence": result.confidence,
        "alerts": [_alert_dict(alert) for alert in result.alerts],
        "trends": [dataclasses.asdict(trend) for trend in result.trends],
        "insights": [dataclasses.asdict(insight) for insight in result.insights],
        "recommendations": list(result.recommendations),
        "generated_at": result.generated_at.isoformat(),
    }


def register_analysis_tools(
    mcp: FastMCP,
    engine: HealthAnalysisEngine,
    repository: MetricRepository,
) -> None:
    """Register analysis tools on the MCP server."""

    @mcp.tool
    async def analyze_health(
        ctx: Context,
        user_id: str,
        days: int = 14,
        profile: dict[str, Any] | None = None,
    ) -> str:
        """Compute a health score, alerts, trends and insights from synced data.

        Trends compare the latest week against the week before, so 14 days
        of history gives the full picture.

        Args:
            user_id: The user to analyze.
            days: Days of stored history to analyze (1-365, default 14).
            profile: Optional profile facts (age, health_goals, medical_conditions, ...).
        """
        if not 1 <= days <= MAX_ANALYSIS_DAYS:
            return json.dumps({
                "status": "error",
                "message": f"days must be between 1 and {MAX_ANALYSIS_DAYS}.",
            })

        end = utc_now()
        metrics = await repository.query_window(user_id, end - timedelta(days=days), end)
        result = await engine.analyze(user_id, metrics, UserProfile.from_dict(profile))

        return json.dumps({
            "status": "ok" if metrics else "no_data",
            "metrics_analyzed": len(metrics),
            "period_days": days,
            **result_to_dict(result),
            "disclaimer": "Heuristic wellness analysis, not a medical diagnosis.",
        }, indent=2, default=str)

    @mcp.tool
    async def emergency_check(
        ctx: Context,
        user_id: str,
        hours: int = 6,
    ) -> str:
        """Fast check of the most recent heart rate and blood oxygen samples.

        Args:
            user_id: The user to check.
            hours: How far back to look for recent samples (1-72, default 6).
        """
        end = utc_now()
        start = end - timedelta(hours=min(max(1, hours), MAX_EMERGENCY_HOURS))
        heart_rate = await repository.query(user_id, MetricType.HEART_RATE, start, end)
        blood_oxygen = await repository.query(user_id, MetricType.BLOOD_OXYGEN, start, end)
        alerts = engine.perform_emergency_analysis(heart_rate, blood_oxygen)

        return json.dumps({
            "status": "emergency" if alerts else "ok",
            "samples_checked": {"heart_rate": len(heart_rate), "blood_oxygen": len(blood_oxygen)},
            "alerts": [_alert_dict(alert) for alert in alerts],
        }, indent=2, default=str)
