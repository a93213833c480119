"""Health analysis engine — score, anomalies, trends and insights.

All formulas are deterministic and every threshold is a named field of
:class:`AnalysisThresholds`. Missing data is never an error: a sub-score or
rule without input is skipped and the score is a weighted average of the
signals that are present.

The optional narrative collaborator is awaited under a timeout and can only
add insights; its absence or failure never changes the deterministic result.
"""

from __future__ import annotations

import asyncio
import logging
import statistics
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from vitalsync.core.audit.logger import AuditLogger
from vitalsync.domains.health.domain_logic.insight_merger import merge_insights
from vitalsync.domains.health.domain_logic.metric_models import (
    AnalysisResult,
    HealthAlert,
    HealthInsight,
    HealthMetric,
    MetricType,
    TrendAnalysis,
    UserProfile,
)
from vitalsync.domains.health.domain_logic.narrative import NarrativeEnricher
from vitalsync.domains.health.domain_logic.trend_analyzer import (
    analyze_trends,
    daily_total_series,
    nightly_series,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisThresholds:
    """Heuristic bounds. Safety nets, not clinical criteria."""

    # Score references
    step_reference: float = 10_000
    resting_hr_reference: float = 60.0
    resting_hr_band: float = 40.0
    condition_penalty: float = 5.0
    neutral_score: int = 50

    # Heart rate anomalies
    hr_window: int = 24
    hr_critical_max: float = 220.0
    hr_low_min: float = 40.0
    hr_low_avg: float = 50.0

    # Sleep anomalies
    sleep_window: int = 7
    sleep_min_nights: int = 3
    sleep_score_low: float = 50.0
    sleep_duration_low_min: float = 300.0

    # Activity anomalies
    steps_window_days: int = 7
    steps_low_avg: float = 2_000
    steps_guideline: int = 8_000

    # Emergency fast-path
    emergency_window: int = 10
    emergency_min_count: int = 3
    emergency_hr_high: float = 200.0
    emergency_hr_low: float = 35.0
    emergency_spo2_low: float = 88.0

    # Goals
    goal_gap_progress: float = 50.0


SCORE_WEIGHTS = {
    "sleep": 0.30,
    "activity": 0.25,
    "heart_rate": 0.20,
    "goals": 0.15,
    "conditions": 0.10,
}

GOAL_RECOMMENDATIONS = {
    "weight_loss": "Consider increasing daily caloric deficit by 200-300 calories through diet and exercise",
    "muscle_gain": "Increase protein intake to 1.6-2.2g per kg body weight and focus on progressive overload",
    "endurance": "Implement 80/20 training rule: 80% low intensity, 20% high intensity",
    "sleep_quality": "Establish consistent bedtime routine and limit blue light 2 hours before sleep",
    "stress_reduction": "Practice 10-15 minutes of daily meditation or deep breathing exercises",
}

GENERAL_RECOMMENDATIONS = (
    "Aim for at least 150 minutes of moderate-intensity aerobic activity per week (WHO guidelines)",
    "Target 7-9 hours of quality sleep per night for optimal recovery",
    "Stay hydrated with 8-10 glasses of water daily, more during intense activity",
)
MAX_RECOMMENDATIONS = 8


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


def _latest(metrics: Iterable[HealthMetric], metric_type: MetricType, count: int) -> list[HealthMetric]:
    """The ``count`` most recent samples of a type, newest first."""
    samples = sorted(
        (m for m in metrics if m.type is metric_type),
        key=lambda m: m.timestamp,
        reverse=True,
    )
    return samples[:count]


class HealthAnalysisEngine:
    """Turns a metric history and a profile into an :class:`AnalysisResult`.

    Usage::

        engine = HealthAnalysisEngine(narrative=enricher, narrative_timeout_s=8)
        result = await engine.analyze("user-1", metrics, profile)
    """

    def __init__(
        self,
        *,
        thresholds: AnalysisThresholds | None = None,
        narrative: NarrativeEnricher | None = None,
        narrative_timeout_s: float = 8.0,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self.thresholds = thresholds or AnalysisThresholds()
        self._narrative = narrative
        self._narrative_timeout_s = narrative_timeout_s
        self._audit = audit_logger

    # ------------------------------------------------------------------
    # Full analysis
    # ------------------------------------------------------------------

    async def analyze(
        self,
        user_id: str,
        metrics: Iterable[HealthMetric],
        profile: UserProfile | None = None,
    ) -> AnalysisResult:
        """Run every rule over an immutable snapshot of ``metrics``."""
        started = time.perf_counter()
        snapshot = tuple(metrics)
        profile = profile or UserProfile()

        sub_scores = self.compute_sub_scores(snapshot, profile)
        health_score = self.compute_health_score(snapshot, profile, sub_scores=sub_scores)
        alerts = self.detect_anomalies(snapshot)
        trends = analyze_trends(snapshot)
        deterministic = self.build_insights(alerts, trends, profile)

        narrative_insights, disclosed = await self._enrich(
            profile,
            self.build_metric_summary(snapshot, health_score, trends, alerts),
            [insight.type for insight in deterministic],
        )
        insights = merge_insights(deterministic, narrative_insights)
        if not insights:
            insights = [self._fallback_insight()]

        result = AnalysisResult(
            health_score=health_score,
            alerts=alerts,
            trends=trends,
            insights=insights,
            recommendations=self.build_recommendations(insights, profile),
            confidence=self.compute_confidence(snapshot, sub_scores),
        )

        logger.info(
            "Analysis: %d metrics, score=%d, %d alerts, %d trends, %d insights",
            len(snapshot), health_score, len(alerts), len(trends), len(insights),
        )
        if self._audit is not None:
            self._audit.log_analysis(
                user_id,
                metric_count=len(snapshot),
                llm_provider=getattr(self._narrative, "provider_name", None),
                llm_disclosed=disclosed,
                privacy_mode=getattr(self._narrative, "privacy_mode", None),
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
        return result

    async def _enrich(
        self,
        profile: UserProfile,
        summary: dict[str, Any],
        existing_types: list[str],
    ) -> tuple[list[HealthInsight] | None, bool]:
        """Best-effort narrative insights; returns (insights, data_disclosed)."""
        if self._narrative is None:
            return None, False
        disclosed = self._narrative.discloses_data
        try:
            insights = await asyncio.wait_for(
                self._narrative.generate(profile, summary, existing_types),
                timeout=self._narrative_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("Narrative enrichment timed out after %.1fs", self._narrative_timeout_s)
            return None, disclosed
        except Exception:
            logger.exception("Narrative enrichment failed; returning deterministic insights")
            return None, disclosed
        return insights, disclosed

    # ------------------------------------------------------------------
    # Score
    # ------------------------------------------------------------------

    def compute_sub_scores(
        self, metrics: Sequence[HealthMetric], profile: UserProfile
    ) -> dict[str, float]:
        """Available sub-scores in [0, 100], keyed like ``SCORE_WEIGHTS``."""
        t = self.thresholds
        scores: dict[str, float] = {}

        sleep_scores = nightly_series(metrics, MetricType.SLEEP_SCORE)[: t.sleep_window]
        if sleep_scores:
            scores["sleep"] = _clamp(statistics.fmean(sleep_scores))

        daily_steps = daily_total_series(metrics, MetricType.STEPS)[: t.steps_window_days]
        if daily_steps:
            scores["activity"] = _clamp(statistics.fmean(daily_steps) / t.step_reference * 100)

        heart = _latest(metrics, MetricType.HEART_RATE, t.hr_window)
        if heart:
            avg_hr = statistics.fmean(m.value for m in heart)
            scores["heart_rate"] = _clamp(
                100 - ((avg_hr - t.resting_hr_reference) / t.resting_hr_band) * 100
            )

        if profile.health_goals:
            scores["goals"] = _clamp(statistics.fmean(g.progress for g in profile.health_goals))

        # The condition penalty only adjusts a score that has real inputs.
        if scores:
            scores["conditions"] = _clamp(100 - t.condition_penalty * len(profile.medical_conditions))
        return scores

    def compute_health_score(
        self,
        metrics: Sequence[HealthMetric],
        profile: UserProfile,
        *,
        sub_scores: dict[str, float] | None = None,
    ) -> int:
        """Weighted average of available sub-scores, 0-100; neutral when empty."""
        if sub_scores is None:
            sub_scores = self.compute_sub_scores(metrics, profile)
        if not sub_scores:
            return self.thresholds.neutral_score
        weight = sum(SCORE_WEIGHTS[name] for name in sub_scores)
        total = sum(SCORE_WEIGHTS[name] * score for name, score in sub_scores.items())
        return int(round(_clamp(total / weight)))

    def compute_confidence(
        self, metrics: Sequence[HealthMetric], sub_scores: dict[str, float]
    ) -> float:
        """Mean metric confidence scaled by the share of score weight available."""
        if not metrics:
            return 0.0
        coverage = sum(SCORE_WEIGHTS[name] for name in sub_scores) / sum(SCORE_WEIGHTS.values())
        mean_confidence = statistics.fmean(m.confidence for m in metrics)
        return round(mean_confidence * coverage, 2)

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    def detect_anomalies(self, metrics: Sequence[HealthMetric]) -> list[HealthAlert]:
        t = self.thresholds
        alerts: list[HealthAlert] = []

        heart = _latest(metrics, MetricType.HEART_RATE, t.hr_window)
        if heart:
            values = [m.value for m in heart]
            avg_hr, max_hr, min_hr = statistics.fmean(values), max(values), min(values)
            if max_hr > t.hr_critical_max:
                peak = next(m for m in heart if m.value == max_hr)
                alerts.append(HealthAlert(
                    type="medical_emergency",
                    severity="critical",
                    message=f"Critical heart rate detected: {max_hr:.0f} bpm. Seek immediate medical attention.",
                    metadata={
                        "rule": "heart_rate_critical",
                        "max_hr": max_hr,
                        "timestamp": peak.timestamp.isoformat(),
                        "evidence": [peak.id],
                    },
                ))
            elif min_hr < t.hr_low_min and avg_hr < t.hr_low_avg:
                alerts.append(HealthAlert(
                    type="anomaly_detected",
                    severity="warning",
                    message=f"Unusually low heart rate detected: {min_hr:.0f} bpm. Consider medical consultation.",
                    metadata={
                        "rule": "heart_rate_low",
                        "min_hr": min_hr,
                        "avg_hr": round(avg_hr, 1),
                        "evidence": [m.id for m in heart if m.value < t.hr_low_min],
                    },
                ))

        sleep_scores = nightly_series(metrics, MetricType.SLEEP_SCORE)[: t.sleep_window]
        if len(sleep_scores) >= t.sleep_min_nights:
            avg_score = statistics.fmean(sleep_scores)
            if avg_score < t.sleep_score_low:
                alerts.append(HealthAlert(
                    type="anomaly_detected",
                    severity="warning",
                    message=f"Consistently poor sleep quality detected. Average score: {avg_score:.1f}/100",
                    auto_resolve=True,
                    metadata={"rule": "sleep_quality_low", "avg_sleep_score": round(avg_score, 1),
                              "nights": len(sleep_scores)},
                ))

        durations = nightly_series(metrics, MetricType.SLEEP_DURATION)[: t.sleep_window]
        if len(durations) >= t.sleep_min_nights:
            avg_minutes = statistics.fmean(durations)
            if avg_minutes < t.sleep_duration_low_min:
                alerts.append(HealthAlert(
                    type="anomaly_detected",
                    severity="danger",
                    message=f"Severe sleep deprivation detected. Average: {avg_minutes / 60:.1f} hours/night",
                    metadata={"rule": "sleep_duration_low", "avg_total_sleep": round(avg_minutes, 1),
                              "nights": len(durations)},
                ))

        daily_steps = daily_total_series(metrics, MetricType.STEPS)[: t.steps_window_days]
        if daily_steps:
            avg_steps = statistics.fmean(daily_steps)
            if avg_steps < t.steps_low_avg:
                alerts.append(HealthAlert(
                    type="anomaly_detected",
                    severity="warning",
                    message=(
                        f"Very low activity detected. Average: {avg_steps:.0f} steps/day "
                        f"(WHO recommends {t.steps_guideline:,}+)"
                    ),
                    auto_resolve=True,
                    metadata={"rule": "sedentary", "avg_daily_steps": round(avg_steps),
                              "days_analyzed": len(daily_steps)},
                ))

        return alerts

    def perform_emergency_analysis(
        self,
        heart_rate: Iterable[HealthMetric],
        blood_oxygen: Iterable[HealthMetric] | None = None,
    ) -> list[HealthAlert]:
        """Fast-path check over the most recent samples only."""
        t = self.thresholds
        alerts: list[HealthAlert] = []

        recent_hr = _latest(heart_rate, MetricType.HEART_RATE, t.emergency_window)
        dangerous = [
            m for m in recent_hr
            if m.value > t.emergency_hr_high or m.value < t.emergency_hr_low
        ]
        if len(dangerous) >= t.emergency_min_count:
            alerts.append(HealthAlert(
                type="medical_emergency",
                severity="critical",
                message=(
                    "MEDICAL EMERGENCY: Dangerous heart rate pattern detected. "
                    "Call emergency services immediately."
                ),
                metadata={
                    "pattern": "dangerous_hr_sustained",
                    "values": [m.value for m in dangerous],
                    "evidence": [m.id for m in dangerous],
                    "emergency_contacts": True,
                },
            ))

        if blood_oxygen is not None:
            recent_spo2 = _latest(blood_oxygen, MetricType.BLOOD_OXYGEN, t.emergency_window)
            low = [m for m in recent_spo2 if m.value < t.emergency_spo2_low]
            if len(low) >= t.emergency_min_count:
                alerts.append(HealthAlert(
                    type="medical_emergency",
                    severity="critical",
                    message=(
                        "MEDICAL EMERGENCY: Blood oxygen repeatedly below "
                        f"{t.emergency_spo2_low:.0f}%. Seek medical help immediately."
                    ),
                    metadata={
                        "pattern": "low_spo2_sustained",
                        "values": [m.value for m in low],
                        "evidence": [m.id for m in low],
                        "emergency_contacts": True,
                    },
                ))

        if alerts:
            logger.warning("Emergency fast-path raised %d critical alert(s)", len(alerts))
        return alerts

    # ------------------------------------------------------------------
    # Insights and recommendations
    # ------------------------------------------------------------------

    def build_insights(
        self,
        alerts: list[HealthAlert],
        trends: list[TrendAnalysis],
        profile: UserProfile,
    ) -> list[HealthInsight]:
        """Rule-based insights from alerts, notable trends and goal gaps."""
        insights: list[HealthInsight] = []

        for alert in alerts:
            critical = alert.severity == "critical"
            insights.append(HealthInsight(
                type="alert" if critical else "anomaly",
                priority={"critical": "critical", "danger": "high"}.get(alert.severity, "medium"),
                title=_ALERT_TITLES.get(alert.metadata.get("rule", ""), "Unusual reading detected"),
                description=alert.message,
                recommendations=list(_ALERT_ADVICE.get(alert.metadata.get("rule", ""), ())),
                confidence=0.9 if critical else 0.8,
                evidence=list(alert.metadata.get("evidence", [])),
            ))

        for trend in trends:
            if trend.direction == "declining" and trend.significance != "low":
                insights.append(HealthInsight(
                    type="trend",
                    priority="high" if trend.significance == "high" else "medium",
                    title=f"{trend.metric} is declining",
                    description=(
                        f"{trend.metric} moved {trend.rate:+.1f} over the {trend.timeframe}, "
                        "in the less favourable direction."
                    ),
                    recommendations=list(_TREND_ADVICE.get(trend.metric, ())),
                    confidence=0.75,
                ))
            elif trend.direction == "improving" and trend.significance == "high":
                insights.append(HealthInsight(
                    type="trend",
                    priority="low",
                    title=f"{trend.metric} is improving",
                    description=f"{trend.metric} moved {trend.rate:+.1f} over the {trend.timeframe}. Keep it up.",
                    confidence=0.75,
                ))

        for goal in profile.health_goals:
            if goal.progress < self.thresholds.goal_gap_progress:
                advice = GOAL_RECOMMENDATIONS.get(goal.type)
                insights.append(HealthInsight(
                    type="recommendation",
                    priority="medium",
                    title=f"{goal.type.replace('_', ' ').capitalize()} goal needs attention",
                    description=f"Progress is at {goal.progress:.0f}%.",
                    recommendations=[advice] if advice else [],
                    confidence=0.7,
                ))

        return insights

    def build_recommendations(
        self, insights: list[HealthInsight], profile: UserProfile
    ) -> list[str]:
        """Insight advice, then goal advice, then general guidance; deduplicated."""
        candidates: list[str] = []
        for insight in insights:
            candidates.extend(insight.recommendations)
        for goal in profile.health_goals:
            if goal.progress < self.thresholds.goal_gap_progress and goal.type in GOAL_RECOMMENDATIONS:
                candidates.append(GOAL_RECOMMENDATIONS[goal.type])
        candidates.extend(GENERAL_RECOMMENDATIONS)
        return list(dict.fromkeys(candidates))[:MAX_RECOMMENDATIONS]

    @staticmethod
    def _fallback_insight() -> HealthInsight:
        return HealthInsight(
            type="recommendation",
            priority="medium",
            title="Health Data Analysis Available",
            description=(
                "Your health data has been collected successfully. "
                "Continue monitoring for personalized insights."
            ),
            recommendations=[
                "Maintain consistent data collection from your wearable devices",
                "Review your metrics weekly to identify patterns",
                "Consult healthcare providers for significant changes",
            ],
            confidence=0.7,
        )

    # ------------------------------------------------------------------
    # Narrative summary
    # ------------------------------------------------------------------

    def build_metric_summary(
        self,
        metrics: Sequence[HealthMetric],
        health_score: int,
        trends: list[TrendAnalysis],
        alerts: list[HealthAlert],
    ) -> dict[str, Any]:
        """Aggregates only; the privacy policy decides what reaches a prompt."""
        t = self.thresholds
        summary: dict[str, Any] = {
            "health_score": health_score,
            "trends": [{"metric": tr.metric, "direction": tr.direction,
                        "significance": tr.significance} for tr in trends],
            "alert_severities": sorted({a.severity for a in alerts}),
        }

        heart = [m.value for m in _latest(metrics, MetricType.HEART_RATE, t.hr_window)]
        if heart:
            summary["heart_rate"] = {
                "avg_bpm": statistics.fmean(heart), "min_bpm": min(heart),
                "max_bpm": max(heart), "samples": len(heart),
            }
        durations = nightly_series(metrics, MetricType.SLEEP_DURATION)[: t.sleep_window]
        scores = nightly_series(metrics, MetricType.SLEEP_SCORE)[: t.sleep_window]
        if durations or scores:
            summary["sleep"] = {
                "avg_minutes": statistics.fmean(durations) if durations else None,
                "avg_score": statistics.fmean(scores) if scores else None,
                "nights": max(len(durations), len(scores)),
            }
        steps = daily_total_series(metrics, MetricType.STEPS)[: t.steps_window_days]
        if steps:
            summary["activity"] = {"avg_daily_steps": statistics.fmean(steps), "days": len(steps)}
        spo2 = [m.value for m in _latest(metrics, MetricType.BLOOD_OXYGEN, t.emergency_window)]
        if spo2:
            summary["blood_oxygen"] = {"avg_pct": statistics.fmean(spo2)}
        return summary


_ALERT_TITLES = {
    "heart_rate_critical": "Critical heart rate",
    "heart_rate_low": "Low heart rate",
    "sleep_quality_low": "Poor sleep quality",
    "sleep_duration_low": "Severe sleep deprivation",
    "sedentary": "Very low activity",
}

_ALERT_ADVICE: dict[str, tuple[str, ...]] = {
    "heart_rate_critical": ("Seek immediate medical attention",),
    "heart_rate_low": ("Discuss low resting heart rate readings with a healthcare provider",),
    "sleep_quality_low": ("Establish consistent bedtime routine and limit blue light 2 hours before sleep",),
    "sleep_duration_low": ("Prioritize at least 7 hours in bed on most nights",),
    "sedentary": ("Add short walks through the day, building toward 8,000 steps",),
}

_TREND_ADVICE: dict[str, tuple[str, ...]] = {
    "Heart Rate": ("Watch for stress, illness or overtraining that can raise heart rate",),
    "Sleep Quality": ("Keep a consistent sleep and wake time",),
    "Daily Steps": ("Schedule a daily walk to rebuild your activity level",),
}
