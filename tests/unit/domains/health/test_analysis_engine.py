"""Tests for the HealthAnalysisEngine — score, anomalies, emergencies, insights."""

from __future__ import annotations

import asyncio

import pytest

from vitalsync.core.llm.client import NarrativeLLMClient
from vitalsync.core.llm.providers.mock import MockProvider
from vitalsync.domains.health.domain_logic.analysis_engine import (
    GENERAL_RECOMMENDATIONS,
    GOAL_RECOMMENDATIONS,
    MAX_RECOMMENDATIONS,
    AnalysisThresholds,
    HealthAnalysisEngine,
)
from vitalsync.domains.health.domain_logic.metric_models import (
    HealthGoal,
    MetricType,
    UserProfile,
)
from vitalsync.domains.health.domain_logic.narrative import LLMNarrativeEnricher


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def engine() -> HealthAnalysisEngine:
    return HealthAnalysisEngine()


def _nightly(make_metric, metric_type, values):
    return [make_metric(metric_type, v, days_ago=i) for i, v in enumerate(values)]


def _enricher(provider: MockProvider, provider_name: str = "mock") -> LLMNarrativeEnricher:
    return LLMNarrativeEnricher(NarrativeLLMClient(provider), provider_name=provider_name)


# ---------------------------------------------------------------------------
# Health score
# ---------------------------------------------------------------------------

class TestHealthScore:
    def test_no_data_is_neutral(self, engine):
        result = _run(engine.analyze("user-1", []))
        assert result.health_score == 50
        assert result.confidence == 0.0
        assert result.alerts == []
        assert result.trends == []

    def test_conditions_alone_do_not_move_the_score(self, engine):
        profile = UserProfile(medical_conditions=("asthma", "hypertension"))
        assert engine.compute_health_score([], profile) == 50

    def test_best_case_is_100(self, engine, make_metric):
        metrics = _nightly(make_metric, MetricType.SLEEP_SCORE, [100] * 7)
        metrics += _nightly(make_metric, MetricType.STEPS, [12_000] * 7)
        metrics += [make_metric(MetricType.HEART_RATE, 55, hours_ago=h) for h in range(24)]
        profile = UserProfile(health_goals=(HealthGoal("endurance", 100),))
        assert engine.compute_health_score(metrics, profile) == 100

    def test_worst_case_is_0(self, engine, make_metric):
        metrics = _nightly(make_metric, MetricType.SLEEP_SCORE, [0] * 7)
        metrics += _nightly(make_metric, MetricType.STEPS, [0] * 7)
        metrics += [make_metric(MetricType.HEART_RATE, 100, hours_ago=h) for h in range(24)]
        profile = UserProfile(
            health_goals=(HealthGoal("weight_loss", 0),),
            medical_conditions=tuple(f"condition-{i}" for i in range(20)),
        )
        assert engine.compute_health_score(metrics, profile) == 0

    def test_partial_data_reweights(self, engine, make_metric):
        metrics = _nightly(make_metric, MetricType.STEPS, [5_000] * 7)
        # activity 50 (w 0.25) and conditions 100 (w 0.10)
        assert engine.compute_health_score(metrics, UserProfile()) == 64

    def test_sub_scores_are_clamped(self, engine, make_metric):
        metrics = [make_metric(MetricType.HEART_RATE, 30, hours_ago=1)]
        metrics += _nightly(make_metric, MetricType.STEPS, [40_000])
        scores = engine.compute_sub_scores(metrics, UserProfile())
        assert scores["heart_rate"] == 100
        assert scores["activity"] == 100
        assert all(0 <= s <= 100 for s in scores.values())

    def test_heart_rate_uses_latest_window_only(self, engine, make_metric):
        recent = [make_metric(MetricType.HEART_RATE, 60, hours_ago=h) for h in range(24)]
        old = [make_metric(MetricType.HEART_RATE, 100, hours_ago=h) for h in range(30, 60)]
        assert engine.compute_sub_scores(recent + old, UserProfile())["heart_rate"] == 100

    def test_confidence_scaled_by_coverage(self, engine, make_metric):
        metrics = _nightly(make_metric, MetricType.SLEEP_SCORE, [80] * 3)
        result = _run(engine.analyze("user-1", metrics))
        # sleep (0.30) + conditions (0.10) of the weight, mean confidence 0.9
        assert result.confidence == 0.36


# ---------------------------------------------------------------------------
# Anomaly detection
# ---------------------------------------------------------------------------

class TestAnomalies:
    def test_critical_heart_rate(self, engine, make_metric):
        metrics = [make_metric(MetricType.HEART_RATE, 70, hours_ago=h) for h in range(1, 10)]
        spike = make_metric(MetricType.HEART_RATE, 225, hours_ago=0)
        alerts = engine.detect_anomalies(metrics + [spike])
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.type == "medical_emergency"
        assert alert.severity == "critical"
        assert alert.message.startswith("Critical heart rate detected: 225 bpm")
        assert alert.metadata["rule"] == "heart_rate_critical"
        assert alert.metadata["evidence"] == [spike.id]

    def test_low_heart_rate(self, engine, make_metric):
        metrics = [make_metric(MetricType.HEART_RATE, v, hours_ago=i) for i, v in enumerate([38, 45, 48])]
        alerts = engine.detect_anomalies(metrics)
        assert [a.metadata["rule"] for a in alerts] == ["heart_rate_low"]
        assert alerts[0].severity == "warning"

    def test_low_minimum_with_normal_average_is_fine(self, engine, make_metric):
        metrics = [make_metric(MetricType.HEART_RATE, v, hours_ago=i) for i, v in enumerate([38, 70, 72])]
        assert engine.detect_anomalies(metrics) == []

    def test_poor_sleep_quality(self, engine, make_metric):
        alerts = engine.detect_anomalies(_nightly(make_metric, MetricType.SLEEP_SCORE, [40, 45, 42]))
        assert len(alerts) == 1
        assert alerts[0].severity == "warning"
        assert alerts[0].auto_resolve is True
        assert "Average score: 42.3/100" in alerts[0].message

    def test_sleep_rules_need_three_nights(self, engine, make_metric):
        assert engine.detect_anomalies(_nightly(make_metric, MetricType.SLEEP_SCORE, [30, 30])) == []

    def test_sleep_deprivation(self, engine, make_metric):
        alerts = engine.detect_anomalies(_nightly(make_metric, MetricType.SLEEP_DURATION, [240, 250, 260]))
        assert len(alerts) == 1
        assert alerts[0].severity == "danger"
        assert "4.2 hours/night" in alerts[0].message

    def test_sedentary(self, engine, make_metric):
        alerts = engine.detect_anomalies(_nightly(make_metric, MetricType.STEPS, [1_500] * 5))
        assert len(alerts) == 1
        assert alerts[0].metadata["rule"] == "sedentary"
        assert "(WHO recommends 8,000+)" in alerts[0].message

    def test_custom_thresholds(self, make_metric):
        engine = HealthAnalysisEngine(thresholds=AnalysisThresholds(steps_low_avg=5_000))
        alerts = engine.detect_anomalies(_nightly(make_metric, MetricType.STEPS, [4_000] * 3))
        assert [a.metadata["rule"] for a in alerts] == ["sedentary"]


# ---------------------------------------------------------------------------
# Emergency fast-path
# ---------------------------------------------------------------------------

class TestEmergencyAnalysis:
    def test_sustained_dangerous_heart_rate(self, engine, make_metric):
        heart = [make_metric(MetricType.HEART_RATE, v, hours_ago=i * 0.01) for i, v in enumerate([210, 205, 72, 215])]
        alerts = engine.perform_emergency_analysis(heart)
        assert len(alerts) == 1
        assert alerts[0].severity == "critical"
        assert alerts[0].metadata["pattern"] == "dangerous_hr_sustained"
        assert sorted(alerts[0].metadata["values"]) == [205, 210, 215]

    def test_two_readings_are_not_enough(self, engine, make_metric):
        heart = [make_metric(MetricType.HEART_RATE, v, hours_ago=i * 0.01) for i, v in enumerate([30, 210, 80])]
        assert engine.perform_emergency_analysis(heart) == []

    def test_only_recent_window_counts(self, engine, make_metric):
        old = [make_metric(MetricType.HEART_RATE, 210, hours_ago=5 + i) for i in range(3)]
        recent = [make_metric(MetricType.HEART_RATE, 70, hours_ago=i * 0.1) for i in range(10)]
        assert engine.perform_emergency_analysis(old + recent) == []

    def test_low_blood_oxygen(self, engine, make_metric):
        spo2 = [make_metric(MetricType.BLOOD_OXYGEN, v, hours_ago=i * 0.01) for i, v in enumerate([85, 86, 84, 97])]
        alerts = engine.perform_emergency_analysis([], spo2)
        assert [a.metadata["pattern"] for a in alerts] == ["low_spo2_sustained"]


# ---------------------------------------------------------------------------
# Insights and recommendations
# ---------------------------------------------------------------------------

class TestInsights:
    def test_fallback_insight_without_data(self, engine):
        result = _run(engine.analyze("user-1", []))
        assert [i.title for i in result.insights] == ["Health Data Analysis Available"]
        assert result.recommendations[-3:] == list(GENERAL_RECOMMENDATIONS)

    def test_critical_alert_becomes_critical_insight(self, engine, make_metric):
        result = _run(engine.analyze("user-1", [make_metric(MetricType.HEART_RATE, 225)]))
        first = result.insights[0]
        assert first.type == "alert"
        assert first.priority == "critical"
        assert result.recommendations[0] == "Seek immediate medical attention"

    def test_improving_sleep_trend_insight(self, engine, make_metric):
        metrics = _nightly(make_metric, MetricType.SLEEP_SCORE, [75] * 7 + [60] * 7)
        result = _run(engine.analyze("user-1", metrics))
        assert [t.metric for t in result.trends] == ["Sleep Quality"]
        assert result.trends[0].direction == "improving"
        assert "Sleep Quality is improving" in [i.title for i in result.insights]

    def test_declining_steps_trend_insight(self, engine, make_metric):
        metrics = _nightly(make_metric, MetricType.STEPS, [6_000] * 7 + [9_000] * 7)
        result = _run(engine.analyze("user-1", metrics))
        declining = [i for i in result.insights if i.title == "Daily Steps is declining"]
        assert declining and declining[0].priority == "high"

    def test_goal_gap_recommendations(self, engine):
        profile = UserProfile(health_goals=(HealthGoal("sleep_quality", 20), HealthGoal("endurance", 90)))
        result = _run(engine.analyze("user-1", [], profile))
        titles = [i.title for i in result.insights]
        assert "Sleep quality goal needs attention" in titles
        assert "Endurance goal needs attention" not in titles
        assert GOAL_RECOMMENDATIONS["sleep_quality"] in result.recommendations
        assert len(result.recommendations) == len(set(result.recommendations))

    def test_recommendations_capped(self, engine, make_metric):
        profile = UserProfile(health_goals=tuple(HealthGoal(goal, 10) for goal in GOAL_RECOMMENDATIONS))
        metrics = _nightly(make_metric, MetricType.STEPS, [500] * 3)
        metrics += _nightly(make_metric, MetricType.SLEEP_DURATION, [200] * 3)
        result = _run(engine.analyze("user-1", metrics, profile))
        assert len(result.recommendations) == MAX_RECOMMENDATIONS


# ---------------------------------------------------------------------------
# Narrative enrichment
# ---------------------------------------------------------------------------

class TestNarrative:
    def test_narrative_adds_new_types_only(self, make_metric):
        engine = HealthAnalysisEngine(narrative=_enricher(MockProvider()))
        metrics = _nightly(make_metric, MetricType.STEPS, [1_000] * 3)
        result = _run(engine.analyze("user-1", metrics))
        origins = {i.title: i.origin for i in result.insights}
        assert origins["Very low activity"] == "deterministic"
        assert origins["Consistency pays off"] == "narrative"

    def test_narrative_duplicate_type_dropped(self, make_metric):
        engine = HealthAnalysisEngine(narrative=_enricher(MockProvider()))
        metrics = _nightly(make_metric, MetricType.SLEEP_SCORE, [75] * 7 + [60] * 7)
        result = _run(engine.analyze("user-1", metrics))
        # deterministic "trend" insight already covers the mock's trend type
        assert all(i.origin == "deterministic" for i in result.insights)

    def test_timeout_falls_back_to_deterministic(self, make_metric):
        engine = HealthAnalysisEngine(narrative=_enricher(MockProvider(delay_s=2.0)), narrative_timeout_s=0.05)
        metrics = _nightly(make_metric, MetricType.STEPS, [1_000] * 3)
        result = _run(engine.analyze("user-1", metrics))
        assert [i.origin for i in result.insights] == ["deterministic"]

    def test_provider_failure_is_tolerated(self, make_metric):
        engine = HealthAnalysisEngine(narrative=_enricher(MockProvider(error=RuntimeError("quota"))))
        baseline = _run(HealthAnalysisEngine().analyze("user-1", []))
        result = _run(engine.analyze("user-1", []))
        assert result.health_score == baseline.health_score
        assert [i.title for i in result.insights] == ["Health Data Analysis Available"]

    def test_unparseable_reply_is_tolerated(self):
        engine = HealthAnalysisEngine(narrative=_enricher(MockProvider(response_content="no json here")))
        result = _run(engine.analyze("user-1", []))
        assert result.health_score == 50

    def test_analysis_audited_with_disclosure(self, audit_logger, make_metric):
        engine = HealthAnalysisEngine(
            narrative=_enricher(MockProvider(), provider_name="anthropic"),
            audit_logger=audit_logger,
        )
        _run(engine.analyze("user-1", [make_metric(MetricType.STEPS, 9000)]))
        event = audit_logger.get_events(action="analysis")[0]
        assert event["llm_disclosed"] == 1
        assert event["llm_provider"] == "anthropic"
        assert event["records"] == 1

    def test_no_narrative_no_disclosure(self, audit_logger):
        engine = HealthAnalysisEngine(audit_logger=audit_logger)
        _run(engine.analyze("user-1", []))
        event = audit_logger.get_events(action="analysis")[0]
        assert event["llm_disclosed"] == 0
        assert event["llm_provider"] is None
