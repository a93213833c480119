"""Tests for the Fitbit adapter."""

from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timezone
from urllib.parse import parse_qs

import pytest

from vitalsync.domains.health.connectors.fitbit import FitbitAdapter
from vitalsync.domains.health.domain_logic.metric_models import (
    DataSource,
    DeviceCredential,
    MetricCategory,
    MetricType,
)


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def adapter(fake_vendor) -> FitbitAdapter:
    return FitbitAdapter(fake_vendor.client(), client_id="fitbit-app", client_secret="s3cret")


def _credential() -> DeviceCredential:
    return DeviceCredential(
        user_id="user-1", source=DataSource.FITBIT, access_token="tok", refresh_token="ref",
    )


class TestFetch:
    def test_date_range_paths(self, adapter, fake_vendor):
        fake_vendor.route("api.fitbit.com", (200, {}))
        start = datetime(2026, 3, 1, 15, tzinfo=timezone.utc)
        end = datetime(2026, 3, 7, 9, tzinfo=timezone.utc)
        for category in (MetricCategory.HEART_RATE, MetricCategory.SLEEP, MetricCategory.STRESS):
            _run(adapter.fetch_raw(_credential(), category, start, end))

        paths = [r.url.path for r in fake_vendor.requests]
        assert paths == [
            "/1/user/-/activities/heart/date/2026-03-01/2026-03-07.json",
            "/1.2/user/-/sleep/date/2026-03-01/2026-03-07.json",
            "/1/user/-/hrv/date/2026-03-01/2026-03-07.json",
        ]
        assert all(r.method == "GET" for r in fake_vendor.requests)


class TestRefresh:
    def test_uses_basic_auth(self, adapter, fake_vendor):
        fake_vendor.route("/oauth2/token", (200, {
            "access_token": "a2", "refresh_token": "r2", "expires_in": 28800,
        }))
        refreshed = _run(adapter.refresh_token(_credential()))
        assert refreshed.access_token == "a2"
        assert refreshed.refresh_token == "r2"

        request = fake_vendor.requests[0]
        expected = base64.b64encode(b"fitbit-app:s3cret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        form = parse_qs(request.content.decode())
        assert form == {"grant_type": ["refresh_token"], "refresh_token": ["ref"]}


class TestTransformHeartRate:
    def test_resting_heart_rate_per_day(self, adapter):
        payload = {"activities-heart": [
            {"dateTime": "2026-03-01", "value": {"restingHeartRate": 61, "heartRateZones": []}},
            {"dateTime": "2026-03-02", "value": {"restingHeartRate": 63}},
        ]}
        result = adapter.transform("user-1", MetricCategory.HEART_RATE, payload)
        assert [m.value for m in result.metrics] == [61.0, 63.0]
        assert result.metrics[0].timestamp == datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert result.metrics[0].confidence == 0.95
        assert result.metrics[0].metadata == {"kind": "resting"}

    def test_days_without_resting_rate_are_skipped_not_dropped(self, adapter):
        payload = {"activities-heart": [{"dateTime": "2026-03-01", "value": {"heartRateZones": []}}]}
        result = adapter.transform("user-1", MetricCategory.HEART_RATE, payload)
        assert result.metrics == []
        assert result.dropped == 0

    def test_missing_value_object_dropped(self, adapter):
        payload = {"activities-heart": [{"dateTime": "2026-03-01", "value": 61}]}
        assert adapter.transform("user-1", MetricCategory.HEART_RATE, payload).dropped == 1


class TestTransformSleep:
    def test_sleep_log(self, adapter):
        payload = {"sleep": [{
            "dateOfSleep": "2026-03-02",
            "startTime": "2026-03-01T23:10:00.000",
            "minutesAsleep": 412,
            "efficiency": 88,
            "isMainSleep": True,
            "levels": {"summary": {
                "deep": {"minutes": 70}, "rem": {"minutes": 95}, "light": {"minutes": 247},
            }},
        }]}
        metrics = {m.type: m for m in adapter.transform("user-1", MetricCategory.SLEEP, payload).metrics}
        assert metrics[MetricType.SLEEP_DURATION].value == 412.0
        assert metrics[MetricType.SLEEP_DURATION].timestamp == datetime(2026, 3, 1, 23, 10, tzinfo=timezone.utc)
        assert metrics[MetricType.SLEEP_DEEP].value == 70.0
        assert metrics[MetricType.SLEEP_REM].value == 95.0
        assert metrics[MetricType.SLEEP_LIGHT].value == 247.0
        assert metrics[MetricType.SLEEP_SCORE].value == 88.0
        assert metrics[MetricType.SLEEP_SCORE].metadata == {"derived_from": "efficiency"}

    def test_classic_sleep_without_stages(self, adapter):
        payload = {"sleep": [{"dateOfSleep": "2026-03-02", "minutesAsleep": 380, "levels": {"summary": {}}}]}
        metrics = adapter.transform("user-1", MetricCategory.SLEEP, payload).metrics
        assert [m.type for m in metrics] == [MetricType.SLEEP_DURATION]


class TestTransformOther:
    def test_steps_time_series(self, adapter):
        payload = {"activities-steps": [
            {"dateTime": "2026-03-01", "value": "10432"},
            {"dateTime": "2026-03-02", "value": "oops"},
        ]}
        result = adapter.transform("user-1", MetricCategory.ACTIVITY, payload)
        assert [m.value for m in result.metrics] == [10432.0]
        assert result.dropped == 1

    def test_spo2_bare_list(self, adapter):
        payload = [{"dateTime": "2026-03-01", "value": {"avg": 96.4, "min": 93.0, "max": 99.1}}]
        result = adapter.transform("user-1", MetricCategory.BLOOD_OXYGEN, payload)
        assert result.metrics[0].value == 96.4
        assert result.metrics[0].metadata == {"min": 93.0, "max": 99.1}

    def test_spo2_empty_object_response(self, adapter):
        result = adapter.transform("user-1", MetricCategory.BLOOD_OXYGEN, {})
        assert result.metrics == []

    def test_hrv_as_stress_category(self, adapter):
        payload = {"hrv": [{"dateTime": "2026-03-01", "value": {"dailyRmssd": 41.2, "deepRmssd": 48.0}}]}
        metric = adapter.transform("user-1", MetricCategory.STRESS, payload).metrics[0]
        assert metric.type == MetricType.HRV
        assert metric.unit == "ms"
        assert metric.value == 41.2
