"""Fitbit Web API adapter."""

from __future__ import annotations

import base64
from datetime import datetime
from typing import Any

from vitalsync.domains.health.connectors.base import (
    BaseSourceAdapter,
    MalformedRecordError,
    optional_float,
    parse_timestamp,
    record_list,
)
from vitalsync.domains.health.domain_logic.metric_models import (
    DataSource,
    DeviceCredential,
    HealthMetric,
    MetricCategory,
    MetricType,
)

# category -> (path template, envelope key or None for a bare list)
_ENDPOINTS: dict[MetricCategory, tuple[str, str | None]] = {
    MetricCategory.HEART_RATE: ("/1/user/-/activities/heart/date/{start}/{end}.json", "activities-heart"),
    MetricCategory.SLEEP: ("/1.2/user/-/sleep/date/{start}/{end}.json", "sleep"),
    MetricCategory.ACTIVITY: ("/1/user/-/activities/steps/date/{start}/{end}.json", "activities-steps"),
    MetricCategory.BLOOD_OXYGEN: ("/1/user/-/spo2/date/{start}/{end}.json", None),
    MetricCategory.STRESS: ("/1/user/-/hrv/date/{start}/{end}.json", "hrv"),
}


class FitbitAdapter(BaseSourceAdapter):
    """Fitbit returns daily summaries keyed by ``dateTime`` (``YYYY-MM-DD``).

    Heart rate is the daily resting rate; the stress category carries the
    daily HRV (RMSSD) summary.
    """

    SOURCE = DataSource.FITBIT
    DISPLAY_NAME = "Fitbit Device"
    DEVICE_TYPE = "FITNESS_BAND"
    MANUFACTURER = "Fitbit"
    BASE_URL = "https://api.fitbit.com"
    TOKEN_URL = "https://api.fitbit.com/oauth2/token"
    CATEGORIES = frozenset(_ENDPOINTS)

    def _request_for(
        self, category: MetricCategory, start: datetime, end: datetime
    ) -> tuple[str, str, dict[str, Any]]:
        template, _ = _ENDPOINTS[category]
        path = template.format(start=start.date().isoformat(), end=end.date().isoformat())
        return "GET", path, {}

    def _refresh_request(self, credential: DeviceCredential) -> dict[str, Any]:
        # Fitbit wants the client credentials as HTTP Basic auth, not in the body.
        basic = base64.b64encode(f"{self._client_id}:{self._client_secret}".encode()).decode()
        return {
            "headers": {"Authorization": f"Basic {basic}"},
            "data": {"grant_type": "refresh_token", "refresh_token": credential.refresh_token},
        }

    def _records(self, category: MetricCategory, payload: Any) -> list[Any]:
        _, key = _ENDPOINTS[category]
        if key is None:
            return list(payload) if isinstance(payload, list) else []
        if not isinstance(payload, dict):
            return []
        return record_list(self.SOURCE, payload.get(key))

    # ------------------------------------------------------------------

    def _transform_heart_rate(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        value = record.get("value")
        if not isinstance(value, dict):
            raise MalformedRecordError("heart record without value object")
        resting = value.get("restingHeartRate")
        if resting is None:
            # Days without a computed resting rate are normal, not malformed.
            return []
        return [
            self.make_metric(
                user_id, MetricType.HEART_RATE, resting, "bpm",
                parse_timestamp(record.get("dateTime")), 0.95, {"kind": "resting"},
            )
        ]

    def _transform_sleep(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        timestamp = parse_timestamp(record.get("startTime") or record.get("dateOfSleep"))
        minutes_asleep = optional_float(record.get("minutesAsleep"))
        if minutes_asleep is None:
            raise MalformedRecordError("sleep record without minutesAsleep")

        metrics = [
            self.make_metric(
                user_id, MetricType.SLEEP_DURATION, minutes_asleep, "minutes", timestamp, 0.95,
                {"date_of_sleep": record.get("dateOfSleep"), "is_main_sleep": record.get("isMainSleep")},
            )
        ]
        summary = (record.get("levels") or {}).get("summary") or {}
        for stage, metric_type in (
            ("deep", MetricType.SLEEP_DEEP),
            ("rem", MetricType.SLEEP_REM),
            ("light", MetricType.SLEEP_LIGHT),
        ):
            minutes = optional_float((summary.get(stage) or {}).get("minutes"))
            if minutes is not None:
                metrics.append(
                    self.make_metric(user_id, metric_type, minutes, "minutes", timestamp, 0.9)
                )

        efficiency = optional_float(record.get("efficiency"))
        if efficiency is not None:
            metrics.append(
                self.make_metric(
                    user_id, MetricType.SLEEP_SCORE, efficiency, "score", timestamp, 0.8,
                    {"derived_from": "efficiency"},
                )
            )
        return metrics

    def _transform_activity(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        return [
            self.make_metric(
                user_id, MetricType.STEPS, record.get("value"), "steps",
                parse_timestamp(record.get("dateTime")), 0.98,
            )
        ]

    def _transform_blood_oxygen(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        value = record.get("value")
        if not isinstance(value, dict):
            raise MalformedRecordError("spo2 record without value object")
        return [
            self.make_metric(
                user_id, MetricType.BLOOD_OXYGEN, value.get("avg"), "%",
                parse_timestamp(record.get("dateTime")), 0.9,
                {"min": value.get("min"), "max": value.get("max")},
            )
        ]

    def _transform_stress(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        value = record.get("value")
        if not isinstance(value, dict):
            raise MalformedRecordError("hrv record without value object")
        return [
            self.make_metric(
                user_id, MetricType.HRV, value.get("dailyRmssd"), "ms",
                parse_timestamp(record.get("dateTime")), 0.9,
                {"deep_rmssd": value.get("deepRmssd")},
            )
        ]
