"""Samsung Health adapter."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from vitalsync.domains.health.connectors.base import (
    BaseSourceAdapter,
    MalformedRecordError,
    first_present,
    optional_float,
    parse_timestamp,
    record_list,
)
from vitalsync.domains.health.domain_logic.metric_models import (
    DataSource,
    HealthMetric,
    MetricCategory,
    MetricType,
)

_DATA_TYPES = {
    MetricCategory.HEART_RATE: "heart_rates",
    MetricCategory.SLEEP: "sleep",
    MetricCategory.ACTIVITY: "step_daily_trends",
    MetricCategory.BLOOD_OXYGEN: "oxygen_saturation",
    MetricCategory.STRESS: "stress",
}


class SamsungHealthAdapter(BaseSourceAdapter):
    """Samsung Health partner API. Timestamps are epoch milliseconds,
    durations are seconds, results arrive under ``result``."""

    SOURCE = DataSource.SAMSUNG_HEALTH
    DISPLAY_NAME = "Samsung Health"
    DEVICE_TYPE = "SMARTWATCH"
    MANUFACTURER = "Samsung"
    BASE_URL = "https://shealth.samsung.com/api/v1"
    TOKEN_URL = "https://account.samsung.com/mobile/oauth2/token"
    CATEGORIES = frozenset(_DATA_TYPES)

    def _request_for(
        self, category: MetricCategory, start: datetime, end: datetime
    ) -> tuple[str, str, dict[str, Any]]:
        body = {
            "start_time": int(start.timestamp() * 1000),
            "end_time": int(end.timestamp() * 1000),
            "time_offset": "+00:00",
        }
        return "POST", f"/users/me/{_DATA_TYPES[category]}", {"json": body}

    def _records(self, category: MetricCategory, payload: Any) -> list[Any]:
        if not isinstance(payload, dict):
            return []
        return record_list(self.SOURCE, payload.get("result"))

    # ------------------------------------------------------------------

    def _transform_heart_rate(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        return [
            self.make_metric(
                user_id,
                MetricType.HEART_RATE,
                first_present(record, "heart_rate", "value"),
                "bpm",
                parse_timestamp(first_present(record, "start_time", "timestamp")),
                0.9,
                {"device_id": record.get("device_uuid")},
            )
        ]

    def _transform_sleep(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        timestamp = parse_timestamp(first_present(record, "start_time", "sleep_date"))
        duration_s = optional_float(record.get("sleep_duration"))
        if duration_s is None:
            raise MalformedRecordError("sleep record without sleep_duration")

        metrics = [
            self.make_metric(
                user_id, MetricType.SLEEP_DURATION, duration_s / 60.0, "minutes", timestamp, 0.95,
                {"efficiency": record.get("sleep_efficiency")},
            )
        ]
        for field_name, metric_type in (
            ("deep_sleep_time", MetricType.SLEEP_DEEP),
            ("rem_sleep_time", MetricType.SLEEP_REM),
            ("light_sleep_time", MetricType.SLEEP_LIGHT),
        ):
            seconds = optional_float(record.get(field_name))
            if seconds is not None:
                metrics.append(
                    self.make_metric(user_id, metric_type, seconds / 60.0, "minutes", timestamp, 0.9)
                )

        score = optional_float(record.get("sleep_score"))
        derived_from = "score"
        if score is None:
            score = optional_float(record.get("sleep_efficiency"))
            derived_from = "efficiency"
        if score is not None:
            metrics.append(
                self.make_metric(
                    user_id, MetricType.SLEEP_SCORE, score, "score", timestamp, 0.8,
                    {"derived_from": derived_from},
                )
            )
        return metrics

    def _transform_activity(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        timestamp = parse_timestamp(first_present(record, "day_time", "start_time"))
        steps = first_present(record, "step_count", "count")
        if steps is None:
            raise MalformedRecordError("activity record without step count")

        metrics = [self.make_metric(user_id, MetricType.STEPS, steps, "steps", timestamp, 0.98)]
        calories = optional_float(record.get("calorie"))
        if calories is not None:
            metrics.append(
                self.make_metric(user_id, MetricType.CALORIES_BURNED, calories, "kcal", timestamp, 0.85)
            )
        distance = optional_float(record.get("distance"))
        if distance is not None:
            metrics.append(
                self.make_metric(user_id, MetricType.DISTANCE, distance, "meters", timestamp, 0.9)
            )
        active_s = optional_float(record.get("active_time"))
        if active_s is not None:
            metrics.append(
                self.make_metric(
                    user_id, MetricType.ACTIVE_MINUTES, active_s / 60.0, "minutes", timestamp, 0.9
                )
            )
        return metrics

    def _transform_blood_oxygen(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        return [
            self.make_metric(
                user_id,
                MetricType.BLOOD_OXYGEN,
                first_present(record, "spo2", "value"),
                "%",
                parse_timestamp(first_present(record, "start_time", "timestamp")),
                0.9,
            )
        ]

    def _transform_stress(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        return [
            self.make_metric(
                user_id,
                MetricType.STRESS,
                first_present(record, "score", "value"),
                "score",
                parse_timestamp(first_present(record, "start_time", "timestamp")),
                0.8,
            )
        ]
