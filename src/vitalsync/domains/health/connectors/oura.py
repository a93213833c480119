"""Oura Ring v2 API adapter."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from vitalsync.domains.health.connectors.base import (
    BaseSourceAdapter,
    MalformedRecordError,
    SourceError,
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

logger = logging.getLogger(__name__)

_COLLECTIONS = {
    MetricCategory.HEART_RATE: "heartrate",
    MetricCategory.SLEEP: "sleep",
    MetricCategory.ACTIVITY: "daily_activity",
    MetricCategory.BLOOD_OXYGEN: "daily_spo2",
}

MAX_PAGES = 20


class OuraAdapter(BaseSourceAdapter):
    """Oura returns ``{"data": [...], "next_token": ...}`` collections.

    Durations are seconds. ``heartrate`` is filtered by datetime, the daily
    collections by date.
    """

    SOURCE = DataSource.OURA
    DISPLAY_NAME = "Oura Ring"
    DEVICE_TYPE = "SMART_RING"
    MANUFACTURER = "Oura"
    BASE_URL = "https://api.ouraring.com/v2/usercollection"
    TOKEN_URL = "https://api.ouraring.com/oauth/token"
    CATEGORIES = frozenset(_COLLECTIONS)

    def _request_for(
        self, category: MetricCategory, start: datetime, end: datetime
    ) -> tuple[str, str, dict[str, Any]]:
        if category is MetricCategory.HEART_RATE:
            params = {"start_datetime": start.isoformat(), "end_datetime": end.isoformat()}
        else:
            params = {"start_date": start.date().isoformat(), "end_date": end.date().isoformat()}
        return "GET", f"/{_COLLECTIONS[category]}", {"params": params}

    async def fetch_raw(
        self,
        credential: DeviceCredential,
        category: MetricCategory,
        start: datetime,
        end: datetime,
    ) -> Any:
        """Fetch every page of a collection into a single ``data`` envelope."""
        if not self.supports(category):
            raise SourceError(f"{self.SOURCE.value} does not support {category.value}")
        method, path, kwargs = self._request_for(category, start, end)
        params = dict(kwargs["params"])
        records: list[Any] = []
        for _ in range(MAX_PAGES):
            page = await self._request_json(credential, method, path, params=params)
            if not isinstance(page, dict):
                raise SourceError(f"{self.SOURCE.value} returned an unexpected payload")
            records.extend(record_list(self.SOURCE, page.get("data")))
            next_token = page.get("next_token")
            if not next_token:
                break
            params["next_token"] = next_token
        else:
            logger.warning("Oura %s paging stopped after %d pages", category.value, MAX_PAGES)
        return {"data": records}

    def _records(self, category: MetricCategory, payload: Any) -> list[Any]:
        if not isinstance(payload, dict):
            return []
        return record_list(self.SOURCE, payload.get("data"))

    # ------------------------------------------------------------------

    def _transform_heart_rate(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        return [
            self.make_metric(
                user_id, MetricType.HEART_RATE, record.get("bpm"), "bpm",
                parse_timestamp(record.get("timestamp")), 0.92,
                {"context": record.get("source")},
            )
        ]

    def _transform_sleep(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        timestamp = parse_timestamp(record.get("bedtime_start") or record.get("day"))
        total_s = optional_float(record.get("total_sleep_duration"))
        if total_s is None:
            raise MalformedRecordError("sleep record without total_sleep_duration")

        metrics = [
            self.make_metric(
                user_id, MetricType.SLEEP_DURATION, total_s / 60.0, "minutes", timestamp, 0.95,
                {"day": record.get("day"), "efficiency": record.get("efficiency")},
            )
        ]
        for field_name, metric_type in (
            ("deep_sleep_duration", MetricType.SLEEP_DEEP),
            ("rem_sleep_duration", MetricType.SLEEP_REM),
            ("light_sleep_duration", MetricType.SLEEP_LIGHT),
        ):
            seconds = optional_float(record.get(field_name))
            if seconds is not None:
                metrics.append(
                    self.make_metric(user_id, metric_type, seconds / 60.0, "minutes", timestamp, 0.9)
                )

        score = optional_float(record.get("score"))
        if score is not None:
            metrics.append(
                self.make_metric(
                    user_id, MetricType.SLEEP_SCORE, score, "score", timestamp, 0.9,
                    {"derived_from": "score"},
                )
            )
        return metrics

    def _transform_activity(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        timestamp = parse_timestamp(record.get("day"))
        metrics = [
            self.make_metric(user_id, MetricType.STEPS, record.get("steps"), "steps", timestamp, 0.98)
        ]
        calories = optional_float(record.get("active_calories"))
        if calories is not None:
            metrics.append(
                self.make_metric(user_id, MetricType.CALORIES_BURNED, calories, "kcal", timestamp, 0.85)
            )
        distance = optional_float(record.get("equivalent_walking_distance"))
        if distance is not None:
            metrics.append(
                self.make_metric(user_id, MetricType.DISTANCE, distance, "meters", timestamp, 0.9)
            )
        active_s = optional_float(record.get("high_activity_time"))
        if active_s is not None:
            metrics.append(
                self.make_metric(
                    user_id, MetricType.ACTIVE_MINUTES, active_s / 60.0, "minutes", timestamp, 0.9
                )
            )
        return metrics

    def _transform_blood_oxygen(self, user_id: str, record: dict[str, Any]) -> list[HealthMetric]:
        percentage = record.get("spo2_percentage")
        if not isinstance(percentage, dict):
            # Oura emits days without a reading as null percentages.
            return []
        average = percentage.get("average")
        if average is None:
            return []
        return [
            self.make_metric(
                user_id, MetricType.BLOOD_OXYGEN, average, "%",
                parse_timestamp(record.get("day")), 0.9,
            )
        ]
