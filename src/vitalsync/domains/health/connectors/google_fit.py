"""Google Fit adapter (activity only)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from vitalsync.domains.health.connectors.base import (
    BaseSourceAdapter,
    MalformedRecordError,
    as_float,
    parse_timestamp,
    record_list,
)
from vitalsync.domains.health.domain_logic.metric_models import (
    DataSource,
    HealthMetric,
    MetricCategory,
    MetricType,
)

_DAY_MS = 86_400_000

# Google Fit data type -> (metric type, unit, confidence)
_AGGREGATES: dict[str, tuple[MetricType, str, float]] = {
    "com.google.step_count.delta": (MetricType.STEPS, "steps", 0.98),
    "com.google.calories.expended": (MetricType.CALORIES_BURNED, "kcal", 0.85),
    "com.google.distance.delta": (MetricType.DISTANCE, "meters", 0.9),
    "com.google.active_minutes": (MetricType.ACTIVE_MINUTES, "minutes", 0.9),
}


class GoogleFitAdapter(BaseSourceAdapter):
    """Daily activity buckets from ``dataset:aggregate``."""

    SOURCE = DataSource.GOOGLE_FIT
    DISPLAY_NAME = "Google Fit"
    DEVICE_TYPE = "PHONE"
    MANUFACTURER = "Google"
    BASE_URL = "https://www.googleapis.com/fitness/v1/users/me"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    CATEGORIES = frozenset({MetricCategory.ACTIVITY})

    def _request_for(
        self, category: MetricCategory, start: datetime, end: datetime
    ) -> tuple[str, str, dict[str, Any]]:
        body = {
            "aggregateBy": [{"dataTypeName": name} for name in _AGGREGATES],
            "bucketByTime": {"durationMillis": _DAY_MS},
            "startTimeMillis": int(start.timestamp() * 1000),
            "endTimeMillis": int(end.timestamp() * 1000),
        }
        return "POST", "/dataset:aggregate", {"json": body}

    def _records(self, category: MetricCategory, payload: Any) -> list[Any]:
        if not isinstance(payload, dict):
            return []
        return record_list(self.SOURCE, payload.get("bucket"))

    def _transform_activity(self, user_id: str, bucket: dict[str, Any]) -> list[HealthMetric]:
        """One bucket is one day; each dataset sums into one metric."""
        timestamp = parse_timestamp(bucket.get("startTimeMillis"))
        totals: dict[str, float] = {}
        for dataset in bucket.get("dataset") or []:
            for point in dataset.get("point") or []:
                type_name = point.get("dataTypeName") or _type_from_source(dataset.get("dataSourceId"))
                if type_name not in _AGGREGATES:
                    continue
                for value in point.get("value") or []:
                    number = value.get("intVal", value.get("fpVal"))
                    if number is None:
                        raise MalformedRecordError(f"{type_name} point without a value")
                    totals[type_name] = totals.get(type_name, 0.0) + as_float(number)

        metrics = []
        for type_name, total in totals.items():
            metric_type, unit, confidence = _AGGREGATES[type_name]
            metrics.append(
                self.make_metric(user_id, metric_type, total, unit, timestamp, confidence)
            )
        return metrics


def _type_from_source(data_source_id: str | None) -> str | None:
    # "derived:com.google.step_count.delta:com.google.android.gms:aggregated"
    if not data_source_id:
        return None
    parts = data_source_id.split(":")
    return parts[1] if len(parts) > 1 else None
