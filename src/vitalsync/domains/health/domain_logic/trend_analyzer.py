"""Window-over-window trend analysis on canonical metric series.

A trend compares the mean of the most recent window against the mean of the
immediately preceding window of the same size. Series are plain lists of
values, newest first. A trend whose older window is empty is skipped, never
fabricated.
"""

from __future__ import annotations

import logging
import statistics
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass

from vitalsync.domains.health.domain_logic.metric_models import (
    HealthMetric,
    MetricType,
    TrendAnalysis,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrendSpec:
    """How one metric series is compared.

    ``relative`` trends measure percent change; the others the absolute
    difference of the window means. ``breakpoints`` are the (high, medium)
    magnitudes for significance.
    """

    metric: str
    window: int
    min_delta: float
    breakpoints: tuple[float, float]
    timeframe: str
    relative: bool = False
    lower_is_better: bool = False


HEART_RATE_TREND = TrendSpec(
    metric="Heart Rate",
    window=24,
    min_delta=2.0,
    breakpoints=(10.0, 5.0),
    timeframe="24-hour comparison",
    lower_is_better=True,
)
SLEEP_QUALITY_TREND = TrendSpec(
    metric="Sleep Quality",
    window=7,
    min_delta=2.0,
    breakpoints=(10.0, 5.0),
    timeframe="7-day comparison",
)
DAILY_STEPS_TREND = TrendSpec(
    metric="Daily Steps",
    window=7,
    min_delta=5.0,
    breakpoints=(20.0, 10.0),
    timeframe="7-day comparison",
    relative=True,
)


def compute_trend(values: list[float], spec: TrendSpec) -> TrendAnalysis | None:
    """Compare the two most recent windows of a newest-first series."""
    recent = values[: spec.window]
    older = values[spec.window: 2 * spec.window]
    if not recent or not older:
        return None

    recent_mean = statistics.fmean(recent)
    older_mean = statistics.fmean(older)
    if spec.relative:
        if older_mean == 0:
            rate = 0.0 if recent_mean == 0 else 100.0
        else:
            rate = (recent_mean - older_mean) / older_mean * 100
    else:
        rate = recent_mean - older_mean

    if abs(rate) <= spec.min_delta:
        direction = "stable"
    else:
        rising = rate > 0
        direction = "improving" if rising != spec.lower_is_better else "declining"

    high, medium = spec.breakpoints
    magnitude = abs(rate)
    if magnitude > high:
        significance = "high"
    elif magnitude > medium:
        significance = "medium"
    else:
        significance = "low"

    return TrendAnalysis(
        metric=spec.metric,
        direction=direction,
        rate=round(rate, 2),
        significance=significance,
        timeframe=spec.timeframe,
    )


# ---------------------------------------------------------------------------
# Series preparation
# ---------------------------------------------------------------------------

def sample_series(metrics: Iterable[HealthMetric], metric_type: MetricType) -> list[float]:
    """Raw sample values of one type, newest first."""
    samples = sorted(
        (m for m in metrics if m.type is metric_type),
        key=lambda m: m.timestamp,
        reverse=True,
    )
    return [m.value for m in samples]


def nightly_series(metrics: Iterable[HealthMetric], metric_type: MetricType) -> list[float]:
    """One value per day, newest first.

    When several sources report the same night, the most confident reading
    wins (the latest on a tie).
    """
    best: dict[str, HealthMetric] = {}
    for metric in metrics:
        if metric.type is not metric_type:
            continue
        current = best.get(metric.day)
        if current is None or (metric.confidence, metric.timestamp) > (current.confidence, current.timestamp):
            best[metric.day] = metric
    return [best[day].value for day in sorted(best, reverse=True)]


def daily_total_series(metrics: Iterable[HealthMetric], metric_type: MetricType) -> list[float]:
    """Per-day totals, newest first.

    Readings are summed per source, then the largest source total is taken,
    so two devices counting the same walk do not double it.
    """
    per_day: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
    for metric in metrics:
        if metric.type is metric_type:
            per_day[metric.day][metric.source.value] += metric.value
    return [max(per_day[day].values()) for day in sorted(per_day, reverse=True)]


def analyze_trends(metrics: Iterable[HealthMetric]) -> list[TrendAnalysis]:
    """Heart rate, sleep quality and daily steps trends, where computable."""
    snapshot = tuple(metrics)
    candidates = (
        (sample_series(snapshot, MetricType.HEART_RATE), HEART_RATE_TREND),
        (nightly_series(snapshot, MetricType.SLEEP_SCORE), SLEEP_QUALITY_TREND),
        (daily_total_series(snapshot, MetricType.STEPS), DAILY_STEPS_TREND),
    )
    trends = []
    for values, spec in candidates:
        trend = compute_trend(values, spec)
        if trend is None:
            logger.debug("Skipping %s trend: not enough history", spec.metric)
            continue
        trends.append(trend)
    return trends
