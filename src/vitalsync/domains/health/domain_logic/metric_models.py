"""Canonical metric model and domain value types.

Every physiological observation ingested from a wearable vendor is
normalized into a :class:`HealthMetric`. The remaining types describe the
credential lifecycle, per-source sync outcomes, and the outputs of the
analysis engine.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal


class MetricType(str, Enum):
    """Canonical metric types shared by every source adapter."""

    HEART_RATE = "HEART_RATE"
    SLEEP_DURATION = "SLEEP_DURATION"
    SLEEP_DEEP = "SLEEP_DEEP"
    SLEEP_REM = "SLEEP_REM"
    SLEEP_LIGHT = "SLEEP_LIGHT"
    SLEEP_SCORE = "SLEEP_SCORE"
    STEPS = "STEPS"
    CALORIES_BURNED = "CALORIES_BURNED"
    DISTANCE = "DISTANCE"
    ACTIVE_MINUTES = "ACTIVE_MINUTES"
    BLOOD_OXYGEN = "BLOOD_OXYGEN"
    STRESS = "STRESS"
    HRV = "HRV"


class DataSource(str, Enum):
    """Wearable vendors with a registered source adapter."""

    SAMSUNG_HEALTH = "samsung_health"
    FITBIT = "fitbit"
    OURA = "oura"
    GOOGLE_FIT = "google_fit"


class MetricCategory(str, Enum):
    """Fetch categories; one sync sub-task runs per supported category."""

    HEART_RATE = "heart_rate"
    SLEEP = "sleep"
    ACTIVITY = "activity"
    BLOOD_OXYGEN = "blood_oxygen"
    STRESS = "stress"


TrendDirection = Literal["improving", "declining", "stable"]
Significance = Literal["low", "medium", "high"]
AlertType = Literal["anomaly_detected", "medical_emergency"]
AlertSeverity = Literal["warning", "danger", "critical"]
InsightType = Literal["recommendation", "alert", "trend", "anomaly"]
InsightPriority = Literal["low", "medium", "high", "critical"]

# Namespace for deterministic metric ids: the same reading re-fetched in a
# later sync maps to the same id.
_METRIC_NAMESPACE = uuid.UUID("7b0f3c52-3c8e-4f0e-9a8e-3d1f4a6c2b90")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def metric_id(
    user_id: str,
    source: DataSource,
    metric_type: MetricType,
    timestamp: datetime,
    value: float,
) -> str:
    """Deterministic id for a reading (same reading → same id)."""
    key = f"{user_id}|{source.value}|{metric_type.value}|{timestamp.isoformat()}|{value!r}"
    return str(uuid.uuid5(_METRIC_NAMESPACE, key))


# ---------------------------------------------------------------------------
# Canonical metric
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HealthMetric:
    """A single timestamped, sourced, confidence-scored reading.

    Immutable once created. Adapters build these through
    ``BaseSourceAdapter.make_metric`` which enforces the confidence range,
    the non-future timestamp and the producing source.
    """

    id: str
    user_id: str
    type: MetricType
    value: float
    unit: str
    timestamp: datetime
    source: DataSource
    confidence: float
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def day(self) -> str:
        """Calendar day (UTC) of the reading, ``YYYY-MM-DD``."""
        return self.timestamp.astimezone(timezone.utc).date().isoformat()


# ---------------------------------------------------------------------------
# Credentials and sync results
# ---------------------------------------------------------------------------

@dataclass
class DeviceCredential:
    """OAuth/API credential for one (user, source) pair.

    Token material is only ever held decrypted in memory; the credential
    store encrypts it before it reaches SQLite.
    """

    user_id: str
    source: DataSource
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: list[str] = field(default_factory=list)
    is_valid: bool = True


@dataclass
class SyncResult:
    """Outcome of syncing one source for one user in one invocation."""

    success: bool = False
    records_processed: int = 0
    errors: list[str] = field(default_factory=list)
    last_sync_timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "records_processed": self.records_processed,
            "errors": list(self.errors),
            "last_sync_timestamp": self.last_sync_timestamp.isoformat(),
        }


# ---------------------------------------------------------------------------
# Profile (externally owned, read-only)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HealthGoal:
    type: str                # 'weight_loss' | 'sleep_quality' | 'endurance' | ...
    progress: float          # 0-100


@dataclass(frozen=True)
class UserProfile:
    """Profile facts supplied by the profile service."""

    age: int | None = None
    gender: str | None = None
    height: float | None = None          # cm
    weight: float | None = None          # kg
    activity_level: str | None = None
    health_goals: tuple[HealthGoal, ...] = ()
    medical_conditions: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> UserProfile:
        """Build a profile from a loosely-shaped dict (missing keys are fine)."""
        if not data:
            return cls()
        goals = tuple(
            HealthGoal(type=str(g.get("type", "general_wellness")), progress=float(g.get("progress", 0)))
            for g in data.get("health_goals") or []
            if isinstance(g, dict)
        )
        return cls(
            age=data.get("age"),
            gender=data.get("gender"),
            height=data.get("height"),
            weight=data.get("weight"),
            activity_level=data.get("activity_level"),
            health_goals=goals,
            medical_conditions=tuple(data.get("medical_conditions") or ()),
        )


# ---------------------------------------------------------------------------
# Analysis outputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TrendAnalysis:
    metric: str
    direction: TrendDirection
    rate: float
    significance: Significance
    timeframe: str


@dataclass
class HealthAlert:
    """An alert raised by the analysis engine. Append-only from here on."""

    type: AlertType
    severity: AlertSeverity
    message: str
    action_required: bool = True
    auto_resolve: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"alert_{uuid.uuid4().hex}")
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class HealthInsight:
    type: InsightType
    priority: InsightPriority
    title: str
    description: str
    recommendations: list[str] = field(default_factory=list)
    confidence: float = 0.8
    evidence: list[str] = field(default_factory=list)   # metric ids
    origin: Literal["deterministic", "narrative"] = "deterministic"
    id: str = field(default_factory=lambda: f"insight_{uuid.uuid4().hex}")


@dataclass
class AnalysisResult:
    health_score: int
    alerts: list[HealthAlert]
    trends: list[TrendAnalysis]
    insights: list[HealthInsight]
    recommendations: list[str]
    confidence: float
    generated_at: datetime = field(default_factory=utc_now)
