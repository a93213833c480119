"""Metric repository — the persisted-metric store and device connections.

The repository mediates between canonical ``HealthMetric`` objects and the
SQLite database. Re-fetching an identical reading is a no-op (deterministic
ids). A changed reading for the same (source, type, timestamp) is written as
a new row that supersedes the older ones at query time; the newest write
always wins, including a revert to an earlier value.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from vitalsync.core.storage.database import HealthDatabase
from vitalsync.core.storage.encryption import EncryptionError, FieldEncryptor
from vitalsync.domains.health.domain_logic.metric_models import (
    DataSource,
    HealthMetric,
    MetricType,
)

logger = logging.getLogger(__name__)

_INSERT_METRIC = """INTO health_metrics (
    id, user_id, metric_type, value, unit, timestamp,
    source, confidence, metadata_enc, recorded_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""


class RepositoryError(Exception):
    """Raised when repository operations fail."""


@runtime_checkable
class MetricStore(Protocol):
    """Contract the sync orchestrator and analysis tools rely on."""

    async def store(self, user_id: str, metric: HealthMetric) -> bool: ...

    async def query(
        self,
        user_id: str,
        metric_type: MetricType,
        start: datetime,
        end: datetime,
    ) -> list[HealthMetric]: ...


def to_iso(value: datetime) -> str:
    """Normalize an aware datetime to a sortable UTC ISO 8601 string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class MetricRepository:
    """SQLite-backed :class:`MetricStore` plus device connection records.

    Usage::

        db = HealthDatabase(":memory:")
        db.initialize()
        repo = MetricRepository(db, FieldEncryptor(key))

        await repo.store("user-1", metric)
        history = await repo.query("user-1", MetricType.HEART_RATE, start, end)
    """

    def __init__(self, database: HealthDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def store(self, user_id: str, metric: HealthMetric) -> bool:
        """Persist a metric as the current reading of its series point.

        Returns:
            True if the reading became current, False if it already was.
            A reading that reverts to an earlier stored value is rewritten
            so that it supersedes the value stored in between.

        Raises:
            RepositoryError: If the metric belongs to another user or the
                write fails.
        """
        if metric.user_id != user_id:
            raise RepositoryError(
                f"Metric {metric.id} belongs to another user; refusing to store"
            )
        try:
            metadata_enc = self._enc.encrypt(metric.metadata) if metric.metadata else None
            row = (
                metric.id,
                user_id,
                metric.type.value,
                metric.value,
                metric.unit,
                to_iso(metric.timestamp),
                metric.source.value,
                metric.confidence,
                metadata_enc,
                to_iso(datetime.now(timezone.utc)),
            )
            with self._db.lock:
                conn = self._db.connection
                written = conn.execute(f"INSERT OR IGNORE {_INSERT_METRIC}", row).rowcount == 1
                if not written and self._current_id(metric) != metric.id:
                    conn.execute("DELETE FROM health_metrics WHERE id = ?", (metric.id,))
                    conn.execute(f"INSERT {_INSERT_METRIC}", row)
                    written = True
                conn.commit()
        except (sqlite3.Error, EncryptionError) as exc:
            raise RepositoryError(f"Failed to store metric {metric.id}: {exc}") from exc
        return written

    def _current_id(self, metric: HealthMetric) -> str | None:
        found = self._db.connection.execute(
            """SELECT id FROM health_metrics
               WHERE user_id = ? AND source = ? AND metric_type = ? AND timestamp = ?
               ORDER BY recorded_at DESC, rowid DESC LIMIT 1""",
            (metric.user_id, metric.source.value, metric.type.value, to_iso(metric.timestamp)),
        ).fetchone()
        return found["id"] if found else None

    async def query(
        self,
        user_id: str,
        metric_type: MetricType,
        start: datetime,
        end: datetime,
    ) -> list[HealthMetric]:
        """Return the current readings of one series, newest first.

        Superseded rows (same source and timestamp, older ``recorded_at``)
        are left out.
        """
        return self._select(user_id, start, end, metric_type)

    async def query_window(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> list[HealthMetric]:
        """Return current readings of every type in a window, newest first."""
        return self._select(user_id, start, end, None)

    def count_metrics(self, user_id: str | None = None) -> int:
        """Return the number of stored metric rows."""
        if user_id:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM health_metrics WHERE user_id = ?", (user_id,)
            ).fetchone()
        else:
            row = self._db.connection.execute("SELECT COUNT(*) FROM health_metrics").fetchone()
        return row[0]

    def _select(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        metric_type: MetricType | None,
    ) -> list[HealthMetric]:
        conditions = ["user_id = ?", "timestamp >= ?", "timestamp <= ?"]
        params: list[Any] = [user_id, to_iso(start), to_iso(end)]
        if metric_type is not None:
            conditions.append("metric_type = ?")
            params.append(metric_type.value)

        query = (
            "SELECT * FROM health_metrics WHERE "
            + " AND ".join(conditions)
            + " ORDER BY timestamp DESC, recorded_at DESC, rowid DESC"
        )
        try:
            with self._db.lock:
                rows = self._db.connection.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise RepositoryError(f"Metric query failed: {exc}") from exc

        seen: set[tuple[str, str, str]] = set()
        metrics: list[HealthMetric] = []
        for row in rows:
            key = (row["metric_type"], row["source"], row["timestamp"])
            if key in seen:
                continue
            seen.add(key)
            metrics.append(self._row_to_metric(row))
        return metrics

    def _row_to_metric(self, row: Any) -> HealthMetric:
        metadata: dict[str, Any] = {}
        if row["metadata_enc"]:
            try:
                metadata = self._enc.decrypt(row["metadata_enc"]) or {}
            except EncryptionError:
                logger.warning("Could not decrypt metadata for metric %s", row["id"])
        return HealthMetric(
            id=row["id"],
            user_id=row["user_id"],
            type=MetricType(row["metric_type"]),
            value=row["value"],
            unit=row["unit"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            source=DataSource(row["source"]),
            confidence=row["confidence"],
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Device connections
    # ------------------------------------------------------------------

    def register_connection(
        self,
        user_id: str,
        source: DataSource,
        *,
        device_type: str,
        display_name: str,
        manufacturer: str,
        data_types: list[str],
    ) -> None:
        """Insert or refresh the device connection record for a source."""
        now = to_iso(datetime.now(timezone.utc))
        with self._db.lock:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO device_connections
                       (user_id, source, device_type, display_name, manufacturer,
                        data_types, connected_at, last_sync)
                   VALUES (?, ?, ?, ?, ?, ?, ?, NULL)
                   ON CONFLICT(user_id, source) DO UPDATE SET
                       device_type = excluded.device_type,
                       display_name = excluded.display_name,
                       manufacturer = excluded.manufacturer,
                       data_types = excluded.data_types""",
                (
                    user_id,
                    source.value,
                    device_type,
                    display_name,
                    manufacturer,
                    json.dumps(data_types),
                    now,
                ),
            )
            conn.commit()
        logger.info("Registered %s connection for user", source.value)

    async def update_last_sync(self, user_id: str, source: DataSource, when: datetime) -> None:
        with self._db.lock:
            conn = self._db.connection
            conn.execute(
                "UPDATE device_connections SET last_sync = ? WHERE user_id = ? AND source = ?",
                (to_iso(when), user_id, source.value),
            )
            conn.commit()

    def get_connections(self, user_id: str) -> list[dict[str, Any]]:
        """List the user's registered device connections."""
        rows = self._db.connection.execute(
            "SELECT * FROM device_connections WHERE user_id = ? ORDER BY source",
            (user_id,),
        ).fetchall()
        return [
            {
                "source": row["source"],
                "device_type": row["device_type"],
                "display_name": row["display_name"],
                "manufacturer": row["manufacturer"],
                "data_types": json.loads(row["data_types"]),
                "connected_at": row["connected_at"],
                "last_sync": row["last_sync"],
            }
            for row in rows
        ]
