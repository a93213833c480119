"""Audit logger — PHI-free sync and analysis trail.

Every per-source sync and every analysis call leaves one row in
``audit_log``. Rows never hold metric values or tokens:

* ``user_hash``     — SHA-256 of the user id, so the trail can be grouped
  per user without naming them.
* ``llm_disclosed`` — whether a metric summary left the process for an
  external narrative LLM.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from vitalsync.core.storage.database import HealthDatabase

logger = logging.getLogger(__name__)


def hash_user_id(user_id: str) -> str:
    """SHA-256 hex digest of a user id."""
    return hashlib.sha256(user_id.encode()).hexdigest()


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                          # 'source_sync' | 'analysis' | 'connection'
    user_hash: str = ""
    source: str | None = None
    records: int | None = None
    llm_provider: str | None = None      # 'anthropic' | 'openai' | 'mock'
    llm_disclosed: bool = False
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'failure'
    error_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    Writes are committed immediately. A failed write is logged and
    swallowed: auditing never fails a sync or an analysis.

    Usage::

        audit = AuditLogger(health_db)
        audit.log_sync("user-1", "fitbit", records=42, status="success")
    """

    def __init__(self, database: HealthDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its id ("" if the write failed)."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()
        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), default=str)
            if event.metadata
            else None
        )

        try:
            with self._db.lock:
                conn = self._db.connection
                conn.execute(
                    """INSERT INTO audit_log
                       (id, timestamp, action, user_hash, source, records,
                        llm_provider, llm_disclosed, duration_ms, status,
                        error_count, metadata_json)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        event_id,
                        now,
                        event.action,
                        event.user_hash or None,
                        event.source,
                        event.records,
                        event.llm_provider,
                        1 if event.llm_disclosed else 0,
                        event.duration_ms,
                        event.status,
                        event.error_count,
                        metadata_json,
                    ),
                )
                conn.commit()
        except Exception:
            logger.exception("Failed to write audit event, event lost")
            return ""

        return event_id

    def log_sync(
        self,
        user_id: str,
        source: str,
        *,
        records: int,
        status: str,
        error_count: int = 0,
        duration_ms: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log one (user, source) sync outcome.

        Args:
            user_id: Raw user id; only its hash is stored.
            source: Source name as requested (may be unknown).
            records: Metrics stored in this sync.
            status: 'success' or 'failure'.
            error_count: Number of error strings on the result.
            duration_ms: Wall time of the source sync.
            metadata: Additional non-PHI context (e.g. dropped record counts).
        """
        return self.log_event(AuditEvent(
            action="source_sync",
            user_hash=hash_user_id(user_id),
            source=source,
            records=records,
            status=status,
            error_count=error_count,
            duration_ms=duration_ms,
            metadata=metadata or {},
        ))

    def log_analysis(
        self,
        user_id: str,
        *,
        metric_count: int,
        llm_provider: str | None = None,
        llm_disclosed: bool = False,
        privacy_mode: str | None = None,
        duration_ms: float | None = None,
        status: str = "success",
    ) -> str:
        """Log one analysis call, including whether data reached an external LLM."""
        return self.log_event(AuditEvent(
            action="analysis",
            user_hash=hash_user_id(user_id),
            records=metric_count,
            llm_provider=llm_provider,
            llm_disclosed=llm_disclosed,
            duration_ms=duration_ms,
            status=status,
            metadata={"privacy_mode": privacy_mode} if privacy_mode else {},
        ))

    def log_connection(self, user_id: str, source: str, *, connected: bool) -> str:
        """Log a source being connected or disconnected."""
        return self.log_event(AuditEvent(
            action="connection",
            user_hash=hash_user_id(user_id),
            source=source,
            metadata={"connected": connected},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        source: str | None = None,
        user_id: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters, newest first.

        Args:
            action: Filter by action type.
            source: Filter by source name.
            user_id: Filter by user (hashed before matching).
            since: ISO 8601 timestamp lower bound.
            limit: Maximum events to return.
        """
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if source:
            conditions.append("source = ?")
            params.append(source)
        if user_id:
            conditions.append("user_hash = ?")
            params.append(hash_user_id(user_id))
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, action: str | None = None, since: str | None = None) -> int:
        """Count audit events, optionally by action and since a timestamp."""
        conditions: list[str] = []
        params: list[Any] = []
        if action:
            conditions.append("action = ?")
            params.append(action)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        row = self._db.connection.execute(
            f"SELECT COUNT(*) FROM audit_log{where}", params
        ).fetchone()
        return row[0]

    def count_disclosures(self, *, since: str | None = None) -> int:
        """Count analyses whose metric summary was sent to an external LLM."""
        if since:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM audit_log WHERE llm_disclosed = 1 AND timestamp >= ?",
                (since,),
            ).fetchone()
        else:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM audit_log WHERE llm_disclosed = 1"
            ).fetchone()
        return row[0]
