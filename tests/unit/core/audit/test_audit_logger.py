"""Tests for the AuditLogger and related utilities."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from vitalsync.core.audit.logger import AuditEvent, AuditLogger, hash_user_id
from vitalsync.core.storage.database import HealthDatabase


# ---------------------------------------------------------------------------
# hash_user_id tests
# ---------------------------------------------------------------------------

class TestHashUserId:
    def test_sha256_hex(self):
        h = hash_user_id("user-1")
        assert isinstance(h, str)
        assert len(h) == 64

    def test_deterministic(self):
        assert hash_user_id("user-1") == hash_user_id("user-1")

    def test_different_users_differ(self):
        assert hash_user_id("user-1") != hash_user_id("user-2")


# ---------------------------------------------------------------------------
# AuditLogger.log_event / log_sync / log_analysis / log_connection
# ---------------------------------------------------------------------------

class TestLogEvent:
    def test_log_event_returns_uuid(self, audit_logger):
        eid = audit_logger.log_event(AuditEvent(action="source_sync", source="fitbit"))
        assert isinstance(eid, str)
        assert len(eid) == 36

    def test_log_sync_stores_counts_not_user_id(self, audit_logger):
        audit_logger.log_sync(
            "user-1", "fitbit", records=42, status="success", duration_ms=120.5,
        )
        events = audit_logger.get_events()
        assert len(events) == 1
        event = events[0]
        assert event["action"] == "source_sync"
        assert event["source"] == "fitbit"
        assert event["records"] == 42
        assert event["status"] == "success"
        assert event["error_count"] == 0
        assert event["user_hash"] == hash_user_id("user-1")
        assert "user-1" not in json.dumps(event)

    def test_sync_metadata_json_stored(self, audit_logger):
        audit_logger.log_sync(
            "user-1", "oura", records=3, status="failure", error_count=1,
            metadata={"dropped": 2},
        )
        event = audit_logger.get_events()[0]
        assert json.loads(event["metadata_json"]) == {"dropped": 2}
        assert event["error_count"] == 1

    def test_log_analysis_disclosure(self, audit_logger):
        audit_logger.log_analysis(
            "user-1",
            metric_count=120,
            llm_provider="anthropic",
            llm_disclosed=True,
            privacy_mode="strict",
            duration_ms=850.0,
        )
        event = audit_logger.get_events(action="analysis")[0]
        assert event["llm_disclosed"] == 1
        assert event["llm_provider"] == "anthropic"
        assert event["records"] == 120
        assert json.loads(event["metadata_json"]) == {"privacy_mode": "strict"}

    def test_log_analysis_without_llm(self, audit_logger):
        audit_logger.log_analysis("user-1", metric_count=0)
        event = audit_logger.get_events()[0]
        assert event["llm_disclosed"] == 0
        assert event["llm_provider"] is None
        assert event["metadata_json"] is None

    def test_log_connection(self, audit_logger):
        audit_logger.log_connection("user-1", "samsung_health", connected=False)
        event = audit_logger.get_events(action="connection")[0]
        assert event["source"] == "samsung_health"
        assert json.loads(event["metadata_json"]) == {"connected": False}

    def test_failed_write_returns_empty_string(self):
        db = HealthDatabase(":memory:")
        logger = AuditLogger(db)  # never initialized
        assert logger.log_sync("user-1", "fitbit", records=0, status="failure") == ""


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

class TestQueries:
    def _populate(self, audit_logger: AuditLogger) -> None:
        audit_logger.log_sync("user-1", "fitbit", records=10, status="success")
        audit_logger.log_sync("user-1", "oura", records=0, status="failure", error_count=2)
        audit_logger.log_sync("user-2", "fitbit", records=5, status="success")
        audit_logger.log_analysis("user-1", metric_count=15, llm_provider="openai", llm_disclosed=True)
        audit_logger.log_analysis("user-2", metric_count=5, llm_provider="mock", llm_disclosed=False)

    def test_filter_by_action(self, audit_logger):
        self._populate(audit_logger)
        assert len(audit_logger.get_events(action="source_sync")) == 3
        assert len(audit_logger.get_events(action="analysis")) == 2

    def test_filter_by_source(self, audit_logger):
        self._populate(audit_logger)
        events = audit_logger.get_events(source="fitbit")
        assert {e["records"] for e in events} == {10, 5}

    def test_filter_by_user(self, audit_logger):
        self._populate(audit_logger)
        assert len(audit_logger.get_events(user_id="user-2")) == 2

    def test_limit(self, audit_logger):
        self._populate(audit_logger)
        assert len(audit_logger.get_events(limit=2)) == 2

    def test_newest_first(self, audit_logger):
        self._populate(audit_logger)
        events = audit_logger.get_events()
        timestamps = [e["timestamp"] for e in events]
        assert timestamps == sorted(timestamps, reverse=True)

    def test_counts(self, audit_logger):
        self._populate(audit_logger)
        assert audit_logger.count_events() == 5
        assert audit_logger.count_events(action="source_sync") == 3
        assert audit_logger.count_disclosures() == 1

    def test_since_filter(self, audit_logger):
        self._populate(audit_logger)
        future = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        assert audit_logger.count_events(since=future) == 0
        assert audit_logger.count_events(since=past) == 5
        assert audit_logger.count_disclosures(since=future) == 0
        assert audit_logger.get_events(since=future) == []
