"""Tests for shared adapter plumbing: parsing helpers, errors, refresh, metrics."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from vitalsync.core.storage.credentials import RefreshFailedError
from vitalsync.domains.health.connectors import SourceAdapter
from vitalsync.domains.health.connectors.base import (
    CredentialExpiredError,
    MalformedRecordError,
    SourceError,
    SourceHTTPError,
    as_float,
    first_present,
    parse_timestamp,
    record_list,
)
from vitalsync.domains.health.connectors.oura import OuraAdapter
from vitalsync.domains.health.domain_logic.metric_models import (
    DataSource,
    DeviceCredential,
    MetricCategory,
    MetricType,
)


def _run(coro):
    return asyncio.run(coro)


def _credential(**overrides) -> DeviceCredential:
    values = dict(
        user_id="user-1", source=DataSource.OURA,
        access_token="tok", refresh_token="ref", scope=["daily"],
    )
    values.update(overrides)
    return DeviceCredential(**values)


START = datetime(2026, 3, 1, tzinfo=timezone.utc)
END = datetime(2026, 3, 8, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

class TestParseTimestamp:
    def test_epoch_millis(self):
        assert parse_timestamp(1_700_000_000_000) == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_epoch_millis_string(self):
        assert parse_timestamp("1700000000000") == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_iso_with_z(self):
        assert parse_timestamp("2026-03-01T06:30:00Z") == datetime(2026, 3, 1, 6, 30, tzinfo=timezone.utc)

    def test_iso_with_offset_normalized_to_utc(self):
        parsed = parse_timestamp("2026-03-01T08:30:00+02:00")
        assert parsed == datetime(2026, 3, 1, 6, 30, tzinfo=timezone.utc)
        assert parsed.tzinfo == timezone.utc

    def test_naive_iso_assumed_utc(self):
        assert parse_timestamp("2026-03-01T06:30:00").tzinfo == timezone.utc

    def test_bare_date_is_midnight_utc(self):
        assert parse_timestamp("2026-03-01") == datetime(2026, 3, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "bad",
        [None, True, "yesterday", "2026-13-01", {"t": 1}, 10**20, -(10**20), str(10**20), float("inf")],
    )
    def test_bad_values_raise(self, bad):
        with pytest.raises(MalformedRecordError):
            parse_timestamp(bad)


class TestNumberHelpers:
    def test_as_float_accepts_numeric_strings(self):
        assert as_float("72.5") == 72.5

    @pytest.mark.parametrize("bad", [None, True, "abc", float("nan"), float("inf"), []])
    def test_as_float_rejects(self, bad):
        with pytest.raises(MalformedRecordError):
            as_float(bad)

    def test_first_present_skips_none(self):
        assert first_present({"a": None, "b": 0, "c": 5}, "a", "b", "c") == 0
        assert first_present({}, "a") is None

    def test_record_list(self):
        assert record_list(DataSource.OURA, None) == []
        assert record_list(DataSource.OURA, [{"a": 1}]) == [{"a": 1}]
        with pytest.raises(SourceError, match="unexpected payload"):
            record_list(DataSource.OURA, {"a": 1})
        with pytest.raises(SourceError):
            record_list(DataSource.OURA, 5)


# ---------------------------------------------------------------------------
# make_metric
# ---------------------------------------------------------------------------

class TestMakeMetric:
    @pytest.fixture
    def adapter(self, fake_vendor):
        return OuraAdapter(fake_vendor.client())

    def test_attributed_to_adapter_source(self, adapter):
        ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
        metric = adapter.make_metric("user-1", MetricType.STEPS, 100, "steps", ts, 0.98)
        assert metric.source == DataSource.OURA
        assert metric.user_id == "user-1"
        assert metric.value == 100.0

    def test_deterministic_id(self, adapter):
        ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
        a = adapter.make_metric("user-1", MetricType.STEPS, 100, "steps", ts, 0.98)
        b = adapter.make_metric("user-1", MetricType.STEPS, 100, "steps", ts, 0.98)
        c = adapter.make_metric("user-1", MetricType.STEPS, 101, "steps", ts, 0.98)
        assert a.id == b.id
        assert a.id != c.id

    def test_confidence_clamped(self, adapter):
        ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert adapter.make_metric("u", MetricType.STEPS, 1, "steps", ts, 1.7).confidence == 1.0
        assert adapter.make_metric("u", MetricType.STEPS, 1, "steps", ts, -0.2).confidence == 0.0

    def test_negative_value_rejected(self, adapter):
        ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
        with pytest.raises(MalformedRecordError, match="negative"):
            adapter.make_metric("u", MetricType.STEPS, -5, "steps", ts, 0.9)

    def test_future_timestamp_rejected(self, adapter):
        ts = datetime.now(timezone.utc) + timedelta(hours=2)
        with pytest.raises(MalformedRecordError, match="future"):
            adapter.make_metric("u", MetricType.STEPS, 5, "steps", ts, 0.9)


# ---------------------------------------------------------------------------
# Requests and error classification
# ---------------------------------------------------------------------------

class TestRequests:
    def test_adapter_satisfies_protocol(self, fake_vendor):
        assert isinstance(OuraAdapter(fake_vendor.client()), SourceAdapter)

    def test_bearer_token_sent(self, fake_vendor):
        fake_vendor.route("/daily_activity", (200, {"data": []}))
        adapter = OuraAdapter(fake_vendor.client())
        _run(adapter.fetch_raw(_credential(access_token="abc"), MetricCategory.ACTIVITY, START, END))
        assert fake_vendor.requests[0].headers["Authorization"] == "Bearer abc"

    def test_401_is_credential_expired(self, fake_vendor):
        fake_vendor.route("/daily_activity", (401, {"detail": "expired"}))
        adapter = OuraAdapter(fake_vendor.client())
        with pytest.raises(CredentialExpiredError):
            _run(adapter.fetch_raw(_credential(), MetricCategory.ACTIVITY, START, END))

    def test_other_error_status_is_http_error(self, fake_vendor):
        fake_vendor.route("/daily_activity", (503, {"detail": "down"}))
        adapter = OuraAdapter(fake_vendor.client())
        with pytest.raises(SourceHTTPError) as exc_info:
            _run(adapter.fetch_raw(_credential(), MetricCategory.ACTIVITY, START, END))
        assert exc_info.value.status_code == 503
        assert "oura API error (503)" in str(exc_info.value)

    def test_invalid_json_is_source_error(self, fake_vendor):
        fake_vendor.route("/daily_activity", lambda request: httpx.Response(200, content=b"<html>"))
        adapter = OuraAdapter(fake_vendor.client())
        with pytest.raises(SourceError, match="invalid JSON"):
            _run(adapter.fetch_raw(_credential(), MetricCategory.ACTIVITY, START, END))

    def test_unsupported_category(self, fake_vendor):
        adapter = OuraAdapter(fake_vendor.client())
        assert not adapter.supports(MetricCategory.STRESS)
        with pytest.raises(SourceError, match="does not support"):
            _run(adapter.fetch_raw(_credential(), MetricCategory.STRESS, START, END))
        with pytest.raises(SourceError, match="cannot transform"):
            adapter.transform("user-1", MetricCategory.STRESS, {"data": []})
        assert fake_vendor.requests == []


# ---------------------------------------------------------------------------
# Token refresh
# ---------------------------------------------------------------------------

class TestRefreshToken:
    def test_success_builds_new_credential(self, fake_vendor):
        fake_vendor.route("/oauth/token", (200, {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 3600,
            "scope": "daily heartrate",
        }))
        adapter = OuraAdapter(fake_vendor.client(), client_id="cid", client_secret="secret")

        refreshed = _run(adapter.refresh_token(_credential()))
        assert refreshed.access_token == "new-access"
        assert refreshed.refresh_token == "new-refresh"
        assert refreshed.scope == ["daily", "heartrate"]
        assert refreshed.expires_at > datetime.now(timezone.utc)

        form = parse_qs(fake_vendor.requests[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["ref"]
        assert form["client_id"] == ["cid"]

    def test_keeps_old_refresh_token_when_not_rotated(self, fake_vendor):
        fake_vendor.route("/oauth/token", (200, {"access_token": "new-access"}))
        refreshed = _run(OuraAdapter(fake_vendor.client()).refresh_token(_credential()))
        assert refreshed.refresh_token == "ref"
        assert refreshed.scope == ["daily"]
        assert refreshed.expires_at is None

    def test_rejected_grant(self, fake_vendor):
        fake_vendor.route("/oauth/token", (400, {"error": "invalid_grant"}))
        with pytest.raises(RefreshFailedError):
            _run(OuraAdapter(fake_vendor.client()).refresh_token(_credential()))

    def test_server_error_is_transient(self, fake_vendor):
        fake_vendor.route("/oauth/token", (502, {}))
        with pytest.raises(SourceHTTPError):
            _run(OuraAdapter(fake_vendor.client()).refresh_token(_credential()))

    def test_missing_access_token(self, fake_vendor):
        fake_vendor.route("/oauth/token", (200, {"token_type": "bearer"}))
        with pytest.raises(RefreshFailedError, match="no access_token"):
            _run(OuraAdapter(fake_vendor.client()).refresh_token(_credential()))

    def test_no_refresh_token(self, fake_vendor):
        with pytest.raises(RefreshFailedError):
            _run(OuraAdapter(fake_vendor.client()).refresh_token(_credential(refresh_token=None)))
        assert fake_vendor.requests == []

    def test_non_json_body(self, fake_vendor):
        fake_vendor.route("/oauth/token", lambda request: httpx.Response(200, content=b"<html>oops</html>"))
        with pytest.raises(RefreshFailedError, match="not JSON"):
            _run(OuraAdapter(fake_vendor.client()).refresh_token(_credential()))

    def test_non_object_body(self, fake_vendor):
        fake_vendor.route("/oauth/token", (200, ["new-access"]))
        with pytest.raises(RefreshFailedError, match="no access_token"):
            _run(OuraAdapter(fake_vendor.client()).refresh_token(_credential()))

    def test_bad_expires_in(self, fake_vendor):
        fake_vendor.route("/oauth/token", (200, {"access_token": "new-access", "expires_in": "soon"}))
        with pytest.raises(RefreshFailedError, match="bad expires_in"):
            _run(OuraAdapter(fake_vendor.client()).refresh_token(_credential()))
