"""Shared test fixtures for vitalsync tests."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NARRATIVE_PROVIDER", "none")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("ENCRYPTION_KEY", "")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from vitalsync.domains.health.domain_logic.metric_models import (  # noqa: E402
    DataSource,
    HealthMetric,
    MetricType,
    metric_id,
)

# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def health_db():
    """Create an in-memory HealthDatabase for testing."""
    from vitalsync.core.storage.database import HealthDatabase

    db = HealthDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def field_encryptor():
    """Create a FieldEncryptor with a test key."""
    from cryptography.fernet import Fernet

    from vitalsync.core.storage.encryption import FieldEncryptor

    return FieldEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def metric_repository(health_db, field_encryptor):
    """Create a MetricRepository backed by in-memory SQLite."""
    from vitalsync.core.storage.repository import MetricRepository

    return MetricRepository(health_db, field_encryptor)


@pytest.fixture
def credential_store(health_db, field_encryptor):
    """Create a CredentialStore backed by in-memory SQLite."""
    from vitalsync.core.storage.credentials import CredentialStore

    return CredentialStore(health_db, field_encryptor)


@pytest.fixture
def audit_logger(health_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from vitalsync.core.audit.logger import AuditLogger

    return AuditLogger(health_db)


# ---------------------------------------------------------------------------
# Metric factory
# ---------------------------------------------------------------------------

@pytest.fixture
def make_metric() -> Callable[..., HealthMetric]:
    """Build canonical metrics directly (bypassing adapters) for engine tests."""

    def _make(
        metric_type: MetricType,
        value: float,
        *,
        hours_ago: float = 0.0,
        days_ago: float = 0.0,
        user_id: str = "user-1",
        source: DataSource = DataSource.FITBIT,
        confidence: float = 0.9,
        unit: str = "",
    ) -> HealthMetric:
        timestamp = datetime.now(timezone.utc) - timedelta(days=days_ago, hours=hours_ago, seconds=1)
        return HealthMetric(
            id=metric_id(user_id, source, metric_type, timestamp, float(value)),
            user_id=user_id,
            type=metric_type,
            value=float(value),
            unit=unit,
            timestamp=timestamp,
            source=source,
            confidence=confidence,
        )

    return _make


# ---------------------------------------------------------------------------
# Fake vendor HTTP
# ---------------------------------------------------------------------------

class FakeVendorAPI:
    """Routes httpx requests to canned responses by URL substring.

    A route value is either a ``(status, json_body)`` tuple, a list of such
    tuples (consumed in order, the last one repeating), or a callable taking
    the request and returning an ``httpx.Response``.
    """

    def __init__(self) -> None:
        self.routes: dict[str, Any] = {}
        self.requests: list[httpx.Request] = []

    def route(self, fragment: str, response: Any) -> None:
        self.routes[fragment] = response

    def calls_to(self, fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if fragment in str(r.url)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for fragment, response in self.routes.items():
            if fragment not in str(request.url):
                continue
            if callable(response):
                return response(request)
            if isinstance(response, list):
                current = response.pop(0) if len(response) > 1 else response[0]
            else:
                current = response
            status, body = current
            return httpx.Response(status, content=json.dumps(body).encode(),
                                  headers={"content-type": "application/json"})
        return httpx.Response(404, json={"error": "no route"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_vendor() -> FakeVendorAPI:
    return FakeVendorAPI()
