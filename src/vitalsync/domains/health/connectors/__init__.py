"""Source adapters — one per wearable vendor, looked up by source."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from vitalsync.domains.health.domain_logic.metric_models import (
    DataSource,
    DeviceCredential,
    MetricCategory,
)


@runtime_checkable
class SourceAdapter(Protocol):
    """Capability-tagged interface every vendor adapter implements.

    The sync orchestrator only talks to this interface; adding a vendor
    means adding an adapter and registering it, never touching the
    orchestrator.
    """

    @property
    def source(self) -> DataSource:
        """The vendor this adapter produces metrics for."""
        ...

    def supports(self, category: MetricCategory) -> bool:
        """Whether the vendor exposes this metric category."""
        ...

    async def fetch_raw(
        self,
        credential: DeviceCredential,
        category: MetricCategory,
        start: datetime,
        end: datetime,
    ) -> Any:
        """Fetch the vendor payload for one category and date range.

        Raises ``CredentialExpiredError`` on an authorization rejection and
        ``SourceHTTPError`` on any other error status.
        """
        ...

    def transform(self, user_id: str, category: MetricCategory, payload: Any) -> Any:
        """Turn a vendor payload into a ``TransformResult``; never raises on bad records."""
        ...

    async def refresh_token(self, credential: DeviceCredential) -> DeviceCredential:
        """Exchange the refresh token for a new credential."""
        ...
