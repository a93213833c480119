"""Shared plumbing for HTTP source adapters.

Vendor adapters subclass :class:`BaseSourceAdapter` and supply their base
URL, token URL, capability set and per-category request/transform methods.
The base class owns authenticated requests, error classification, the token
refresh exchange and the construction of canonical metrics.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

import httpx

from vitalsync.core.storage.credentials import RefreshFailedError
from vitalsync.domains.health.domain_logic.metric_models import (
    DataSource,
    DeviceCredential,
    HealthMetric,
    MetricCategory,
    MetricType,
    metric_id,
    utc_now,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SourceError(Exception):
    """Base class for expected vendor-side failures."""


class CredentialExpiredError(SourceError):
    """The vendor rejected the access token (HTTP 401)."""


class SourceHTTPError(SourceError):
    """The vendor answered with a non-auth error status."""

    def __init__(self, source: DataSource, status_code: int, reason: str = "") -> None:
        self.status_code = status_code
        super().__init__(f"{source.value} API error ({status_code}): {reason or 'request failed'}")


class MalformedRecordError(ValueError):
    """A single vendor record could not be converted."""


@dataclass
class TransformResult:
    metrics: list[HealthMetric] = field(default_factory=list)
    dropped: int = 0


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def as_float(value: Any) -> float:
    """Coerce a vendor number (or numeric string) to a finite float."""
    if value is None or isinstance(value, bool):
        raise MalformedRecordError(f"not a number: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedRecordError(f"not a number: {value!r}") from exc
    if not math.isfinite(number):
        raise MalformedRecordError(f"not finite: {value!r}")
    return number


def optional_float(value: Any) -> float | None:
    """Like :func:`as_float` but ``None`` (absent field) stays ``None``."""
    if value is None:
        return None
    return as_float(value)


def _from_epoch_ms(value: float) -> datetime:
    try:
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise MalformedRecordError(f"epoch out of range: {value!r}") from exc


def parse_timestamp(value: Any) -> datetime:
    """Parse epoch milliseconds, ISO 8601 strings or ``YYYY-MM-DD`` dates to aware UTC."""
    if value is None or isinstance(value, bool):
        raise MalformedRecordError("missing timestamp")
    if isinstance(value, (int, float)):
        return _from_epoch_ms(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return _from_epoch_ms(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            if len(text) == 10:
                parsed_day = date.fromisoformat(text)
                return datetime(parsed_day.year, parsed_day.month, parsed_day.day, tzinfo=timezone.utc)
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedRecordError(f"bad timestamp: {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    raise MalformedRecordError(f"bad timestamp: {value!r}")


def record_list(source: DataSource, value: Any) -> list[Any]:
    """The record array of an envelope; an absent array is empty."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise SourceError(f"{source.value} returned an unexpected payload")
    return list(value)


def first_present(record: dict[str, Any], *keys: str) -> Any:
    """Value of the first key present and not None."""
    for key in keys:
        if record.get(key) is not None:
            return record[key]
    return None


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------

class BaseSourceAdapter:
    """HTTP source adapter base.

    Subclasses set the class attributes and implement
    :meth:`_request_for` and one ``_transform_<category>`` method per
    supported category.
    """

    SOURCE: DataSource
    DISPLAY_NAME: str = ""
    DEVICE_TYPE: str = "SMARTWATCH"
    MANUFACTURER: str = ""
    BASE_URL: str = ""
    TOKEN_URL: str = ""
    CATEGORIES: frozenset[MetricCategory] = frozenset()

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        client_id: str = "",
        client_secret: str = "",
    ) -> None:
        self._client = client
        self._client_id = client_id
        self._client_secret = client_secret

    @property
    def source(self) -> DataSource:
        return self.SOURCE

    def supports(self, category: MetricCategory) -> bool:
        return category in self.CATEGORIES

    def data_types(self) -> list[str]:
        """Supported category names, for device connection records."""
        return sorted(category.value for category in self.CATEGORIES)

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def fetch_raw(
        self,
        credential: DeviceCredential,
        category: MetricCategory,
        start: datetime,
        end: datetime,
    ) -> Any:
        if not self.supports(category):
            raise SourceError(f"{self.SOURCE.value} does not support {category.value}")
        method, path, kwargs = self._request_for(category, start, end)
        return await self._request_json(credential, method, path, **kwargs)

    def _request_for(
        self, category: MetricCategory, start: datetime, end: datetime
    ) -> tuple[str, str, dict[str, Any]]:
        """Return (method, path, httpx kwargs) for one category fetch."""
        raise NotImplementedError

    async def _request_json(
        self,
        credential: DeviceCredential,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Accept": "application/json",
        }
        response = await self._client.request(
            method, f"{self.BASE_URL}{path}", headers=headers, **kwargs
        )
        if response.status_code == 401:
            raise CredentialExpiredError(
                f"{self.SOURCE.value} rejected the access token (401)"
            )
        if response.status_code >= 400:
            raise SourceHTTPError(self.SOURCE, response.status_code, response.reason_phrase)
        try:
            return response.json()
        except ValueError as exc:
            raise SourceError(f"{self.SOURCE.value} returned invalid JSON") from exc

    # ------------------------------------------------------------------
    # Token refresh
    # ------------------------------------------------------------------

    async def refresh_token(self, credential: DeviceCredential) -> DeviceCredential:
        """Run the OAuth refresh-token grant against the vendor token URL.

        Raises:
            RefreshFailedError: The vendor refused the grant (4xx) or answered
                with an unusable token response.
            SourceHTTPError: The token endpoint failed server-side (5xx).
        """
        if not credential.refresh_token:
            raise RefreshFailedError(f"No refresh token for {self.SOURCE.value}")

        response = await self._client.post(self.TOKEN_URL, **self._refresh_request(credential))
        if 400 <= response.status_code < 500:
            logger.warning("%s token refresh rejected (%d)", self.SOURCE.value, response.status_code)
            raise RefreshFailedError(f"Failed to refresh {self.SOURCE.value} token")
        if response.status_code >= 500:
            raise SourceHTTPError(self.SOURCE, response.status_code, response.reason_phrase)

        try:
            data = response.json()
        except ValueError as exc:
            raise RefreshFailedError(f"{self.SOURCE.value} token response was not JSON") from exc
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token or not isinstance(access_token, str):
            raise RefreshFailedError(f"{self.SOURCE.value} token response had no access_token")

        expires_in = data.get("expires_in")
        try:
            expires_at = utc_now() + timedelta(seconds=int(expires_in)) if expires_in else None
        except (TypeError, ValueError, OverflowError) as exc:
            raise RefreshFailedError(
                f"{self.SOURCE.value} token response had a bad expires_in: {expires_in!r}"
            ) from exc
        refresh_token = data.get("refresh_token")
        scope = data.get("scope")
        return DeviceCredential(
            user_id=credential.user_id,
            source=credential.source,
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token
            else credential.refresh_token,
            expires_at=expires_at,
            scope=scope.split() if isinstance(scope, str) else list(credential.scope),
        )

    def _refresh_request(self, credential: DeviceCredential) -> dict[str, Any]:
        """httpx kwargs for the refresh POST; client credentials in the form body."""
        return {
            "data": {
                "grant_type": "refresh_token",
                "refresh_token": credential.refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
        }

    # ------------------------------------------------------------------
    # Transform
    # ------------------------------------------------------------------

    def transform(self, user_id: str, category: MetricCategory, payload: Any) -> TransformResult:
        """Convert a payload; malformed records are dropped and counted."""
        transformer: Callable[[str, dict[str, Any]], list[HealthMetric]] | None = getattr(
            self, f"_transform_{category.value}", None
        )
        if transformer is None or not self.supports(category):
            raise SourceError(f"{self.SOURCE.value} cannot transform {category.value}")

        result = TransformResult()
        for record in self._records(category, payload):
            try:
                if not isinstance(record, dict):
                    raise MalformedRecordError(f"record is {type(record).__name__}")
                result.metrics.extend(transformer(user_id, record))
            except (MalformedRecordError, ValueError, OverflowError, AttributeError, KeyError, TypeError) as exc:
                result.dropped += 1
                logger.debug("Dropped %s %s record: %s", self.SOURCE.value, category.value, exc)
        if result.dropped:
            logger.warning(
                "Dropped %d malformed %s %s record(s)",
                result.dropped, self.SOURCE.value, category.value,
            )
        return result

    def _records(self, category: MetricCategory, payload: Any) -> list[Any]:
        """Extract the record list from a payload envelope."""
        raise NotImplementedError

    def make_metric(
        self,
        user_id: str,
        metric_type: MetricType,
        value: Any,
        unit: str,
        timestamp: datetime,
        confidence: float,
        metadata: dict[str, Any] | None = None,
    ) -> HealthMetric:
        """Build a canonical metric attributed to this adapter's source.

        Raises:
            MalformedRecordError: Non-numeric/negative value or a future timestamp.
        """
        number = as_float(value)
        if number < 0:
            raise MalformedRecordError(f"negative {metric_type.value}: {number}")
        if timestamp > utc_now():
            raise MalformedRecordError(f"future timestamp {timestamp.isoformat()}")
        return HealthMetric(
            id=metric_id(user_id, self.SOURCE, metric_type, timestamp, number),
            user_id=user_id,
            type=metric_type,
            value=number,
            unit=unit,
            timestamp=timestamp,
            source=self.SOURCE,
            confidence=min(1.0, max(0.0, float(confidence))),
            metadata=dict(metadata or {}),
        )
