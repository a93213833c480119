"""Sync orchestrator — concurrent multi-source, multi-category ingestion.

For each requested source the orchestrator claims the in-flight guard,
passes the shared rate limiter, loads the credential and then fetches every
category the adapter supports concurrently. Category failures are isolated:
they become error strings on the source's :class:`SyncResult` while the
other categories keep their records.

An expired access token is refreshed once per source sync, however many
categories observe the 401 at the same time. A rejection after the refresh
is terminal and invalidates the stored credential.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import httpx

from vitalsync.core.audit.logger import AuditLogger
from vitalsync.core.ratelimit.limiter import RateLimiter
from vitalsync.core.storage.credentials import (
    CredentialNotFoundError,
    CredentialStore,
    RefreshFailedError,
)
from vitalsync.core.storage.repository import MetricStore, RepositoryError
from vitalsync.domains.health.connectors.base import (
    BaseSourceAdapter,
    CredentialExpiredError,
    SourceError,
)
from vitalsync.domains.health.connectors.registry import AdapterRegistry
from vitalsync.domains.health.domain_logic.metric_models import (
    DataSource,
    DeviceCredential,
    MetricCategory,
    SyncResult,
    utc_now,
)
from vitalsync.domains.health.sync.guard import InFlightGuard

logger = logging.getLogger(__name__)

SYNC_IN_PROGRESS = "Sync already in progress"

# Expected per-category failures; anything else is a programming error.
_CATEGORY_ERRORS = (
    SourceError,
    httpx.HTTPError,
    RepositoryError,
    RefreshFailedError,
    CredentialNotFoundError,
)


class ConnectionTracker(Protocol):
    async def update_last_sync(self, user_id: str, source: DataSource, when: datetime) -> None: ...


@dataclass
class _CredentialSession:
    """The credential shared by all category tasks of one source sync."""

    credential: DeviceCredential
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refreshed: bool = False
    refresh_error: str | None = None


@dataclass
class _CategoryOutcome:
    stored: int = 0
    dropped: int = 0
    errors: list[str] = field(default_factory=list)


class SyncOrchestrator:
    """Runs ``sync_all`` against the registered source adapters.

    Long-lived: one instance per process, sharing the rate limiter, the
    credential store and the in-flight guard across every user.

    Usage::

        orchestrator = SyncOrchestrator(registry, credentials, limiter, repository)
        results = await orchestrator.sync_all("user-1", ["fitbit", "oura"])
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        credential_store: CredentialStore,
        rate_limiter: RateLimiter,
        metric_store: MetricStore,
        *,
        audit_logger: AuditLogger | None = None,
        connections: ConnectionTracker | None = None,
        default_days: int = 7,
        guard: InFlightGuard | None = None,
    ) -> None:
        self._registry = registry
        self._credentials = credential_store
        self._rate_limiter = rate_limiter
        self._store = metric_store
        self._audit = audit_logger
        self._connections = connections
        self._default_days = default_days
        self._guard = guard or InFlightGuard()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def sync_all(
        self,
        user_id: str,
        sources: Iterable[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, SyncResult]:
        """Sync the requested (or all connected) sources concurrently.

        Args:
            user_id: Owner of the credentials and metrics.
            sources: Source names; defaults to the user's connected sources.
            start: Window start; defaults to ``end - default_days``.
            end: Window end; defaults to now.

        Returns:
            One :class:`SyncResult` per requested source name.

        Raises:
            ValueError: If ``start`` is after ``end``.
        """
        end = end or utc_now()
        start = start or end - timedelta(days=self._default_days)
        if start > end:
            raise ValueError("sync window start must not be after its end")

        if sources is None:
            names = [source.value for source in self._credentials.connected_sources(user_id)]
        else:
            names = list(dict.fromkeys(sources))
        if not names:
            logger.info("No sources to sync")
            return {}

        outcomes = await asyncio.gather(
            *(self._sync_source(user_id, name, start, end) for name in names)
        )
        results = dict(zip(names, outcomes))
        summary = summarize_sync_results(results)
        logger.info(
            "Sync finished: %d/%d sources ok, %d records",
            summary["successful_syncs"], summary["total_syncs"], summary["total_records"],
        )
        return results

    # ------------------------------------------------------------------
    # Per source
    # ------------------------------------------------------------------

    async def _sync_source(
        self, user_id: str, name: str, start: datetime, end: datetime
    ) -> SyncResult:
        started = time.perf_counter()
        try:
            source = DataSource(name)
        except ValueError:
            source = None
        if source is None or source not in self._registry:
            result = SyncResult(errors=[f"Unsupported source: {name}"])
            self._audit_sync(user_id, name, result, started)
            return result

        key = (user_id, source)
        if not self._guard.try_enter(key):
            logger.info("Sync for %s already running; skipping", source.value)
            result = SyncResult(errors=[SYNC_IN_PROGRESS])
            self._audit_sync(user_id, name, result, started)
            return result

        try:
            result, dropped = await self._sync_guarded(user_id, source, start, end)
        finally:
            self._guard.leave(key)

        self._audit_sync(user_id, name, result, started, dropped=dropped)
        return result

    async def _sync_guarded(
        self, user_id: str, source: DataSource, start: datetime, end: datetime
    ) -> tuple[SyncResult, int]:
        if not self._rate_limiter.try_acquire(source.value):
            wait = self._rate_limiter.retry_after(source.value)
            return SyncResult(
                errors=[f"Rate limit exceeded for {source.value}; retry in {wait:.0f}s"]
            ), 0

        try:
            try:
                credential = self._credentials.get(user_id, source)
            except CredentialNotFoundError as exc:
                return SyncResult(errors=[str(exc)]), 0

            adapter = self._registry.get(source)
            session = _CredentialSession(credential)
            categories = [c for c in MetricCategory if adapter.supports(c)]
            outcomes = await asyncio.gather(
                *(
                    self._sync_category(user_id, adapter, session, category, start, end)
                    for category in categories
                )
            )

            errors = [error for outcome in outcomes for error in outcome.errors]
            result = SyncResult(
                success=not errors,
                records_processed=sum(outcome.stored for outcome in outcomes),
                errors=errors,
            )
            if result.success and self._connections is not None:
                await self._connections.update_last_sync(
                    user_id, source, result.last_sync_timestamp
                )
            return result, sum(outcome.dropped for outcome in outcomes)
        finally:
            self._rate_limiter.mark_used(source.value)

    # ------------------------------------------------------------------
    # Per category
    # ------------------------------------------------------------------

    async def _sync_category(
        self,
        user_id: str,
        adapter: BaseSourceAdapter,
        session: _CredentialSession,
        category: MetricCategory,
        start: datetime,
        end: datetime,
    ) -> _CategoryOutcome:
        outcome = _CategoryOutcome()
        try:
            payload = await self._fetch_with_refresh(adapter, session, category, start, end)
            transformed = adapter.transform(user_id, category, payload)
            outcome.dropped = transformed.dropped
            for metric in transformed.metrics:
                await self._store.store(user_id, metric)
                outcome.stored += 1
        except _CATEGORY_ERRORS as exc:
            logger.warning("%s %s sync failed: %s", adapter.source.value, category.value, exc)
            outcome.errors.append(f"{category.value}: {str(exc) or type(exc).__name__}")
        return outcome

    async def _fetch_with_refresh(
        self,
        adapter: BaseSourceAdapter,
        session: _CredentialSession,
        category: MetricCategory,
        start: datetime,
        end: datetime,
    ) -> Any:
        used = session.credential
        try:
            return await adapter.fetch_raw(used, category, start, end)
        except CredentialExpiredError as exc:
            if session.refreshed and used.access_token == session.credential.access_token:
                # Already-refreshed token rejected by another category's first call.
                raise self._reauthorization_required(adapter, used) from exc
            logger.info("%s access token rejected; refreshing", adapter.source.value)

        credential = await self._refresh_once(adapter, session, used)
        try:
            return await adapter.fetch_raw(credential, category, start, end)
        except CredentialExpiredError as exc:
            raise self._reauthorization_required(adapter, credential) from exc

    def _reauthorization_required(
        self, adapter: BaseSourceAdapter, credential: DeviceCredential
    ) -> SourceError:
        self._credentials.invalidate(credential.user_id, credential.source)
        return SourceError(
            f"{adapter.source.value} rejected the refreshed credential; re-authorization required"
        )

    async def _refresh_once(
        self,
        adapter: BaseSourceAdapter,
        session: _CredentialSession,
        used: DeviceCredential,
    ) -> DeviceCredential:
        """Refresh at most once per session; later callers reuse the result."""
        async with session.lock:
            if session.refresh_error is not None:
                raise RefreshFailedError(session.refresh_error)
            if session.credential.access_token != used.access_token:
                return session.credential
            try:
                session.credential = await self._credentials.refresh(used, adapter)
            except (RefreshFailedError, SourceError, httpx.HTTPError) as exc:
                session.refresh_error = str(exc) or type(exc).__name__
                raise
            session.refreshed = True
            return session.credential

    # ------------------------------------------------------------------

    def _audit_sync(
        self,
        user_id: str,
        source: str,
        result: SyncResult,
        started: float,
        *,
        dropped: int = 0,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_sync(
            user_id,
            source,
            records=result.records_processed,
            status="success" if result.success else "failure",
            error_count=len(result.errors),
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
            metadata={"dropped": dropped} if dropped else None,
        )


def summarize_sync_results(results: dict[str, SyncResult]) -> dict[str, Any]:
    """Roll per-source results up into totals and synced/failed source lists."""
    synced = [name for name, result in results.items() if result.success]
    failed = [name for name, result in results.items() if not result.success]
    return {
        "total_records": sum(result.records_processed for result in results.values()),
        "successful_syncs": len(synced),
        "total_syncs": len(results),
        "synced_sources": synced,
        "failed_sources": failed,
    }
