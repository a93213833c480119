"""MCP tools for connecting wearable sources and running syncs.

Token material passed to ``connect_source`` is encrypted before it is
stored and never echoed back by any tool.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import timedelta
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from vitalsync.domains.health.domain_logic.metric_models import (
    DataSource,
    DeviceCredential,
    utc_now,
)
from vitalsync.domains.health.sync.orchestrator import summarize_sync_results

if TYPE_CHECKING:
    from vitalsync.core.audit.logger import AuditLogger
    from vitalsync.core.storage.credentials import CredentialStore
    from vitalsync.core.storage.repository import MetricRepository
    from vitalsync.domains.health.connectors.registry import AdapterRegistry
    from vitalsync.domains.health.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

MAX_SYNC_DAYS = 90


def _resolve_source(source: str, registry: AdapterRegistry) -> DataSource | None:
    try:
        resolved = DataSource(source)
    except ValueError:
        return None
    return resolved if resolved in registry else None


def register_sync_tools(
    mcp: FastMCP,
    orchestrator: SyncOrchestrator,
    credential_store: CredentialStore,
    repository: MetricRepository,
    registry: AdapterRegistry,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register source connection and sync tools on the MCP server."""

    supported = ", ".join(source.value for source in registry.sources())

    @mcp.tool
    async def connect_source(
        ctx: Context,
        user_id: str,
        source: str,
        access_token: str,
        refresh_token: str = "",
        expires_in_s: int = 0,
        scope: str = "",
    ) -> str:
        """Store credentials for a wearable source and register the device.

        The OAuth authorization itself happens elsewhere; this tool takes the
        resulting tokens.

        Args:
            user_id: The user the credentials belong to.
            source: One of the supported sources (e.g. 'fitbit', 'oura').
            access_token: OAuth access token.
            refresh_token: OAuth refresh token, if the vendor issued one.
            expires_in_s: Access token lifetime in seconds (0 = unknown).
            scope: Space-separated granted scopes.
        """
        resolved = _resolve_source(source, registry)
        if resolved is None:
            return json.dumps({
                "status": "error",
                "message": f"Unsupported source '{source}'. Supported: {supported}.",
            })
        if not access_token.strip():
            return json.dumps({"status": "error", "message": "access_token is required."})

        credential_store.put(DeviceCredential(
            user_id=user_id,
            source=resolved,
            access_token=access_token.strip(),
            refresh_token=refresh_token.strip() or None,
            expires_at=utc_now() + timedelta(seconds=expires_in_s) if expires_in_s > 0 else None,
            scope=scope.split(),
        ))
        info = registry.device_info(resolved)
        repository.register_connection(
            user_id,
            resolved,
            device_type=info.device_type,
            display_name=info.display_name,
            manufacturer=info.manufacturer,
            data_types=list(info.data_types),
        )
        if audit_logger is not None:
            audit_logger.log_connection(user_id, resolved.value, connected=True)

        return json.dumps({
            "status": "connected",
            "source": resolved.value,
            "device": {
                "type": info.device_type,
                "name": info.display_name,
                "manufacturer": info.manufacturer,
            },
            "data_types": list(info.data_types),
        })

    @mcp.tool
    async def disconnect_source(
        ctx: Context,
        user_id: str,
        source: str,
    ) -> str:
        """Invalidate stored credentials for a source. Stored metrics are kept.

        Args:
            user_id: The user to disconnect.
            source: The source to disconnect.
        """
        resolved = _resolve_source(source, registry)
        if resolved is None:
            return json.dumps({"status": "error", "message": f"Unsupported source '{source}'."})

        if not credential_store.invalidate(user_id, resolved):
            return json.dumps({
                "status": "not_found",
                "source": resolved.value,
                "message": "No credentials stored for that source.",
            })
        if audit_logger is not None:
            audit_logger.log_connection(user_id, resolved.value, connected=False)
        return json.dumps({"status": "disconnected", "source": resolved.value})

    @mcp.tool
    async def list_connected_sources(
        ctx: Context,
        user_id: str,
    ) -> str:
        """List the user's device connections and which still hold valid credentials.

        Args:
            user_id: The user to list.
        """
        active = {source.value for source in credential_store.connected_sources(user_id)}
        connections = repository.get_connections(user_id)
        for connection in connections:
            connection["credential_valid"] = connection["source"] in active
        return json.dumps({
            "status": "ok",
            "connections": connections,
            "supported_sources": [source.value for source in registry.sources()],
        }, indent=2)

    @mcp.tool
    async def sync_sources(
        ctx: Context,
        user_id: str,
        sources: list[str] | None = None,
        days: int = 7,
        timeout_s: float = 120.0,
    ) -> str:
        """Fetch recent data from connected wearable sources.

        Sources sync concurrently. A failing source does not stop the
        others; each reports its own records and errors.

        Args:
            user_id: The user to sync.
            sources: Source names to sync (default: every connected source).
            days: How many days back to fetch (1-90, default 7).
            timeout_s: Overall deadline for the sync in seconds.
        """
        if not 1 <= days <= MAX_SYNC_DAYS:
            return json.dumps({
                "status": "error",
                "message": f"days must be between 1 and {MAX_SYNC_DAYS}.",
            })

        start_time = time.monotonic()
        end = utc_now()
        try:
            results = await asyncio.wait_for(
                orchestrator.sync_all(user_id, sources, start=end - timedelta(days=days), end=end),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("Sync for user timed out after %.0fs", timeout_s)
            return json.dumps({
                "status": "timeout",
                "message": f"Sync did not finish within {timeout_s:.0f}s; try again later.",
            })
        elapsed_ms = (time.monotonic() - start_time) * 1000

        summary = summarize_sync_results(results)
        if not results:
            status = "no_sources"
        elif summary["successful_syncs"] == summary["total_syncs"]:
            status = "ok"
        elif summary["successful_syncs"]:
            status = "partial"
        else:
            status = "failed"

        return json.dumps({
            "status": status,
            "results": {name: result.to_dict() for name, result in results.items()},
            "summary": summary,
            "duration_ms": round(elapsed_ms, 1),
        }, indent=2)
