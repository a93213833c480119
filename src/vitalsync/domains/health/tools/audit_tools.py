"""MCP tools for viewing the sync and analysis audit trail.

The audit log is PHI-free: user ids are hashed and no metric values or
tokens are stored, only counts, statuses and LLM disclosure flags.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from vitalsync.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


def register_audit_tools(
    mcp: FastMCP,
    audit_logger: AuditLogger,
) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def sync_audit_summary(
        ctx: Context,
        days: int = 30,
        user_id: str = "",
    ) -> str:
        """View recent sync and analysis events and LLM disclosure counts.

        Args:
            days: Number of days to look back (default: 30).
            user_id: Optional user filter (matched by hash).
        """
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

        recent_events = audit_logger.get_events(since=since, user_id=user_id or None, limit=20)
        display_events = [
            {
                "timestamp": event.get("timestamp"),
                "action": event.get("action"),
                "source": event.get("source"),
                "records": event.get("records"),
                "status": event.get("status"),
                "error_count": event.get("error_count"),
                "llm_provider": event.get("llm_provider"),
                "llm_disclosed": bool(event.get("llm_disclosed")),
                "duration_ms": event.get("duration_ms"),
            }
            for event in recent_events
        ]

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": audit_logger.count_events(since=since),
            "source_syncs": audit_logger.count_events(action="source_sync", since=since),
            "analyses": audit_logger.count_events(action="analysis", since=since),
            "llm_disclosures": audit_logger.count_disclosures(since=since),
            "recent_events": display_events,
            "note": (
                "This audit trail contains no health data. "
                "It tracks syncs, analyses and whether data was sent to external LLMs."
            ),
        }, indent=2)
