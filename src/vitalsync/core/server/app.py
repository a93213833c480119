"""vitalsync MCP server — application factory.

This module provides:
- build_services() which creates the long-lived collaborators once per process
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import httpx
from fastmcp import FastMCP

from vitalsync.core.audit.logger import AuditLogger
from vitalsync.core.config.settings import Settings, get_settings
from vitalsync.core.llm.client import NarrativeLLMClient
from vitalsync.core.llm.provider import LLMProvider, create_provider
from vitalsync.core.ratelimit.limiter import RateLimiter
from vitalsync.core.storage.credentials import CredentialStore
from vitalsync.core.storage.database import HealthDatabase
from vitalsync.core.storage.encryption import FieldEncryptor
from vitalsync.core.storage.repository import MetricRepository
from vitalsync.domains.health.connectors.registry import (
    AdapterRegistry,
    build_default_registry,
)
from vitalsync.domains.health.domain_logic.analysis_engine import HealthAnalysisEngine
from vitalsync.domains.health.domain_logic.narrative import (
    LLMNarrativeEnricher,
    NarrativeEnricher,
)
from vitalsync.domains.health.sync.orchestrator import SyncOrchestrator
from vitalsync.domains.health.tools.analysis_tools import register_analysis_tools
from vitalsync.domains.health.tools.audit_tools import register_audit_tools
from vitalsync.domains.health.tools.sync_tools import register_sync_tools

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@dataclass
class Services:
    """Process-lifetime collaborators shared by every tool call."""

    settings: Settings
    database: HealthDatabase
    http_client: httpx.AsyncClient
    registry: AdapterRegistry
    credential_store: CredentialStore
    repository: MetricRepository
    rate_limiter: RateLimiter
    audit_logger: AuditLogger
    orchestrator: SyncOrchestrator
    engine: HealthAnalysisEngine
    persistent: bool

    async def aclose(self) -> None:
        """Close the shared HTTP client and the database."""
        await self.http_client.aclose()
        self.database.close()


def _build_narrative(settings: Settings) -> NarrativeEnricher | None:
    if settings.narrative_provider == "none":
        logger.info("Narrative enrichment disabled")
        return None

    provider_name = settings.narrative_provider
    api_key, model = "", ""
    if provider_name == "anthropic":
        api_key, model = settings.anthropic_api_key, settings.anthropic_model
    elif provider_name == "openai":
        api_key, model = settings.openai_api_key, settings.openai_model

    if provider_name != "mock" and not api_key:
        logger.warning(
            "No API key configured for narrative provider '%s'; narrative enrichment disabled",
            provider_name,
        )
        return None

    provider: LLMProvider = create_provider(
        provider_name=provider_name,
        api_key=api_key,
        model=model,
        timeout_s=settings.narrative_timeout_s,
    )
    return LLMNarrativeEnricher(
        NarrativeLLMClient(provider),
        provider_name=provider_name,
        privacy_mode=settings.narrative_privacy_mode,
    )


def build_services(
    settings: Settings | None = None,
    *,
    database_override: HealthDatabase | None = None,
    encryptor_override: FieldEncryptor | None = None,
    http_client_override: httpx.AsyncClient | None = None,
    rate_limiter_override: RateLimiter | None = None,
    narrative_override: NarrativeEnricher | None = None,
) -> Services:
    """Create every long-lived collaborator exactly once.

    Without an ``ENCRYPTION_KEY`` the service still runs, against an
    in-memory database with a throwaway key, so nothing survives a restart.
    """
    settings = settings or get_settings()

    persistent = bool(settings.encryption_key) and database_override is None
    if encryptor_override is not None:
        encryptor = encryptor_override
    elif settings.encryption_key:
        # An invalid key is a configuration error and propagates.
        encryptor = FieldEncryptor(settings.encryption_key)
    else:
        logger.warning(
            "No ENCRYPTION_KEY configured; using an in-memory store. "
            "Set ENCRYPTION_KEY to persist credentials and metrics."
        )
        encryptor = FieldEncryptor(FieldEncryptor.generate_key())

    if database_override is not None:
        database = database_override
    else:
        db_path = str(Path(settings.db_path).expanduser()) if persistent else ":memory:"
        database = HealthDatabase(db_path)
        database.initialize()
        logger.info("Metric store initialized: %s (schema v%d)", db_path, database.get_schema_version())

    http_client = http_client_override or httpx.AsyncClient(timeout=settings.http_timeout_s)
    registry = build_default_registry(http_client, settings)
    credential_store = CredentialStore(database, encryptor)
    repository = MetricRepository(database, encryptor)
    rate_limiter = rate_limiter_override or RateLimiter(settings.rate_limit_intervals)
    audit_logger = AuditLogger(database)

    orchestrator = SyncOrchestrator(
        registry,
        credential_store,
        rate_limiter,
        repository,
        audit_logger=audit_logger,
        connections=repository,
        default_days=settings.sync_default_days,
    )
    narrative = narrative_override if narrative_override is not None else _build_narrative(settings)
    engine = HealthAnalysisEngine(
        narrative=narrative,
        narrative_timeout_s=settings.narrative_timeout_s,
        audit_logger=audit_logger,
    )

    return Services(
        settings=settings,
        database=database,
        http_client=http_client,
        registry=registry,
        credential_store=credential_store,
        repository=repository,
        rate_limiter=rate_limiter,
        audit_logger=audit_logger,
        orchestrator=orchestrator,
        engine=engine,
        persistent=persistent,
    )


def create_app(*, services: Services | None = None) -> FastMCP:
    """Create and configure the vitalsync MCP server.

    This is the main application factory. It:
    1. Creates the FastMCP server instance
    2. Builds (or reuses) the long-lived services
    3. Registers sync, analysis and audit tools
    """
    services = services or build_services()

    server = FastMCP(
        "vitalsync",
        instructions=(
            "Wearable data sync and health analysis server. Connect Samsung Health, "
            "Fitbit, Oura or Google Fit credentials, sync recent metrics, and get a "
            "bounded health score with alerts, trends and plain-language insights."
        ),
    )

    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        return {
            "status": "ok",
            "server": "vitalsync",
            "version": VERSION,
            "sources": [source.value for source in services.registry.sources()],
            "storage_persistent": services.persistent,
            "metrics_stored": services.repository.count_metrics(),
            "narrative_provider": services.settings.narrative_provider,
        }

    register_sync_tools(
        server,
        services.orchestrator,
        services.credential_store,
        services.repository,
        services.registry,
        services.audit_logger,
    )
    register_analysis_tools(server, services.engine, services.repository)
    register_audit_tools(server, services.audit_logger)
    logger.info("Registered sync, analysis and audit tools")

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
