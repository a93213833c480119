"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """vitalsync service configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default: the server carries wearable tokens and health data.
    vitalsync_host: str = "127.0.0.1"
    vitalsync_port: int = 8010
    vitalsync_log_level: str = "info"
    # No auth layer exists, so non-loopback binds must be opted into.
    vitalsync_allow_insecure_bind: bool = False

    # Storage
    db_path: str = "~/.vitalsync/metrics.db"
    encryption_key: str = ""

    # Narrative enrichment (optional)
    narrative_provider: Literal["anthropic", "openai", "mock", "none"] = "none"
    narrative_timeout_s: float = 8.0
    narrative_privacy_mode: Literal["strict", "standard", "explicit"] = "strict"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"

    # Sync
    http_timeout_s: float = 30.0
    sync_default_days: int = 7
    # Per-source minimum interval overrides in seconds, e.g. '{"fitbit": 600}'
    rate_limit_intervals: dict[str, float] = {}

    # Vendor OAuth applications
    samsung_health_client_id: str = ""
    samsung_health_client_secret: str = ""
    fitbit_client_id: str = ""
    fitbit_client_secret: str = ""
    oura_client_id: str = ""
    oura_client_secret: str = ""
    google_fit_client_id: str = ""
    google_fit_client_secret: str = ""

    def client_credentials(self, source: str) -> tuple[str, str]:
        """Return the (client_id, client_secret) pair for a vendor source."""
        return (
            getattr(self, f"{source}_client_id", ""),
            getattr(self, f"{source}_client_secret", ""),
        )


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
