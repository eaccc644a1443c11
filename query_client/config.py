# =============================================================================
# Client Configuration — Pydantic Settings
# =============================================================================
#
# DESIGN DECISION: Pydantic V2's `BaseSettings` for configuration.
# This provides:
# 1. Type-safe configuration with validation at startup
# 2. Automatic loading from environment variables
# 3. Support for .env files (via `env_file` in model_config)
# 4. Sensible defaults for talking to a local or staging backend
#
# HOW IT WORKS:
# Pydantic Settings loads values in this priority order (highest first):
#   1. Environment variables (e.g., `API_BASE_URL=...`)
#   2. Values from the .env file
#   3. Default values defined below
#
# USAGE:
#   from query_client.config import settings
#   print(settings.api_url)
# =============================================================================

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Client settings loaded from environment variables.

    Every value can be overridden per process; tests construct their own
    Settings instance instead of touching the environment.
    """

    # -------------------------------------------------------------------------
    # Backend Location
    # -------------------------------------------------------------------------
    # All endpoint paths are appended to api_base_url + api_prefix, e.g.
    #   https://api.example.com/api/v1/projects/{id}/queries
    # -------------------------------------------------------------------------
    api_base_url: str = "https://api.example.com"
    api_prefix: str = "/api/v1"

    # -------------------------------------------------------------------------
    # Timeouts (seconds)
    # -------------------------------------------------------------------------
    # Query submission can take a while when the backend validates the query
    # with an LLM before accepting it. Uploads get a longer budget because
    # document bytes travel in the request body.
    #
    # The stream read timeout is disabled: an analysis can stay silent for
    # minutes between agent steps, and a read timeout would surface as a
    # spurious channel error.
    # -------------------------------------------------------------------------
    request_timeout_seconds: float = 120.0
    upload_timeout_seconds: float = 300.0
    stream_connect_timeout_seconds: float = 10.0

    # -------------------------------------------------------------------------
    # Full-Result Guard
    # -------------------------------------------------------------------------
    # rate_limit_ms: minimum spacing between two full-result fetches for the
    #   same query id. Stops UI polling loops from hammering the backend.
    # failed_query_cache_ttl_seconds: how long a terminal `failed` result is
    #   served from memory before the backend is asked again.
    # -------------------------------------------------------------------------
    rate_limit_ms: int = 1000
    failed_query_cache_ttl_seconds: float = 60.0

    # -------------------------------------------------------------------------
    # File Registry & Ingestion
    # -------------------------------------------------------------------------
    file_registry_cache_seconds: float = 300.0
    file_registry_limit: int = 100
    force_reprocess: bool = False

    # -------------------------------------------------------------------------
    # CLI
    # -------------------------------------------------------------------------
    default_project_id: str | None = None
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        # Allow extra fields in environment (don't crash on unknown vars)
        extra="ignore",
    )

    @property
    def api_url(self) -> str:
        """Base URL that every endpoint path is joined onto."""
        base = self.api_base_url.rstrip("/")
        prefix = self.api_prefix.strip("/")
        return f"{base}/{prefix}" if prefix else base


@lru_cache
def get_settings() -> Settings:
    """
    Create and cache a Settings instance.

    The settings object is effectively a singleton. Tests bypass it by passing
    an explicit Settings(...) into the orchestrator.
    """
    return Settings()


settings = get_settings()
