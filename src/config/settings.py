"""Application settings loaded from environment variables via pydantic-settings.

# ─── HOW SETTINGS WORK ────────────────────────────────────────────────
#
# pydantic-settings reads configuration from two sources, in priority
# order:
#
#   1. Environment variables  - e.g. ANTHROPIC_API_KEY=sk-ant-...
#   2. .env file              - key=value lines in the project root
#
# Field ``openai_api_key`` maps to env var ``OPENAI_API_KEY``.  Defaults
# apply when neither source sets a value.
#
# An empty API key means "not configured": that provider reports
# is_configured() == False and the orchestrator skips it without ever
# opening a connection.
# ──────────────────────────────────────────────────────────────────────
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """CutIntake application settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # === Extraction providers ===
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_base_url: str = ""  # OpenAI-compatible endpoint (TogetherAI, Fireworks ...)
    openai_text_model: str = ""
    openai_vision_model: str = ""
    extraction_max_tokens: int = 8000
    # Escalation chain, highest priority first.
    provider_priority: list[str] = Field(default_factory=lambda: ["anthropic", "openai"])

    # === Orchestration ===
    provider_timeout_seconds: float = 30.0
    retry_backoff_seconds: float = 1.0
    job_time_budget_seconds: float = 90.0

    # === Result cache ===
    cache_max_entries: int = 100
    cache_ttl_seconds: int = 24 * 60 * 60
    cache_min_confidence: float = 0.7

    # === Progress sessions ===
    session_ttl_seconds: int = 30 * 60
    session_sweep_interval_seconds: int = 5 * 60
    bulk_update_concurrency: int = 10

    # === Parsing defaults ===
    default_material_id: str = "default"
    default_thickness_mm: float = 18.0
    max_pdf_pages: int = 10
    max_image_dimension: int = 2048
    fetch_timeout_seconds: float = 20.0

    # === App Config ===
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_env: str = "development"
    log_level: str = "INFO"

    def get_configured_providers(self) -> list[str]:
        """Return extraction provider names that have non-empty API keys, in priority order."""
        configured = {
            "anthropic": bool(self.anthropic_api_key),
            "openai": bool(self.openai_api_key),
        }
        return [name for name in self.provider_priority if configured.get(name)]
