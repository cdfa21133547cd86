"""YAML configuration loader with environment variable overrides.

# ─── CONFIGURATION HIERARCHY ───────────────────────────────────────────
#
# Configuration is loaded in layers (later layers override earlier):
#
#   1. config/config.yaml  - static defaults checked into the repo
#   2. .env file           - local developer overrides (not committed)
#   3. Environment vars    - set at deploy time
#
# load_config() reads the YAML file first, then deep-merges the values
# pydantic-settings resolved from .env and the environment on top.
# ──────────────────────────────────────────────────────────────────────
"""

from pathlib import Path

import yaml

from src.config.settings import Settings


def load_config(path: str = "config/config.yaml", settings: Settings | None = None) -> dict:
    """Load YAML config and merge with environment-based Settings.

    Args:
        path: Path to the YAML configuration file.
        settings: Pre-built settings; a fresh ``Settings()`` is read when omitted.

    Returns:
        Fully resolved configuration dictionary.
    """
    config_path = Path(path)
    if config_path.exists():
        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}
    else:
        yaml_config = {}

    settings = settings or Settings()
    env_overrides = {
        "app": {
            "host": settings.app_host,
            "port": settings.app_port,
            "env": settings.app_env,
        },
        "providers": {
            "priority": list(settings.provider_priority),
            "configured": settings.get_configured_providers(),
            "timeout_seconds": settings.provider_timeout_seconds,
        },
        "orchestrator": {
            "retry_backoff_seconds": settings.retry_backoff_seconds,
            "job_time_budget_seconds": settings.job_time_budget_seconds,
        },
        "cache": {
            "max_entries": settings.cache_max_entries,
            "ttl_seconds": settings.cache_ttl_seconds,
            "min_confidence": settings.cache_min_confidence,
        },
        "sessions": {
            "ttl_seconds": settings.session_ttl_seconds,
            "sweep_interval_seconds": settings.session_sweep_interval_seconds,
        },
        "logging": {
            "level": settings.log_level,
        },
    }

    _deep_merge(yaml_config, env_overrides)
    return yaml_config


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def material_aliases(config: dict) -> dict[str, list[str]]:
    """Return the ``materials.aliases`` mapping (catalogue id -> alias phrases)."""
    aliases = (config.get("materials") or {}).get("aliases") or {}
    return {str(material_id): [str(a).lower() for a in phrases] for material_id, phrases in aliases.items()}
