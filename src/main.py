"""CutIntake FastAPI application entry point.

Wires together providers, services, and routes via dependency injection.
Loads configuration from ``.env`` and ``config/config.yaml`` and
configures structured logging.

Also exposes :func:`build_components` for scripting or embedding the
pipeline outside the web server.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
import uvicorn
from cachetools import TTLCache
from fastapi import FastAPI

from src.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from src.api.routes import router as api_router
from src.config.loader import load_config, material_aliases
from src.config.settings import Settings
from src.interfaces.extraction_provider import IExtractionProvider
from src.pipeline.intake_pipeline import IntakePipeline
from src.pipeline.orchestrator import ResilientOrchestrator
from src.pipeline.progress_store import ProgressSessionStore
from src.providers.cache.result_cache import ResultCache
from src.providers.extraction.anthropic_provider import AnthropicExtractionProvider
from src.providers.extraction.openai_provider import OpenAIExtractionProvider
from src.providers.session.memory_session_store import InMemorySessionStore
from src.services.confidence_scorer import ConfidenceScorer
from src.services.deterministic_parser import DeterministicParser
from src.services.input_normalizer import RawInputNormalizer
from src.utils.errors import ConfigurationError
from src.utils.logging import configure_logging, get_logger

_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Module-level settings & logging
# ---------------------------------------------------------------------------

settings = Settings()

configure_logging(
    log_level=settings.log_level,
    json_output=(settings.app_env == "production"),
)
_logger: structlog.BoundLogger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------

_PROVIDER_FACTORIES = {
    "anthropic": AnthropicExtractionProvider,
    "openai": OpenAIExtractionProvider,
}


def _build_extraction_providers(
    app_settings: Settings,
    aliases: dict[str, list[str]],
) -> list[IExtractionProvider]:
    """Instantiate the extraction providers in ``provider_priority`` order.

    Unconfigured providers are still built; the orchestrator skips them.

    Raises
    ------
    ConfigurationError
        If the priority list names an unknown provider.
    """
    providers: list[IExtractionProvider] = []
    for name in app_settings.provider_priority:
        factory = _PROVIDER_FACTORIES.get(name)
        if factory is None:
            raise ConfigurationError(
                f"Unknown extraction provider {name!r} in PROVIDER_PRIORITY; "
                f"expected one of {sorted(_PROVIDER_FACTORIES)}"
            )
        providers.append(factory(app_settings, material_aliases=aliases))
    return providers


def build_components(app_settings: Settings, config: dict | None = None) -> dict[str, Any]:
    """Construct every component of the pipeline.

    Returns a flat dict of named components to be stored on ``app.state``.
    """
    config = config if config is not None else load_config(settings=app_settings)
    aliases = material_aliases(config)

    http_client = httpx.AsyncClient(timeout=app_settings.fetch_timeout_seconds)

    providers = _build_extraction_providers(app_settings, aliases)
    cache = ResultCache(
        max_entries=app_settings.cache_max_entries,
        ttl_seconds=app_settings.cache_ttl_seconds,
        min_confidence=app_settings.cache_min_confidence,
    )
    progress = ProgressSessionStore(
        store=InMemorySessionStore(ttl_seconds=app_settings.session_ttl_seconds),
        sweep_interval_seconds=app_settings.session_sweep_interval_seconds,
    )
    orchestrator = ResilientOrchestrator(
        providers,
        progress=progress,
        cache=cache,
        timeout_seconds=app_settings.provider_timeout_seconds,
        retry_backoff_seconds=app_settings.retry_backoff_seconds,
        job_time_budget_seconds=app_settings.job_time_budget_seconds,
    )
    pipeline = IntakePipeline(
        orchestrator,
        progress,
        normalizer=RawInputNormalizer(
            max_pdf_pages=app_settings.max_pdf_pages,
            max_image_dimension=app_settings.max_image_dimension,
        ),
        parser=DeterministicParser(),
        scorer=ConfidenceScorer(),
        cache=cache,
        http_client=http_client,
        fetch_timeout_seconds=app_settings.fetch_timeout_seconds,
        bulk_concurrency=app_settings.bulk_update_concurrency,
    )

    return {
        "settings": app_settings,
        "config": config,
        "version": _VERSION,
        "http_client": http_client,
        "result_cache": cache,
        "progress_store": progress,
        "orchestrator": orchestrator,
        "pipeline": pipeline,
        "provider_registry": {p.get_provider_name(): p.is_configured() for p in providers},
        "job_results": TTLCache(maxsize=256, ttl=app_settings.session_ttl_seconds),
    }


# ---------------------------------------------------------------------------
# Application lifespan (startup / shutdown)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _lifespan(application: FastAPI):  # noqa: ANN201
    """Build all components on startup, stop background work on shutdown."""
    components = build_components(settings)

    for key, value in components.items():
        setattr(application.state, key, value)

    progress: ProgressSessionStore = components["progress_store"]
    progress.start()

    _logger.info(
        "app_startup",
        version=_VERSION,
        environment=settings.app_env,
        providers=components["provider_registry"],
    )

    yield

    await progress.stop()
    http_client: httpx.AsyncClient = components["http_client"]
    await http_client.aclose()
    _logger.info("app_shutdown", message="Sweep task stopped, HTTP client closed")


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Build and configure the FastAPI application."""
    application = FastAPI(
        title="CutIntake API",
        version=_VERSION,
        description=(
            "Turn pasted cut lists, spreadsheets, dictation, photos and PDFs "
            "into reviewed manufacturing part drafts."
        ),
        lifespan=_lifespan,
    )

    # -- Middleware (order matters: last added = first executed) --
    application.add_middleware(ErrorHandlingMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    configure_cors(application)

    # -- API routes --
    application.include_router(api_router)

    return application


app = create_app()

# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=(settings.app_env == "development"),
    )
