"""Public interface definitions for the pluggable parts of the pipeline.

Every external AI service and every piece of shared state in CutIntake is
reached through the abstract base classes in this package.  Concrete
adapters implement them and are wired together in ``src/main.py``, so
tests inject fakes without any network access and a shared backend can
replace an in-memory one without touching the pipeline.

CONCRETE PROVIDER MAP:
    Interface                  →  Concrete implementations (in src/providers/)
    ─────────────────────────────────────────────────────────────────────
    IExtractionProvider        →  AnthropicExtractionProvider,
                                  OpenAIExtractionProvider
    IResultCache               →  ResultCache
    ISessionStore              →  InMemorySessionStore

Re-exports
----------
IExtractionProvider
    Text / image / document part-extraction contract.
IResultCache
    Fingerprint-keyed, single-flight provider result cache.
ISessionStore
    Keyed progress-session storage with TTL expiry.
"""

from src.interfaces.cache_provider import IResultCache
from src.interfaces.extraction_provider import IExtractionProvider
from src.interfaces.session_store import ISessionStore

__all__ = [
    "IExtractionProvider",
    "IResultCache",
    "ISessionStore",
]
