"""Cache providers.

In-memory TTL + LRU cache of extraction results, keyed by content
fingerprint, so an identical upload does not pay for a second model call.

ResultCache is process-local.  For multi-worker deployments, swap in a
Redis adapter implementing IResultCache without changing the orchestrator.
"""

from src.providers.cache.result_cache import ResultCache, compute_fingerprint

__all__ = ["ResultCache", "compute_fingerprint"]
