"""Entity cache and fetch deduplication."""

from cortex.cache.entities import CachedEntity, EntityCache, clean_body
from cortex.cache.fetch_dedup import FetchDeduplicator, FetchRequest, fingerprint
from cortex.cache.fetcher import CachingFetcher

__all__ = [
    "CachedEntity",
    "CachingFetcher",
    "EntityCache",
    "FetchDeduplicator",
    "FetchRequest",
    "clean_body",
    "fingerprint",
]
