"""Caching fetcher: fetch dedup and entity cache in front of the tool executor."""

from __future__ import annotations

import logging
from typing import Any

from cortex.cache.entities import CachedEntity, EntityCache
from cortex.cache.fetch_dedup import FetchDeduplicator, FetchRequest
from cortex.protocols import ToolExecutor, call_tool

logger = logging.getLogger(__name__)

_RECORD_LIST_KEYS = ("records", "items", "results", "data", "emails", "entities", "messages")


def extract_records(result: Any) -> list[dict[str, Any]]:
    """Pull the list of record dicts out of a tool result."""
    if isinstance(result, list):
        return [r for r in result if isinstance(r, dict)]
    if isinstance(result, dict):
        for key in _RECORD_LIST_KEYS:
            if isinstance(result.get(key), list):
                return [r for r in result[key] if isinstance(r, dict)]
        if "id" in result:
            return [result]
    return []


class CachingFetcher:
    """Serves repeated fetches from the entity cache.

    A dedup hit is only honoured when every referenced entity is still
    cached; otherwise the tool runs again and the fingerprint is replaced.
    """

    def __init__(
        self,
        entity_cache: EntityCache,
        deduplicator: FetchDeduplicator,
        tool_executor: ToolExecutor,
        tool_timeout: float | None = None,
    ) -> None:
        self._cache = entity_cache
        self._dedup = deduplicator
        self._tools = tool_executor
        self._tool_timeout = tool_timeout

    async def fetch(
        self,
        scope_key: str,
        request: FetchRequest,
        entity_type: str,
        owner_id: str,
    ) -> list[CachedEntity]:
        """Return cleaned entities for *request*, calling the tool only on a miss."""
        stale = False
        cached_ids = await self._dedup.check_for_duplicate(scope_key, request)
        if cached_ids:
            entities = await self._cache.get_entities(scope_key, cached_ids)
            if len(entities) == len(cached_ids):
                return entities
            stale = True
            logger.info(
                "Fetch fingerprint for %s points at evicted entities (%d/%d cached); refetching",
                request.tool,
                len(entities),
                len(cached_ids),
            )

        result = await call_tool(
            self._tools, request.tool, request.args, owner_id, timeout=self._tool_timeout
        )

        entities = []
        for record in extract_records(result):
            try:
                entity = self._cache.build_entity(scope_key, record, entity_type, request.provider)
            except ValueError:
                logger.warning("Skipping %s record without id from %s", entity_type, request.tool)
                continue
            await self._cache.cache_entity(scope_key, entity)
            entities.append(entity)

        await self._dedup.record_fetch(
            scope_key, request, [e.entity_id for e in entities], overwrite=stale
        )
        logger.debug("Fetched %d %s entities via %s", len(entities), entity_type, request.tool)
        return entities
