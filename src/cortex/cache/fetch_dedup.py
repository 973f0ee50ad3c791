"""Fetch deduplication: short-circuit repeated read-only tool fetches.

A fetch request is reduced to a fingerprint of tool, provider and an
allow-listed, normalized subset of its filters. While a fingerprint record
is alive (1h), the same request resolves to the entity ids it produced the
first time instead of reaching the provider again.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from cortex.errors import CortexError
from cortex.storage.kv import KVStore

logger = logging.getLogger(__name__)

FETCH_DEDUP_TTL_SECONDS = 3600

EMAIL_DEFAULT_LIMIT = 10
CRM_DEFAULT_LIMIT = 20

FETCH_TOOLS = frozenset(
    {
        "fetch_emails",
        "fetch_entity",
        "fetch_entities",
        "search_entities",
        "fetch_contacts",
        "fetch_deals",
        "fetch_accounts",
    }
)


@dataclass
class FetchRequest:
    """A tool call that reads records from a provider."""

    tool: str
    provider: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchFingerprint:
    """Recorded outcome of a fetch, keyed by request hash."""

    scope_key: str
    request_hash: str
    result_entity_ids: list[str]
    recorded_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope_key": self.scope_key,
            "request_hash": self.request_hash,
            "result_entity_ids": self.result_entity_ids,
            "recorded_at": self.recorded_at.isoformat(),
        }


def _pick(source: dict[str, Any], *names: str) -> Any:
    for name in names:
        if source.get(name) is not None:
            return source[name]
    return None


def _normalize(value: Any) -> Any:
    """Trim and lower-case strings, sort lists, drop None entries from dicts."""
    if isinstance(value, str):
        return value.strip().lower()
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in sorted(value.items()) if v is not None}
    if isinstance(value, list | tuple | set):
        items = [_normalize(v) for v in value if v is not None]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True))
    return value


def extract_filters(tool: str, args: dict[str, Any]) -> dict[str, Any]:
    """Reduce *args* to the fields that identify the fetch for *tool*."""
    source = args.get("input") if isinstance(args.get("input"), dict) else args
    filters = source.get("filters") if isinstance(source.get("filters"), dict) else {}

    if tool == "fetch_emails":
        selected = {
            "operation": source.get("operation"),
            "sender": _pick(filters, "sender", "from") or _pick(source, "sender", "from"),
            "recipient": _pick(filters, "recipient", "to") or _pick(source, "recipient", "to"),
            "subject": _pick(filters, "subject") or _pick(source, "subject"),
            "labels": _pick(filters, "labels") or _pick(source, "labels"),
            "is_read": _pick(filters, "is_read", "isRead"),
            "date_range": _pick(filters, "date_range", "dateRange"),
            "limit": _pick(filters, "limit") or source.get("limit") or EMAIL_DEFAULT_LIMIT,
        }
    elif tool in ("fetch_entity", "fetch_entities"):
        selected = {
            "operation": source.get("operation"),
            "entity_type": _pick(source, "entity_type", "entityType"),
            "filters": filters or None,
            "limit": source.get("limit") or CRM_DEFAULT_LIMIT,
        }
    elif tool == "search_entities":
        selected = {
            "operation": source.get("operation"),
            "entity_type": _pick(source, "entity_type", "entityType"),
            "query": source.get("query"),
            "limit": source.get("limit") or CRM_DEFAULT_LIMIT,
        }
    else:
        selected = dict(source)

    return _normalize(selected)


def fingerprint(request: FetchRequest) -> str:
    """SHA-256 over the canonical JSON of tool, provider and normalized filters."""
    canonical = json.dumps(
        {
            "tool": request.tool,
            "provider": request.provider.strip().lower(),
            "filters": extract_filters(request.tool, request.args),
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class FetchDeduplicator:
    """Checks and records fetch fingerprints under ``fetch-dedup:{scope}:{hash}``.

    Only read-only fetch tools are fingerprinted; everything else always
    misses. A store failure during a check is downgraded to a miss.

    Args:
        kv: Key-value backend
        ttl: Fingerprint lifetime in seconds (default 1h)
    """

    def __init__(self, kv: KVStore, ttl: int = FETCH_DEDUP_TTL_SECONDS) -> None:
        self._kv = kv
        self._ttl = ttl

    @staticmethod
    def is_fetch_tool(tool: str) -> bool:
        return tool in FETCH_TOOLS

    @staticmethod
    def _key(scope_key: str, request_hash: str) -> str:
        return f"fetch-dedup:{scope_key}:{request_hash}"

    async def check_for_duplicate(self, scope_key: str, request: FetchRequest) -> list[str] | None:
        """Return the entity ids of a live identical fetch, or None on a miss."""
        if not self.is_fetch_tool(request.tool):
            return None
        request_hash = fingerprint(request)
        try:
            data = await self._kv.get(self._key(scope_key, request_hash))
        except CortexError as exc:
            logger.warning("Fetch dedup check failed for %s: %s", request.tool, exc.message)
            return None

        if not data or not data.get("result_entity_ids"):
            return None
        ids = list(data["result_entity_ids"])
        logger.info(
            "Duplicate fetch of %s reused for scope %s (%d entities)",
            request.tool,
            scope_key,
            len(ids),
        )
        return ids

    async def record_fetch(
        self,
        scope_key: str,
        request: FetchRequest,
        entity_ids: list[str],
        overwrite: bool = False,
    ) -> bool:
        """Record the entity ids a fetch produced.

        Uses set-if-absent, so concurrent identical fetches keep the first
        record; *overwrite* replaces a record whose entities have gone stale.
        Empty results are not recorded. Returns True if this call wrote the
        fingerprint.
        """
        if not self.is_fetch_tool(request.tool) or not entity_ids:
            return False
        record = FetchFingerprint(
            scope_key=scope_key,
            request_hash=fingerprint(request),
            result_entity_ids=list(entity_ids),
        )
        key = self._key(scope_key, record.request_hash)
        if overwrite:
            await self._kv.set(key, record.to_dict(), self._ttl)
            written = True
        else:
            written = await self._kv.set_if_absent(key, record.to_dict(), self._ttl)
        logger.debug(
            "Recorded fetch %s for scope %s (%d entities, new=%s)",
            request.tool,
            scope_key,
            len(entity_ids),
            written,
        )
        return written
