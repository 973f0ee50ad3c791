"""Entity cache: cleaned, size-capped record bodies scoped per session.

Bodies are cleaned before they are stored, never at read time, so every
cached entity is bounded and can be handed to a language model as-is.
"""

from __future__ import annotations

import hashlib
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

from cortex.storage.kv import KVStore

logger = logging.getLogger(__name__)

ENTITY_TTL_SECONDS = 24 * 3600
MAX_BODY_BYTES = 5 * 1024
RECENT_LIMIT = 5
EMPTY_BODY = "[No body content available]"

_BODY_FIELDS = ("body_text", "body_html", "body", "text", "html")
_CRM_TYPES = ("contact", "lead", "account", "deal", "record")

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAG_RE = re.compile(
    r"<\s*/?\s*(br|p|div|li|tr|table|h[1-6]|blockquote|section|article)\b[^>]*>",
    re.IGNORECASE,
)
_TAG_RE = re.compile(r"</?[A-Za-z!][^>]*>")
_INLINE_SPACE_RE = re.compile(r"[ \t\f\v\xa0]+")


@dataclass
class CleanBody:
    """Result of body cleaning."""

    text: str
    body_hash: str
    was_truncated: bool = False
    original_length: int = 0  # UTF-8 bytes of the cleaned text before truncation


@dataclass
class CachedEntity:
    """A fetched record with its cleaned body."""

    scope_key: str
    entity_id: str
    type: str
    provider: str
    clean_body: str
    body_hash: str
    was_truncated: bool = False
    original_length: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    cached_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope_key": self.scope_key,
            "entity_id": self.entity_id,
            "type": self.type,
            "provider": self.provider,
            "clean_body": self.clean_body,
            "body_hash": self.body_hash,
            "was_truncated": self.was_truncated,
            "original_length": self.original_length,
            "metadata": self.metadata,
            "cached_at": self.cached_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CachedEntity:
        return cls(
            scope_key=data["scope_key"],
            entity_id=data["entity_id"],
            type=data["type"],
            provider=data["provider"],
            clean_body=data["clean_body"],
            body_hash=data.get("body_hash", ""),
            was_truncated=data.get("was_truncated", False),
            original_length=data.get("original_length", 0),
            metadata=data.get("metadata") or {},
            cached_at=datetime.fromisoformat(data["cached_at"]),
        )


def _truncate_utf8(text: str, max_bytes: int) -> str:
    """Cut *text* to at most *max_bytes* of UTF-8 without splitting a character."""
    return text.encode("utf-8")[:max_bytes].decode("utf-8", errors="ignore")


def clean_body(
    raw_text: str | None,
    raw_html: str | None = None,
    max_bytes: int = MAX_BODY_BYTES,
) -> CleanBody:
    """Turn a raw record body into bounded plain text.

    Plain text is preferred over HTML. Markup is stripped, entities decoded,
    whitespace collapsed per line and blank lines dropped; the result is then
    truncated to *max_bytes* of UTF-8. The truncated body is always a prefix
    of the full cleaned text.
    """
    source = raw_text if raw_text and raw_text.strip() else raw_html
    if not source or not source.strip():
        return CleanBody(text=EMPTY_BODY, body_hash="")

    text = _SCRIPT_STYLE_RE.sub("", source)
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)

    lines = (_INLINE_SPACE_RE.sub(" ", line).strip() for line in text.splitlines())
    text = "\n".join(line for line in lines if line)
    if not text:
        return CleanBody(text=EMPTY_BODY, body_hash="")

    body_hash = hashlib.sha256(text.encode("utf-8")).hexdigest()
    original_length = len(text.encode("utf-8"))
    if original_length <= max_bytes:
        return CleanBody(text=text, body_hash=body_hash, original_length=original_length)
    return CleanBody(
        text=_truncate_utf8(text, max_bytes),
        body_hash=body_hash,
        was_truncated=True,
        original_length=original_length,
    )


class EntityCache:
    """Caches cleaned entities under ``crm-entity:{quoted scope}:{id}``.

    Writes are last-writer-wins: re-caching an entity overwrites it and
    refreshes its TTL. Store failures propagate to the caller.

    Args:
        kv: Key-value backend
        ttl: Entity lifetime in seconds (default 24h)
        max_body_bytes: Body cap applied on build and on every write
        recent_limit: Default limit for :meth:`get_recent`
    """

    def __init__(
        self,
        kv: KVStore,
        ttl: int = ENTITY_TTL_SECONDS,
        max_body_bytes: int = MAX_BODY_BYTES,
        recent_limit: int = RECENT_LIMIT,
    ) -> None:
        self._kv = kv
        self._ttl = ttl
        self._max_body_bytes = max_body_bytes
        self._recent_limit = recent_limit

    @property
    def ttl(self) -> int:
        return self._ttl

    @staticmethod
    def _scope_prefix(scope_key: str) -> str:
        # Scope is percent-encoded so "a" never prefixes "a:b"
        return f"crm-entity:{quote(scope_key, safe='')}:"

    def _key(self, scope_key: str, entity_id: str) -> str:
        return self._scope_prefix(scope_key) + entity_id

    def _bounded(self, entity: CachedEntity) -> CachedEntity:
        """Re-clean a body that still carries markup or exceeds the byte cap."""
        size = len(entity.clean_body.encode("utf-8"))
        if size <= self._max_body_bytes and not _TAG_RE.search(entity.clean_body):
            return entity
        cleaned = clean_body(entity.clean_body, None, self._max_body_bytes)
        entity.clean_body = cleaned.text
        entity.body_hash = cleaned.body_hash
        entity.was_truncated = entity.was_truncated or cleaned.was_truncated
        entity.original_length = max(entity.original_length, cleaned.original_length)
        return entity

    def build_entity(
        self,
        scope_key: str,
        record: dict[str, Any],
        entity_type: str,
        provider: str,
    ) -> CachedEntity:
        """Clean a raw provider record into a :class:`CachedEntity`.

        Body fields are consumed by cleaning; every other field is kept as
        metadata.
        """
        entity_id = str(record.get("id") or record.get("entity_id") or "")
        if not entity_id:
            raise ValueError("record has no id")
        raw_text = record.get("body_text") or record.get("body") or record.get("text")
        raw_html = record.get("body_html") or record.get("html")
        cleaned = clean_body(raw_text, raw_html, self._max_body_bytes)
        metadata = {k: v for k, v in record.items() if k not in _BODY_FIELDS and k != "id"}
        return CachedEntity(
            scope_key=scope_key,
            entity_id=entity_id,
            type=str(record.get("type") or entity_type),
            provider=provider,
            clean_body=cleaned.text,
            body_hash=cleaned.body_hash,
            was_truncated=cleaned.was_truncated,
            original_length=cleaned.original_length,
            metadata=metadata,
        )

    async def cache_entity(self, scope_key: str, entity: CachedEntity) -> None:
        """Store *entity* under *scope_key*, replacing any earlier copy.

        Bodies are cleaned and capped here as well, so entities built outside
        :meth:`build_entity` are bounded too.
        """
        entity.scope_key = scope_key
        entity = self._bounded(entity)
        await self._kv.set(self._key(scope_key, entity.entity_id), entity.to_dict(), self._ttl)
        logger.debug(
            "Cached %s entity %s for scope %s (%d bytes%s)",
            entity.type,
            entity.entity_id,
            scope_key,
            len(entity.clean_body.encode("utf-8")),
            ", truncated" if entity.was_truncated else "",
        )

    async def get_entity(self, scope_key: str, entity_id: str) -> CachedEntity | None:
        data = await self._kv.get(self._key(scope_key, entity_id))
        return CachedEntity.from_dict(data) if data else None

    async def get_entities(self, scope_key: str, entity_ids: list[str]) -> list[CachedEntity]:
        """Return the cached entities among *entity_ids*, in request order, skipping misses."""
        if not entity_ids:
            return []
        values = await self._kv.mget([self._key(scope_key, i) for i in entity_ids])
        return [CachedEntity.from_dict(v) for v in values if v]

    async def get_recent(
        self, scope_key: str, entity_type: str, limit: int | None = None
    ) -> list[CachedEntity]:
        """Most recently cached entities of *entity_type* for *scope_key*."""
        prefix = self._scope_prefix(scope_key)
        ids = [key[len(prefix) :] for key in await self._kv.keys(prefix)]
        entities = [
            e
            for e in await self.get_entities(scope_key, ids)
            if e.scope_key == scope_key and e.type == entity_type
        ]
        entities.sort(key=lambda e: e.cached_at, reverse=True)
        return entities[: limit if limit is not None else self._recent_limit]

    async def clear_scope(self, scope_key: str) -> int:
        """Drop every cached entity for *scope_key*. Returns the number removed."""
        removed = 0
        for key in await self._kv.keys(self._scope_prefix(scope_key)):
            if await self._kv.delete(key):
                removed += 1
        if removed:
            logger.info("Cleared %d cached entities for scope %s", removed, scope_key)
        return removed

    @staticmethod
    def index_entry(entity: CachedEntity) -> dict[str, Any]:
        """Lightweight summary that tells a model what is cached without the body."""
        meta = entity.metadata
        if entity.type == "email":
            return {
                "id": entity.entity_id,
                "type": "email",
                "from": meta.get("from"),
                "subject": meta.get("subject"),
                "timestamp": entity.cached_at.isoformat(),
                "cached": True,
                "body_size": len(entity.clean_body),
            }
        if entity.type in _CRM_TYPES:
            return {
                "id": entity.entity_id,
                "type": entity.type,
                "name": meta.get("name") or meta.get("account_name"),
                "provider": entity.provider,
                "timestamp": entity.cached_at.isoformat(),
                "cached": True,
                "data_size": len(entity.clean_body),
            }
        return {"id": entity.entity_id, "type": entity.type, "cached": True}
