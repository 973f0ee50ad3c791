"""Event store with idempotent deduplication."""

from __future__ import annotations

import logging

from cortex.automations.models import Event
from cortex.storage.kv import KVStore

logger = logging.getLogger(__name__)

DEDUPE_TTL_SECONDS = 7 * 24 * 3600


class EventStore:
    """Records inbound events, accepting each dedupe key at most once.

    ``write_event`` is the single choke point that keeps one upstream
    notification from producing two runs. Backend failures propagate as
    :class:`~cortex.errors.StoreUnavailableError`; callers must then skip
    the event.
    """

    def __init__(
        self,
        kv: KVStore,
        dedupe_ttl: int = DEDUPE_TTL_SECONDS,
        event_ttl: int = DEDUPE_TTL_SECONDS,
    ) -> None:
        self._kv = kv
        self._dedupe_ttl = dedupe_ttl
        self._event_ttl = event_ttl

    async def write_event(self, event: Event) -> bool:
        """Persist *event* unless its dedupe key was already seen.

        Returns:
            True if the event is new and was stored, False for a duplicate.
        """
        accepted = await self._kv.set_if_absent(
            f"dedupe:{event.dedupe_key}", event.id, ttl=self._dedupe_ttl
        )
        if not accepted:
            logger.debug("Duplicate event %s (dedupe key %s)", event.id, event.dedupe_key)
            return False

        await self._kv.set(f"event:{event.id}", event.to_dict(), ttl=self._event_ttl)
        logger.debug("Stored event %s from %s/%s", event.id, event.source, event.event_type)
        return True

    async def get_event(self, event_id: str) -> Event | None:
        """Read back a stored event, or None once it has expired."""
        data = await self._kv.get(f"event:{event_id}")
        return Event.from_dict(data) if data else None
