"""Webhook notification sink."""

from __future__ import annotations

import logging

import httpx

from cortex.errors import ActionError

logger = logging.getLogger(__name__)


class WebhookNotifier:
    """POSTs notifications as JSON to a configured URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def notify(self, owner_id: str, message: str, channel: str | None = None) -> None:
        """Deliver *message*; delivery failures fail the notify step."""
        payload = {"owner_id": owner_id, "message": message, "channel": channel}
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self._timeout
            ) as client:
                resp = await client.post(self._url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Webhook notify to %s failed: %s", self._url, exc)
            raise ActionError(f"Notification delivery failed: {exc}", action_type="notify") from exc
        logger.debug("Notified %s via webhook (%d)", owner_id, resp.status_code)
