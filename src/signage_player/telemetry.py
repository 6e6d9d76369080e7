"""Throttled event reporting to a remote webhook.

Reports are small ``(title, message, severity)`` tuples posted as a
Discord-style embed. Delivery is best-effort: at most one report is sent
per ``min_interval`` seconds (extra reports are dropped so an error loop
cannot flood the channel) and every delivery failure is swallowed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

import httpx

from signage_player.models import DeviceIdentity

log = logging.getLogger(__name__)

MIN_INTERVAL = 5.0

SEVERITY_COLORS = {
    "error": 15548997,    # Red
    "warning": 16776960,  # Yellow
    "notice": 16744192,   # Orange
    "info": 5763719,      # Green
    "debug": 9807270,     # Gray
}


class Reporter:
    """Posts telemetry events to a webhook, throttled."""

    def __init__(
        self,
        webhook_url: str = "",
        client: httpx.AsyncClient | None = None,
        min_interval: float = MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.webhook_url = webhook_url
        self._client = client
        self._owns_client = client is None
        self.min_interval = min_interval
        self._clock = clock
        self._last_sent: float | None = None
        self._device = DeviceIdentity(name="Unknown", code="N/A", id="No ID")
        self._pending: set[asyncio.Task] = set()

    def set_device(self, identity: DeviceIdentity) -> None:
        """Identify the device in all future reports."""
        self._device = identity

    def _accept(self) -> bool:
        if not self.webhook_url:
            return False
        now = self._clock()
        if self._last_sent is not None and now - self._last_sent < self.min_interval:
            return False
        self._last_sent = now
        return True

    def _payload(self, title: str, message: str, severity: str) -> dict:
        device = self._device
        return {
            "embeds": [
                {
                    "title": title,
                    "description": (
                        f"{message}\n**Device:** {device.name} | "
                        f"**Code:** {device.code} | **ID:** {device.id}"
                    ),
                    "color": SEVERITY_COLORS.get(severity, SEVERITY_COLORS["info"]),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            ]
        }

    async def report(self, title: str, message: str, severity: str = "info") -> bool:
        """Send one report now.

        Returns:
            True if the report was delivered.
        """
        if not self._accept():
            return False
        return await self._send(self._payload(title, message, severity))

    def notify(self, title: str, message: str, severity: str = "info") -> None:
        """Fire-and-forget variant of :meth:`report` for synchronous callers."""
        if not self._accept():
            return
        task = asyncio.ensure_future(self._send(self._payload(title, message, severity)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, payload: dict) -> bool:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        try:
            response = await self._client.post(self.webhook_url, json=payload)
            response.raise_for_status()
            return True
        except httpx.HTTPError as exc:
            log.debug("Telemetry delivery failed: %s", exc)
            return False

    async def close(self) -> None:
        """Wait briefly for queued reports, then close the HTTP client."""
        if self._pending:
            await asyncio.wait(self._pending, timeout=2.0)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
