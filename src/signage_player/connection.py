"""Socket.IO connection to the signage dashboard.

Handles authentication through query parameters, reconnection, heartbeat
emission and message dispatch. Every inbound ``message`` event is parsed
into a typed :class:`~signage_player.models.Message` and put on the
session controller's event queue; nothing else consumes it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

import psutil
import socketio

from signage_player.models import DeviceIdentity, Event, MessageError, parse_message

log = logging.getLogger(__name__)

RECONNECT_DELAY = 3.0
HEARTBEAT_INTERVAL = 60.0

# Disconnect reasons after which the client will not retry on its own
_SERVER_DISCONNECT_REASONS = ("io server disconnect", "server disconnect")


def memory_usage() -> dict[str, int]:
    """Resident memory of this process and total system memory, in bytes."""
    try:
        ram = psutil.Process().memory_info().rss
        ram_total = psutil.virtual_memory().total
    except psutil.Error as exc:
        log.debug("Memory info unavailable: %s", exc)
        return {"ram": 0, "ramTotal": 0}
    return {"ram": ram, "ramTotal": ram_total}


def seconds_until_next_minute(now: datetime | None = None) -> float:
    now = now or datetime.now()
    return 60 - now.second - now.microsecond / 1_000_000


class SignageConnection:
    """Single Socket.IO connection with heartbeat and automatic reconnection."""

    def __init__(
        self,
        url: str,
        events: asyncio.Queue[Event],
        *,
        reconnect_delay: float = RECONNECT_DELAY,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        client_factory: Callable[..., socketio.AsyncClient] = socketio.AsyncClient,
    ) -> None:
        self.url = url
        self._events = events
        self.reconnect_delay = reconnect_delay
        self.heartbeat_interval = heartbeat_interval
        self._client_factory = client_factory
        self._client: socketio.AsyncClient | None = None
        self._connect_url: str = ""
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.connected

    @staticmethod
    def build_query(identity: DeviceIdentity | None) -> dict[str, str]:
        """Query parameters used to authenticate a returning device."""
        query = {"type": "client-player"}
        if identity is not None and identity.token:
            query["token"] = identity.token
            if identity.id:
                query["deviceId"] = identity.id
        return query

    # ----- Connection -----

    async def connect(self, identity: DeviceIdentity | None) -> None:
        """Open a fresh connection, replacing any existing one.

        Devices with a saved token authenticate; others register and pair.
        """
        await self.disconnect()
        self._closing = False

        query = self.build_query(identity)
        if "token" in query:
            log.info("Found token, authenticating as device %s", query.get("deviceId", "?"))
        else:
            log.info("No token, registering for pairing")
        self._connect_url = f"{self.url}?{urlencode(query)}"

        client = self._client_factory(
            reconnection=True,
            reconnection_attempts=0,
            reconnection_delay=self.reconnect_delay,
            reconnection_delay_max=self.reconnect_delay,
            randomization_factor=0,
        )
        client.on("connect", self._on_connect)
        client.on("disconnect", self._on_disconnect)
        client.on("message", self._on_message)
        self._client = client

        try:
            await client.connect(self._connect_url, transports=["websocket", "polling"])
        except socketio.exceptions.ConnectionError as exc:
            log.warning("Connection to %s failed: %s", self.url, exc)
            self._schedule_reconnect()

    async def disconnect(self) -> None:
        """Close the connection and stop all timers."""
        self._closing = True
        self.stop_heartbeat()
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.disconnect()
            except Exception as exc:
                log.debug("Error while disconnecting: %s", exc)

    async def reconnect(self) -> None:
        """Reconnect if the link is down, otherwise re-request the playback state."""
        if self._client is None:
            return
        if self._client.connected:
            await self.emit("get_playback_state")
        else:
            self._schedule_reconnect(delay=0)

    def _schedule_reconnect(self, delay: float | None = None) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        wait = self.reconnect_delay if delay is None else delay
        self._reconnect_task = asyncio.ensure_future(self._reconnect_later(wait))

    async def _reconnect_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        client = self._client
        if client is None or client.connected or self._closing:
            return
        log.info("Reconnecting to %s", self.url)
        try:
            await client.connect(self._connect_url, transports=["websocket", "polling"])
        except socketio.exceptions.ConnectionError as exc:
            log.warning("Reconnect failed: %s", exc)
            self._reconnect_task = None
            self._schedule_reconnect()

    # ----- Socket events -----

    async def _on_connect(self) -> None:
        log.info("Connected to %s", self.url)
        # Ask for the authoritative state on every (re)connect
        await self.emit("get_playback_state")

    async def _on_disconnect(self, reason: Any = None) -> None:
        log.warning("Disconnected: %s", reason or "unknown reason")
        if str(reason) in _SERVER_DISCONNECT_REASONS:
            self._schedule_reconnect()

    async def _on_message(self, data: Any) -> None:
        try:
            message = parse_message(data)
        except MessageError as exc:
            log.warning("Ignoring malformed message: %s", exc)
            return
        log.debug("Received %s", message.type.value)
        self._events.put_nowait(message)

    async def emit(self, event: str, data: Any = None) -> bool:
        """Send an event if connected. Returns False when offline or on error."""
        client = self._client
        if client is None or not client.connected:
            return False
        try:
            await client.emit(event, data)
            return True
        except socketio.exceptions.SocketIOError as exc:
            log.warning("Failed to emit %s: %s", event, exc)
            return False

    # ----- Heartbeat -----

    def start_heartbeat(self) -> None:
        """Send a heartbeat now, then every minute on the minute."""
        self.stop_heartbeat()
        self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop())

    def stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def send_heartbeat(self) -> None:
        if not self.is_connected:
            return
        await self.emit("heartbeat", memory_usage())
        await self.emit("get_playback_state")

    async def _heartbeat_loop(self) -> None:
        await self.send_heartbeat()
        await asyncio.sleep(seconds_until_next_minute())
        while True:
            await self.send_heartbeat()
            await asyncio.sleep(self.heartbeat_interval)
