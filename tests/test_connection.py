"""Tests for signage_player.connection."""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import socketio

from signage_player import connection as connection_module
from signage_player.connection import (
    SignageConnection,
    memory_usage,
    seconds_until_next_minute,
)
from signage_player.models import DeviceIdentity, MessageType


def _client_factory(clients, connect_effect=None):
    """Factory producing mock Socket.IO clients, recorded in *clients*."""
    def make(**kwargs):
        client = MagicMock()
        client.connected = False
        client.connect = AsyncMock(side_effect=connect_effect)
        client.disconnect = AsyncMock()
        client.emit = AsyncMock()
        client.options = kwargs
        clients.append(client)
        return client
    return make


def _connection(clients, **kwargs):
    return SignageConnection(
        "http://dash.test",
        asyncio.Queue(),
        reconnect_delay=0.01,
        client_factory=_client_factory(clients, **kwargs),
    )


# ----- helpers -----


def test_build_query_without_identity():
    """Unpaired devices only identify their client type."""
    assert SignageConnection.build_query(None) == {"type": "client-player"}


def test_build_query_with_token():
    identity = DeviceIdentity(id="d1", token="secret")
    assert SignageConnection.build_query(identity) == {
        "type": "client-player",
        "token": "secret",
        "deviceId": "d1",
    }


def test_build_query_ignores_identity_without_token():
    identity = DeviceIdentity(id="d1", token="")
    assert SignageConnection.build_query(identity) == {"type": "client-player"}


def test_seconds_until_next_minute():
    assert seconds_until_next_minute(datetime(2026, 1, 1, 12, 0, 45)) == 15
    assert seconds_until_next_minute(datetime(2026, 1, 1, 12, 0, 0)) == 60


def test_memory_usage_reports_bytes():
    usage = memory_usage()
    assert set(usage) == {"ram", "ramTotal"}
    assert usage["ramTotal"] >= usage["ram"] > 0


# ----- connect / reconnect -----


@pytest.mark.asyncio
async def test_connect_passes_credentials_in_query():
    """The token and device id travel as query parameters."""
    clients = []
    conn = _connection(clients)
    await conn.connect(DeviceIdentity(id="d1", token="secret"))

    client = clients[0]
    url = client.connect.await_args.args[0]
    assert url == "http://dash.test?type=client-player&token=secret&deviceId=d1"
    assert client.options["reconnection"] is True
    assert client.options["reconnection_delay"] == 0.01
    client.on.assert_any_call("message", conn._on_message)
    client.on.assert_any_call("connect", conn._on_connect)
    await conn.disconnect()


@pytest.mark.asyncio
async def test_connect_replaces_previous_client():
    """A new connect closes the old socket first."""
    clients = []
    conn = _connection(clients)
    await conn.connect(None)
    await conn.connect(DeviceIdentity(id="d1", token="t"))

    assert len(clients) == 2
    clients[0].disconnect.assert_awaited_once()
    await conn.disconnect()


@pytest.mark.asyncio
async def test_failed_connect_retries():
    """An unreachable server is retried after the reconnect delay."""
    clients = []
    conn = _connection(
        clients, connect_effect=[socketio.exceptions.ConnectionError("down"), None]
    )
    await conn.connect(None)
    await asyncio.sleep(0.05)

    assert clients[0].connect.await_count == 2
    await conn.disconnect()


@pytest.mark.asyncio
async def test_server_disconnect_reconnects():
    """A server-initiated disconnect is followed by a reconnect."""
    clients = []
    conn = _connection(clients)
    await conn.connect(None)
    await conn._on_disconnect("io server disconnect")
    await asyncio.sleep(0.05)

    assert clients[0].connect.await_count == 2
    await conn.disconnect()


@pytest.mark.asyncio
async def test_disconnect_stops_retries():
    clients = []
    conn = _connection(
        clients, connect_effect=socketio.exceptions.ConnectionError("down")
    )
    await conn.connect(None)
    await conn.disconnect()
    await asyncio.sleep(0.05)

    assert clients[0].connect.await_count == 1
    assert conn.is_connected is False


@pytest.mark.asyncio
async def test_reconnect_when_connected_requests_state():
    """Foreground resume on a live socket just asks for the state again."""
    clients = []
    conn = _connection(clients)
    await conn.connect(None)
    clients[0].connected = True

    await conn.reconnect()
    clients[0].emit.assert_awaited_with("get_playback_state", None)
    await conn.disconnect()


# ----- messages -----


@pytest.mark.asyncio
async def test_on_connect_requests_playback_state():
    clients = []
    conn = _connection(clients)
    await conn.connect(None)
    clients[0].connected = True

    await conn._on_connect()
    clients[0].emit.assert_awaited_once_with("get_playback_state", None)
    await conn.disconnect()


@pytest.mark.asyncio
async def test_message_is_queued():
    """Inbound messages are parsed and put on the event queue."""
    conn = _connection([])
    await conn._on_message({"type": "register", "payload": {"code": "ABC"}})

    message = conn._events.get_nowait()
    assert message.type == MessageType.REGISTER
    assert message.payload.code == "ABC"


@pytest.mark.asyncio
async def test_malformed_message_is_dropped():
    conn = _connection([])
    await conn._on_message({"type": "dance"})
    await conn._on_message("not a message")
    assert conn._events.empty()


@pytest.mark.asyncio
async def test_emit_offline_returns_false():
    conn = _connection([])
    assert await conn.emit("heartbeat", {}) is False


@pytest.mark.asyncio
async def test_emit_error_returns_false():
    clients = []
    conn = _connection(clients)
    await conn.connect(None)
    clients[0].connected = True
    clients[0].emit.side_effect = socketio.exceptions.BadNamespaceError("/")

    assert await conn.emit("heartbeat", {}) is False
    await conn.disconnect()


# ----- heartbeat -----


@pytest.mark.asyncio
async def test_heartbeat_sends_memory_then_state(monkeypatch):
    """A heartbeat reports memory and re-requests the playback state."""
    monkeypatch.setattr(connection_module, "memory_usage", lambda: {"ram": 1, "ramTotal": 2})
    clients = []
    conn = _connection(clients)
    await conn.connect(None)
    clients[0].connected = True

    await conn.send_heartbeat()
    calls = [call.args for call in clients[0].emit.await_args_list]
    assert calls == [("heartbeat", {"ram": 1, "ramTotal": 2}), ("get_playback_state", None)]
    await conn.disconnect()


@pytest.mark.asyncio
async def test_heartbeat_loop_sends_immediately():
    clients = []
    conn = _connection(clients)
    await conn.connect(None)
    clients[0].connected = True

    conn.start_heartbeat()
    await asyncio.sleep(0.01)
    events = [call.args[0] for call in clients[0].emit.await_args_list]
    assert events[:2] == ["heartbeat", "get_playback_state"]

    conn.stop_heartbeat()
    await conn.disconnect()


@pytest.mark.asyncio
async def test_heartbeat_skipped_when_offline():
    clients = []
    conn = _connection(clients)
    await conn.connect(None)

    await conn.send_heartbeat()
    clients[0].emit.assert_not_awaited()
    await conn.disconnect()
