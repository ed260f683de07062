from __future__ import annotations

import asyncio

import pytest

from wagateway.keepalive import KeepAliveMonitor, build_ping_node
from wagateway.protocol import WS_CLOSED, WS_OPEN

from .fakes import FakeSocket


def test_ping_node_shape():
    socket = FakeSocket()
    node = build_ping_node(socket)
    assert node["tag"] == "iq"
    assert node["attrs"]["xmlns"] == "w:p"
    assert node["attrs"]["to"] == "s.whatsapp.net"
    assert node["attrs"]["type"] == "get"
    assert node["attrs"]["id"] == "tag-1"


@pytest.mark.anyio
async def test_tick_pings_only_open_sockets():
    socket = FakeSocket()
    monitor = KeepAliveMonitor("a", socket, interval=60)

    socket.ws_ready_state = WS_CLOSED
    assert await monitor.tick() is True
    assert socket.queries == []

    socket.ws_ready_state = WS_OPEN
    assert await monitor.tick() is True
    assert len(socket.queries) == 1


@pytest.mark.anyio
async def test_tick_disarms_when_connection_closed():
    socket = FakeSocket()
    socket.ws_ready_state = WS_OPEN
    socket.query_error = RuntimeError("Connection Closed")
    monitor = KeepAliveMonitor("a", socket, interval=60)
    assert await monitor.tick() is False
    assert await monitor.tick() is False


@pytest.mark.anyio
async def test_tick_survives_transient_errors():
    socket = FakeSocket()
    socket.ws_ready_state = WS_OPEN
    socket.query_error = TimeoutError("timed out")
    monitor = KeepAliveMonitor("a", socket, interval=60)
    assert await monitor.tick() is True


@pytest.mark.anyio
async def test_monitor_runs_until_cancelled():
    socket = FakeSocket()
    socket.ws_ready_state = WS_OPEN
    monitor = KeepAliveMonitor("a", socket, interval=0.01)
    monitor.start()
    assert monitor.active
    await asyncio.sleep(0.05)
    monitor.cancel()
    await monitor.wait_closed()
    assert not monitor.active
    assert socket.queries


@pytest.mark.anyio
async def test_monitor_stops_itself_on_closed_connection():
    socket = FakeSocket()
    socket.ws_ready_state = WS_OPEN
    socket.query_error = RuntimeError("connection closed")
    monitor = KeepAliveMonitor("a", socket, interval=0.01)
    monitor.start()
    await asyncio.sleep(0.05)
    assert not monitor.active
    await monitor.wait_closed()
