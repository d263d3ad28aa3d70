"""Tests for the connection registry and its local handles."""

import asyncio

import pytest

from copychief.events import (
    CONNECTION_REPLACED,
    ConnectionEstablished,
    ContentDelta,
    ErrorEvent,
    Ping,
)
from copychief.exceptions import ConnectionClosed
from copychief.services.connections import Connection, ConnectionRegistry, connection_key


async def _drain(connection):
    return [event async for event in connection.events()]


@pytest.fixture
async def registry():
    reg = ConnectionRegistry(keepalive_interval=30.0)
    yield reg
    await reg.close_all()


async def test_register_sends_connection_established(registry):
    connection = await registry.register(7, "copywriter")

    assert connection.key == connection_key(7, "copywriter") == "7:copywriter"
    assert await registry.lookup(7, "copywriter") is connection
    assert len(registry) == 1

    connection.close()
    events = await _drain(connection)
    assert len(events) == 1
    assert isinstance(events[0], ConnectionEstablished)
    assert events[0].account_id == "7"
    assert events[0].agent_id == "copywriter"


async def test_second_registration_replaces_first(registry):
    first = await registry.register(7, "copywriter")
    second = await registry.register(7, "copywriter")

    assert first.closed
    assert not second.closed
    assert await registry.lookup(7, "copywriter") is second
    assert len(registry) == 1

    events = await _drain(first)
    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].error == CONNECTION_REPLACED


async def test_stale_unregister_leaves_successor(registry):
    first = await registry.register(7, "copywriter")
    second = await registry.register(7, "copywriter")

    assert await registry.unregister(7, "copywriter", first) is False
    assert await registry.lookup(7, "copywriter") is second

    assert await registry.unregister(7, "copywriter") is True
    assert second.closed
    assert await registry.lookup(7, "copywriter") is None
    assert await registry.unregister(7, "copywriter") is False


async def test_keys_are_per_agent_and_per_account(registry):
    a = await registry.register(7, "copywriter")
    b = await registry.register(7, "editor")
    c = await registry.register(8, "copywriter")

    assert len(registry) == 3
    assert await registry.lookup(7, "editor") is b
    assert await registry.lookup(8, "copywriter") is c
    assert not a.closed


async def test_send_to_closed_connection_raises():
    connection = Connection(1, "agent")
    connection.close()
    with pytest.raises(ConnectionClosed):
        await connection.send(Ping())


async def test_full_queue_closes_connection():
    connection = Connection(1, "agent", queue_size=2)
    await connection.send(ContentDelta(message_id="m", content="a"))
    await connection.send(ContentDelta(message_id="m", content="ab"))

    with pytest.raises(ConnectionClosed):
        await connection.send(ContentDelta(message_id="m", content="abc"))

    assert connection.closed
    events = await _drain(connection)
    # The oldest event made room for the end-of-stream marker
    assert [e.content for e in events] == ["ab"]


async def test_close_delivers_final_event():
    connection = Connection(1, "agent")
    await connection.send(Ping())
    connection.close(ErrorEvent(error="bye"))
    connection.close(ErrorEvent(error="ignored"))

    events = await _drain(connection)
    assert isinstance(events[0], Ping)
    assert events[1].error == "bye"
    assert len(events) == 2


async def test_keepalive_pings_and_unregisters_dead_stream():
    registry = ConnectionRegistry(keepalive_interval=0.01, queue_size=3)
    connection = await registry.register(7, "copywriter")

    # Nobody reads the stream: pings fill the queue, then the next one fails
    for _ in range(200):
        if len(registry) == 0:
            break
        await asyncio.sleep(0.01)

    assert len(registry) == 0
    assert connection.closed
    assert connection.last_ping_at is not None
    assert await registry.lookup(7, "copywriter") is None


async def test_keepalive_pings_reach_reader():
    registry = ConnectionRegistry(keepalive_interval=0.01)
    connection = await registry.register(7, "copywriter")

    received = []
    async for event in connection.events():
        received.append(event)
        if isinstance(event, Ping):
            break

    assert isinstance(received[0], ConnectionEstablished)
    assert isinstance(received[-1], Ping)
    await registry.close_all()
    assert len(registry) == 0
