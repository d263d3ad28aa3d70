"""Connection registry: open event streams keyed by (account, agent).

At most one live handle exists per key. Registering a second stream for the
same key replaces the first, which receives a CONNECTION_REPLACED error event
and is closed. Each handle owns a bounded outbound queue that the HTTP layer
drains into the response body, plus a keep-alive task that pings every
``keepalive_interval`` seconds and unregisters the handle once a ping cannot
be delivered.

The key-to-handle mapping lives in an injected store: in-memory for a single
process, or the Redis broker in copychief.services.connection_broker when
several instances share traffic.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Protocol

from copychief.events import CONNECTION_REPLACED, ConnectionEstablished, ErrorEvent, Ping, StreamEvent
from copychief.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)


def connection_key(account_id: int | str, agent_id: str) -> str:
    return f"{account_id}:{agent_id}"


class EventSink(Protocol):
    """Anything the relay can push events to."""

    account_id: str
    agent_id: str

    async def send(self, event: StreamEvent) -> None: ...


class Connection:
    """A locally held event stream."""

    def __init__(self, account_id: int | str, agent_id: str, queue_size: int = 256):
        self.account_id = str(account_id)
        self.agent_id = agent_id
        self.opened_at = datetime.now(timezone.utc)
        self.last_ping_at: datetime | None = None
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._keepalive: asyncio.Task | None = None

    @property
    def key(self) -> str:
        return connection_key(self.account_id, self.agent_id)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: StreamEvent) -> None:
        """Enqueue an event for the client.

        A full queue means the client stopped reading; the handle is closed
        and treated like a disconnect.
        """
        if self._closed:
            raise ConnectionClosed(f"Connection {self.key} is closed")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Outbound queue full for %s, closing connection", self.key)
            self.close()
            raise ConnectionClosed(f"Connection {self.key} is not draining") from None

    def close(self, final_event: StreamEvent | None = None) -> None:
        """Close the handle. ``final_event`` is delivered before end of stream."""
        if self._closed:
            return
        self._closed = True
        if self._keepalive is not None and self._keepalive is not asyncio.current_task():
            self._keepalive.cancel()
        if final_event is not None:
            self._force_put(final_event)
        self._force_put(None)

    def _force_put(self, item: StreamEvent | None) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                # Drop the oldest undelivered event to make room for the terminal ones
                self._queue.get_nowait()

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield queued events until the handle is closed."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def start_keepalive(
        self,
        interval: float,
        on_dead: Callable[["Connection"], Awaitable[None]],
        on_ping: Callable[["Connection"], Awaitable[None]] | None = None,
    ) -> None:
        self._keepalive = asyncio.create_task(
            self._keepalive_loop(interval, on_dead, on_ping), name=f"keepalive-{self.key}"
        )

    async def _keepalive_loop(self, interval, on_dead, on_ping) -> None:
        while not self._closed:
            await asyncio.sleep(interval)
            try:
                await self.send(Ping())
            except ConnectionClosed:
                logger.info("Keep-alive failed for %s, unregistering", self.key)
                await on_dead(self)
                return
            self.last_ping_at = datetime.now(timezone.utc)
            if on_ping is not None:
                await on_ping(self)


class ConnectionStore(Protocol):
    async def put(self, key: str, connection: Connection) -> Connection | None:
        """Store ``connection`` under ``key``; return the local handle it displaced."""

    async def get(self, key: str) -> EventSink | None: ...

    async def remove(self, key: str, connection: Connection) -> bool:
        """Remove ``connection`` only if it is still the handle for ``key``."""

    async def touch(self, key: str, connection: Connection) -> None: ...

    def local_connections(self) -> list[Connection]: ...


class InMemoryConnectionStore:
    """Process-local store. Correct for a single relay instance."""

    def __init__(self):
        self._connections: dict[str, Connection] = {}

    async def put(self, key: str, connection: Connection) -> Connection | None:
        previous = self._connections.get(key)
        self._connections[key] = connection
        return previous

    async def get(self, key: str) -> EventSink | None:
        return self._connections.get(key)

    async def remove(self, key: str, connection: Connection) -> bool:
        if self._connections.get(key) is connection:
            del self._connections[key]
            return True
        return False

    async def touch(self, key: str, connection: Connection) -> None:
        return None

    def local_connections(self) -> list[Connection]:
        return list(self._connections.values())


class ConnectionRegistry:
    """Registers, looks up and retires event stream handles."""

    def __init__(
        self,
        store: ConnectionStore | None = None,
        keepalive_interval: float = 30.0,
        queue_size: int = 256,
    ):
        self._store = store or InMemoryConnectionStore()
        self._keepalive_interval = keepalive_interval
        self._queue_size = queue_size

    async def register(self, account_id: int | str, agent_id: str) -> Connection:
        """Open a handle, replacing and closing any previous one for the key."""
        connection = Connection(account_id, agent_id, queue_size=self._queue_size)
        previous = await self._store.put(connection.key, connection)
        if previous is not None and previous is not connection:
            logger.info("Replacing connection %s", connection.key)
            previous.close(ErrorEvent(error=CONNECTION_REPLACED))

        await connection.send(
            ConnectionEstablished(account_id=connection.account_id, agent_id=agent_id)
        )
        connection.start_keepalive(
            self._keepalive_interval, on_dead=self._on_dead, on_ping=self._on_ping
        )
        logger.info("Connection registered: %s", connection.key)
        return connection

    async def lookup(self, account_id: int | str, agent_id: str) -> EventSink | None:
        return await self._store.get(connection_key(account_id, agent_id))

    async def unregister(
        self, account_id: int | str, agent_id: str, connection: Connection | None = None
    ) -> bool:
        """Close and drop the handle for (account, agent).

        With ``connection`` given, only that handle is removed, so a late
        disconnect of a replaced handle leaves its successor alone.
        """
        key = connection_key(account_id, agent_id)
        if connection is None:
            current = await self._store.get(key)
            if not isinstance(current, Connection):
                return False
            connection = current
        connection.close()
        removed = await self._store.remove(key, connection)
        if removed:
            logger.info("Connection unregistered: %s", connection.key)
        return removed

    async def close_all(self) -> None:
        for connection in self._store.local_connections():
            await self.unregister(connection.account_id, connection.agent_id, connection)

    def __len__(self) -> int:
        return len(self._store.local_connections())

    async def _on_dead(self, connection: Connection) -> None:
        await self.unregister(connection.account_id, connection.agent_id, connection)

    async def _on_ping(self, connection: Connection) -> None:
        await self._store.touch(connection.key, connection)
