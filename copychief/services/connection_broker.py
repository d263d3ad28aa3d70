"""Redis-backed connection store for multi-instance deployments.

Each relay instance keeps its open streams locally and advertises ownership of
every (account, agent) key in Redis:

    {prefix}:owner:{key}   -> "{instance_id}|{token}"   (TTL, refreshed by pings)
    {prefix}:instance:{id} -> pub/sub channel the owning instance listens on

A send that lands on an instance without the stream publishes the event to the
owner's channel. Registering a key owned elsewhere tells the old owner to close
its handle with CONNECTION_REPLACED. Owner keys are only deleted or refreshed
by the handle that wrote them (compare-and-delete Lua), so a late disconnect
cannot evict a newer registration.
"""

import asyncio
import json
import logging
import uuid
from typing import Any

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import NoScriptError, RedisError

from copychief.events import CONNECTION_REPLACED, ErrorEvent, StreamEvent, dump_event, parse_event
from copychief.exceptions import ConnectionClosed
from copychief.services.connections import Connection, EventSink

logger = logging.getLogger(__name__)

_LUA_SCRIPTS = {
    "compare_and_delete": """
        if redis.call('GET', KEYS[1]) == ARGV[1] then
            return redis.call('DEL', KEYS[1])
        end
        return 0
    """,
    "compare_and_expire": """
        if redis.call('GET', KEYS[1]) == ARGV[1] then
            return redis.call('EXPIRE', KEYS[1], ARGV[2])
        end
        return 0
    """,
}


class RemoteConnection:
    """Handle for a stream held by another instance."""

    def __init__(self, redis: Redis, channel: str, key: str):
        self._redis = redis
        self._channel = channel
        self.key = key
        self.account_id, _, self.agent_id = key.partition(":")

    async def send(self, event: StreamEvent) -> None:
        message = json.dumps({"key": self.key, "event": dump_event(event)})
        try:
            receivers = await self._redis.publish(self._channel, message)
        except RedisError as e:
            raise ConnectionClosed(f"Connection {self.key} unreachable: {e}") from e
        if not receivers:
            raise ConnectionClosed(f"Connection {self.key} has no live owner")


class RedisConnectionStore:
    def __init__(
        self,
        redis: Redis,
        instance_id: str | None = None,
        owner_ttl_seconds: int = 90,
        prefix: str = "copychief:conn",
    ):
        self._redis = redis
        self.instance_id = instance_id or uuid.uuid4().hex
        self._owner_ttl = owner_ttl_seconds
        self._prefix = prefix
        self._local: dict[str, Connection] = {}
        self._tokens: dict[str, str] = {}
        self._script_shas: dict[str, str] = {}
        self._pubsub: Any = None
        self._listener: asyncio.Task | None = None

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisConnectionStore":
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    def _owner_key(self, key: str) -> str:
        return f"{self._prefix}:owner:{key}"

    def _channel(self, instance_id: str) -> str:
        return f"{self._prefix}:instance:{instance_id}"

    async def start(self) -> None:
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._channel(self.instance_id))
        self._listener = asyncio.create_task(self._listen(), name="connection-broker")
        logger.info("Connection broker started: instance=%s", self.instance_id)

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
        await self._redis.aclose()

    async def put(self, key: str, connection: Connection) -> Connection | None:
        token = uuid.uuid4().hex
        previous_owner = await self._redis.set(
            self._owner_key(key), f"{self.instance_id}|{token}", ex=self._owner_ttl, get=True
        )
        previous_local = self._local.get(key)
        self._local[key] = connection
        self._tokens[key] = token

        if previous_owner:
            owner_instance = previous_owner.split("|", 1)[0]
            if owner_instance != self.instance_id:
                await self._redis.publish(
                    self._channel(owner_instance),
                    json.dumps({"key": key, "control": "replace"}),
                )
        return previous_local

    async def get(self, key: str) -> EventSink | None:
        local = self._local.get(key)
        if local is not None:
            return local
        owner = await self._redis.get(self._owner_key(key))
        if not owner:
            return None
        owner_instance = owner.split("|", 1)[0]
        if owner_instance == self.instance_id:
            # Our own stale advertisement; the handle is already gone
            return None
        return RemoteConnection(self._redis, self._channel(owner_instance), key)

    async def remove(self, key: str, connection: Connection) -> bool:
        if self._local.get(key) is not connection:
            return False
        del self._local[key]
        token = self._tokens.pop(key, None)
        if token is not None:
            await self._eval(
                "compare_and_delete", 1, self._owner_key(key), f"{self.instance_id}|{token}"
            )
        return True

    async def touch(self, key: str, connection: Connection) -> None:
        token = self._tokens.get(key)
        if self._local.get(key) is not connection or token is None:
            return
        await self._eval(
            "compare_and_expire",
            1,
            self._owner_key(key),
            f"{self.instance_id}|{token}",
            self._owner_ttl,
        )

    def local_connections(self) -> list[Connection]:
        return list(self._local.values())

    async def _eval(self, script_name: str, num_keys: int, *args: Any) -> Any:
        """EVALSHA, reloading the script once if Redis has forgotten it."""
        sha = self._script_shas.get(script_name)
        if sha is None:
            sha = await self._redis.script_load(_LUA_SCRIPTS[script_name])
            self._script_shas[script_name] = sha
        try:
            return await self._redis.evalsha(sha, num_keys, *args)
        except NoScriptError:
            logger.warning("Lua script %s missing from Redis, reloading", script_name)
            sha = await self._redis.script_load(_LUA_SCRIPTS[script_name])
            self._script_shas[script_name] = sha
            return await self._redis.evalsha(sha, num_keys, *args)

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            await self.dispatch(message["data"])

    async def dispatch(self, raw: str | bytes) -> None:
        """Deliver one broker message to the local handle it addresses."""
        try:
            payload = json.loads(raw)
            key = payload["key"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Dropping malformed broker message: %r", raw)
            return

        connection = self._local.get(key)
        if connection is None:
            logger.debug("Broker message for unknown connection %s", key)
            return

        if payload.get("control") == "replace":
            del self._local[key]
            self._tokens.pop(key, None)
            logger.info("Connection %s replaced on another instance", key)
            connection.close(ErrorEvent(error=CONNECTION_REPLACED))
            return

        try:
            event = parse_event(payload["event"])
        except (KeyError, ValidationError) as e:
            logger.warning("Dropping undecodable event for %s: %s", key, e)
            return
        try:
            await connection.send(event)
        except ConnectionClosed:
            logger.info("Broker event for closed connection %s dropped", key)
