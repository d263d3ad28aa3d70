"""Wiring for the long-lived relay services.

One ChatRuntime per process holds the registry, ledger, commit worker and
relay. main.py builds it in the lifespan handler and stores it on
``app.state.runtime``; routes reach it through the ``get_runtime`` dependency.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from copychief.config import settings
from copychief.retry import RetryPolicy
from copychief.services.connection_broker import RedisConnectionStore
from copychief.services.connections import ConnectionRegistry, ConnectionStore, InMemoryConnectionStore
from copychief.services.ledger import TokenLedger
from copychief.services.provider import CompletionProvider, build_provider
from copychief.services.relay import StreamingRelay
from copychief.services.thresholds import ThresholdWatcher
from copychief.services.usage_committer import UsageCommitter

logger = logging.getLogger(__name__)


@dataclass
class ChatRuntime:
    store: ConnectionStore
    registry: ConnectionRegistry
    watcher: ThresholdWatcher
    ledger: TokenLedger
    committer: UsageCommitter
    relay: StreamingRelay
    _sweeper: asyncio.Task | None = field(default=None, repr=False)

    async def start(self) -> None:
        if isinstance(self.store, RedisConnectionStore):
            await self.store.start()
        self.committer.start()
        self._sweeper = asyncio.create_task(
            self.ledger.run_sweeper(settings.reservation_sweep_interval_seconds),
            name="reservation-sweeper",
        )
        logger.info("Chat runtime started")

    async def stop(self) -> None:
        await self.relay.cancel_all()
        await self.registry.close_all()
        await self.committer.stop()
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        if isinstance(self.store, RedisConnectionStore):
            await self.store.stop()
        logger.info("Chat runtime stopped")


def build_store() -> ConnectionStore:
    if settings.connection_backend == "redis":
        return RedisConnectionStore.from_url(
            settings.redis_url, owner_ttl_seconds=int(settings.keepalive_interval_seconds * 3)
        )
    if settings.connection_backend == "memory":
        return InMemoryConnectionStore()
    raise ValueError(f"Unknown connection backend: {settings.connection_backend}")


def build_runtime(
    session_factory: async_sessionmaker[AsyncSession],
    provider: CompletionProvider | None = None,
    store: ConnectionStore | None = None,
    commit_policy: RetryPolicy | None = None,
) -> ChatRuntime:
    store = store or build_store()
    registry = ConnectionRegistry(
        store,
        keepalive_interval=settings.keepalive_interval_seconds,
        queue_size=settings.connection_queue_size,
    )
    watcher = ThresholdWatcher()
    ledger = TokenLedger(
        session_factory,
        watcher=watcher,
        default_estimate=settings.default_feature_estimate,
        reservation_ttl_seconds=settings.reservation_ttl_seconds,
    )
    committer = UsageCommitter(
        ledger,
        commit_policy
        or RetryPolicy(
            max_attempts=settings.usage_commit_max_attempts,
            base_delay=settings.usage_commit_base_delay_seconds,
            max_delay=settings.usage_commit_max_delay_seconds,
            jitter=0.2,
        ),
    )
    relay = StreamingRelay(
        ledger,
        registry,
        provider or build_provider(),
        committer,
        fallback_token_factor=settings.fallback_token_factor,
        max_system_prompt_chars=settings.max_system_prompt_chars,
        max_turn_chars=settings.max_turn_chars,
        history_turns=settings.chat_history_turns,
    )
    return ChatRuntime(
        store=store,
        registry=registry,
        watcher=watcher,
        ledger=ledger,
        committer=committer,
        relay=relay,
    )


def get_runtime(request: Request) -> ChatRuntime:
    """Dependency returning the process-wide runtime."""
    return request.app.state.runtime
