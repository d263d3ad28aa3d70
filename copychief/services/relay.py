"""Streaming relay: one send request in, one streamed assistant turn out.

Every exchange walks a small state machine:

    IDLE -> VALIDATING -> STREAMING -> FINALIZING -> DONE
                 \\____________\\____________\\______-> ERRORED

The send request is answered only after the turn ends, but the answer text
never travels in that response: it is forwarded to the caller's registered
event stream as full-text-so-far deltas while the provider produces it.

Ordering inside VALIDATING matters: the connection lookup happens before the
token reservation, and both happen before the provider is called, so an
answer is never generated (or billed) when nobody can receive it.
"""

import asyncio
import contextlib
import enum
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from copychief.events import ContentDelta, ErrorEvent, MessageComplete, MessageStart, StreamEvent
from copychief.exceptions import (
    BadRequest,
    ConnectionClosed,
    CopyChiefError,
    ExchangeSuperseded,
    InvalidTransition,
    NoActiveConnection,
)
from copychief.services.connections import ConnectionRegistry, EventSink
from copychief.services.ledger import Reservation, TokenLedger
from copychief.services.provider import CompletionProvider, Usage, build_messages, truncate
from copychief.services.usage_committer import ReleaseJob, UsageCommit, UsageCommitter

logger = logging.getLogger(__name__)


class ExchangeState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    ERRORED = "errored"


_TRANSITIONS: dict[ExchangeState, set[ExchangeState]] = {
    ExchangeState.IDLE: {ExchangeState.VALIDATING, ExchangeState.ERRORED},
    ExchangeState.VALIDATING: {ExchangeState.STREAMING, ExchangeState.ERRORED},
    ExchangeState.STREAMING: {ExchangeState.FINALIZING, ExchangeState.ERRORED},
    ExchangeState.FINALIZING: {ExchangeState.DONE, ExchangeState.ERRORED},
    ExchangeState.DONE: set(),
    ExchangeState.ERRORED: set(),
}


class SendRequest(BaseModel):
    """Body of POST /chat/send. ``agentId`` defaults to ``agentName``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str
    agent_prompt: str
    agent_name: str
    user_id: str
    session_id: str
    is_custom_agent: bool = False
    agent_id: str | None = None
    chat_history: list[dict] | None = None

    @property
    def target_agent(self) -> str:
        return self.agent_id or self.agent_name

    @classmethod
    def parse(cls, body: Any) -> "SendRequest":
        """Validate a raw JSON body, reporting every missing field by wire name."""
        if not isinstance(body, dict):
            raise BadRequest("Request body must be a JSON object")
        required = ("message", "agentPrompt", "agentName", "userId", "sessionId")
        missing = [name for name in required if body.get(name) in (None, "")]
        if missing:
            raise BadRequest("Missing required fields", missing_fields=missing)
        try:
            return cls.model_validate(body)
        except ValidationError as e:
            raise BadRequest(f"Invalid request: {e.errors()[0].get('msg', 'validation failed')}") from e


@dataclass
class Exchange:
    account_id: int
    session_id: str
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: ExchangeState = ExchangeState.IDLE
    content: str = ""

    def advance(self, new_state: ExchangeState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Exchange {self.message_id}: {self.state.value} -> {new_state.value}"
            )
        logger.debug("Exchange %s: %s -> %s", self.message_id, self.state.value, new_state.value)
        self.state = new_state

    def fail(self) -> None:
        if self.state not in (ExchangeState.DONE, ExchangeState.ERRORED):
            self.advance(ExchangeState.ERRORED)


@dataclass(frozen=True)
class SendResult:
    message_id: str
    tokens_used: int
    estimated: bool = False

    def to_payload(self) -> dict:
        return {"success": True, "messageId": self.message_id, "tokensUsed": self.tokens_used}


@dataclass
class _InFlight:
    exchange: Exchange
    task: asyncio.Task | None = None
    superseded: bool = False
    # Set once the exchange has fully settled, including its token hold
    finished: asyncio.Event = field(default_factory=asyncio.Event)


class StreamingRelay:
    """Runs exchanges; at most one in flight per (account, session)."""

    def __init__(
        self,
        ledger: TokenLedger,
        registry: ConnectionRegistry,
        provider: CompletionProvider,
        committer: UsageCommitter,
        fallback_token_factor: float = 1.3,
        max_system_prompt_chars: int = 100_000,
        max_turn_chars: int = 20_000,
        history_turns: int = 15,
    ):
        self._ledger = ledger
        self._registry = registry
        self._provider = provider
        self._committer = committer
        self._factor = fallback_token_factor
        self._max_system_prompt_chars = max_system_prompt_chars
        self._max_turn_chars = max_turn_chars
        self._history_turns = history_turns
        self._inflight: dict[tuple[int, str], _InFlight] = {}

    def in_flight(self, account_id: int, session_id: str) -> Exchange | None:
        entry = self._inflight.get((account_id, session_id))
        return entry.exchange if entry else None

    async def send(self, request: SendRequest, account_id: int) -> SendResult:
        """Run one exchange to completion, superseding any in flight on the session."""
        key = (account_id, request.session_id)
        entry = _InFlight(Exchange(account_id=account_id, session_id=request.session_id))
        previous = self._inflight.get(key)
        self._inflight[key] = entry
        try:
            if previous is not None:
                logger.info(
                    "Superseding exchange %s on session %s",
                    previous.exchange.message_id, request.session_id,
                )
                previous.superseded = True
                if previous.task is not None:
                    previous.task.cancel()
                # The old hold must be settled before this exchange reserves
                await previous.finished.wait()
            if entry.superseded:
                raise ExchangeSuperseded(
                    f"Exchange {entry.exchange.message_id} was superseded before it started"
                )

            entry.task = asyncio.create_task(
                self._run(entry.exchange, request), name=f"exchange-{entry.exchange.message_id}"
            )
            try:
                return await entry.task
            except asyncio.CancelledError:
                if entry.superseded:
                    raise ExchangeSuperseded(
                        f"Exchange {entry.exchange.message_id} was superseded by a newer message"
                    ) from None
                raise
        finally:
            entry.finished.set()
            if self._inflight.get(key) is entry:
                del self._inflight[key]

    async def _run(self, exchange: Exchange, request: SendRequest) -> SendResult:
        exchange.advance(ExchangeState.VALIDATING)
        connection = await self._registry.lookup(exchange.account_id, request.target_agent)
        if connection is None:
            exchange.fail()
            logger.warning(
                "Send rejected, no stream for account=%d agent=%s",
                exchange.account_id, request.target_agent,
            )
            raise NoActiveConnection(
                f"No open event stream for agent {request.target_agent}; connect before sending"
            )

        feature = "custom_agent" if request.is_custom_agent else "chat_message"
        try:
            reservation = await self._ledger.reserve_and_check(
                exchange.account_id, self._ledger.estimate_cost(feature), feature
            )
        except CopyChiefError as e:
            exchange.fail()
            await self._notify(connection, ErrorEvent(error=e.code, message_id=exchange.message_id))
            raise

        exchange.advance(ExchangeState.STREAMING)
        usage: Usage | None = None
        try:
            await connection.send(
                MessageStart(message_id=exchange.message_id, agent_name=request.agent_name)
            )
            system = truncate(request.agent_prompt, self._max_system_prompt_chars)
            messages = build_messages(
                request.message,
                request.chat_history,
                max_turns=self._history_turns,
                max_turn_chars=self._max_turn_chars,
            )
            async with contextlib.aclosing(self._provider.stream(system, messages)) as chunks:
                async for chunk in chunks:
                    if chunk.usage is not None:
                        usage = chunk.usage
                    if chunk.text:
                        exchange.content += chunk.text
                        await connection.send(
                            ContentDelta(message_id=exchange.message_id, content=exchange.content)
                        )
        except asyncio.CancelledError:
            exchange.fail()
            await self._settle_partial(exchange, request, reservation, feature)
            await self._notify(
                connection,
                ErrorEvent(error=ExchangeSuperseded.code, message_id=exchange.message_id),
            )
            raise
        except ConnectionClosed:
            exchange.fail()
            logger.info("Stream closed mid-exchange %s, stopping provider", exchange.message_id)
            await self._settle_partial(exchange, request, reservation, feature)
            raise
        except CopyChiefError as e:
            exchange.fail()
            logger.error("Exchange %s failed: %s", exchange.message_id, e)
            await self._settle_partial(exchange, request, reservation, feature)
            await self._notify(connection, ErrorEvent(error=str(e), message_id=exchange.message_id))
            raise

        exchange.advance(ExchangeState.FINALIZING)
        commit = self._usage_commit(exchange, request, reservation, feature, usage)
        self._committer.submit(commit)
        await self._notify(
            connection, MessageComplete(message_id=exchange.message_id, content=exchange.content)
        )
        exchange.advance(ExchangeState.DONE)
        total = commit.prompt_tokens + commit.completion_tokens
        logger.info(
            "Exchange %s done: account=%d tokens=%d estimated=%s",
            exchange.message_id, exchange.account_id, total, commit.estimated,
        )
        return SendResult(message_id=exchange.message_id, tokens_used=total, estimated=commit.estimated)

    def estimate_usage(self, message: str, response: str) -> Usage:
        """Character-length fallback for providers that report no usage."""
        total = math.ceil(len(message + response) * self._factor)
        prompt = min(total, math.ceil(len(message) * self._factor))
        return Usage(prompt_tokens=prompt, completion_tokens=total - prompt)

    def _usage_commit(
        self,
        exchange: Exchange,
        request: SendRequest,
        reservation: Reservation,
        feature: str,
        usage: Usage | None,
    ) -> UsageCommit:
        estimated = usage is None
        if usage is None:
            usage = self.estimate_usage(request.message, exchange.content)
        return UsageCommit(
            account_id=exchange.account_id,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            feature=feature,
            exchange_id=exchange.message_id,
            reservation_id=reservation.id,
            estimated=estimated,
            model=self._provider.model,
        )

    async def _settle_partial(
        self, exchange: Exchange, request: SendRequest, reservation: Reservation, feature: str
    ) -> None:
        """Bill what was generated before an abort, or release the hold if nothing was.

        Provider failures count as aborts too. Settles inline so a superseding
        exchange reserves against the freed balance.
        """
        if exchange.content:
            job = self._usage_commit(exchange, request, reservation, feature, None)
        else:
            job = ReleaseJob(reservation.id)
        await self._committer.settle_now(job)

    async def _notify(self, connection: EventSink, event: StreamEvent) -> None:
        try:
            await connection.send(event)
        except ConnectionClosed:
            logger.info("Could not deliver %s event, stream already closed", event.type)

    async def cancel_all(self) -> None:
        tasks = [entry.task for entry in self._inflight.values() if entry.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
