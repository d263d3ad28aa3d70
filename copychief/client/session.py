"""Consumer side of the relay: one event stream plus independent sends.

StreamingChatSession keeps a single event stream open for an (account, agent)
pair and applies incoming events to a local ChatState. Sends are separate
HTTP requests; the reply text arrives on the stream, never in the send
response. The two legs fail independently: a dropped stream reconnects with
bounded backoff, a failed send rolls back its optimistic user message.
"""

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

import httpx
from pydantic import ValidationError

from copychief.config import settings
from copychief.events import (
    CONNECTION_REPLACED,
    ConnectionEstablished,
    ContentDelta,
    ErrorEvent,
    MessageComplete,
    MessageStart,
    Ping,
    StreamEvent,
    parse_event,
)
from copychief.exceptions import (
    ExchangeSuperseded,
    SendRejected,
    StreamConnectionError,
    error_from_response,
)
from copychief.retry import RetryPolicy
from copychief.sse import iter_sse_data

logger = logging.getLogger(__name__)


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"  # gave up; only reconnect() restarts


@dataclass
class ChatMessage:
    id: str
    role: str
    content: str
    is_streaming: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ChatState:
    """Local transcript. Deltas replace content, so re-applying one is a no-op."""

    def __init__(self):
        self.messages: list[ChatMessage] = []
        self.is_typing = False
        self.last_error: str | None = None

    def get(self, message_id: str) -> ChatMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def add_user_message(self, content: str) -> ChatMessage:
        message = ChatMessage(id=f"user-{uuid.uuid4().hex}", role="user", content=content)
        self.messages.append(message)
        return message

    def remove(self, message_id: str) -> None:
        self.messages = [m for m in self.messages if m.id != message_id]

    def clear(self) -> None:
        self.messages = []
        self.is_typing = False
        self.last_error = None

    def _assistant(self, message_id: str) -> ChatMessage:
        message = self.get(message_id)
        if message is None:
            message = ChatMessage(id=message_id, role="assistant", content="", is_streaming=True)
            self.messages.append(message)
        return message

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, (ConnectionEstablished, Ping)):
            return
        if isinstance(event, MessageStart):
            self._assistant(event.message_id)
            self.is_typing = True
        elif isinstance(event, ContentDelta):
            message = self._assistant(event.message_id)
            message.content = event.content
            message.is_streaming = True
        elif isinstance(event, MessageComplete):
            message = self._assistant(event.message_id)
            message.content = event.content
            message.is_streaming = False
            self.is_typing = False
        elif isinstance(event, ErrorEvent):
            self.last_error = event.error
            self.is_typing = False
            if event.message_id:
                message = self.get(event.message_id)
                if message is not None:
                    message.is_streaming = False
        else:
            raise TypeError(f"Unhandled stream event: {type(event).__name__}")


class StreamingChatSession:
    def __init__(
        self,
        base_url: str,
        access_token: str,
        account_id: int | str,
        agent_id: str,
        session_id: str | None = None,
        http: httpx.AsyncClient | None = None,
        reconnect_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_event: Callable[[StreamEvent], None] | None = None,
    ):
        self.account_id = str(account_id)
        self.agent_id = agent_id
        self.session_id = session_id or uuid.uuid4().hex
        self.state = ChatState()
        self.status = ConnectionStatus.DISCONNECTED
        self.reconnect_attempts = 0
        self.replaced = False

        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(30.0, read=None))
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._policy = reconnect_policy or RetryPolicy(
            max_attempts=settings.reconnect_max_attempts,
            base_delay=settings.reconnect_base_delay_seconds,
            max_delay=settings.reconnect_max_delay_seconds,
        )
        self._sleep = sleep
        self._on_event = on_event
        self._connected = asyncio.Event()
        self._stream_task: asyncio.Task | None = None
        self._send_task: asyncio.Task | None = None
        self._superseded: set[asyncio.Task] = set()
        self._closing = False

    @property
    def is_sending(self) -> bool:
        return self._send_task is not None and not self._send_task.done()

    # --- Event stream ---

    async def connect(self) -> None:
        """Start the event stream. A no-op while one is already running."""
        if self._stream_task is not None and not self._stream_task.done():
            return
        self._closing = False
        self.replaced = False
        self.status = ConnectionStatus.CONNECTING
        self._stream_task = asyncio.create_task(self._run_stream(), name=f"stream-{self.agent_id}")

    async def reconnect(self) -> None:
        """Manual restart, e.g. after the automatic attempts gave up."""
        await self._stop_stream()
        self.reconnect_attempts = 0
        await self.connect()

    async def wait_connected(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def _run_stream(self) -> None:
        while True:
            try:
                await self._consume_stream()
                reason = "stream ended"
            except (httpx.HTTPError, StreamConnectionError) as e:
                reason = str(e) or type(e).__name__
            self._connected.clear()
            self.state.is_typing = False
            if self._closing:
                return
            if self.replaced:
                logger.info("Stream for %s replaced by another connection; not reconnecting", self.agent_id)
                self.status = ConnectionStatus.DISCONNECTED
                return

            delay = self._policy.delay_for(self.reconnect_attempts)
            if delay is None:
                logger.warning(
                    "Stream for %s lost after %d reconnect attempts: %s",
                    self.agent_id, self.reconnect_attempts, reason,
                )
                self.status = ConnectionStatus.FAILED
                return
            self.reconnect_attempts += 1
            self.status = ConnectionStatus.RECONNECTING
            logger.info(
                "Stream for %s dropped (%s), reconnecting in %.1fs (attempt %d)",
                self.agent_id, reason, delay, self.reconnect_attempts,
            )
            await self._sleep(delay)

    async def _consume_stream(self) -> None:
        async with self._http.stream(
            "GET", "/api/v1/chat/stream", params={"agentId": self.agent_id}, headers=self._headers
        ) as response:
            if response.status_code != 200:
                raise StreamConnectionError(f"Event stream returned HTTP {response.status_code}")
            async for data in iter_sse_data(response.aiter_lines()):
                try:
                    event = parse_event(data)
                except ValidationError as e:
                    logger.warning("Ignoring undecodable stream event: %s", e.errors()[0].get("msg"))
                    continue
                try:
                    self._handle(event)
                except Exception:
                    # A failing listener must not tear down the stream
                    logger.exception("Handling %s event for %s failed", event.type, self.agent_id)

    def _handle(self, event: StreamEvent) -> None:
        if isinstance(event, ConnectionEstablished):
            self.status = ConnectionStatus.CONNECTED
            self.reconnect_attempts = 0
            self._connected.set()
        elif isinstance(event, ErrorEvent) and event.error == CONNECTION_REPLACED:
            self.replaced = True
        self.state.apply(event)
        if self._on_event is not None:
            self._on_event(event)

    async def _stop_stream(self) -> None:
        self._closing = True
        if self._stream_task is not None:
            self._stream_task.cancel()
            try:
                await self._stream_task
            except asyncio.CancelledError:
                pass
            self._stream_task = None
        self._connected.clear()
        self.status = ConnectionStatus.DISCONNECTED

    # --- Sends ---

    async def send_message(
        self,
        message: str,
        agent_prompt: str,
        agent_name: str,
        is_custom_agent: bool = False,
        chat_history: list[dict] | None = None,
        supersede: bool = False,
    ) -> dict:
        """Send one message and wait for the relay to finish the turn.

        Refused while the stream is not connected, and while another send is
        in flight unless ``supersede`` is set, in which case the earlier send
        is abandoned and the relay cancels its reply.
        """
        if not message.strip():
            raise SendRejected("Message is empty")
        if self.status is not ConnectionStatus.CONNECTED:
            raise SendRejected(f"Event stream is {self.status.value}, not connected")
        if self.is_sending:
            if not supersede:
                raise SendRejected("A message is already being sent")
            self._superseded.add(self._send_task)
            self._send_task.cancel()

        user_message = self.state.add_user_message(message)
        body = {
            "message": message,
            "agentPrompt": agent_prompt,
            "agentName": agent_name,
            "isCustomAgent": is_custom_agent,
            "userId": self.account_id,
            "sessionId": self.session_id,
            "agentId": self.agent_id,
        }
        if chat_history is not None:
            body["chatHistory"] = chat_history

        task = asyncio.create_task(
            self._http.post("/api/v1/chat/send", json=body, headers=self._headers)
        )
        self._send_task = task
        try:
            response = await task
        except asyncio.CancelledError:
            if task in self._superseded:
                self._superseded.discard(task)
                raise ExchangeSuperseded("Replaced by a newer message") from None
            self.state.remove(user_message.id)
            raise
        except httpx.HTTPError as e:
            self.state.remove(user_message.id)
            raise StreamConnectionError(f"Send failed: {e}") from e
        finally:
            if self._send_task is task:
                self._send_task = None

        if not response.is_success:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            error = error_from_response(response.status_code, payload)
            if not isinstance(error, ExchangeSuperseded):
                self.state.remove(user_message.id)
            raise error
        return response.json()

    # --- Lifecycle ---

    async def close(self) -> None:
        """Cancel the stream, any pending reconnect wait and any in-flight send."""
        if self._send_task is not None and not self._send_task.done():
            self._send_task.cancel()
            try:
                await self._send_task
            except (asyncio.CancelledError, httpx.HTTPError):
                pass
        self._send_task = None
        await self._stop_stream()
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "StreamingChatSession":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
