"""Server-to-client stream events.

One JSON object per event, discriminated by ``type``. The set of events is
closed: ``StreamEvent`` is a pydantic discriminated union and both the relay
and the client only ever handle these six variants.
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

# Error string sent to a handle that was displaced by a newer connection
CONNECTION_REPLACED = "CONNECTION_REPLACED"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    timestamp: str = Field(default_factory=_now_iso)


class ConnectionEstablished(_Event):
    type: Literal["connection_established"] = "connection_established"
    account_id: str
    agent_id: str


class Ping(_Event):
    type: Literal["ping"] = "ping"


class MessageStart(_Event):
    type: Literal["message_start"] = "message_start"
    message_id: str
    agent_name: str


class ContentDelta(_Event):
    """Full accumulated text so far, not the incremental fragment."""

    type: Literal["content_delta"] = "content_delta"
    message_id: str
    content: str


class MessageComplete(_Event):
    type: Literal["message_complete"] = "message_complete"
    message_id: str
    content: str


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: str
    message_id: str | None = None


StreamEvent = Annotated[
    Union[ConnectionEstablished, Ping, MessageStart, ContentDelta, MessageComplete, ErrorEvent],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def parse_event(data: str | bytes) -> StreamEvent:
    """Parse one JSON payload into its event variant.

    Raises pydantic.ValidationError for unknown types or missing fields.
    """
    return _adapter.validate_json(data)


def dump_event(event: StreamEvent) -> str:
    return event.model_dump_json(by_alias=True, exclude_none=True)


def format_sse(event: StreamEvent) -> str:
    """Format an event as one SSE frame."""
    return f"data: {dump_event(event)}\n\n"
