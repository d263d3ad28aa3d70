"""Completion provider adapters: streaming text plus optional usage.

The relay only needs one thing from an LLM: an async iterator of
CompletionChunk. Two adapters produce it:

- LiteLLMProvider routes through litellm.acompletion(stream=True), which
  covers Anthropic, OpenAI and Google behind one interface.
- AnthropicProvider uses the Anthropic SDK's message stream, for deployments
  that do not want the LiteLLM layer.

Malformed chunks are skipped with a log line; transport and HTTP failures
raise ProviderError.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Protocol

import anthropic
import litellm
from anthropic import AsyncAnthropic

from copychief.config import settings
from copychief.exceptions import ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class CompletionChunk:
    """One piece of streamed output. ``usage`` is set on the chunk that reports it."""

    text: str = ""
    usage: Usage | None = None


class CompletionProvider(Protocol):
    model: str

    def stream(self, system: str, messages: list[dict]) -> AsyncIterator[CompletionChunk]: ...


# --- Prompt preparation ---

def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def build_messages(
    message: str,
    history: list[dict] | None = None,
    max_turns: int = 15,
    max_turn_chars: int = 20_000,
) -> list[dict]:
    """Recent history (oldest first) plus the new user turn, each turn truncated.

    History entries that are not user/assistant turns with text are dropped.
    """
    turns = []
    for entry in (history or [])[-max_turns:]:
        role = entry.get("role")
        content = entry.get("content")
        if role not in ("user", "assistant") or not isinstance(content, str) or not content:
            continue
        turns.append({"role": role, "content": truncate(content, max_turn_chars)})
    turns.append({"role": "user", "content": truncate(message, max_turn_chars)})
    return turns


# --- LiteLLM ---

class LiteLLMProvider:
    def __init__(
        self,
        model: str,
        api_key: str = "",
        max_tokens: int = 8000,
        temperature: float = 0.7,
        timeout: float = 120.0,
    ):
        self.model = model
        self._api_key = api_key
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout = timeout

    async def stream(self, system: str, messages: list[dict]) -> AsyncIterator[CompletionChunk]:
        kwargs = {
            "model": self.model,
            "messages": [{"role": "system", "content": system}] + messages,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "timeout": self._timeout,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self._api_key:
            kwargs["api_key"] = self._api_key

        try:
            response = await litellm.acompletion(**kwargs)
            async for chunk in response:
                parsed = _parse_litellm_chunk(chunk)
                if parsed is not None:
                    yield parsed
        except Exception as e:
            # LiteLLM maps every upstream failure to its own exception types
            logger.error("LiteLLM completion failed for %s: %s", self.model, e)
            raise ProviderError(f"Completion failed: {e}") from e


def _parse_litellm_chunk(chunk) -> CompletionChunk | None:
    try:
        text = ""
        if chunk.choices:
            text = chunk.choices[0].delta.content or ""
        usage = None
        raw_usage = getattr(chunk, "usage", None)
        if raw_usage is not None and raw_usage.prompt_tokens is not None:
            usage = Usage(
                prompt_tokens=raw_usage.prompt_tokens or 0,
                completion_tokens=raw_usage.completion_tokens or 0,
            )
    except (AttributeError, IndexError, TypeError) as e:
        logger.warning("Skipping malformed completion chunk: %s", e)
        return None
    if not text and usage is None:
        return None
    return CompletionChunk(text=text, usage=usage)


# --- Anthropic SDK ---

class AnthropicProvider:
    """Streams from the Messages API through the official SDK.

    Text arrives from ``text_stream``; the exact token counts come from the
    final message once the stream ends.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 8000,
        temperature: float = 0.7,
        timeout: float = 120.0,
        client: AsyncAnthropic | None = None,
    ):
        self.model = model
        self._api_key = api_key
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout = timeout
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            if not self._api_key:
                raise ProviderError("ANTHROPIC_API_KEY is not configured")
            self._client = AsyncAnthropic(api_key=self._api_key, timeout=self._timeout)
        return self._client

    async def stream(self, system: str, messages: list[dict]) -> AsyncIterator[CompletionChunk]:
        try:
            async with self.client.messages.stream(
                model=self.model,
                max_tokens=self._max_tokens,
                temperature=self._temperature,
                system=system,
                messages=messages,
            ) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield CompletionChunk(text=text)
                final = await stream.get_final_message()
        except anthropic.APIConnectionError as e:
            raise ProviderError(f"Completion transport error: {e}") from e
        except anthropic.APIStatusError as e:
            logger.error("Anthropic returned %d for %s: %s", e.status_code, self.model, e.message)
            raise ProviderError(f"Completion service returned {e.status_code}: {e.message}") from e
        except anthropic.APIError as e:
            raise ProviderError(f"Completion failed: {e}") from e

        yield CompletionChunk(
            usage=Usage(
                prompt_tokens=final.usage.input_tokens,
                completion_tokens=final.usage.output_tokens,
            )
        )


def build_provider() -> CompletionProvider:
    """Provider selected by ``settings.provider_backend``."""
    if settings.provider_backend == "anthropic":
        return AnthropicProvider(
            api_key=settings.anthropic_api_key,
            model=settings.chat_model,
            max_tokens=settings.chat_max_tokens,
            temperature=settings.chat_temperature,
            timeout=settings.provider_timeout_seconds,
        )
    if settings.provider_backend == "litellm":
        return LiteLLMProvider(
            model=settings.chat_model,
            api_key=settings.anthropic_api_key,
            max_tokens=settings.chat_max_tokens,
            temperature=settings.chat_temperature,
            timeout=settings.provider_timeout_seconds,
        )
    raise ValueError(f"Unknown provider backend: {settings.provider_backend}")
