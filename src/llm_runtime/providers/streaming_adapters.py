"""Streaming response normalization.

Providers deliver partial output in different framings:
- OpenAI-compatible servers, Anthropic, Google, HuggingFace: Server-Sent Events
  (SSE) with "data:" prefix
- Ollama: JSON Lines format (one JSON object per line)
- Generic: Plain text streaming

The adapters here decode the transport bytes, split them into frames and
convert each frame into ``StreamingChatResponse`` events: one event per
non-empty text delta, followed by exactly one terminal event that carries
the finish reason and, when the provider reports it, the final usage.
"""

from __future__ import annotations

import codecs
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .exceptions import APIError, InvalidResponseError
from .unified_models import (
    ChatResponse,
    FinishReason,
    StreamingChatResponse,
    TokenUsage,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFER_SIZE = 1024 * 1024


class StreamingFormat(Enum):
    """Types of streaming response formats supported by different providers."""
    SSE = "sse"              # Server-Sent Events (OpenAI-compatible, Anthropic)
    JSON_LINES = "json_lines" # JSON Lines format (Ollama)
    PLAIN_TEXT = "plain_text" # Simple text streaming (fallback)


@dataclass
class StreamEvent:
    """What one parsed frame contributes to the stream."""

    delta: str = ""
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    model: str | None = None
    id: str | None = None
    done: bool = False  # transport-level end marker


async def iter_lines(
    byte_stream: AsyncIterable[bytes | str],
    delimiter: str = "\n",
    max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
) -> AsyncIterator[str]:
    """Decode a byte stream incrementally and yield complete lines.

    The trailing partial line stays buffered until more data arrives and is
    flushed when the stream ends. Multibyte UTF-8 sequences split across
    chunks are decoded correctly.

    Raises:
        InvalidResponseError: If an unterminated line exceeds ``max_buffer_size``
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in byte_stream:
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        *lines, buffer = buffer.split(delimiter)
        for line in lines:
            yield line.rstrip("\r")
        if len(buffer) > max_buffer_size:
            raise InvalidResponseError(
                f"Stream line exceeded buffer limit of {max_buffer_size} characters"
            )

    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer.rstrip("\r")


def parse_openai_usage(data: dict[str, Any] | None) -> TokenUsage | None:
    """Usage block of OpenAI-compatible responses, including DeepSeek cache fields."""
    if not data:
        return None
    details = data.get("prompt_tokens_details") or {}
    return TokenUsage(
        input_tokens=int(data.get("prompt_tokens", 0) or 0),
        output_tokens=int(data.get("completion_tokens", 0) or 0),
        total_tokens=data.get("total_tokens"),
        cache_tokens_read=int(
            data.get("prompt_cache_hit_tokens", details.get("cached_tokens", 0)) or 0
        ),
        cache_tokens_write=int(data.get("prompt_cache_miss_tokens", 0) or 0),
    )


def parse_anthropic_usage(data: dict[str, Any] | None) -> TokenUsage | None:
    if not data:
        return None
    return TokenUsage(
        input_tokens=int(data.get("input_tokens", 0) or 0),
        output_tokens=int(data.get("output_tokens", 0) or 0),
        cache_tokens_read=int(data.get("cache_read_input_tokens", 0) or 0),
        cache_tokens_write=int(data.get("cache_creation_input_tokens", 0) or 0),
    )


def parse_google_usage(data: dict[str, Any] | None) -> TokenUsage | None:
    """``usageMetadata`` of Gemini responses; stream frames carry running totals."""
    if not data:
        return None
    return TokenUsage(
        input_tokens=int(data.get("promptTokenCount", 0) or 0),
        output_tokens=int(data.get("candidatesTokenCount", 0) or 0),
        total_tokens=data.get("totalTokenCount"),
        cache_tokens_read=int(data.get("cachedContentTokenCount", 0) or 0),
    )


def parse_ollama_usage(data: dict[str, Any]) -> TokenUsage | None:
    if "prompt_eval_count" not in data and "eval_count" not in data:
        return None
    return TokenUsage(
        input_tokens=int(data.get("prompt_eval_count", 0) or 0),
        output_tokens=int(data.get("eval_count", 0) or 0),
    )


class StreamingAdapter(ABC):
    """Base class for streaming response adapters.

    One instance normalizes one stream: it remembers the model, id, finish
    reason and usage seen so far so they can be attached to the terminal
    event.
    """

    def __init__(self, provider: str = "unknown", model: str = "", response_id: str | None = None):
        """Initialize adapter for one stream.

        Args:
            provider: Provider name for format-specific parsing
            model: Model name used until the stream reports its own
            response_id: Id used until the stream reports its own
        """
        self.provider = provider.lower()
        self.model = model
        self.response_id = response_id or f"{self.provider}-{uuid.uuid4().hex[:12]}"
        self._finish_reason: str | None = None
        self._usage: TokenUsage | None = None

    @abstractmethod
    def parse_chunk(self, raw_chunk: str) -> StreamEvent | None:
        """Parse a raw frame.

        Args:
            raw_chunk: One line of the transport

        Returns:
            StreamEvent if the frame carries anything, None if it should be skipped

        Raises:
            ValueError: If the frame is malformed
        """

    @property
    @abstractmethod
    def format_type(self) -> StreamingFormat:
        """Get the streaming format type this adapter handles."""

    async def stream_response(
        self, byte_stream: AsyncIterable[bytes | str]
    ) -> AsyncIterator[StreamingChatResponse]:
        """Convert a provider byte stream into normalized events.

        Args:
            byte_stream: Raw transport chunks (bytes or already-decoded text)

        Yields:
            Delta events, then exactly one terminal event
        """
        async for line in self._frames(byte_stream):
            try:
                event = self.parse_chunk(line)
            except (ValueError, TypeError, AttributeError, KeyError) as e:
                # Valid JSON of the wrong shape is as malformed as broken JSON
                logger.warning(
                    f"Skipping malformed {self.provider} stream frame: "
                    f"{line[:100]}... Error: {e}"
                )
                continue
            if event is None:
                continue

            self._absorb(event)
            if event.delta:
                yield StreamingChatResponse(
                    content=event.delta,
                    model=self.model,
                    id=self.response_id,
                    delta=True,
                )
            if event.done:
                break

        yield self._terminal_event()

    def _frames(self, byte_stream: AsyncIterable[bytes | str]) -> AsyncIterator[str]:
        return iter_lines(byte_stream)

    def _absorb(self, event: StreamEvent) -> None:
        if event.model:
            self.model = event.model
        if event.id:
            self.response_id = event.id
        if event.finish_reason:
            self._finish_reason = event.finish_reason
        if event.usage is not None:
            self._usage = _merge_usage(self._usage, event.usage)

    def _terminal_event(self) -> StreamingChatResponse:
        return StreamingChatResponse(
            content="",
            model=self.model,
            id=self.response_id,
            delta=False,
            usage=self._usage,
            finish_reason=FinishReason.normalize(self._finish_reason, self.provider),
        )


def _merge_usage(current: TokenUsage | None, update: TokenUsage) -> TokenUsage:
    """Combine usage reported across several frames (Anthropic splits it)."""
    if current is None:
        return update
    # A total that differs from its own frame's sum came from the provider
    reported_total = None
    if update.total_tokens != update.input_tokens + update.output_tokens:
        reported_total = update.total_tokens
    return TokenUsage(
        input_tokens=update.input_tokens or current.input_tokens,
        output_tokens=update.output_tokens or current.output_tokens,
        total_tokens=reported_total,
        cache_tokens_read=update.cache_tokens_read or current.cache_tokens_read,
        cache_tokens_write=update.cache_tokens_write or current.cache_tokens_write,
    )


class SSEAdapter(StreamingAdapter):
    """Adapter for Server-Sent Events format.

    Server-Sent Events format uses lines like:
    data: {"choices": [{"delta": {"content": "text"}}]}
    data: [DONE]

    Different providers have different SSE data structures:
    - OpenAI-compatible: choices array with delta.content
    - Anthropic: typed events with delta.text
    - Google: candidates with content.parts, no end marker
    - HuggingFace (TGI): one token per frame
    """

    def parse_chunk(self, raw_chunk: str) -> StreamEvent | None:
        """Parse SSE line into a StreamEvent.

        Args:
            raw_chunk: Raw SSE line (e.g., "data: {json}")

        Returns:
            StreamEvent if the line carries data, None for comments,
            ``event:`` lines and blank keep-alives
        """
        line = raw_chunk.strip()
        if not line.startswith("data:"):
            return None

        data_content = line[5:].strip()
        if not data_content:
            return None

        if data_content == "[DONE]":
            return StreamEvent(done=True)

        data = json.loads(data_content)
        if not isinstance(data, dict):
            raise ValueError("SSE data is not a JSON object")

        if self.provider == "anthropic":
            return self._parse_anthropic_chunk(data)
        if self.provider == "google":
            return self._parse_google_chunk(data)
        if self.provider == "huggingface":
            return self._parse_huggingface_chunk(data)
        return self._parse_openai_chunk(data)

    def _parse_openai_chunk(self, data: dict[str, Any]) -> StreamEvent | None:
        """Parse OpenAI-compatible SSE chunk.

        Format:
        {
            "choices": [{"delta": {"content": "text"}, "finish_reason": null}],
            "model": "gpt-4",
            "id": "chatcmpl-123",
            "usage": null
        }
        """
        if "error" in data:
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise APIError(
                f"{self.provider} stream error: {message}",
                provider=self.provider,
                retryable=False,
            )

        event = StreamEvent(
            model=data.get("model"),
            id=data.get("id"),
            usage=parse_openai_usage(data.get("usage")),
        )
        choices = data.get("choices") or []
        if choices:
            choice = choices[0]
            delta = choice.get("delta") or {}
            event.delta = delta.get("content") or ""
            event.finish_reason = choice.get("finish_reason")
        return event

    def _parse_anthropic_chunk(self, data: dict[str, Any]) -> StreamEvent | None:
        """Parse Anthropic SSE event.

        Anthropic format varies by event type:
        - message_start: {"message": {"id", "model", "usage": {"input_tokens"}}}
        - content_block_delta: {"delta": {"type": "text_delta", "text": "..."}}
        - message_delta: {"delta": {"stop_reason"}, "usage": {"output_tokens"}}
        - message_stop: end of stream
        - ping: keep-alive
        """
        event_type = data.get("type")

        if event_type == "message_start":
            message = data.get("message") or {}
            return StreamEvent(
                model=message.get("model"),
                id=message.get("id"),
                usage=parse_anthropic_usage(message.get("usage")),
            )

        if event_type == "content_block_delta":
            delta = data.get("delta") or {}
            return StreamEvent(delta=delta.get("text") or "")

        if event_type == "message_delta":
            delta = data.get("delta") or {}
            return StreamEvent(
                finish_reason=delta.get("stop_reason"),
                usage=parse_anthropic_usage(data.get("usage")),
            )

        if event_type == "message_stop":
            return StreamEvent(done=True)

        if event_type == "error":
            error = data.get("error") or {}
            raise APIError(
                f"anthropic stream error: {error.get('message', 'unknown error')}",
                provider="anthropic",
                retryable=False,
                details={"error_type": error.get("type")},
            )

        logger.debug(f"Ignoring Anthropic event type: {event_type}")
        return None

    def _parse_google_chunk(self, data: dict[str, Any]) -> StreamEvent | None:
        """Parse a Gemini ``streamGenerateContent?alt=sse`` frame.

        Format:
        {
            "candidates": [{"content": {"parts": [{"text": "..."}]}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 9, "candidatesTokenCount": 4},
            "modelVersion": "gemini-1.5-flash",
            "responseId": "..."
        }

        There is no end marker; the stream ends with the connection.
        """
        if "error" in data:
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise APIError(
                f"google stream error: {message}", provider="google", retryable=False
            )

        event = StreamEvent(
            model=data.get("modelVersion"),
            id=data.get("responseId"),
            usage=parse_google_usage(data.get("usageMetadata")),
        )
        candidates = data.get("candidates") or []
        if candidates:
            candidate = candidates[0]
            parts = (candidate.get("content") or {}).get("parts") or []
            event.delta = "".join(part.get("text") or "" for part in parts)
            event.finish_reason = candidate.get("finishReason")
        return event

    def _parse_huggingface_chunk(self, data: dict[str, Any]) -> StreamEvent | None:
        """Parse a text-generation-inference token frame.

        Format:
        {"token": {"text": "Hi", "special": false}, "generated_text": null, "details": null}

        The last frame carries ``generated_text`` and ``details.finish_reason``.
        """
        if "error" in data:
            raise APIError(
                f"huggingface stream error: {data['error']}",
                provider="huggingface",
                retryable=False,
                details={"error_type": data.get("error_type")},
            )

        token = data.get("token") or {}
        details = data.get("details") or {}
        return StreamEvent(
            delta="" if token.get("special") else token.get("text") or "",
            finish_reason=details.get("finish_reason"),
            done=data.get("generated_text") is not None,
        )

    @property
    def format_type(self) -> StreamingFormat:
        return StreamingFormat.SSE


class JSONLinesAdapter(StreamingAdapter):
    """Adapter for JSON Lines format (Ollama).

    JSON Lines format sends one JSON object per line:
    {"message": {"content": "text"}, "done": false}
    {"done": true, "done_reason": "stop", "prompt_eval_count": 12, "eval_count": 40}

    The ``/api/generate`` form with a top-level ``response`` field is accepted too.
    """

    def __init__(self, provider: str = "ollama", model: str = "", response_id: str | None = None):
        super().__init__(provider, model, response_id)

    def parse_chunk(self, raw_chunk: str) -> StreamEvent | None:
        line = raw_chunk.strip()
        if not line:
            return None

        data = json.loads(line)
        if not isinstance(data, dict):
            raise ValueError("JSON line is not an object")

        if "error" in data:
            raise APIError(
                f"{self.provider} stream error: {data['error']}",
                provider=self.provider,
                retryable=False,
            )

        message = data.get("message") or {}
        text = message.get("content") or data.get("response") or ""
        done = bool(data.get("done", False))

        return StreamEvent(
            delta=text,
            model=data.get("model"),
            finish_reason=(data.get("done_reason") or "stop") if done else None,
            usage=parse_ollama_usage(data) if done else None,
            done=done,
        )

    @property
    def format_type(self) -> StreamingFormat:
        return StreamingFormat.JSON_LINES


class PlainTextAdapter(StreamingAdapter):
    """Adapter for plain text streaming (fallback).

    Every transport chunk is text; the stream ends when the transport does.
    """

    def _frames(self, byte_stream: AsyncIterable[bytes | str]) -> AsyncIterator[str]:
        return _decode_chunks(byte_stream)

    def parse_chunk(self, raw_chunk: str) -> StreamEvent | None:
        if raw_chunk:
            return StreamEvent(delta=raw_chunk)
        return None

    @property
    def format_type(self) -> StreamingFormat:
        return StreamingFormat.PLAIN_TEXT


async def _decode_chunks(byte_stream: AsyncIterable[bytes | str]) -> AsyncIterator[str]:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    async for chunk in byte_stream:
        yield decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail


class StreamingManager:
    """Selects the streaming adapter for a format or provider."""

    PROVIDER_FORMATS = {
        "anthropic": StreamingFormat.SSE,
        "ollama": StreamingFormat.JSON_LINES,
    }

    def __init__(self) -> None:
        self._adapters: dict[StreamingFormat, type[StreamingAdapter]] = {
            StreamingFormat.SSE: SSEAdapter,
            StreamingFormat.JSON_LINES: JSONLinesAdapter,
            StreamingFormat.PLAIN_TEXT: PlainTextAdapter,
        }

    def get_adapter(
        self, format_type: StreamingFormat, **kwargs: Any
    ) -> StreamingAdapter:
        """Get a fresh adapter for the specified format.

        Raises:
            ValueError: If format type is not supported
        """
        adapter_class = self._adapters.get(format_type)
        if not adapter_class:
            raise ValueError(f"Unsupported streaming format: {format_type}")
        return adapter_class(**kwargs)

    def get_adapter_for_provider(self, provider: str, **kwargs: Any) -> StreamingAdapter:
        """Get a fresh adapter for the given provider.

        OpenAI-compatible providers (openai, deepseek, mistral, vllm, llamacpp,
        ...) use SSE; unknown providers default to SSE as well since that is
        the most common framing.
        """
        provider = provider.lower()
        format_type = self.PROVIDER_FORMATS.get(provider, StreamingFormat.SSE)
        return self.get_adapter(format_type, provider=provider, **kwargs)


async def collect_stream(stream: AsyncIterable[StreamingChatResponse]) -> ChatResponse:
    """Consume a normalized stream into a single ChatResponse.

    Raises:
        InvalidResponseError: If the stream ends without a terminal event
    """
    parts: list[str] = []
    async for chunk in stream:
        if chunk.is_final:
            return ChatResponse(
                content="".join(parts),
                model=chunk.model,
                id=chunk.id,
                role=chunk.role,
                usage=chunk.usage,
                finish_reason=chunk.finish_reason,
                created=chunk.created,
                cost=chunk.cost,
            )
        parts.append(chunk.content)

    raise InvalidResponseError("Stream ended without a terminal event")
