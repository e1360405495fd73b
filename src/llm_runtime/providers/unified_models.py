"""Unified data models for the provider-agnostic LLM runtime.

These structures are shared by every adapter so callers see the same
message, usage and response shapes whether the request went to OpenAI,
Anthropic, Ollama or any OpenAI-compatible server.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .exceptions import InvalidRequestError


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp in the runtime."""
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    """Roles a chat message may carry."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"

    @classmethod
    def values(cls) -> set[str]:
        return {role.value for role in cls}


@dataclass(frozen=True)
class ChatMessage:
    """A single chat message. Immutable once constructed.

    ``role`` accepts a :class:`MessageRole` or its string value and is
    stored as the plain string.
    """

    role: MessageRole | str
    content: str
    name: str | None = None
    tool_calls: tuple[dict[str, Any], ...] | None = None

    def __post_init__(self) -> None:
        if isinstance(self.role, MessageRole):
            object.__setattr__(self, "role", self.role.value)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        if self.tool_calls:
            data["tool_calls"] = list(self.tool_calls)
        return data


@dataclass
class TokenUsage:
    """Token consumption for one call.

    ``total_tokens`` defaults to ``input_tokens + output_tokens``. When a
    provider reports its own total that value is kept unchanged.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int | None = None
    cache_tokens_read: int = 0
    cache_tokens_write: int = 0

    def __post_init__(self) -> None:
        if self.total_tokens is None:
            self.total_tokens = self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens or 0,
            "cache_tokens_read": self.cache_tokens_read,
            "cache_tokens_write": self.cache_tokens_write,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenUsage:
        return cls(
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            total_tokens=data.get("total_tokens"),
            cache_tokens_read=int(data.get("cache_tokens_read", 0) or 0),
            cache_tokens_write=int(data.get("cache_tokens_write", 0) or 0),
        )


def create_token_usage(
    input_tokens: int, output_tokens: int, total_tokens: int | None = None
) -> TokenUsage:
    """Build a TokenUsage, deriving the total when the provider omits it."""
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
    )


class FinishReason(Enum):
    """Standardized finish reasons across providers.

    Different providers use different terminology for why generation stopped:
    - OpenAI-compatible: "stop", "length", "tool_calls", "content_filter"
    - Anthropic: "end_turn", "max_tokens", "stop_sequence", "tool_use"
    - Ollama: "stop", "length"
    - Google: "STOP", "MAX_TOKENS", "SAFETY", "RECITATION"
    - HuggingFace TGI: "eos_token", "stop_sequence", "length"
    """

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    FUNCTION_CALL = "function_call"
    ERROR = "error"

    @classmethod
    def normalize(cls, provider_reason: str | None, provider: str = "") -> str:
        """Normalize a provider-specific finish reason.

        Args:
            provider_reason: The reason string from the provider's response
            provider: The provider name

        Returns:
            One of the FinishReason values; unknown reasons map to "stop"

        Example:
            >>> FinishReason.normalize("end_turn", "anthropic")
            'stop'
            >>> FinishReason.normalize("max_tokens", "anthropic")
            'length'
        """
        if not provider_reason:
            return cls.STOP.value

        reason = provider_reason.lower()
        if provider == "anthropic":
            mapping = {
                "end_turn": cls.STOP.value,
                "stop_sequence": cls.STOP.value,
                "max_tokens": cls.LENGTH.value,
                "tool_use": cls.TOOL_CALLS.value,
            }
            return mapping.get(reason, cls.STOP.value)

        if provider == "google":
            mapping = {
                "stop": cls.STOP.value,
                "max_tokens": cls.LENGTH.value,
                "safety": cls.CONTENT_FILTER.value,
                "recitation": cls.CONTENT_FILTER.value,
                "blocklist": cls.CONTENT_FILTER.value,
                "prohibited_content": cls.CONTENT_FILTER.value,
                "spii": cls.CONTENT_FILTER.value,
                "malformed_function_call": cls.ERROR.value,
            }
            return mapping.get(reason, cls.STOP.value)

        mapping = {
            "stop": cls.STOP.value,
            "eos": cls.STOP.value,
            "eos_token": cls.STOP.value,
            "stop_sequence": cls.STOP.value,
            "length": cls.LENGTH.value,
            "max_tokens": cls.LENGTH.value,
            "model_length": cls.LENGTH.value,
            "tool_calls": cls.TOOL_CALLS.value,
            "content_filter": cls.CONTENT_FILTER.value,
            "function_call": cls.FUNCTION_CALL.value,
            "error": cls.ERROR.value,
        }
        return mapping.get(reason, cls.STOP.value)


@dataclass
class ChatResponse:
    """Provider-agnostic non-streaming chat response."""

    content: str
    model: str
    id: str
    role: str = MessageRole.ASSISTANT.value
    usage: TokenUsage | None = None
    finish_reason: str | None = None
    created: datetime = field(default_factory=utcnow)
    cost: float | None = None


@dataclass
class StreamingChatResponse:
    """One event of a normalized stream.

    Content chunks carry only the incremental text in ``content``. The
    terminal event has ``finish_reason`` set and, when the provider
    reports it, the final ``usage``.
    """

    content: str
    model: str
    id: str
    role: str = MessageRole.ASSISTANT.value
    delta: bool = True
    usage: TokenUsage | None = None
    finish_reason: str | None = None
    created: datetime = field(default_factory=utcnow)
    cost: float | None = None

    @property
    def is_final(self) -> bool:
        return self.finish_reason is not None


@dataclass
class ModelInfo:
    """Static catalog entry for one model. Costs are per 1M tokens."""

    id: str
    name: str
    provider: str
    context_length: int
    supports_streaming: bool = True
    supports_functions: bool = False
    input_cost: float = 0.0
    output_cost: float = 0.0
    capabilities: list[str] = field(default_factory=lambda: ["chat", "completion"])
    description: str = ""


DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 1.0
DEFAULT_MAX_TOKENS = 4096


@dataclass
class ChatOptions:
    """Per-call generation options."""

    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stop: list[str] | None = None
    stream: bool = False
    request_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            raise InvalidRequestError("Temperature must be between 0 and 2")
        if self.max_tokens is not None and self.max_tokens < 1:
            raise InvalidRequestError("max_tokens must be positive")


def merge_options(options: ChatOptions | None = None) -> ChatOptions:
    """Fill unset options with runtime defaults.

    Returns:
        A new ChatOptions with temperature, top_p and max_tokens populated
    """
    options = options or ChatOptions()
    return ChatOptions(
        model=options.model,
        temperature=(
            DEFAULT_TEMPERATURE if options.temperature is None else options.temperature
        ),
        top_p=DEFAULT_TOP_P if options.top_p is None else options.top_p,
        max_tokens=options.max_tokens or DEFAULT_MAX_TOKENS,
        stop=options.stop,
        stream=options.stream,
        request_id=options.request_id,
        extra=dict(options.extra),
    )
