"""Anthropic Messages API adapter."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from .base import LLMAdapter
from .exceptions import InvalidResponseError
from .rate_limiters import RateLimitConfig
from .streaming_adapters import StreamingFormat, parse_anthropic_usage
from .unified_models import (
    ChatMessage,
    ChatOptions,
    ChatResponse,
    FinishReason,
    MessageRole,
    ModelInfo,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

_CAPABILITIES = ["chat", "completion", "vision", "function_calling"]


def _model(model_id: str, name: str, input_cost: float, output_cost: float,
           description: str) -> ModelInfo:
    return ModelInfo(
        id=model_id,
        name=name,
        provider="anthropic",
        context_length=200000,
        supports_functions=True,
        input_cost=input_cost,
        output_cost=output_cost,
        capabilities=list(_CAPABILITIES),
        description=description,
    )


class AnthropicAdapter(LLMAdapter):
    """Claude models over the Messages API.

    System messages are lifted into the top-level ``system`` field; the
    remaining turns are sent as-is.
    """

    provider = "anthropic"
    description = "Anthropic Claude models"
    default_base_url = "https://api.anthropic.com/v1"
    default_model = "claude-3-5-haiku-20241022"
    streaming_format = StreamingFormat.SSE
    capabilities = ("chat", "completion", "streaming", "vision", "function_calling")
    strict_models = True
    MODELS = {
        info.id: info
        for info in (
            _model("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", 3.0, 15.0,
                   "Most intelligent model with enhanced reasoning and coding"),
            _model("claude-3-5-haiku-20241022", "Claude 3.5 Haiku", 0.8, 4.0,
                   "Fast and affordable model"),
            _model("claude-3-opus-20240229", "Claude 3 Opus", 15.0, 75.0,
                   "Most powerful model for highly complex tasks"),
            _model("claude-3-sonnet-20240229", "Claude 3 Sonnet", 3.0, 15.0,
                   "Balanced model for a wide range of tasks"),
            _model("claude-3-haiku-20240307", "Claude 3 Haiku", 0.25, 1.25,
                   "Fastest and most affordable model for simple tasks"),
        )
    }

    @property
    def chat_path(self) -> str:
        return "messages"

    def default_rate_limits(self) -> RateLimitConfig:
        return RateLimitConfig(requests_per_minute=50, tokens_per_minute=40_000)

    def _prepare_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    @staticmethod
    def convert_messages(
        messages: list[ChatMessage],
    ) -> tuple[str | None, list[dict[str, Any]]]:
        """Split out system prompts and convert the rest to Anthropic turns."""
        system_parts = []
        turns = []
        for message in messages:
            if message.role == MessageRole.SYSTEM.value:
                system_parts.append(message.content)
            elif message.role == MessageRole.TOOL.value:
                # Tool output goes back to the model as user content
                turns.append({"role": "user", "content": message.content})
            else:
                turns.append({"role": message.role, "content": message.content})
        system = "\n\n".join(system_parts) if system_parts else None
        return system, turns

    def _build_payload(
        self, messages: list[ChatMessage], options: ChatOptions, stream: bool
    ) -> dict[str, Any]:
        system, turns = self.convert_messages(messages)
        payload: dict[str, Any] = {
            "model": options.model,
            "messages": turns,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "stream": stream,
        }
        if system:
            payload["system"] = system
        if options.stop:
            payload["stop_sequences"] = options.stop
        payload.update(self.config.extra_params)
        payload.update(options.extra)
        return payload

    def _parse_response(
        self, data: dict[str, Any], options: ChatOptions
    ) -> ChatResponse:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise InvalidResponseError(
                "No content in anthropic response", provider=self.provider
            )
        text = "".join(
            block.get("text", "") for block in blocks if block.get("type") == "text"
        )
        return ChatResponse(
            content=text,
            model=data.get("model") or options.model or self.model,
            id=data.get("id") or f"anthropic-{uuid.uuid4().hex[:12]}",
            usage=parse_anthropic_usage(data.get("usage")),
            finish_reason=FinishReason.normalize(data.get("stop_reason"), self.provider),
        )

    async def get_models(self) -> list[ModelInfo]:
        return list(self.MODELS.values())

    async def validate_config(self) -> bool:
        await self._request_json("GET", "models")
        return True
