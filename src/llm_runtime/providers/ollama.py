"""Ollama adapter for locally hosted models."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from .base import LLMAdapter
from .cost_tracker import CostTrackerConfig
from .exceptions import InvalidResponseError
from .streaming_adapters import StreamingFormat, parse_ollama_usage
from .unified_models import (
    ChatMessage,
    ChatOptions,
    ChatResponse,
    FinishReason,
    ModelInfo,
)

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_LENGTH = 2048

# Substring of the model name -> typical context window
CONTEXT_LENGTHS = [
    ("codellama", 16384),
    ("code-llama", 16384),
    ("llama2", 4096),
    ("llama-2", 4096),
    ("mistral", 8192),
    ("gemma", 8192),
    ("phi", 2048),
]


def infer_context_length(model_name: str) -> int:
    name = model_name.lower()
    for fragment, context_length in CONTEXT_LENGTHS:
        if fragment in name:
            return context_length
    return DEFAULT_CONTEXT_LENGTH


class OllamaAdapter(LLMAdapter):
    """Chat with models served by a local Ollama daemon.

    Streams arrive as newline-delimited JSON. Local inference is free, so
    usage is tracked with zero rates.
    """

    provider = "ollama"
    description = "Local models served by Ollama"
    requires_api_key = False
    use_circuit_breaker = False
    default_base_url = "http://localhost:11434"
    default_model = "llama2"
    streaming_format = StreamingFormat.JSON_LINES
    capabilities = ("chat", "completion", "streaming")

    @property
    def chat_path(self) -> str:
        return "api/chat"

    def default_cost_config(self) -> CostTrackerConfig:
        return CostTrackerConfig(provider=self.provider)

    def _build_payload(
        self, messages: list[ChatMessage], options: ChatOptions, stream: bool
    ) -> dict[str, Any]:
        model_options: dict[str, Any] = {
            "temperature": options.temperature,
            "top_p": options.top_p,
            "num_predict": options.max_tokens,
        }
        if options.stop:
            model_options["stop"] = options.stop
        model_options.update(self.config.extra_params)
        model_options.update(options.extra)

        return {
            "model": options.model,
            "messages": [
                {"role": message.role, "content": message.content}
                for message in messages
            ],
            "stream": stream,
            "options": model_options,
        }

    def _parse_response(
        self, data: dict[str, Any], options: ChatOptions
    ) -> ChatResponse:
        if "message" not in data and "response" not in data:
            raise InvalidResponseError(
                "No message in ollama response", provider=self.provider
            )
        message = data.get("message") or {}
        return ChatResponse(
            content=message.get("content") or data.get("response") or "",
            model=data.get("model") or options.model or self.model,
            id=f"ollama-{uuid.uuid4().hex[:12]}",
            usage=parse_ollama_usage(data),
            finish_reason=FinishReason.normalize(
                data.get("done_reason") or "stop", self.provider
            ),
        )

    async def get_models(self) -> list[ModelInfo]:
        """Models pulled into the local daemon, from ``/api/tags``."""
        data = await self._request_json("GET", "api/tags")
        models = []
        for entry in data.get("models") or []:
            name = entry.get("name")
            if not name:
                continue
            models.append(
                ModelInfo(
                    id=name,
                    name=name,
                    provider=self.provider,
                    context_length=infer_context_length(name),
                    description=f"Ollama hosted model: {name}",
                )
            )
        return models

    async def validate_config(self) -> bool:
        await self._request_json("GET", "api/tags")
        return True
