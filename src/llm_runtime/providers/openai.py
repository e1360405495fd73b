"""OpenAI and OpenAI-compatible adapters.

DeepSeek, Mistral, Qwen, vLLM and llama.cpp all speak the OpenAI chat
completions protocol; they differ only in base URL, catalog, whether an
API key is needed and whether models outside the catalog are accepted.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from .base import LLMAdapter
from .exceptions import InvalidResponseError
from .rate_limiters import RateLimitConfig
from .streaming_adapters import StreamingFormat, parse_openai_usage
from .token_counters import TiktokenCounter, TokenCounter
from .unified_models import (
    ChatMessage,
    ChatOptions,
    ChatResponse,
    FinishReason,
    ModelInfo,
)

logger = logging.getLogger(__name__)


def _catalog(provider: str, *models: tuple[Any, ...]) -> dict[str, ModelInfo]:
    """Build a catalog from (id, name, context, input, output, functions) rows."""
    catalog = {}
    for model_id, name, context_length, input_cost, output_cost, functions in models:
        capabilities = ["chat", "completion"]
        if functions:
            capabilities.append("function_calling")
        catalog[model_id] = ModelInfo(
            id=model_id,
            name=name,
            provider=provider,
            context_length=context_length,
            supports_functions=functions,
            input_cost=input_cost,
            output_cost=output_cost,
            capabilities=capabilities,
        )
    return catalog


class OpenAICompatibleAdapter(LLMAdapter):
    """Adapter for servers implementing ``/chat/completions``."""

    provider = "openai-compatible"
    description = "Any server that implements the OpenAI chat completions API"
    streaming_format = StreamingFormat.SSE
    capabilities = ("chat", "completion", "streaming")

    @property
    def chat_path(self) -> str:
        return "chat/completions"

    def _build_payload(
        self, messages: list[ChatMessage], options: ChatOptions, stream: bool
    ) -> dict[str, Any]:
        max_tokens = options.max_tokens
        model_info = self.MODELS.get(options.model or "")
        if model_info and max_tokens:
            max_tokens = min(max_tokens, model_info.context_length)

        payload: dict[str, Any] = {
            "model": options.model,
            "messages": [message.to_dict() for message in messages],
            "temperature": options.temperature,
            "top_p": options.top_p,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        if options.stop:
            payload["stop"] = options.stop
        if stream:
            payload["stream_options"] = {"include_usage": True}
        payload.update(self.config.extra_params)
        payload.update(options.extra)
        return payload

    def _parse_response(
        self, data: dict[str, Any], options: ChatOptions
    ) -> ChatResponse:
        choices = data.get("choices") or []
        if not choices:
            raise InvalidResponseError(
                f"No choices in {self.provider} response", provider=self.provider
            )
        choice = choices[0]
        message = choice.get("message") or {}

        return ChatResponse(
            content=message.get("content") or "",
            model=data.get("model") or options.model or self.model,
            id=data.get("id") or f"{self.provider}-{uuid.uuid4().hex[:12]}",
            usage=parse_openai_usage(data.get("usage")),
            finish_reason=FinishReason.normalize(
                choice.get("finish_reason"), self.provider
            ),
        )

    def _prepare_headers(self) -> dict[str, str]:
        headers = super()._prepare_headers()
        if self.config.organization:
            headers["OpenAI-Organization"] = self.config.organization
        return headers

    async def get_models(self) -> list[ModelInfo]:
        if self.MODELS:
            return list(self.MODELS.values())
        return await self._fetch_models()

    async def _fetch_models(self) -> list[ModelInfo]:
        """List models served by the endpoint itself."""
        data = await self._request_json("GET", "models")
        models = []
        for entry in data.get("data") or []:
            model_id = entry.get("id")
            if not model_id:
                continue
            models.append(
                ModelInfo(
                    id=model_id,
                    name=model_id,
                    provider=self.provider,
                    context_length=int(entry.get("max_model_len") or 4096),
                )
            )
        return models

    async def validate_config(self) -> bool:
        await self._request_json("GET", "models")
        return True


class OpenAIAdapter(OpenAICompatibleAdapter):
    provider = "openai"
    description = "OpenAI GPT models"
    default_base_url = "https://api.openai.com/v1"
    default_model = "gpt-4o-mini"
    capabilities = ("chat", "completion", "streaming", "function_calling", "vision")
    MODELS = _catalog(
        "openai",
        ("gpt-4o", "GPT-4o", 128000, 2.5, 10.0, True),
        ("gpt-4o-mini", "GPT-4o Mini", 128000, 0.15, 0.6, True),
        ("o1-preview", "o1 Preview", 128000, 15.0, 60.0, False),
        ("o1-mini", "o1 Mini", 128000, 3.0, 12.0, False),
        ("gpt-4-turbo", "GPT-4 Turbo", 128000, 10.0, 30.0, True),
        ("gpt-4", "GPT-4", 8192, 30.0, 60.0, True),
        ("gpt-3.5-turbo", "GPT-3.5 Turbo", 16385, 0.5, 1.5, True),
    )

    def _token_counters(self) -> list[TokenCounter]:
        return [TiktokenCounter()]

    def default_rate_limits(self) -> RateLimitConfig:
        # Conservative for new accounts
        return RateLimitConfig(requests_per_minute=60, tokens_per_minute=90_000)


class DeepSeekAdapter(OpenAICompatibleAdapter):
    provider = "deepseek"
    description = "DeepSeek chat, coder and reasoner models"
    default_base_url = "https://api.deepseek.com/v1"
    default_model = "deepseek-chat"
    strict_models = True
    capabilities = ("chat", "completion", "streaming", "function_calling")
    MODELS = _catalog(
        "deepseek",
        ("deepseek-chat", "DeepSeek Chat", 32768, 0.14, 0.28, True),
        ("deepseek-coder", "DeepSeek Coder", 16384, 0.14, 0.28, True),
        ("deepseek-reasoner", "DeepSeek Reasoner", 65536, 0.55, 2.19, False),
    )


class MistralAdapter(OpenAICompatibleAdapter):
    provider = "mistral"
    description = "Mistral AI hosted models"
    default_base_url = "https://api.mistral.ai/v1"
    default_model = "mistral-small"
    strict_models = True
    capabilities = ("chat", "completion", "streaming", "function_calling")
    MODELS = _catalog(
        "mistral",
        ("mistral-tiny", "Mistral Tiny", 8192, 0.25, 0.25, False),
        ("mistral-small", "Mistral Small", 8192, 2.0, 6.0, True),
        ("mistral-medium", "Mistral Medium", 8192, 2.7, 8.1, True),
        ("mistral-large-latest", "Mistral Large", 32768, 8.0, 24.0, True),
        ("mixtral-8x7b-instruct", "Mixtral 8x7B", 32768, 0.7, 0.7, False),
        ("mixtral-8x22b-instruct", "Mixtral 8x22B", 65536, 2.0, 6.0, True),
    )

    def _build_payload(
        self, messages: list[ChatMessage], options: ChatOptions, stream: bool
    ) -> dict[str, Any]:
        payload = super()._build_payload(messages, options, stream)
        # Mistral rejects the OpenAI-only stream_options field
        payload.pop("stream_options", None)
        return payload


class VLLMAdapter(OpenAICompatibleAdapter):
    """Self-hosted vLLM server. Models come from the server's /models."""

    provider = "vllm"
    description = "Self-hosted vLLM inference server"
    requires_api_key = False
    use_circuit_breaker = False
    default_base_url = "http://localhost:8000/v1"
    default_model = "default"


class LlamaCppAdapter(OpenAICompatibleAdapter):
    """llama.cpp ``server`` in OpenAI-compatible mode."""

    provider = "llamacpp"
    description = "Local llama.cpp server"
    requires_api_key = False
    use_circuit_breaker = False
    default_base_url = "http://localhost:8080/v1"
    default_model = "default"

    async def validate_config(self) -> bool:
        # The server answers before a model is loaded, with an empty list
        data = await self._request_json("GET", "models")
        return bool(data.get("data"))


class QwenAdapter(OpenAICompatibleAdapter):
    """Alibaba Qwen through DashScope's OpenAI-compatible mode.

    The default endpoint is the Beijing region; point ``base_url`` at
    ``https://dashscope-intl.aliyuncs.com/compatible-mode/v1`` for the
    international one.
    """

    provider = "qwen"
    description = "Alibaba Qwen models on DashScope"
    default_base_url = "https://dashscope.aliyuncs.com/compatible-mode/v1"
    default_model = "qwen-turbo"
    strict_models = True
    capabilities = ("chat", "completion", "streaming", "function_calling")
    MODELS = _catalog(
        "qwen",
        ("qwen-turbo", "Qwen Turbo", 8192, 0.3, 0.6, True),
        ("qwen-plus", "Qwen Plus", 32768, 0.8, 2.0, True),
        ("qwen-max", "Qwen Max", 8192, 2.0, 6.0, True),
        ("qwen-max-longcontext", "Qwen Max Long Context", 30000, 2.0, 6.0, True),
        ("qwen2-72b-instruct", "Qwen2 72B Instruct", 131072, 0.35, 0.7, False),
        ("qwen2-7b-instruct", "Qwen2 7B Instruct", 131072, 0.07, 0.14, False),
    )

    def default_rate_limits(self) -> RateLimitConfig:
        return RateLimitConfig(requests_per_minute=60, tokens_per_minute=100_000)

    async def validate_config(self) -> bool:
        # Compatible mode has no /models listing; a one-token chat checks the key
        payload = self._build_payload(
            [ChatMessage(role="user", content="ping")],
            ChatOptions(model=self.model, max_tokens=1),
            stream=False,
        )
        await self._request_json("POST", self.chat_path, payload)
        return True
