"""HuggingFace Inference API adapter for hosted text-generation models."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from .base import LLMAdapter
from .cost_tracker import CostTrackerConfig
from .exceptions import APIError, InvalidResponseError
from .rate_limiters import RateLimitConfig
from .streaming_adapters import StreamingFormat
from .unified_models import (
    ChatMessage,
    ChatOptions,
    ChatResponse,
    FinishReason,
    MessageRole,
    ModelInfo,
)

logger = logging.getLogger(__name__)

PROMPT_PREFIXES = {
    MessageRole.SYSTEM.value: "System",
    MessageRole.USER.value: "Human",
}


def format_prompt(messages: list[ChatMessage]) -> str:
    """Flatten a conversation into the plain prompt text-generation models expect."""
    lines = [
        f"{PROMPT_PREFIXES.get(message.role, 'Assistant')}: {message.content}"
        for message in messages
    ]
    return "\n".join(lines) + "\nAssistant:"


def _model(model_id: str, name: str, context_length: int, description: str) -> ModelInfo:
    return ModelInfo(
        id=model_id,
        name=name,
        provider="huggingface",
        context_length=context_length,
        description=description,
    )


class HuggingFaceAdapter(LLMAdapter):
    """Models served by the HuggingFace Inference API.

    The conversation is flattened into one prompt and posted to
    ``models/<model id>``. The API reports no token usage, so usage is
    estimated locally. Any hosted model id is accepted; the catalog lists
    popular ones.
    """

    provider = "huggingface"
    description = "HuggingFace hosted inference models"
    default_base_url = "https://api-inference.huggingface.co"
    default_model = "microsoft/DialoGPT-large"
    streaming_format = StreamingFormat.SSE
    capabilities = ("chat", "completion", "streaming")
    MODELS = {
        info.id: info
        for info in (
            _model("microsoft/DialoGPT-large", "DialoGPT Large", 1024,
                   "Large conversational response generation model"),
            _model("meta-llama/Llama-2-7b-chat-hf", "Llama 2 7B Chat", 4096,
                   "Llama 2 7B model fine-tuned for chat"),
            _model("meta-llama/Llama-2-13b-chat-hf", "Llama 2 13B Chat", 4096,
                   "Llama 2 13B model fine-tuned for chat"),
            _model("mistralai/Mistral-7B-Instruct-v0.1", "Mistral 7B Instruct", 8192,
                   "Mistral 7B model fine-tuned for instructions"),
            _model("codellama/CodeLlama-7b-Instruct-hf", "Code Llama 7B Instruct", 16384,
                   "Code Llama 7B model for code generation"),
        )
    }

    @property
    def chat_path(self) -> str:
        return f"models/{self.model}"

    def _endpoint(self, options: ChatOptions, stream: bool) -> str:
        return f"models/{options.model}"

    def default_rate_limits(self) -> RateLimitConfig:
        return RateLimitConfig(requests_per_minute=30, requests_per_hour=1000)

    def default_cost_config(self) -> CostTrackerConfig:
        return CostTrackerConfig(provider=self.provider)

    def _build_payload(
        self, messages: list[ChatMessage], options: ChatOptions, stream: bool
    ) -> dict[str, Any]:
        parameters: dict[str, Any] = {
            "temperature": options.temperature,
            "top_p": options.top_p,
            "max_new_tokens": options.max_tokens,
            "do_sample": True,
            "return_full_text": False,
        }
        if options.stop:
            parameters["stop"] = options.stop
        parameters.update(self.config.extra_params)
        parameters.update(options.extra)

        return {
            "inputs": format_prompt(messages),
            "parameters": parameters,
            "options": {"wait_for_model": True, "use_cache": False},
            "stream": stream,
        }

    def _unwrap_body(self, data: Any) -> Any:
        # Text generation answers with a one-element list
        if isinstance(data, list) and data:
            return data[0]
        return data

    def _parse_response(
        self, data: dict[str, Any], options: ChatOptions
    ) -> ChatResponse:
        text = data.get("generated_text")
        if not isinstance(text, str) or not text.strip():
            raise InvalidResponseError(
                "No generated text in huggingface response", provider=self.provider
            )
        details = data.get("details") or {}
        return ChatResponse(
            content=text.strip(),
            model=options.model or self.model,
            id=f"hf-{uuid.uuid4().hex[:12]}",
            finish_reason=FinishReason.normalize(
                details.get("finish_reason"), self.provider
            ),
        )

    async def get_models(self) -> list[ModelInfo]:
        return list(self.MODELS.values())

    async def validate_config(self) -> bool:
        """Generate one token; a model that is still loading counts as reachable."""
        payload = {"inputs": "Hello", "parameters": {"max_new_tokens": 1}}
        try:
            await self._request_json("POST", self.chat_path, payload)
        except APIError as e:
            if e.status != 503:
                raise
            logger.info(f"huggingface model {self.model} is loading")
        return True
