"""Google Gemini adapter over the Generative Language API."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from .base import LLMAdapter
from .exceptions import InvalidResponseError
from .streaming_adapters import StreamingFormat, parse_google_usage
from .unified_models import (
    ChatMessage,
    ChatOptions,
    ChatResponse,
    FinishReason,
    MessageRole,
    ModelInfo,
)

logger = logging.getLogger(__name__)

SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]


def _model(model_id: str, name: str, context_length: int, input_cost: float,
           output_cost: float, functions: bool = True) -> ModelInfo:
    capabilities = ["chat", "completion", "vision"]
    if functions:
        capabilities.append("function_calling")
    return ModelInfo(
        id=model_id,
        name=name,
        provider="google",
        context_length=context_length,
        supports_functions=functions,
        input_cost=input_cost,
        output_cost=output_cost,
        capabilities=capabilities,
    )


class GoogleAdapter(LLMAdapter):
    """Gemini models through ``generateContent``.

    Assistant turns are sent with the ``model`` role and system messages
    become ``systemInstruction``. Streams use ``streamGenerateContent``
    with ``alt=sse``.
    """

    provider = "google"
    description = "Google Gemini models"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    default_model = "gemini-1.5-flash"
    streaming_format = StreamingFormat.SSE
    capabilities = ("chat", "completion", "streaming", "vision", "function_calling")
    strict_models = True
    MODELS = {
        info.id: info
        for info in (
            _model("gemini-2.0-flash-exp", "Gemini 2.0 Flash Experimental", 1000000, 0.0, 0.0),
            _model("gemini-1.5-pro", "Gemini 1.5 Pro", 2000000, 1.25, 5.0),
            _model("gemini-1.5-flash", "Gemini 1.5 Flash", 1000000, 0.075, 0.3),
            _model("gemini-1.5-flash-8b", "Gemini 1.5 Flash-8B", 1000000, 0.0375, 0.15,
                   functions=False),
            _model("gemini-1.0-pro", "Gemini 1.0 Pro", 32768, 0.5, 1.5, functions=False),
        )
    }

    @property
    def chat_path(self) -> str:
        return f"models/{self.model}:generateContent"

    def _endpoint(self, options: ChatOptions, stream: bool) -> str:
        if stream:
            return f"models/{options.model}:streamGenerateContent?alt=sse"
        return f"models/{options.model}:generateContent"

    def _prepare_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.config.api_key or "",
        }

    @staticmethod
    def convert_messages(
        messages: list[ChatMessage],
    ) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
        """Split out the system instruction and convert the rest to contents."""
        system_parts = []
        contents = []
        for message in messages:
            if message.role == MessageRole.SYSTEM.value:
                system_parts.append({"text": message.content})
                continue
            role = "model" if message.role == MessageRole.ASSISTANT.value else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})
        system = {"parts": system_parts} if system_parts else None
        return system, contents

    def _build_payload(
        self, messages: list[ChatMessage], options: ChatOptions, stream: bool
    ) -> dict[str, Any]:
        system, contents = self.convert_messages(messages)
        generation_config: dict[str, Any] = {
            "temperature": options.temperature,
            "topP": options.top_p,
            "maxOutputTokens": options.max_tokens,
        }
        if options.stop:
            generation_config["stopSequences"] = options.stop

        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
            "safetySettings": list(SAFETY_SETTINGS),
        }
        if system:
            payload["systemInstruction"] = system
        payload.update(self.config.extra_params)
        payload.update(options.extra)
        return payload

    def _parse_response(
        self, data: dict[str, Any], options: ChatOptions
    ) -> ChatResponse:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            reason = feedback.get("blockReason")
            if reason:
                raise InvalidResponseError(
                    f"google blocked the prompt: {reason}", provider=self.provider
                )
            raise InvalidResponseError(
                "No candidates in google response", provider=self.provider
            )

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        return ChatResponse(
            content="".join(part.get("text") or "" for part in parts),
            model=data.get("modelVersion") or options.model or self.model,
            id=data.get("responseId") or f"google-{uuid.uuid4().hex[:12]}",
            usage=parse_google_usage(data.get("usageMetadata")),
            finish_reason=FinishReason.normalize(
                candidate.get("finishReason"), self.provider
            ),
        )

    async def get_models(self) -> list[ModelInfo]:
        return list(self.MODELS.values())

    async def validate_config(self) -> bool:
        await self._request_json("GET", f"models/{self.model}")
        return True
