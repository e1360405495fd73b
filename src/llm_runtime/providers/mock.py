"""Mock adapter for testing."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import AsyncIterator
from typing import Any

from .base import AdapterConfig, LLMAdapter
from .exceptions import (
    AdapterTimeoutError,
    APIError,
    AuthenticationError,
    InvalidResponseError,
    RateLimitError,
)
from .streaming_adapters import StreamingFormat
from .token_counters import estimate_tokens
from .unified_models import (
    ChatMessage,
    ChatOptions,
    ChatResponse,
    FinishReason,
    MessageRole,
    ModelInfo,
    StreamingChatResponse,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class MockAdapter(LLMAdapter):
    """Mock adapter for testing purposes.

    Supports scripted responses and error injection for exercising the
    runtime without making real API calls. Streams are rendered as
    OpenAI-style SSE frames and run through the real normalizer.
    """

    provider = "mock"
    description = "Mock adapter for testing"
    requires_api_key = False
    default_base_url = "mock://localhost"
    default_model = "mock-small"
    streaming_format = StreamingFormat.SSE
    capabilities = ("chat", "completion", "streaming")
    strict_models = True
    MODELS = {
        "mock-small": ModelInfo(
            id="mock-small", name="Mock Small", provider="mock",
            context_length=4096, input_cost=1.0, output_cost=2.0,
        ),
        "mock-large": ModelInfo(
            id="mock-large", name="Mock Large", provider="mock",
            context_length=8192, input_cost=3.0, output_cost=6.0,
        ),
    }

    def __init__(
        self,
        config: AdapterConfig,
        mock_responses: dict[str, str] | None = None,
        mock_errors: dict[str, Exception] | None = None,
        response_delay: float = 0.0,
        reported_cost: float | None = None,
        **kwargs: Any,
    ):
        """Initialize mock adapter.

        Args:
            config: Adapter configuration
            mock_responses: Maps the last user message to a reply
            mock_errors: Maps the last user message to an exception to raise
            response_delay: Simulated latency in seconds, also between stream chunks
            reported_cost: Cost to report as if the provider priced the call
            **kwargs: Shared components passed to ``LLMAdapter``
        """
        super().__init__(config, **kwargs)
        self.mock_responses = mock_responses or {}
        self.mock_errors = mock_errors or {}
        self.response_delay = response_delay
        self.reported_cost = reported_cost
        self.call_count = 0
        self.open_streams = 0
        self._scripted_errors: deque[Exception] = deque()

    def fail_next(self, *errors: Exception) -> None:
        """Raise ``errors`` on the next calls, one per call, before replying."""
        self._scripted_errors.extend(errors)

    @property
    def chat_path(self) -> str:
        return "chat"

    def _build_payload(
        self, messages: list[ChatMessage], options: ChatOptions, stream: bool
    ) -> dict[str, Any]:
        return {
            "model": options.model,
            "messages": [message.to_dict() for message in messages],
            "max_tokens": options.max_tokens,
            "stream": stream,
        }

    def _parse_response(
        self, data: dict[str, Any], options: ChatOptions
    ) -> ChatResponse:
        if "content" not in data:
            raise InvalidResponseError("Mock reply has no content", provider=self.provider)
        return ChatResponse(
            content=data["content"],
            model=data["model"],
            id=data["id"],
            usage=self._usage(data["prompt"], data["content"]),
            finish_reason=FinishReason.STOP.value,
            cost=self.reported_cost,
        )

    def _usage(self, prompt: str, content: str) -> TokenUsage:
        return TokenUsage(
            input_tokens=estimate_tokens(prompt),
            output_tokens=estimate_tokens(content),
        )

    def _reply(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Produce the scripted reply for one call, or raise the scripted error."""
        self.call_count += 1
        prompt = ""
        for message in reversed(payload["messages"]):
            if message["role"] == MessageRole.USER.value:
                prompt = message["content"]
                break

        if self._scripted_errors:
            raise self._scripted_errors.popleft()
        if prompt in self.mock_errors:
            raise self.mock_errors[prompt]

        lowered = prompt.lower()
        if "auth_error" in lowered:
            raise AuthenticationError("Mock authentication failed", provider="mock")
        if "rate_limit" in lowered:
            raise RateLimitError(
                "Mock rate limit exceeded", retry_after=60, provider="mock"
            )
        if "timeout" in lowered:
            raise AdapterTimeoutError("Mock request timed out", provider="mock")
        if "server_error" in lowered:
            raise APIError("Mock server error", status=500, provider="mock")

        content = self.mock_responses.get(prompt, f"Mock response to: {prompt[:50]}")
        return {
            "id": f"mock-{self.call_count}",
            "model": payload["model"],
            "prompt": " ".join(m["content"] for m in payload["messages"]),
            "content": content,
        }

    async def _chat_once(
        self, messages: list[ChatMessage], options: ChatOptions
    ) -> ChatResponse:
        payload = self._build_payload(messages, options, stream=False)
        await asyncio.sleep(self.response_delay)
        return self._parse_response(self._reply(payload), options)

    async def _stream_once(
        self, messages: list[ChatMessage], options: ChatOptions
    ) -> AsyncIterator[StreamingChatResponse]:
        payload = self._build_payload(messages, options, stream=True)
        await asyncio.sleep(self.response_delay)
        reply = self._reply(payload)
        normalizer = self.streaming_manager.get_adapter(
            self.streaming_format, provider=self.provider, model=reply["model"]
        )

        self.open_streams += 1
        try:
            async for event in normalizer.stream_response(self._sse_frames(reply)):
                if event.is_final and self.reported_cost is not None:
                    event.cost = self.reported_cost
                yield event
        finally:
            self.open_streams -= 1

    async def _sse_frames(self, reply: dict[str, Any]) -> AsyncIterator[bytes]:
        words = reply["content"].split(" ")
        for index, word in enumerate(words):
            text = word if index == 0 else f" {word}"
            frame = {
                "id": reply["id"],
                "model": reply["model"],
                "choices": [{"delta": {"content": text}, "finish_reason": None}],
            }
            yield f"data: {json.dumps(frame)}\n\n".encode()
            await asyncio.sleep(self.response_delay)

        usage = self._usage(reply["prompt"], reply["content"])
        final = {
            "id": reply["id"],
            "model": reply["model"],
            "choices": [{"delta": {}, "finish_reason": "stop"}],
            "usage": {
                "prompt_tokens": usage.input_tokens,
                "completion_tokens": usage.output_tokens,
                "total_tokens": usage.total_tokens,
            },
        }
        yield f"data: {json.dumps(final)}\n\n".encode()
        yield b"data: [DONE]\n\n"

    async def get_models(self) -> list[ModelInfo]:
        return list(self.MODELS.values())

    async def validate_config(self) -> bool:
        """Always succeeds unless configured otherwise."""
        return "fail_validation" not in self.mock_errors
