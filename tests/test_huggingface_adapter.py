"""Tests for the HuggingFace Inference API adapter."""

import pytest

from llm_runtime.providers import (
    AdapterConfig,
    AuthenticationError,
    ChatMessage,
    ChatOptions,
    ConfigurationError,
    HuggingFaceAdapter,
    InvalidResponseError,
)
from llm_runtime.providers.huggingface import format_prompt

MESSAGES = [
    ChatMessage(role="system", content="You are friendly."),
    ChatMessage(role="user", content="Hi"),
]

STREAM_CHUNKS = [
    b'data:{"index":1,"token":{"id":15043,"text":" Hello","logprob":-0.2,"special":false},'
    b'"generated_text":null,"details":null}\n\n',
    b'data:{"index":2,"token":{"id":727,"text":" there","logprob":-0.4,"special":false},'
    b'"generated_text":null,"details":null}\n\n',
    b'data:{"index":3,"token":{"id":2,"text":"</s>","logprob":0.0,"special":true},'
    b'"generated_text":"Hello there","details":{"finish_reason":"eos_token",'
    b'"generated_tokens":3,"seed":null}}\n\n',
]


@pytest.fixture
def adapter(fast_retry):
    return HuggingFaceAdapter(
        AdapterConfig(provider="huggingface", api_key="hf_test"), retry_config=fast_retry
    )


class TestHuggingFaceConfig:
    def test_defaults(self, adapter):
        assert adapter.base_url == "https://api-inference.huggingface.co"
        assert adapter.model == "microsoft/DialoGPT-large"
        assert adapter.rate_limiter.config.requests_per_minute == 30
        assert adapter.rate_limiter.config.requests_per_hour == 1000

    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError):
            HuggingFaceAdapter(AdapterConfig(provider="huggingface"))

    @pytest.mark.asyncio
    async def test_catalog(self, adapter):
        models = {m.id: m for m in await adapter.get_models()}
        assert len(models) == 5
        assert models["codellama/CodeLlama-7b-Instruct-hf"].context_length == 16384
        assert all(m.input_cost == 0.0 for m in models.values())


class TestFormatPrompt:
    def test_conversation(self):
        prompt = format_prompt(MESSAGES + [
            ChatMessage(role="assistant", content="Hello!"),
            ChatMessage(role="user", content="How are you?"),
        ])
        assert prompt == (
            "System: You are friendly.\n"
            "Human: Hi\n"
            "Assistant: Hello!\n"
            "Human: How are you?\n"
            "Assistant:"
        )


class TestHuggingFaceChat:
    @pytest.mark.asyncio
    async def test_chat(self, adapter, fake_http, fake_response):
        session = fake_http(adapter, fake_response(json_data=[{"generated_text": " Hello there "}]))
        response = await adapter.chat(MESSAGES, ChatOptions(max_tokens=32, stop=["Human:"]))

        assert response.content == "Hello there"
        assert response.finish_reason == "stop"
        assert response.usage is None
        assert response.cost == 0.0

        request = session.requests[0]
        assert request["url"] == (
            "https://api-inference.huggingface.co/models/microsoft/DialoGPT-large"
        )
        assert request["headers"]["Authorization"] == "Bearer hf_test"
        payload = request["json"]
        assert payload["inputs"] == "System: You are friendly.\nHuman: Hi\nAssistant:"
        assert payload["parameters"]["max_new_tokens"] == 32
        assert payload["parameters"]["stop"] == ["Human:"]
        assert payload["parameters"]["return_full_text"] is False
        assert payload["options"] == {"wait_for_model": True, "use_cache": False}
        assert payload["stream"] is False

    @pytest.mark.asyncio
    async def test_usage_estimated_locally(self, adapter, fake_http, fake_response):
        fake_http(adapter, fake_response(json_data=[{"generated_text": "Hello there"}]))
        await adapter.chat(MESSAGES)
        record = adapter.cost_tracker.get_stats().request_history[0]
        assert record.tokens.output_tokens == adapter.count_tokens("Hello there")
        assert record.tokens.input_tokens > 0
        assert record.cost == 0.0

    @pytest.mark.asyncio
    async def test_any_hosted_model(self, adapter, fake_http, fake_response):
        session = fake_http(adapter, fake_response(json_data={"generated_text": "ok"}))
        await adapter.chat(MESSAGES, ChatOptions(model="google/gemma-2b-it"))
        assert session.requests[0]["url"].endswith("/models/google/gemma-2b-it")

    @pytest.mark.asyncio
    async def test_details_finish_reason(self, adapter, fake_http, fake_response):
        fake_http(adapter, fake_response(json_data=[
            {"generated_text": "trunc", "details": {"finish_reason": "length"}}
        ]))
        response = await adapter.chat(MESSAGES)
        assert response.finish_reason == "length"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [[], [{"generated_text": "  "}], {"label": "POSITIVE"}])
    async def test_no_generated_text(self, adapter, fake_http, fake_response, body):
        fake_http(adapter, fake_response(json_data=body))
        with pytest.raises(InvalidResponseError):
            await adapter.chat(MESSAGES)

    @pytest.mark.asyncio
    async def test_loading_model_is_retried(self, adapter, fake_http, fake_response):
        session = fake_http(
            adapter,
            fake_response(status=503, json_data={"error": "Model is currently loading",
                                                 "estimated_time": 20.0}),
            fake_response(json_data=[{"generated_text": "Hello"}]),
        )
        response = await adapter.chat(MESSAGES)
        assert response.content == "Hello"
        assert len(session.requests) == 2


class TestHuggingFaceStreaming:
    @pytest.mark.asyncio
    async def test_stream_chat(self, adapter, fake_http, fake_response):
        session = fake_http(adapter, fake_response(chunks=STREAM_CHUNKS))
        chunks = [chunk async for chunk in adapter.stream_chat(MESSAGES)]

        assert [c.content for c in chunks] == [" Hello", " there", ""]
        final = chunks[-1]
        assert final.finish_reason == "stop"
        assert final.cost == 0.0
        assert session.requests[0]["json"]["stream"] is True
        assert adapter.cost_tracker.get_stats().total_requests == 1


class TestHuggingFaceHealth:
    @pytest.mark.asyncio
    async def test_loading_model_counts_as_reachable(self, adapter, fake_http, fake_response):
        fake_http(adapter, fake_response(status=503, json_data={"error": "loading"}))
        assert await adapter.validate_config() is True

    @pytest.mark.asyncio
    async def test_bad_token(self, adapter, fake_http, fake_response):
        fake_http(adapter, fake_response(status=401, json_data={"error": "Invalid token"}))
        with pytest.raises(AuthenticationError):
            await adapter.validate_config()

    @pytest.mark.asyncio
    async def test_health_reports_bad_token(self, adapter, fake_http, fake_response):
        fake_http(adapter, fake_response(status=401, json_data={"error": "Invalid token"}))
        result = await adapter.get_health_status()
        assert result.status == "unhealthy"
        assert "Invalid token" in result.message
