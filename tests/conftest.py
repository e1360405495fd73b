"""
pytest configuration and shared fixtures for llm-runtime tests.

This module provides test isolation to prevent:
1. Reads and writes of the real ~/.llm_runtime configuration
2. Keychain prompts from the system keyring
3. Real HTTP traffic from the adapters
"""

from collections import deque
from collections.abc import AsyncIterator

import pytest

from llm_runtime.providers import (
    AdapterConfig,
    ChatMessage,
    MockAdapter,
    RetryConfig,
)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """
    Keep every test away from the user's configuration and credentials.

    Provider environment variables are removed so a developer's shell does
    not leak into assertions about configured providers.
    """
    config_dir = tmp_path / ".llm_runtime"
    monkeypatch.setenv("LLM_RUNTIME_CONFIG_DIR", str(config_dir))
    # Disable keyring to prevent keychain password prompts during tests
    monkeypatch.setenv("LLM_RUNTIME_DISABLE_KEYRING", "true")
    for var in (
        "OPENAI_API_KEY", "OPENAI_ORG_ID", "OPENAI_BASE_URL", "OPENAI_MODEL",
        "ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL", "ANTHROPIC_MODEL",
        "DEEPSEEK_API_KEY", "DEEPSEEK_BASE_URL", "DEEPSEEK_MODEL",
        "MISTRAL_API_KEY", "MISTRAL_BASE_URL", "MISTRAL_MODEL",
        "DASHSCOPE_API_KEY", "QWEN_BASE_URL", "QWEN_MODEL",
        "GOOGLE_API_KEY", "GOOGLE_BASE_URL", "GOOGLE_MODEL",
        "HUGGINGFACE_API_KEY", "HUGGINGFACE_BASE_URL", "HUGGINGFACE_MODEL",
        "OLLAMA_HOST", "OLLAMA_MODEL",
        "VLLM_API_KEY", "VLLM_BASE_URL", "VLLM_MODEL",
        "LLAMACPP_BASE_URL", "LLAMACPP_MODEL",
    ):
        monkeypatch.delenv(var, raising=False)
    return config_dir


@pytest.fixture
def fast_retry():
    """Retry settings without backoff sleeps."""
    return RetryConfig(max_retries=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def mock_adapter(fast_retry):
    """Mock adapter with instant retries."""
    return MockAdapter(AdapterConfig(provider="mock"), retry_config=fast_retry)


@pytest.fixture
def user_message():
    return [ChatMessage(role="user", content="Hello there")]


class FakeContent:
    """Stands in for ``aiohttp.StreamReader``."""

    def __init__(self, chunks):
        self._chunks = list(chunks)

    async def iter_any(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk


class FakeResponse:
    """Minimal ``aiohttp.ClientResponse`` used as an async context manager."""

    def __init__(self, status=200, json_data=None, headers=None, chunks=(), text=""):
        self.status = status
        self._json = json_data
        self.headers = headers or {}
        self.content = FakeContent(chunks)
        self._text = text

    async def json(self, content_type=None):
        if self._json is None:
            raise ValueError("Response body is not JSON")
        return self._json

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Minimal ``aiohttp.ClientSession`` serving queued responses in order.

    A queued exception is raised when the request is made, like a
    connection failure would be.
    """

    def __init__(self, *responses):
        self._responses = deque(responses)
        self.requests = []

    def request(self, method, url, headers=None, json=None):
        self.requests.append({"method": method, "url": url, "headers": headers, "json": json})
        response = self._responses.popleft()
        if isinstance(response, BaseException):
            raise response
        return response

    def post(self, url, headers=None, json=None):
        return self.request("POST", url, headers=headers, json=json)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.fixture
def fake_http(monkeypatch):
    """Route an adapter's HTTP traffic to a FakeSession.

    Usage:
        session = fake_http(adapter, FakeResponse(json_data={...}))
    """

    def install(adapter, *responses):
        session = FakeSession(*responses)
        monkeypatch.setattr(adapter, "_create_session", lambda: session)
        return session

    return install


@pytest.fixture
def fake_response():
    """The FakeResponse class, for building queued responses."""
    return FakeResponse
