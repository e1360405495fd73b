"""Tests for the adapter registry."""

import pytest

from llm_runtime.providers import (
    ADAPTER_CLASSES,
    AdapterConfig,
    AdapterRegistry,
    ConfigurationError,
    GoogleAdapter,
    HuggingFaceAdapter,
    MockAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    ProviderConfigManager,
    ProviderNotFoundError,
    QwenAdapter,
)
from llm_runtime.providers.registry import CAPABILITY_FLAGS, PROVIDER_CAPABILITIES


def mock_factory(**kwargs):
    def factory():
        return MockAdapter(AdapterConfig(provider="mock"), **kwargs)
    return factory


@pytest.fixture
def registry():
    return AdapterRegistry(factories={"mock": mock_factory()})


class TestRegistryLookup:
    def test_default_factories_cover_builtin_adapters(self):
        registry = AdapterRegistry()
        assert registry.get_supported_providers() == sorted(ADAPTER_CLASSES)
        assert {"openai", "anthropic", "ollama", "mock"} <= set(ADAPTER_CLASSES)

    def test_get_creates_once(self, registry):
        first = registry.get("mock")
        assert isinstance(first, MockAdapter)
        assert registry.get("mock") is first
        assert registry.list() == [first]

    def test_get_unknown(self, registry):
        assert registry.get("nonexistent") is None

    def test_require_unknown(self, registry):
        with pytest.raises(ProviderNotFoundError, match="Available providers: mock"):
            registry.require("nonexistent")

    def test_unconfigured_provider_raises(self):
        registry = AdapterRegistry(config_manager=ProviderConfigManager())
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            registry.get("openai")
        assert registry.list() == []

    def test_configured_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        registry = AdapterRegistry()
        adapter = registry.get("openai")
        assert isinstance(adapter, OpenAIAdapter)
        assert adapter.config.api_key == "sk-test"

    def test_keyless_provider_from_defaults(self):
        adapter = AdapterRegistry().get("ollama")
        assert isinstance(adapter, OllamaAdapter)
        assert adapter.base_url == "http://localhost:11434"

    @pytest.mark.parametrize("provider,env_var,adapter_class", [
        ("qwen", "DASHSCOPE_API_KEY", QwenAdapter),
        ("google", "GOOGLE_API_KEY", GoogleAdapter),
        ("huggingface", "HUGGINGFACE_API_KEY", HuggingFaceAdapter),
    ])
    def test_advertised_providers_have_adapters(self, monkeypatch, provider, env_var,
                                                adapter_class):
        monkeypatch.setenv(env_var, "key")
        adapter = AdapterRegistry().get(provider)
        assert isinstance(adapter, adapter_class)
        assert adapter.config.api_key == "key"

    def test_every_capability_row_is_registered(self):
        assert set(PROVIDER_CAPABILITIES) <= set(ADAPTER_CLASSES)


class TestRegistration:
    def test_register_instance(self, registry):
        adapter = MockAdapter(AdapterConfig(provider="mock"))
        registry.register(adapter, provider="staging")
        assert registry.get("staging") is adapter
        assert registry.list_providers() == ["mock", "staging"]
        assert registry.get_supported_providers() == ["mock"]

    def test_register_replaces_cached(self, registry):
        original = registry.get("mock")
        replacement = MockAdapter(AdapterConfig(provider="mock"))
        registry.register(replacement)
        assert registry.get("mock") is replacement
        assert registry.get("mock") is not original

    def test_register_factory(self, registry):
        registry.register_factory("other", mock_factory())
        assert "other" in registry.get_supported_providers()
        assert isinstance(registry.get("other"), MockAdapter)

    def test_unregister(self, registry):
        adapter = registry.get("mock")
        assert registry.unregister("mock") is adapter
        assert registry.unregister("mock") is None
        assert registry.get("mock") is not adapter


class TestCapabilities:
    def test_known_provider(self):
        flags = AdapterRegistry.get_provider_capabilities("anthropic")
        assert set(flags) == set(CAPABILITY_FLAGS)
        assert flags["streaming"] and flags["vision"]
        assert not flags["embeddings"]

    def test_local_provider(self):
        flags = AdapterRegistry.get_provider_capabilities("ollama")
        assert flags["local_models"]

    def test_unknown_provider(self):
        flags = AdapterRegistry.get_provider_capabilities("nonexistent")
        assert set(flags) == set(CAPABILITY_FLAGS)
        assert not any(flags.values())

    def test_returns_copy(self):
        AdapterRegistry.get_provider_capabilities("openai")["streaming"] = False
        assert AdapterRegistry.get_provider_capabilities("openai")["streaming"]


class TestRegistryOperations:
    @pytest.mark.asyncio
    async def test_health_check_all(self, registry):
        registry.get("mock")
        registry.register(
            MockAdapter(AdapterConfig(provider="mock"), mock_errors={"fail_validation": None}),
            provider="broken",
        )
        results = await registry.health_check_all()
        assert results["mock"].healthy
        assert results["broken"].status == "unhealthy"
        assert results["broken"].message == "Configuration validation failed"

    @pytest.mark.asyncio
    async def test_health_check_exception_reported(self, registry, mocker):
        adapter = registry.get("mock")
        mocker.patch.object(
            adapter, "get_health_status", side_effect=RuntimeError("check crashed")
        )
        results = await registry.health_check_all()
        assert results["mock"].status == "unhealthy"
        assert results["mock"].message == "check crashed"

    @pytest.mark.asyncio
    async def test_health_check_only_instantiated(self, registry):
        assert await registry.health_check_all() == {}

    @pytest.mark.asyncio
    async def test_get_available_models(self, registry):
        available = await registry.get_available_models(["mock"])
        assert [m.id for m in available["mock"]] == ["mock-small", "mock-large"]

    @pytest.mark.asyncio
    async def test_failing_provider_lists_nothing(self, registry, mocker):
        registry.register_factory("flaky", mock_factory())
        flaky = registry.get("flaky")
        mocker.patch.object(flaky, "get_models", side_effect=RuntimeError("down"))
        available = await registry.get_available_models(["mock", "flaky", "nonexistent"])
        assert len(available["mock"]) == 2
        assert available["flaky"] == []
        assert available["nonexistent"] == []

    @pytest.mark.asyncio
    async def test_get_available_models_defaults_to_cached(self, registry):
        registry.get("mock")
        available = await registry.get_available_models()
        assert list(available) == ["mock"]

    @pytest.mark.asyncio
    async def test_clear(self, registry, mocker):
        adapter = registry.get("mock")
        close = mocker.patch.object(adapter, "close", new=mocker.AsyncMock())
        await registry.clear()
        close.assert_awaited_once()
        assert registry.list() == []
