"""Adapter registration and discovery."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from threading import Lock

from .anthropic import AnthropicAdapter
from .base import HealthResult, LLMAdapter
from .config import ProviderConfigManager
from .exceptions import ProviderNotFoundError
from .google import GoogleAdapter
from .huggingface import HuggingFaceAdapter
from .mock import MockAdapter
from .ollama import OllamaAdapter
from .openai import (
    DeepSeekAdapter,
    LlamaCppAdapter,
    MistralAdapter,
    OpenAIAdapter,
    QwenAdapter,
    VLLMAdapter,
)
from .unified_models import ModelInfo

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[], LLMAdapter]

ADAPTER_CLASSES: dict[str, type[LLMAdapter]] = {
    cls.provider: cls
    for cls in (
        OpenAIAdapter,
        AnthropicAdapter,
        OllamaAdapter,
        DeepSeekAdapter,
        MistralAdapter,
        QwenAdapter,
        GoogleAdapter,
        HuggingFaceAdapter,
        VLLMAdapter,
        LlamaCppAdapter,
        MockAdapter,
    )
}

CAPABILITY_FLAGS = (
    "streaming",
    "functions",
    "tools",
    "vision",
    "json_mode",
    "embeddings",
    "local_models",
    "custom_endpoints",
)


def _flags(*enabled: str) -> dict[str, bool]:
    return {flag: flag in enabled for flag in CAPABILITY_FLAGS}


# Static feature table per provider id
PROVIDER_CAPABILITIES: dict[str, dict[str, bool]] = {
    "openai": _flags("streaming", "functions", "tools", "vision", "json_mode",
                     "embeddings", "custom_endpoints"),
    "anthropic": _flags("streaming", "tools", "vision"),
    "google": _flags("streaming", "functions", "tools", "vision", "embeddings"),
    "huggingface": _flags("streaming", "embeddings", "custom_endpoints"),
    "ollama": _flags("streaming", "vision", "embeddings", "local_models",
                     "custom_endpoints"),
    "llamacpp": _flags("streaming", "local_models", "custom_endpoints"),
    "vllm": _flags("streaming", "local_models", "custom_endpoints"),
    "deepseek": _flags("streaming", "functions", "tools", "json_mode"),
    "qwen": _flags("streaming", "functions", "tools", "vision"),
    "mistral": _flags("streaming", "functions", "tools", "embeddings"),
    "mock": _flags("streaming", "local_models"),
}


def default_factories(
    config_manager: ProviderConfigManager | None = None,
) -> dict[str, AdapterFactory]:
    """Build one factory per built-in adapter, configured from ``config_manager``."""
    manager = config_manager or ProviderConfigManager()

    def make(adapter_class: type[LLMAdapter]) -> AdapterFactory:
        def factory() -> LLMAdapter:
            return adapter_class(manager.load_config(adapter_class.provider))
        return factory

    return {name: make(adapter_class) for name, adapter_class in ADAPTER_CLASSES.items()}


class AdapterRegistry:
    """Owns adapter instances by provider id.

    Adapters are created lazily from factories on first ``get`` and cached
    until unregistered or cleared.
    """

    def __init__(
        self,
        factories: dict[str, AdapterFactory] | None = None,
        config_manager: ProviderConfigManager | None = None,
    ):
        """Initialize the registry.

        Args:
            factories: Provider id -> zero-argument adapter factory; defaults
                to every built-in adapter
            config_manager: Configuration source for the default factories
        """
        if factories is None:
            factories = default_factories(config_manager)
        self._factories = dict(factories)
        self._adapters: dict[str, LLMAdapter] = {}
        self._lock = Lock()

    def register(self, adapter: LLMAdapter, provider: str | None = None) -> None:
        """Register a ready-made adapter, replacing any cached one."""
        provider = provider or adapter.provider
        with self._lock:
            self._adapters[provider] = adapter
        logger.info(f"Registered adapter: {provider}")

    def register_factory(self, provider: str, factory: AdapterFactory) -> None:
        with self._lock:
            self._factories[provider] = factory
        logger.info(f"Registered adapter factory: {provider}")

    def unregister(self, provider: str) -> LLMAdapter | None:
        """Drop the cached adapter for ``provider`` and return it."""
        with self._lock:
            adapter = self._adapters.pop(provider, None)
        if adapter is not None:
            logger.info(f"Unregistered adapter: {provider}")
        return adapter

    def get(self, provider: str) -> LLMAdapter | None:
        """Get the adapter for ``provider``, creating it on first use.

        Returns:
            The adapter, or None when the provider id is unknown

        Raises:
            ConfigurationError: If the provider is known but not configured
        """
        with self._lock:
            if provider in self._adapters:
                return self._adapters[provider]
            factory = self._factories.get(provider)
            if factory is None:
                return None
            adapter = factory()
            self._adapters[provider] = adapter
        logger.debug(f"Created adapter: {provider}")
        return adapter

    def require(self, provider: str) -> LLMAdapter:
        """Like ``get`` but raises for unknown providers.

        Raises:
            ProviderNotFoundError: If the provider id is unknown
        """
        adapter = self.get(provider)
        if adapter is None:
            available = ", ".join(self.list_providers())
            raise ProviderNotFoundError(
                f"Provider '{provider}' not found. Available providers: {available}",
                provider=provider,
            )
        return adapter

    def list(self) -> list[LLMAdapter]:
        """Adapters instantiated so far."""
        with self._lock:
            return list(self._adapters.values())

    def list_providers(self) -> list[str]:
        """Every provider id that ``get`` can resolve."""
        with self._lock:
            return sorted(set(self._factories) | set(self._adapters))

    def get_configured(self) -> list[LLMAdapter]:
        return [adapter for adapter in self.list() if adapter.is_configured()]

    def get_supported_providers(self) -> list[str]:
        return sorted(self._factories)

    @staticmethod
    def get_provider_capabilities(provider: str) -> dict[str, bool]:
        """Static feature flags for ``provider``; all False when unknown."""
        return dict(PROVIDER_CAPABILITIES.get(provider, _flags()))

    async def health_check_all(self) -> dict[str, HealthResult]:
        """Check every configured adapter concurrently."""
        with self._lock:
            adapters = {
                provider: adapter
                for provider, adapter in self._adapters.items()
                if adapter.is_configured()
            }

        results = await asyncio.gather(
            *(adapter.get_health_status() for adapter in adapters.values()),
            return_exceptions=True,
        )

        report = {}
        for provider, result in zip(adapters, results):
            if isinstance(result, BaseException):
                logger.warning(f"Health check for {provider} failed: {result}")
                result = HealthResult(status="unhealthy", message=str(result))
            report[provider] = result
        return report

    async def get_available_models(
        self, providers: Iterable[str] | None = None
    ) -> dict[str, list[ModelInfo]]:
        """List models per provider; a failing provider reports an empty list.

        Args:
            providers: Provider ids to query; defaults to the configured adapters
        """
        if providers is None:
            with self._lock:
                names = [
                    provider
                    for provider, adapter in self._adapters.items()
                    if adapter.is_configured()
                ]
        else:
            names = list(providers)

        async def models_for(provider: str) -> list[ModelInfo]:
            adapter = self.require(provider)
            return await adapter.get_models()

        results = await asyncio.gather(
            *(models_for(provider) for provider in names),
            return_exceptions=True,
        )

        available = {}
        for provider, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to list models for {provider}: {result}")
                result = []
            available[provider] = result
        return available

    async def clear(self) -> None:
        """Close and forget every cached adapter."""
        with self._lock:
            adapters = list(self._adapters.values())
            self._adapters.clear()
        for adapter in adapters:
            await adapter.close()
