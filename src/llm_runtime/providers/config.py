"""Configuration management for adapters."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import keyring
from keyring.errors import KeyringError

from .base import AdapterConfig
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "LLM_RUNTIME_CONFIG_DIR"
DISABLE_KEYRING_ENV = "LLM_RUNTIME_DISABLE_KEYRING"


class ProviderConfigManager:
    """Manages adapter configurations from multiple sources.

    Configuration precedence (highest to lowest):
    1. Environment variables
    2. Keyring (secure storage)
    3. Configuration file
    4. Default values
    """

    # Environment variable mappings per provider
    ENV_MAPPING = {
        "openai": {
            "api_key": "OPENAI_API_KEY",
            "organization": "OPENAI_ORG_ID",
            "base_url": "OPENAI_BASE_URL",
            "model": "OPENAI_MODEL",
        },
        "anthropic": {
            "api_key": "ANTHROPIC_API_KEY",
            "base_url": "ANTHROPIC_BASE_URL",
            "model": "ANTHROPIC_MODEL",
        },
        "deepseek": {
            "api_key": "DEEPSEEK_API_KEY",
            "base_url": "DEEPSEEK_BASE_URL",
            "model": "DEEPSEEK_MODEL",
        },
        "mistral": {
            "api_key": "MISTRAL_API_KEY",
            "base_url": "MISTRAL_BASE_URL",
            "model": "MISTRAL_MODEL",
        },
        "qwen": {
            "api_key": "DASHSCOPE_API_KEY",
            "base_url": "QWEN_BASE_URL",
            "model": "QWEN_MODEL",
        },
        "google": {
            "api_key": "GOOGLE_API_KEY",
            "base_url": "GOOGLE_BASE_URL",
            "model": "GOOGLE_MODEL",
        },
        "huggingface": {
            "api_key": "HUGGINGFACE_API_KEY",
            "base_url": "HUGGINGFACE_BASE_URL",
            "model": "HUGGINGFACE_MODEL",
        },
        "ollama": {
            "base_url": "OLLAMA_HOST",
            "model": "OLLAMA_MODEL",
        },
        "vllm": {
            "api_key": "VLLM_API_KEY",
            "base_url": "VLLM_BASE_URL",
            "model": "VLLM_MODEL",
        },
        "llamacpp": {
            "base_url": "LLAMACPP_BASE_URL",
            "model": "LLAMACPP_MODEL",
        },
    }

    # Providers that work without credentials
    KEYLESS_PROVIDERS = frozenset({"ollama", "vllm", "llamacpp", "mock"})

    SERVICE_NAME = "llm-runtime"

    def __init__(self, config_dir: Path | None = None):
        """Initialize config manager.

        Args:
            config_dir: Directory for config files (default: $LLM_RUNTIME_CONFIG_DIR
                or ~/.llm_runtime)
        """
        if config_dir is None:
            env_dir = os.getenv(CONFIG_DIR_ENV)
            config_dir = Path(env_dir) if env_dir else Path.home() / ".llm_runtime"
        self.config_dir = config_dir
        self.config_file = self.config_dir / "providers.json"
        self._cache: dict[str, AdapterConfig] = {}

    @property
    def keyring_enabled(self) -> bool:
        return os.getenv(DISABLE_KEYRING_ENV, "").lower() not in ("1", "true", "yes")

    def load_config(self, provider_name: str) -> AdapterConfig:
        """Load configuration for a provider.

        Sources are merged field by field, so an API key from the keyring
        combines with a base URL from the environment.

        Args:
            provider_name: Name of the provider

        Returns:
            AdapterConfig instance

        Raises:
            ConfigurationError: If a provider that needs a key has none
        """
        if provider_name in self._cache:
            return self._cache[provider_name]

        values: dict[str, Any] = {}
        for source in (
            self._load_from_file(provider_name),
            self._load_from_keyring(provider_name),
            self._load_from_env(provider_name),
        ):
            values.update({key: value for key, value in source.items() if value})

        if not values.get("api_key") and provider_name not in self.KEYLESS_PROVIDERS:
            env_var = self.ENV_MAPPING.get(provider_name, {}).get(
                "api_key", f"{provider_name.upper()}_API_KEY"
            )
            raise ConfigurationError(
                f"No configuration found for provider '{provider_name}'. "
                f"Set {env_var} environment variable or store a key with "
                f"save_config()",
                provider=provider_name,
            )

        config = AdapterConfig(provider=provider_name, **values)
        self._cache[provider_name] = config
        return config

    def _load_from_env(self, provider_name: str) -> dict[str, Any]:
        """Load configuration from environment variables."""
        env_mapping = self.ENV_MAPPING.get(
            provider_name, {"api_key": f"{provider_name.upper()}_API_KEY"}
        )
        values = {field: os.getenv(var) for field, var in env_mapping.items()}
        values = {field: value for field, value in values.items() if value}
        if values:
            logger.debug(f"Loaded {provider_name} config from environment")
        return values

    def _load_from_keyring(self, provider_name: str) -> dict[str, Any]:
        """Load API key, model and base URL from the system keyring."""
        if not self.keyring_enabled:
            return {}

        values = {}
        try:
            for field in ("api_key", "model", "base_url"):
                value = keyring.get_password(self.SERVICE_NAME, f"{provider_name}_{field}")
                if value:
                    values[field] = value
        except KeyringError as e:
            logger.warning(f"Failed to load from keyring: {e}")
            return {}

        if values:
            logger.debug(f"Loaded {provider_name} config from keyring")
        return values

    def _load_from_file(self, provider_name: str) -> dict[str, Any]:
        """Load configuration from the JSON file."""
        provider_data = self._read_file().get(provider_name)
        if not isinstance(provider_data, dict):
            return {}

        allowed = {
            "api_key", "base_url", "timeout", "max_retries",
            "model", "organization", "extra_params",
        }
        values = {key: value for key, value in provider_data.items() if key in allowed}
        logger.debug(f"Loaded {provider_name} config from file")
        return values

    def _read_file(self) -> dict[str, Any]:
        if not self.config_file.exists():
            return {}
        try:
            with open(self.config_file) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load config file: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def save_config(self, config: AdapterConfig, save_to_keyring: bool = True) -> None:
        """Save adapter configuration.

        Args:
            config: Adapter configuration to save
            save_to_keyring: Whether to save the API key to the keyring
        """
        provider_name = config.provider
        stored_in_keyring = False

        if save_to_keyring and self.keyring_enabled and config.api_key:
            try:
                keyring.set_password(
                    self.SERVICE_NAME, f"{provider_name}_api_key", config.api_key
                )
                stored_in_keyring = True
                logger.info(f"Saved {provider_name} credentials to keyring")
            except KeyringError as e:
                logger.warning(f"Failed to save to keyring: {e}")

        self._save_to_file(config, include_api_key=not stored_in_keyring)
        self._cache[provider_name] = config

    def _save_to_file(self, config: AdapterConfig, include_api_key: bool = False) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        data = self._read_file()

        provider_data: dict[str, Any] = {
            "model": config.model,
            "timeout": config.timeout,
            "max_retries": config.max_retries,
        }
        if config.base_url:
            provider_data["base_url"] = config.base_url
        if config.organization:
            provider_data["organization"] = config.organization
        if config.extra_params:
            provider_data["extra_params"] = config.extra_params
        if include_api_key and config.api_key:
            provider_data["api_key"] = config.api_key

        data[config.provider] = provider_data
        with open(self.config_file, "w") as f:
            json.dump(data, f, indent=2)

        logger.info(f"Saved {config.provider} config to {self.config_file}")

    def list_configured_providers(self) -> list[str]:
        """List all providers with a usable configuration.

        Returns:
            Sorted provider names
        """
        providers = set()
        for provider in self.ENV_MAPPING:
            try:
                config = self.load_config(provider)
            except ConfigurationError:
                continue
            if config.api_key or config.base_url:
                providers.add(provider)
        providers.update(self._read_file())
        return sorted(providers)

    def clear_config(self, provider_name: str) -> None:
        """Clear configuration for a provider.

        Args:
            provider_name: Provider to clear
        """
        self._cache.pop(provider_name, None)

        if self.keyring_enabled:
            for field in ("api_key", "model", "base_url"):
                try:
                    keyring.delete_password(self.SERVICE_NAME, f"{provider_name}_{field}")
                except KeyringError as e:
                    logger.debug(
                        f"Failed to clear keyring {field} for {provider_name}: {e}"
                    )

        data = self._read_file()
        if provider_name in data:
            del data[provider_name]
            with open(self.config_file, "w") as f:
                json.dump(data, f, indent=2)

        logger.info(f"Cleared configuration for {provider_name}")
