"""Provider adapters and the resilience layer shared by all of them."""

from __future__ import annotations

# Adapters
from .anthropic import AnthropicAdapter

# Base classes and types
from .base import AdapterConfig, HealthResult, LLMAdapter

# Circuit breaker
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerStats,
    CircuitSnapshot,
    CircuitState,
)

# Configuration management
from .config import ProviderConfigManager

# Cost tracking
from .cost_tracker import (
    AlertType,
    CostAlert,
    CostBreakdown,
    CostTracker,
    CostTrackerConfig,
    CostTrackerManager,
    RequestRecord,
    UsageStats,
)

# Error handling
from .error_handlers import HTTPErrorClassifier

# Exceptions
from .exceptions import (
    AdapterError,
    AdapterTimeoutError,
    APIError,
    AuthenticationError,
    CircuitBreakerError,
    ConfigurationError,
    ErrorCode,
    InvalidRequestError,
    InvalidResponseError,
    NetworkError,
    ProviderNotFoundError,
    RateLimitError,
    UnknownAdapterError,
    create_error,
)
from .google import GoogleAdapter
from .huggingface import HuggingFaceAdapter
from .mock import MockAdapter
from .ollama import OllamaAdapter
from .openai import (
    DeepSeekAdapter,
    LlamaCppAdapter,
    MistralAdapter,
    OpenAIAdapter,
    OpenAICompatibleAdapter,
    QwenAdapter,
    VLLMAdapter,
)

# Rate limiting
from .rate_limiters import (
    RateLimitConfig,
    RateLimiter,
    RateLimiterManager,
    RateLimitStatus,
)

# Registry
from .registry import ADAPTER_CLASSES, AdapterRegistry, default_factories

# Retry
from .retry import (
    RetryAttempt,
    RetryConfig,
    calculate_delay,
    create_retry_wrapper,
    get_retry_after_delay,
    retry_with_condition,
    retry_with_rate_limit,
    should_retry,
)

# Streaming
from .streaming_adapters import (
    JSONLinesAdapter,
    PlainTextAdapter,
    SSEAdapter,
    StreamingAdapter,
    StreamingFormat,
    StreamingManager,
    collect_stream,
)

# Token counting
from .token_counters import UnifiedTokenCounter, estimate_tokens

# Unified models
from .unified_models import (
    ChatMessage,
    ChatOptions,
    ChatResponse,
    FinishReason,
    MessageRole,
    ModelInfo,
    StreamingChatResponse,
    TokenUsage,
    create_token_usage,
)

__all__ = [
    # Base classes
    "AdapterConfig",
    "HealthResult",
    "LLMAdapter",
    # Adapters
    "AnthropicAdapter",
    "DeepSeekAdapter",
    "GoogleAdapter",
    "HuggingFaceAdapter",
    "LlamaCppAdapter",
    "MistralAdapter",
    "MockAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "OpenAICompatibleAdapter",
    "QwenAdapter",
    "VLLMAdapter",
    # Registry and configuration
    "ADAPTER_CLASSES",
    "AdapterRegistry",
    "ProviderConfigManager",
    "default_factories",
    # Exceptions
    "AdapterError",
    "AdapterTimeoutError",
    "APIError",
    "AuthenticationError",
    "CircuitBreakerError",
    "ConfigurationError",
    "ErrorCode",
    "InvalidRequestError",
    "InvalidResponseError",
    "NetworkError",
    "ProviderNotFoundError",
    "RateLimitError",
    "UnknownAdapterError",
    "create_error",
    "HTTPErrorClassifier",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerStats",
    "CircuitSnapshot",
    "CircuitState",
    # Cost tracking
    "AlertType",
    "CostAlert",
    "CostBreakdown",
    "CostTracker",
    "CostTrackerConfig",
    "CostTrackerManager",
    "RequestRecord",
    "UsageStats",
    # Rate limiting
    "RateLimitConfig",
    "RateLimiter",
    "RateLimiterManager",
    "RateLimitStatus",
    # Retry
    "RetryAttempt",
    "RetryConfig",
    "calculate_delay",
    "create_retry_wrapper",
    "get_retry_after_delay",
    "retry_with_condition",
    "retry_with_rate_limit",
    "should_retry",
    # Streaming
    "JSONLinesAdapter",
    "PlainTextAdapter",
    "SSEAdapter",
    "StreamingAdapter",
    "StreamingFormat",
    "StreamingManager",
    "collect_stream",
    # Token counting
    "UnifiedTokenCounter",
    "estimate_tokens",
    # Unified models
    "ChatMessage",
    "ChatOptions",
    "ChatResponse",
    "FinishReason",
    "MessageRole",
    "ModelInfo",
    "StreamingChatResponse",
    "TokenUsage",
    "create_token_usage",
]
