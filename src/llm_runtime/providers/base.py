"""Base classes for LLM adapters.

An adapter turns the provider-agnostic request shapes into one provider's
wire protocol. The base class owns everything that is the same for every
provider: validation, client-side rate limiting, retries, the circuit
breaker, cost accounting and stream normalization. Subclasses only know
how to build a payload, parse a response and list models.
"""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

import aiohttp

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .cost_tracker import CostBreakdown, CostTracker, CostTrackerConfig
from .error_handlers import HTTPErrorClassifier
from .exceptions import (
    AdapterError,
    ConfigurationError,
    InvalidRequestError,
    InvalidResponseError,
)
from .rate_limiters import RateLimitConfig, RateLimiter
from .retry import RetryCallback, RetryConfig, create_retry_wrapper
from .streaming_adapters import StreamingFormat, StreamingManager
from .token_counters import TokenCounter, UnifiedTokenCounter
from .unified_models import (
    ChatMessage,
    ChatOptions,
    ChatResponse,
    MessageRole,
    ModelInfo,
    StreamingChatResponse,
    TokenUsage,
    merge_options,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 60.0


@dataclass
class AdapterConfig:
    """Configuration for one adapter instance."""

    provider: str
    api_key: str | None = None
    base_url: str | None = None
    timeout: float = DEFAULT_TIMEOUT  # seconds
    max_retries: int = 3
    model: str | None = None
    organization: str | None = None
    extra_params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ConfigurationError(
                "timeout must be positive", provider=self.provider
            )
        if self.max_retries < 1:
            raise ConfigurationError(
                "max_retries must be at least 1", provider=self.provider
            )

    def to_dict(self, redact: bool = True) -> dict[str, Any]:
        """Serializable view; the API key is masked unless ``redact`` is False."""
        api_key = self.api_key
        if redact and api_key:
            api_key = f"{api_key[:4]}...{api_key[-4:]}" if len(api_key) > 8 else "***"
        return {
            "provider": self.provider,
            "api_key": api_key,
            "base_url": self.base_url,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
            "model": self.model,
            "organization": self.organization,
            "extra_params": dict(self.extra_params),
        }


@dataclass
class HealthResult:
    """Outcome of a health check."""

    status: str  # "healthy" or "unhealthy"
    latency_ms: float | None = None
    message: str | None = None

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "latency_ms": self.latency_ms,
            "message": self.message,
        }


class LLMAdapter(ABC):
    """Base class for all LLM adapters."""

    # Provider metadata
    provider: str = ""
    description: str = ""
    requires_api_key: bool = True
    default_base_url: str | None = None
    default_model: str = ""
    streaming_format: StreamingFormat = StreamingFormat.SSE
    capabilities: tuple[str, ...] = ("chat", "completion")
    # Reject models outside MODELS; off for servers that host arbitrary models
    strict_models: bool = False
    # Local servers have no shared upstream worth guarding
    use_circuit_breaker: bool = True
    MODELS: dict[str, ModelInfo] = {}

    def __init__(
        self,
        config: AdapterConfig,
        *,
        rate_limiter: RateLimiter | None = None,
        cost_tracker: CostTracker | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        retry_config: RetryConfig | None = None,
        on_retry: RetryCallback | None = None,
    ):
        """Initialize the adapter.

        Args:
            config: Adapter configuration
            rate_limiter: Shared limiter; a private one is created when omitted
            cost_tracker: Shared tracker; a private one is created when omitted
            circuit_breaker: Shared breaker; a private one is created when omitted
            retry_config: Backoff settings; ``config.max_retries`` is the attempt cap
            on_retry: Called before each backoff sleep

        Raises:
            ConfigurationError: If the configuration is unusable
        """
        self.config = config
        self._validate_config()

        self.base_url = (config.base_url or self.default_base_url or "").rstrip("/")
        self.model = config.model or self.default_model
        self.timeout = aiohttp.ClientTimeout(total=config.timeout)

        self.rate_limiter = rate_limiter or RateLimiter(
            self.default_rate_limits(), name=self.provider
        )
        self.cost_tracker = cost_tracker or CostTracker(self.default_cost_config())
        if circuit_breaker is not None:
            self.circuit_breaker: CircuitBreaker | None = circuit_breaker
        elif self.use_circuit_breaker:
            self.circuit_breaker = CircuitBreaker(
                self.provider,
                CircuitBreakerConfig(),
                on_state_change=self._on_circuit_state_change,
            )
        else:
            self.circuit_breaker = None

        self.retry_config = retry_config or RetryConfig(max_retries=config.max_retries)
        self.on_retry = on_retry
        self.error_classifier = HTTPErrorClassifier(self.provider)
        self.streaming_manager = StreamingManager()
        self.token_counter = UnifiedTokenCounter(self._token_counters())

    def _validate_config(self) -> None:
        """Validate adapter configuration."""
        if self.requires_api_key and not self.config.api_key:
            raise ConfigurationError(
                f"{self.provider} adapter requires an API key. "
                f"Set it via environment variable or configuration.",
                provider=self.provider,
            )
        if not (self.config.base_url or self.default_base_url):
            raise ConfigurationError(
                f"{self.provider} adapter requires a base URL", provider=self.provider
            )
        if self.strict_models and self.config.model and self.config.model not in self.MODELS:
            raise ConfigurationError(
                f"Model '{self.config.model}' is not supported by {self.provider}. "
                f"Supported models: {', '.join(self.MODELS)}",
                provider=self.provider,
            )

    def _token_counters(self) -> list[TokenCounter]:
        return []

    def default_rate_limits(self) -> RateLimitConfig:
        return RateLimitConfig()

    def default_cost_config(self) -> CostTrackerConfig:
        """Pricing table built from the model catalog."""
        default = self.MODELS.get(self.model)
        return CostTrackerConfig(
            provider=self.provider,
            input_token_cost=default.input_cost if default else 0.0,
            output_token_cost=default.output_cost if default else 0.0,
            model_rates={
                model_id: (info.input_cost, info.output_cost)
                for model_id, info in self.MODELS.items()
            },
        )

    def _on_circuit_state_change(self, old_state: Any, new_state: Any) -> None:
        logger.warning(
            f"{self.provider} circuit breaker state changed from "
            f"{old_state.value} to {new_state.value}"
        )

    # Provider-specific hooks

    @abstractmethod
    def _build_payload(
        self, messages: list[ChatMessage], options: ChatOptions, stream: bool
    ) -> dict[str, Any]:
        """Translate messages and options into the provider's request body."""

    @abstractmethod
    def _parse_response(
        self, data: dict[str, Any], options: ChatOptions
    ) -> ChatResponse:
        """Translate the provider's response body into a ChatResponse.

        Raises:
            InvalidResponseError: If required fields are missing
        """

    @property
    @abstractmethod
    def chat_path(self) -> str:
        """Path of the chat endpoint relative to ``base_url``."""

    def _endpoint(self, options: ChatOptions, stream: bool) -> str:
        """Path for one chat call; providers that route by model override it."""
        return self.chat_path

    @abstractmethod
    async def get_models(self) -> list[ModelInfo]:
        """List the models this adapter can serve."""

    @abstractmethod
    async def validate_config(self) -> bool:
        """Check that the configuration works against the live provider."""

    def _prepare_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    # Public contract

    async def chat(
        self, messages: list[ChatMessage], options: ChatOptions | None = None
    ) -> ChatResponse:
        """Run one non-streaming chat call.

        Args:
            messages: Conversation so far
            options: Generation options; unset fields use runtime defaults

        Returns:
            The provider's reply, with ``cost`` set

        Raises:
            AdapterError: Classified failure after retries are exhausted
        """
        opts = self._prepare(messages, options)
        await self.rate_limiter.wait_for_availability(
            self._estimate_request_tokens(messages, opts)
        )

        response = await self._guarded(lambda: self._chat_once(messages, opts))

        breakdown = await self._track(response.usage, response.cost, response, messages, opts)
        response.cost = breakdown.total_cost
        return response

    async def stream_chat(
        self, messages: list[ChatMessage], options: ChatOptions | None = None
    ) -> AsyncIterator[StreamingChatResponse]:
        """Stream a chat reply as normalized events.

        Connection setup is retried and guarded by the circuit breaker;
        once the first event has arrived the stream is not replayed. Usage
        is recorded just before the terminal event is handed out, so a
        consumer that stops early records nothing.

        Yields:
            Delta events, then exactly one terminal event with ``cost`` set
        """
        opts = self._prepare(messages, options)
        await self.rate_limiter.wait_for_availability(
            self._estimate_request_tokens(messages, opts)
        )

        async def open_stream() -> tuple[AsyncIterator[StreamingChatResponse], Any]:
            events = self._stream_once(messages, opts)
            try:
                first = await events.__anext__()
            except StopAsyncIteration:
                raise InvalidResponseError(
                    f"{self.provider} stream ended before any event",
                    provider=self.provider,
                ) from None
            except BaseException:
                await events.aclose()
                raise
            return events, first

        events, chunk = await self._guarded(open_stream)
        parts: list[str] = []
        try:
            while chunk is not None:
                if chunk.is_final:
                    reply = ChatResponse(
                        content="".join(parts),
                        model=chunk.model,
                        id=chunk.id,
                        usage=chunk.usage,
                        finish_reason=chunk.finish_reason,
                    )
                    breakdown = await self._track(
                        chunk.usage, chunk.cost, reply, messages, opts
                    )
                    chunk.cost = breakdown.total_cost
                    yield chunk
                    return
                parts.append(chunk.content)
                yield chunk
                chunk = await anext(events, None)
        finally:
            await events.aclose()

        raise InvalidResponseError(
            f"{self.provider} stream ended without a terminal event",
            provider=self.provider,
        )

    def count_tokens(self, text: str, model: str | None = None) -> int:
        """Best-effort token count for ``text``."""
        return self.token_counter.count_tokens(text, model or self.model).token_count

    def get_capabilities(self) -> list[str]:
        return list(self.capabilities)

    def estimate_cost(self, usage: TokenUsage, model: str | None = None) -> float:
        """Price ``usage`` at catalog rates without recording it."""
        return self.cost_tracker.estimate_cost(usage, model or self.model).total_cost

    async def get_health_status(self) -> HealthResult:
        """Check the provider and report latency. Never raises."""
        start = time.perf_counter()
        try:
            ok = await self.validate_config()
            message = None if ok else "Configuration validation failed"
        except Exception as e:
            logger.warning(f"Adapter {self.provider} health check failed: {e}")
            ok = False
            message = str(e)
        latency_ms = (time.perf_counter() - start) * 1000
        return HealthResult(
            status="healthy" if ok else "unhealthy",
            latency_ms=round(latency_ms, 2),
            message=message,
        )

    def is_configured(self) -> bool:
        if self.requires_api_key and not self.config.api_key:
            return False
        return bool(self.base_url)

    def validate_messages(self, messages: list[ChatMessage]) -> None:
        """Reject malformed conversations before any network activity.

        Raises:
            InvalidRequestError: If the list is empty or a message is malformed
        """
        if not messages:
            raise InvalidRequestError(
                "Messages array cannot be empty", provider=self.provider
            )
        roles = MessageRole.values()
        for index, message in enumerate(messages):
            if not isinstance(message, ChatMessage):
                raise InvalidRequestError(
                    f"Message at index {index} is not a ChatMessage",
                    provider=self.provider,
                )
            if message.role not in roles:
                raise InvalidRequestError(
                    f"Invalid role '{message.role}' at index {index}. "
                    f"Expected one of: {', '.join(sorted(roles))}",
                    provider=self.provider,
                )
            if not isinstance(message.content, str):
                raise InvalidRequestError(
                    f"Message content at index {index} must be a string",
                    provider=self.provider,
                )

    async def close(self) -> None:
        """Release background resources held by this adapter."""
        await self.rate_limiter.close()

    # Internals

    def _prepare(
        self, messages: list[ChatMessage], options: ChatOptions | None
    ) -> ChatOptions:
        self.validate_messages(messages)
        opts = merge_options(options)
        if opts.model is None:
            opts.model = self.model
        if self.strict_models and opts.model not in self.MODELS:
            raise InvalidRequestError(
                f"Model '{opts.model}' is not supported by {self.provider}",
                provider=self.provider,
            )
        if opts.request_id is None:
            opts.request_id = uuid.uuid4().hex
        return opts

    def _estimate_request_tokens(
        self, messages: list[ChatMessage], options: ChatOptions
    ) -> int:
        return sum(self.count_tokens(m.content, options.model) for m in messages)

    async def _guarded(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker, retrying each attempt."""

        async def attempt() -> T:
            if self.circuit_breaker is None:
                return await operation()
            return await self.circuit_breaker.call(operation)

        return await create_retry_wrapper(
            attempt,
            max_retries=self.retry_config.max_retries,
            config=self.retry_config,
            on_retry=self.on_retry,
        )

    async def _track(
        self,
        usage: TokenUsage | None,
        provided_cost: float | None,
        reply: ChatResponse,
        messages: list[ChatMessage],
        options: ChatOptions,
    ) -> CostBreakdown:
        if usage is None:
            # Provider did not report usage; record a local estimate
            usage = TokenUsage(
                input_tokens=self._estimate_request_tokens(messages, options),
                output_tokens=self.count_tokens(reply.content, options.model),
            )
        return await self.cost_tracker.track_usage(
            usage,
            provided_cost,
            {"model": reply.model or options.model, "request_id": options.request_id},
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _create_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=self.timeout)

    async def _chat_once(
        self, messages: list[ChatMessage], options: ChatOptions
    ) -> ChatResponse:
        payload = self._build_payload(messages, options, stream=False)
        data = await self._request_json(
            "POST", self._endpoint(options, stream=False), payload
        )
        try:
            return self._parse_response(data, options)
        except (AttributeError, TypeError, KeyError, ValueError) as e:
            raise InvalidResponseError(
                f"{self.provider} returned a malformed response body: {e}",
                provider=self.provider,
            ) from e

    async def _request_json(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Send one HTTP request and decode its JSON body.

        Raises:
            AdapterError: Classified HTTP or transport failure
        """
        url = self._url(path)
        logger.debug(f"{method} {url}")
        try:
            async with self._create_session() as session:
                async with session.request(
                    method, url, headers=self._prepare_headers(), json=payload
                ) as response:
                    self._observe_headers(response.headers)
                    if response.status >= 400:
                        raise await self.error_classifier.classify_response_error(response)
                    try:
                        data = await response.json(content_type=None)
                    except ValueError as e:
                        raise InvalidResponseError(
                            f"{self.provider} returned a non-JSON body",
                            provider=self.provider,
                        ) from e
        except AdapterError:
            raise
        except Exception as e:
            raise self.error_classifier.classify_error(e) from e

        data = self._unwrap_body(data)
        if not isinstance(data, dict):
            raise InvalidResponseError(
                f"{self.provider} returned an unexpected response shape",
                provider=self.provider,
            )
        return data

    async def _stream_once(
        self, messages: list[ChatMessage], options: ChatOptions
    ) -> AsyncIterator[StreamingChatResponse]:
        """Open the streaming connection and normalize its frames.

        Closing this generator exits both context managers, which releases
        the underlying connection.
        """
        payload = self._build_payload(messages, options, stream=True)
        url = self._url(self._endpoint(options, stream=True))
        normalizer = self.streaming_manager.get_adapter(
            self.streaming_format, provider=self.provider, model=options.model or ""
        )
        logger.debug(f"Streaming POST {url}")
        try:
            async with self._create_session() as session:
                async with session.post(
                    url, headers=self._prepare_headers(), json=payload
                ) as response:
                    self._observe_headers(response.headers)
                    if response.status >= 400:
                        raise await self.error_classifier.classify_response_error(response)
                    async for event in normalizer.stream_response(
                        response.content.iter_any()
                    ):
                        yield event
        except AdapterError:
            raise
        except Exception as e:
            raise self.error_classifier.classify_error(e) from e

    def _unwrap_body(self, data: Any) -> Any:
        """Hook for providers whose bodies wrap the result object."""
        return data

    def _observe_headers(self, headers: Mapping[str, Any]) -> None:
        self.rate_limiter.update_from_headers(headers)
