"""Retry executor with exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import aiohttp

from .exceptions import AdapterError, ErrorCode

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_ERRORS = frozenset({
    ErrorCode.RATE_LIMIT_ERROR,
    ErrorCode.TIMEOUT,
    ErrorCode.NETWORK_ERROR,
    ErrorCode.API_ERROR,
})

JITTER_RATIO = 0.25


@dataclass
class RetryConfig:
    """Configuration for retries. Delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_errors: frozenset[ErrorCode] = field(
        default_factory=lambda: DEFAULT_RETRYABLE_ERRORS
    )

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must not be negative")


@dataclass
class RetryAttempt:
    """Information handed to ``on_retry`` before each backoff sleep."""

    attempt: int
    total_attempts: int
    delay: float
    error: BaseException


RetryCallback = Callable[[RetryAttempt], None]


def calculate_delay(
    attempt: int,
    config: RetryConfig,
    rand: Callable[[], float] = random.random,
) -> float:
    """Backoff delay after a failed ``attempt`` (1-based).

    ``min(base_delay * multiplier**(attempt-1), max_delay)`` with +/-25% jitter,
    never negative.
    """
    base = min(
        config.base_delay * config.backoff_multiplier ** (attempt - 1),
        config.max_delay,
    )
    jitter = base * JITTER_RATIO * (rand() * 2 - 1)
    return max(0.0, base + jitter)


def should_retry(
    error: BaseException, retryable_errors: frozenset[ErrorCode] | set[ErrorCode]
) -> bool:
    """Decide whether an error is worth another attempt."""
    if isinstance(error, AdapterError):
        return error.retryable and error.code in retryable_errors

    # Bare transport failures that escaped classification
    if isinstance(error, asyncio.TimeoutError):
        return ErrorCode.TIMEOUT in retryable_errors
    if isinstance(error, (aiohttp.ClientConnectionError, ConnectionError)):
        return ErrorCode.NETWORK_ERROR in retryable_errors

    return False


async def create_retry_wrapper(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    config: RetryConfig | None = None,
    on_retry: RetryCallback | None = None,
) -> T:
    """Run ``operation`` with bounded exponential-backoff retries.

    Args:
        operation: Zero-argument coroutine function to execute
        max_retries: Maximum number of attempts in total
        config: Delay and retryable-kind settings; its max_retries is replaced
        on_retry: Called before each backoff sleep

    Returns:
        The operation's result

    Raises:
        The last error once attempts are exhausted, or the first
        non-retryable error immediately
    """
    base = config or RetryConfig()
    final_config = RetryConfig(
        max_retries=max_retries,
        base_delay=base.base_delay,
        max_delay=base.max_delay,
        backoff_multiplier=base.backoff_multiplier,
        retryable_errors=base.retryable_errors,
    )

    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= final_config.max_retries or not should_retry(
                e, final_config.retryable_errors
            ):
                raise

            delay = calculate_delay(attempt, final_config)
            logger.warning(
                f"Attempt {attempt}/{final_config.max_retries} failed: {e}. "
                f"Retrying in {delay:.2f}s"
            )
            if on_retry:
                on_retry(RetryAttempt(attempt, final_config.max_retries, delay, e))

            await asyncio.sleep(delay)
            attempt += 1


async def retry_with_condition(
    operation: Callable[[], Awaitable[T]],
    should_retry_fn: Callable[[BaseException, int], bool],
    max_retries: int = 3,
    base_delay: float = 1.0,
    on_retry: RetryCallback | None = None,
) -> T:
    """Retry with a caller-supplied predicate and plain doubling delays."""
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_retries or not should_retry_fn(e, attempt):
                raise

            delay = base_delay * 2 ** (attempt - 1)
            if on_retry:
                on_retry(RetryAttempt(attempt, max_retries, delay, e))

            await asyncio.sleep(delay)
            attempt += 1


async def retry_with_rate_limit(
    operation: Callable[[], Awaitable[T]], max_retries: int = 5
) -> T:
    """Retry tuned for rate-limited upstreams: slower and more aggressive backoff."""
    return await create_retry_wrapper(
        operation,
        max_retries,
        RetryConfig(
            base_delay=2.0,
            max_delay=60.0,
            backoff_multiplier=2.5,
            retryable_errors=frozenset({ErrorCode.RATE_LIMIT_ERROR, ErrorCode.API_ERROR}),
        ),
    )


def get_retry_after_delay(headers: Mapping[str, Any]) -> float | None:
    """Extract a retry delay in seconds from response headers.

    Reads ``retry-after`` or ``x-ratelimit-reset-after`` as either a number of
    seconds or an HTTP date.

    Returns:
        Delay in seconds, or None when absent or unparseable
    """
    value = _get_header(headers, "retry-after") or _get_header(
        headers, "x-ratelimit-reset-after"
    )
    if not value:
        return None

    try:
        return float(int(str(value).strip()))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        return None
    if retry_at is None:
        return None
    return max(0.0, retry_at.timestamp() - time.time())


def _get_header(headers: Mapping[str, Any], name: str) -> Any:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value
