"""Multi-window rate limiting for provider adapters.

A ``RateLimiter`` keeps a log of admitted requests for one identifier
(a provider, or a provider plus API key) and enforces request and token
ceilings over rolling minute, hour and day windows at the same time.
Callers that cannot be admitted wait in a FIFO queue that a background
task re-evaluates every 100ms.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .exceptions import AdapterTimeoutError, RateLimitError

logger = logging.getLogger(__name__)

MINUTE = 60
HOUR = 3600
DAY = 86400

RETENTION_SECONDS = DAY
DRAIN_INTERVAL = 0.1
MAX_WAIT_ESTIMATE = 60.0


@dataclass
class RateLimitConfig:
    """Request and token ceilings per window, plus queue settings."""

    requests_per_minute: int = 60
    requests_per_hour: int = 3600
    requests_per_day: int = 86400
    tokens_per_minute: int = 150_000
    tokens_per_hour: int = 9_000_000
    tokens_per_day: int = 216_000_000
    queue_max_size: int = 100
    queue_timeout: float = 30.0  # seconds

    def __post_init__(self) -> None:
        """Validate configuration."""
        for name in (
            "requests_per_minute", "requests_per_hour", "requests_per_day",
            "tokens_per_minute", "tokens_per_hour", "tokens_per_day",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive")
        if self.queue_max_size < 0:
            raise ValueError("queue_max_size must not be negative")
        if self.queue_timeout <= 0:
            raise ValueError("queue_timeout must be positive")

    def request_limits(self) -> dict[int, int]:
        return {
            MINUTE: self.requests_per_minute,
            HOUR: self.requests_per_hour,
            DAY: self.requests_per_day,
        }

    def token_limits(self) -> dict[int, int]:
        return {
            MINUTE: self.tokens_per_minute,
            HOUR: self.tokens_per_hour,
            DAY: self.tokens_per_day,
        }


@dataclass
class WindowCounts:
    per_minute: int
    per_hour: int
    per_day: int


@dataclass
class ResetTimes:
    next_minute: datetime
    next_hour: datetime
    next_day: datetime


@dataclass
class RateLimitStatus:
    """Live remaining-quota snapshot."""

    requests_remaining: WindowCounts
    tokens_remaining: WindowCounts
    reset_times: ResetTimes
    queue_size: int
    is_blocked: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests_remaining": vars(self.requests_remaining).copy(),
            "tokens_remaining": vars(self.tokens_remaining).copy(),
            "reset_times": {
                key: value.isoformat() for key, value in vars(self.reset_times).items()
            },
            "queue_size": self.queue_size,
            "is_blocked": self.is_blocked,
        }


@dataclass
class RequestEntry:
    """One admitted (or synthetic) request in the log."""

    timestamp: float
    tokens: int = 0
    counts_request: bool = True


@dataclass
class _Waiter:
    future: asyncio.Future[None]
    tokens: int | None
    enqueued_at: float = field(default_factory=time.time)


def _next_boundary(now: float, window: int) -> datetime:
    return datetime.fromtimestamp(math.ceil(now / window) * window, tz=timezone.utc)


class RateLimiter:
    """Sliding-window limiter over three windows for requests and tokens."""

    def __init__(self, config: RateLimitConfig | None = None, name: str = "default"):
        """Initialize rate limiter.

        Args:
            config: Ceilings and queue settings
            name: Identifier this limiter accounts for (used in errors and logs)
        """
        self.config = config or RateLimitConfig()
        self.name = name

        self._requests: list[RequestEntry] = []
        self._queue: deque[_Waiter] = deque()
        self._lock: asyncio.Lock | None = None
        self._drain_task: asyncio.Task[None] | None = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def _cleanup_old_requests(self, now: float) -> None:
        """Drop entries older than the longest window."""
        cutoff = now - RETENTION_SECONDS
        self._requests = [r for r in self._requests if r.timestamp > cutoff]

    def _occupancy(self, now: float) -> tuple[dict[int, int], dict[int, int]]:
        """Requests and tokens recorded in each window ending at ``now``."""
        requests = {MINUTE: 0, HOUR: 0, DAY: 0}
        tokens = {MINUTE: 0, HOUR: 0, DAY: 0}
        for entry in self._requests:
            age = now - entry.timestamp
            for window in (MINUTE, HOUR, DAY):
                if age < window:
                    if entry.counts_request:
                        requests[window] += 1
                    tokens[window] += entry.tokens
        return requests, tokens

    def can_process_request(self, tokens: int | None = None) -> bool:
        """Check whether a request fits inside all six ceilings right now."""
        now = time.time()
        self._cleanup_old_requests(now)
        requests, used_tokens = self._occupancy(now)

        for window, limit in self.config.request_limits().items():
            if requests[window] >= limit:
                return False

        if tokens:
            for window, limit in self.config.token_limits().items():
                if used_tokens[window] + tokens > limit:
                    return False

        return True

    def record_request(self, tokens: int | None = None) -> None:
        """Record an admitted request."""
        self._requests.append(RequestEntry(timestamp=time.time(), tokens=tokens or 0))

    async def wait_for_availability(self, tokens: int | None = None) -> None:
        """Admit the caller now or after queueing.

        Args:
            tokens: Estimated tokens the request will consume

        Raises:
            RateLimitError: If the queue is already full
            AdapterTimeoutError: If not admitted within ``queue_timeout``
        """
        async with self._get_lock():
            if not self._queue and self.can_process_request(tokens):
                self.record_request(tokens)
                return

            if len(self._queue) >= self.config.queue_max_size:
                raise RateLimitError(
                    "Rate limit queue is full",
                    provider=self.name,
                    retryable=False,
                    details={
                        "queue_size": len(self._queue),
                        "max_size": self.config.queue_max_size,
                    },
                )

            waiter = _Waiter(
                future=asyncio.get_running_loop().create_future(), tokens=tokens
            )
            self._queue.append(waiter)
            logger.debug(
                f"Rate limiter '{self.name}' queued request "
                f"(queue size {len(self._queue)})"
            )
            self._ensure_drain_task()

        try:
            await asyncio.wait_for(
                asyncio.shield(waiter.future), timeout=self.config.queue_timeout
            )
        except asyncio.TimeoutError:
            if waiter.future.done():
                # Admitted or rejected in the same tick the timeout fired
                waiter.future.result()
                return
            self._discard(waiter)
            raise AdapterTimeoutError(
                "Rate limit queue timeout",
                provider=self.name,
                details={"queue_timeout": self.config.queue_timeout},
            ) from None
        except asyncio.CancelledError:
            self._discard(waiter)
            raise

    def _discard(self, waiter: _Waiter) -> None:
        try:
            self._queue.remove(waiter)
        except ValueError:
            pass
        if not waiter.future.done():
            waiter.future.cancel()

    def _ensure_drain_task(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(
                self._drain_queue(), name=f"rate-limiter-drain-{self.name}"
            )

    async def _drain_queue(self) -> None:
        """Re-evaluate the queue head every interval until the queue empties."""
        while self._queue:
            await asyncio.sleep(DRAIN_INTERVAL)
            async with self._get_lock():
                self._admit_waiting()

    def _admit_waiting(self) -> None:
        while self._queue:
            waiter = self._queue[0]
            if waiter.future.done():
                self._queue.popleft()
                continue
            if not self.can_process_request(waiter.tokens):
                break
            self._queue.popleft()
            self.record_request(waiter.tokens)
            waiter.future.set_result(None)

    def get_status(self) -> RateLimitStatus:
        """Get current remaining quota per window."""
        now = time.time()
        self._cleanup_old_requests(now)
        requests, used_tokens = self._occupancy(now)
        request_limits = self.config.request_limits()
        token_limits = self.config.token_limits()

        return RateLimitStatus(
            requests_remaining=WindowCounts(
                per_minute=max(0, request_limits[MINUTE] - requests[MINUTE]),
                per_hour=max(0, request_limits[HOUR] - requests[HOUR]),
                per_day=max(0, request_limits[DAY] - requests[DAY]),
            ),
            tokens_remaining=WindowCounts(
                per_minute=max(0, token_limits[MINUTE] - used_tokens[MINUTE]),
                per_hour=max(0, token_limits[HOUR] - used_tokens[HOUR]),
                per_day=max(0, token_limits[DAY] - used_tokens[DAY]),
            ),
            reset_times=ResetTimes(
                next_minute=_next_boundary(now, MINUTE),
                next_hour=_next_boundary(now, HOUR),
                next_day=_next_boundary(now, DAY),
            ),
            queue_size=len(self._queue),
            is_blocked=not self.can_process_request(),
        )

    def estimate_wait_time(self, tokens: int | None = None) -> float:
        """Estimate seconds until a request of ``tokens`` could be admitted.

        Returns:
            0 when admissible now, otherwise the nearest window reset
            capped at 60 seconds
        """
        if self.can_process_request(tokens):
            return 0.0

        now = time.time()
        status = self.get_status()
        reset_at = {
            MINUTE: status.reset_times.next_minute.timestamp(),
            HOUR: status.reset_times.next_hour.timestamp(),
            DAY: status.reset_times.next_day.timestamp(),
        }
        requests_left = {
            MINUTE: status.requests_remaining.per_minute,
            HOUR: status.requests_remaining.per_hour,
            DAY: status.requests_remaining.per_day,
        }
        tokens_left = {
            MINUTE: status.tokens_remaining.per_minute,
            HOUR: status.tokens_remaining.per_hour,
            DAY: status.tokens_remaining.per_day,
        }

        wait_times = [MAX_WAIT_ESTIMATE]
        for window in (MINUTE, HOUR, DAY):
            if requests_left[window] == 0:
                wait_times.append(reset_at[window] - now)
            if tokens and tokens_left[window] < tokens:
                wait_times.append(reset_at[window] - now)

        return max(0.0, min(wait_times))

    def update_from_headers(self, headers: Mapping[str, Any]) -> None:
        """Reconcile accounting with provider-reported remaining quota.

        Accepts OpenAI ``x-ratelimit-remaining-*`` and Anthropic
        ``anthropic-ratelimit-*-remaining`` headers. When the provider reports
        less remaining minute quota than we track, synthetic past entries are
        added so local accounting is at least as strict. Missing or malformed
        headers are ignored.
        """
        lowered = {str(key).lower(): value for key, value in headers.items()}
        requests_remaining = self._parse_header(
            lowered,
            "x-ratelimit-remaining-requests",
            "anthropic-ratelimit-requests-remaining",
        )
        tokens_remaining = self._parse_header(
            lowered,
            "x-ratelimit-remaining-tokens",
            "anthropic-ratelimit-tokens-remaining",
        )
        if requests_remaining is None and tokens_remaining is None:
            return

        now = time.time()
        self._cleanup_old_requests(now)
        requests, used_tokens = self._occupancy(now)

        if requests_remaining is not None:
            local_remaining = self.config.requests_per_minute - requests[MINUTE]
            deficit = local_remaining - requests_remaining
            for i in range(max(0, min(deficit, MINUTE))):
                self._requests.append(RequestEntry(timestamp=now - i))
            if deficit > 0:
                logger.debug(
                    f"Rate limiter '{self.name}' added {min(deficit, MINUTE)} "
                    f"synthetic requests from headers"
                )

        if tokens_remaining is not None:
            local_remaining = self.config.tokens_per_minute - used_tokens[MINUTE]
            deficit = local_remaining - tokens_remaining
            if deficit > 0:
                self._requests.append(
                    RequestEntry(timestamp=now, tokens=deficit, counts_request=False)
                )

    @staticmethod
    def _parse_header(headers: dict[str, Any], *names: str) -> int | None:
        for name in names:
            value = headers.get(name)
            if value is None:
                continue
            try:
                return int(value)
            except (TypeError, ValueError):
                logger.debug(f"Ignoring malformed rate limit header {name}={value!r}")
        return None

    async def reset(self) -> None:
        """Clear the request log and fail every queued waiter."""
        async with self._get_lock():
            self._requests = []
            while self._queue:
                waiter = self._queue.popleft()
                if not waiter.future.done():
                    waiter.future.set_exception(
                        RateLimitError(
                            "Rate limiter reset", provider=self.name, retryable=False
                        )
                    )
        logger.info(f"Rate limiter '{self.name}' reset")

    async def close(self) -> None:
        """Reset and stop the background drain task."""
        await self.reset()
        task, self._drain_task = self._drain_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class RateLimiterManager:
    """Owns one limiter per identifier; each has its own lock and queue."""

    def __init__(self, default_config: RateLimitConfig | None = None) -> None:
        self.default_config = default_config
        self._limiters: dict[str, RateLimiter] = {}

    def get_limiter(
        self, provider_id: str, config: RateLimitConfig | None = None
    ) -> RateLimiter:
        """Get or create the limiter for ``provider_id``."""
        if provider_id not in self._limiters:
            self._limiters[provider_id] = RateLimiter(
                config or self.default_config, name=provider_id
            )
        return self._limiters[provider_id]

    async def remove_limiter(self, provider_id: str) -> None:
        limiter = self._limiters.pop(provider_id, None)
        if limiter is not None:
            await limiter.close()

    def get_all_status(self) -> dict[str, RateLimitStatus]:
        return {
            provider_id: limiter.get_status()
            for provider_id, limiter in self._limiters.items()
        }

    async def reset_all(self) -> None:
        for limiter in list(self._limiters.values()):
            await limiter.close()
        self._limiters.clear()
