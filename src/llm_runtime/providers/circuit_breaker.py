"""Circuit breaker guarding a single upstream."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, TypeVar

from .exceptions import AdapterError, CircuitBreakerError
from .unified_models import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"      # Failures exceeded, blocking calls
    HALF_OPEN = "half-open"  # One trial call allowed


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Consecutive failures before opening
    recovery_timeout: float = 60.0  # Seconds before trying half-open

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must not be negative")


@dataclass
class CircuitSnapshot:
    """Point-in-time view of breaker state."""

    state: CircuitState
    failure_count: int
    last_failure_time: float | None


@dataclass
class CircuitBreakerStats:
    """Statistics for circuit breaker monitoring."""

    total_calls: int = 0
    total_failures: int = 0
    total_successes: int = 0
    rejected_calls: int = 0
    last_failure_time: datetime | None = None
    last_success_time: datetime | None = None
    state_changes: dict[str, datetime] = field(default_factory=dict)


def counts_as_failure(error: BaseException) -> bool:
    """Only upstream failures trip the breaker; client-side errors do not."""
    if isinstance(error, CircuitBreakerError):
        return False
    if isinstance(error, AdapterError):
        return error.retryable
    return True


class CircuitBreaker:
    """Circuit breaker for fault tolerance.

    Prevents cascading failures by temporarily blocking calls to a failing
    upstream. State is only read or written between awaits, so the lock is
    never held across a suspension point.
    """

    def __init__(self,
                 name: str,
                 config: CircuitBreakerConfig | None = None,
                 on_state_change: Callable[[CircuitState, CircuitState], None] | None = None):
        """Initialize circuit breaker.

        Args:
            name: Upstream identifier this breaker guards
            config: Configuration settings
            on_state_change: Callback when state changes
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._trial_in_flight = False
        self._lock = Lock()
        self._stats = CircuitBreakerStats()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            self._check_state()
            return self._state

    def get_state(self) -> CircuitSnapshot:
        with self._lock:
            self._check_state()
            return CircuitSnapshot(
                state=self._state,
                failure_count=self._failure_count,
                last_failure_time=self._last_failure_time,
            )

    def _check_state(self) -> None:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.time() - self._last_failure_time >= self.config.recovery_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        if new_state != self._state:
            old_state = self._state
            self._state = new_state
            self._stats.state_changes[new_state.value] = utcnow()

            logger.info(
                f"Circuit breaker '{self.name}' transitioned from "
                f"{old_state.value} to {new_state.value}"
            )

            if self.on_state_change:
                self.on_state_change(old_state, new_state)

    def _reject(self) -> CircuitBreakerError:
        self._stats.rejected_calls += 1
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            wait_time = max(
                0.0,
                self.config.recovery_timeout - (time.time() - self._last_failure_time),
            )
            message = (
                f"Circuit breaker '{self.name}' is OPEN. "
                f"Wait {wait_time:.1f}s before retry."
            )
        else:
            wait_time = 0.0
            message = f"Circuit breaker '{self.name}' is HALF-OPEN with a trial call in flight"
        return CircuitBreakerError(
            message,
            wait_time=wait_time,
            provider=self.name,
            details={"state": self._state.value, "failures": self._failure_count},
        )

    def before_call(self) -> bool:
        """Admit or reject a call.

        Returns:
            True when the admitted call is the half-open trial

        Raises:
            CircuitBreakerError: If the circuit rejects the call
        """
        with self._lock:
            self._check_state()
            if self._state == CircuitState.OPEN:
                raise self._reject()
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise self._reject()
                self._trial_in_flight = True
                self._stats.total_calls += 1
                return True
            self._stats.total_calls += 1
            return False

    def record_success(self, trial: bool = False) -> None:
        with self._lock:
            if trial:
                self._trial_in_flight = False
            self._stats.total_successes += 1
            self._stats.last_success_time = utcnow()
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)

    def record_failure(self, trial: bool = False) -> None:
        with self._lock:
            if trial:
                self._trial_in_flight = False
            self._failure_count += 1
            self._stats.total_failures += 1
            self._stats.last_failure_time = utcnow()
            self._last_failure_time = time.time()

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif self._failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def release_trial(self) -> None:
        """Give up a half-open trial without a verdict (e.g. cancellation)."""
        with self._lock:
            self._trial_in_flight = False

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute function through circuit breaker.

        Args:
            func: Async function to call
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Result from func

        Raises:
            CircuitBreakerError: If circuit is open
            Exception: If func raises an exception
        """
        trial = self.before_call()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if counts_as_failure(e):
                self.record_failure(trial)
            else:
                # Client-side errors say nothing about upstream health
                self.record_success(trial)
            raise
        except BaseException:
            if trial:
                self.release_trial()
            raise

        self.record_success(trial)
        return result

    def get_stats(self) -> CircuitBreakerStats:
        """Get circuit breaker statistics.

        Returns:
            Copy of current statistics
        """
        with self._lock:
            return CircuitBreakerStats(
                total_calls=self._stats.total_calls,
                total_failures=self._stats.total_failures,
                total_successes=self._stats.total_successes,
                rejected_calls=self._stats.rejected_calls,
                last_failure_time=self._stats.last_failure_time,
                last_success_time=self._stats.last_success_time,
                state_changes=self._stats.state_changes.copy(),
            )

    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._trial_in_flight = False
            self._stats = CircuitBreakerStats()
            logger.info(f"Circuit breaker '{self.name}' reset")

    def is_closed(self) -> bool:
        """Check if circuit is closed (normal operation)."""
        return self.state == CircuitState.CLOSED

    def is_open(self) -> bool:
        """Check if circuit is open (blocking calls)."""
        return self.state == CircuitState.OPEN

    def is_half_open(self) -> bool:
        """Check if circuit is half-open (testing recovery)."""
        return self.state == CircuitState.HALF_OPEN
