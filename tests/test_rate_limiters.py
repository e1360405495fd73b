"""Tests for the multi-window rate limiter."""

import asyncio
import time

import pytest

from llm_runtime.providers.exceptions import AdapterTimeoutError, RateLimitError
from llm_runtime.providers.rate_limiters import (
    RateLimitConfig,
    RateLimiter,
    RateLimiterManager,
    RequestEntry,
)


class FakeClock:
    """Settable replacement for ``time.time``."""

    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(time, "time", fake)
    return fake


def limiter_with(**overrides):
    return RateLimiter(RateLimitConfig(**overrides), name="test")


class TestRateLimitConfig:
    """Test rate limit configuration."""

    def test_defaults(self):
        config = RateLimitConfig()
        assert config.requests_per_minute == 60
        assert config.tokens_per_minute == 150_000
        assert config.queue_max_size == 100
        assert config.queue_timeout == 30.0

    def test_invalid_config(self):
        with pytest.raises(ValueError, match="requests_per_minute must be positive"):
            RateLimitConfig(requests_per_minute=0)


class TestCanProcessRequest:
    """Test admission checks across the windows."""

    def test_request_ceiling(self, clock):
        limiter = limiter_with(requests_per_minute=2)
        limiter.record_request()
        assert limiter.can_process_request()
        limiter.record_request()
        assert not limiter.can_process_request()

    def test_minute_window_slides(self, clock):
        limiter = limiter_with(requests_per_minute=1)
        limiter.record_request()
        clock.advance(59)
        assert not limiter.can_process_request()
        clock.advance(2)
        assert limiter.can_process_request()

    def test_hour_window_applies_after_minute_resets(self, clock):
        limiter = limiter_with(requests_per_minute=5, requests_per_hour=2)
        limiter.record_request()
        limiter.record_request()
        clock.advance(120)
        assert not limiter.can_process_request()

    def test_token_ceiling(self, clock):
        limiter = limiter_with(tokens_per_minute=100)
        limiter.record_request(tokens=80)
        assert limiter.can_process_request(tokens=20)
        assert not limiter.can_process_request(tokens=21)

    def test_zero_token_estimate_skips_token_check(self, clock):
        limiter = limiter_with(tokens_per_minute=10)
        limiter.record_request(tokens=50)
        assert limiter.can_process_request()

    def test_entries_older_than_a_day_are_dropped(self, clock):
        limiter = limiter_with(requests_per_day=1, requests_per_hour=1, requests_per_minute=1)
        limiter.record_request()
        clock.advance(86_401)
        assert limiter.can_process_request()
        assert limiter._requests == []


class TestWaitForAvailability:
    """Test queueing behaviour."""

    @pytest.mark.asyncio
    async def test_immediate_admission(self):
        limiter = limiter_with(requests_per_minute=2)
        await limiter.wait_for_availability()
        await limiter.wait_for_availability()
        assert limiter.get_status().requests_remaining.per_minute == 0
        await limiter.close()

    @pytest.mark.asyncio
    async def test_third_request_times_out(self):
        """With two requests per minute the third waits in the queue and times out."""
        limiter = limiter_with(requests_per_minute=2, queue_timeout=0.3)
        await limiter.wait_for_availability()
        await limiter.wait_for_availability()

        with pytest.raises(AdapterTimeoutError, match="Rate limit queue timeout"):
            await limiter.wait_for_availability()
        assert limiter.queue_size == 0
        await limiter.close()

    @pytest.mark.asyncio
    async def test_queued_request_admitted_when_window_frees(self, clock):
        limiter = limiter_with(requests_per_minute=1, queue_timeout=5.0)
        await limiter.wait_for_availability()

        waiter = asyncio.ensure_future(limiter.wait_for_availability())
        await asyncio.sleep(0.15)
        assert not waiter.done()
        assert limiter.queue_size == 1

        clock.advance(61)
        await asyncio.wait_for(waiter, timeout=1.0)
        assert limiter.queue_size == 0
        await limiter.close()

    @pytest.mark.asyncio
    async def test_fifo_order(self, clock):
        limiter = limiter_with(requests_per_minute=1, queue_timeout=5.0)
        await limiter.wait_for_availability()

        admitted = []

        async def request(label):
            await limiter.wait_for_availability()
            admitted.append(label)

        first = asyncio.ensure_future(request("first"))
        await asyncio.sleep(0)
        second = asyncio.ensure_future(request("second"))
        await asyncio.sleep(0)

        clock.advance(61)
        await asyncio.wait_for(first, timeout=1.0)
        assert admitted == ["first"]

        clock.advance(61)
        await asyncio.wait_for(second, timeout=1.0)
        assert admitted == ["first", "second"]
        await limiter.close()

    @pytest.mark.asyncio
    async def test_new_caller_does_not_jump_queue(self, clock):
        """A caller arriving while others wait queues even if capacity exists."""
        limiter = limiter_with(requests_per_minute=1, queue_timeout=5.0)
        await limiter.wait_for_availability()
        waiting = asyncio.ensure_future(limiter.wait_for_availability())
        await asyncio.sleep(0)

        clock.advance(61)
        late = asyncio.ensure_future(limiter.wait_for_availability())
        await asyncio.sleep(0)
        assert limiter.queue_size == 2

        await asyncio.wait_for(waiting, timeout=1.0)
        assert not late.done()
        late.cancel()
        with pytest.raises(asyncio.CancelledError):
            await late
        await limiter.close()

    @pytest.mark.asyncio
    async def test_queue_full(self, clock):
        limiter = limiter_with(requests_per_minute=1, queue_max_size=1, queue_timeout=5.0)
        await limiter.wait_for_availability()
        waiting = asyncio.ensure_future(limiter.wait_for_availability())
        await asyncio.sleep(0)

        with pytest.raises(RateLimitError, match="Rate limit queue is full") as exc_info:
            await limiter.wait_for_availability()
        assert exc_info.value.retryable is False

        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting
        await limiter.close()

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self, clock):
        limiter = limiter_with(requests_per_minute=1, queue_timeout=5.0)
        await limiter.wait_for_availability()
        waiting = asyncio.ensure_future(limiter.wait_for_availability())
        await asyncio.sleep(0)
        assert limiter.queue_size == 1

        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting
        assert limiter.queue_size == 0
        await limiter.close()

    @pytest.mark.asyncio
    async def test_reset_fails_waiters(self, clock):
        limiter = limiter_with(requests_per_minute=1, queue_timeout=5.0)
        await limiter.wait_for_availability()
        waiting = asyncio.ensure_future(limiter.wait_for_availability())
        await asyncio.sleep(0)

        await limiter.reset()
        with pytest.raises(RateLimitError, match="Rate limiter reset"):
            await waiting
        assert limiter.can_process_request()
        await limiter.close()


class TestStatus:
    def test_remaining_counts(self, clock):
        limiter = limiter_with(requests_per_minute=10, tokens_per_minute=1000)
        limiter.record_request(tokens=300)
        status = limiter.get_status()
        assert status.requests_remaining.per_minute == 9
        assert status.tokens_remaining.per_minute == 700
        assert status.queue_size == 0
        assert status.is_blocked is False

    def test_reset_times_are_window_boundaries(self, clock):
        clock.now = 3600.0 * 100 + 30
        status = RateLimiter().get_status()
        assert status.reset_times.next_minute.timestamp() == 3600.0 * 100 + 60
        assert status.reset_times.next_hour.timestamp() == 3600.0 * 101

    def test_blocked(self, clock):
        limiter = limiter_with(requests_per_minute=1)
        limiter.record_request()
        assert limiter.get_status().is_blocked

    def test_to_dict(self, clock):
        data = RateLimiter().get_status().to_dict()
        assert set(data["requests_remaining"]) == {"per_minute", "per_hour", "per_day"}
        assert data["queue_size"] == 0


class TestEstimateWaitTime:
    def test_zero_when_admissible(self, clock):
        assert RateLimiter().estimate_wait_time() == 0.0

    def test_until_minute_boundary(self, clock):
        clock.now = 6000.0 + 20
        limiter = limiter_with(requests_per_minute=1)
        limiter.record_request()
        assert limiter.estimate_wait_time() == pytest.approx(40.0)

    def test_capped(self, clock):
        clock.now = 3600.0 * 10 + 1
        limiter = limiter_with(requests_per_minute=100, requests_per_hour=1)
        limiter.record_request()
        assert limiter.estimate_wait_time() == 60.0


class TestUpdateFromHeaders:
    """Test reconciliation with provider-reported quota."""

    def test_request_deficit_adds_entries(self, clock):
        limiter = limiter_with(requests_per_minute=10)
        limiter.update_from_headers({"x-ratelimit-remaining-requests": "3"})
        assert limiter.get_status().requests_remaining.per_minute == 3

    def test_anthropic_headers(self, clock):
        limiter = limiter_with(requests_per_minute=50, tokens_per_minute=1000)
        limiter.update_from_headers({
            "anthropic-ratelimit-requests-remaining": "45",
            "anthropic-ratelimit-tokens-remaining": "400",
        })
        status = limiter.get_status()
        assert status.requests_remaining.per_minute == 45
        assert status.tokens_remaining.per_minute == 400

    def test_token_deficit_does_not_count_as_request(self, clock):
        limiter = limiter_with(requests_per_minute=10, tokens_per_minute=1000)
        limiter.update_from_headers({"X-RateLimit-Remaining-Tokens": "100"})
        status = limiter.get_status()
        assert status.requests_remaining.per_minute == 10
        assert status.tokens_remaining.per_minute == 100

    def test_more_remaining_than_tracked_is_ignored(self, clock):
        limiter = limiter_with(requests_per_minute=10)
        limiter.record_request()
        limiter.update_from_headers({"x-ratelimit-remaining-requests": "10"})
        assert limiter.get_status().requests_remaining.per_minute == 9

    def test_malformed_headers_ignored(self, clock):
        limiter = limiter_with(requests_per_minute=10)
        limiter.update_from_headers({"x-ratelimit-remaining-requests": "lots"})
        assert limiter._requests == []

    def test_synthetic_entries_age_out(self, clock):
        limiter = limiter_with(requests_per_minute=10)
        limiter.update_from_headers({"x-ratelimit-remaining-requests": "0"})
        assert not limiter.can_process_request()
        clock.advance(61)
        assert limiter.can_process_request()


class TestRateLimiterManager:
    @pytest.mark.asyncio
    async def test_one_limiter_per_identifier(self):
        manager = RateLimiterManager(RateLimitConfig(requests_per_minute=5))
        first = manager.get_limiter("openai")
        assert manager.get_limiter("openai") is first
        assert manager.get_limiter("anthropic") is not first
        assert first.config.requests_per_minute == 5
        await manager.reset_all()
        assert manager.get_all_status() == {}

    def test_independent_accounting(self):
        manager = RateLimiterManager()
        manager.get_limiter("a")._requests.append(RequestEntry(timestamp=time.time()))
        statuses = manager.get_all_status()
        assert statuses["a"].requests_remaining.per_minute == 59
        assert "b" not in statuses
