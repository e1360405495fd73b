#!/usr/bin/env python3
"""Example of the runtime pipeline against the mock adapter.

This example shares one rate limiter and one cost tracker between two
adapters, streams a reply, and prints the resulting usage report. No
network access or credentials are needed.
"""

import asyncio

from llm_runtime.providers import (
    AdapterConfig,
    AdapterRegistry,
    ChatMessage,
    CostTracker,
    CostTrackerConfig,
    MockAdapter,
    RateLimitConfig,
    RateLimiter,
)


async def main():
    limiter = RateLimiter(RateLimitConfig(requests_per_minute=5), name="shared")
    tracker = CostTracker(CostTrackerConfig(provider="mock", input_token_cost=1.0, output_token_cost=2.0))
    tracker.set_alert("daily", 0.001)

    def factory():
        return MockAdapter(
            AdapterConfig(provider="mock"),
            mock_responses={"Say hi": "Hi there!"},
            rate_limiter=limiter,
            cost_tracker=tracker,
        )

    registry = AdapterRegistry(factories={"mock": factory})
    adapter = registry.require("mock")
    messages = [ChatMessage(role="user", content="Say hi")]

    print("=== Chat ===")
    response = await adapter.chat(messages)
    print(f"{response.model}: {response.content} (cost ${response.cost:.6f})")

    print("\n=== Stream ===")
    async for chunk in adapter.stream_chat(messages):
        if chunk.delta:
            print(chunk.content, end="", flush=True)
        else:
            print(f"\n[{chunk.finish_reason}] {chunk.usage.total_tokens} tokens")

    print("\n=== Limiter ===")
    print(limiter.get_status().to_dict())

    print("\n=== Usage ===")
    print(tracker.export_data("csv"))
    for alert in tracker.get_alerts():
        if alert.triggered:
            print(f"Alert: {alert.message}")

    await registry.clear()


if __name__ == "__main__":
    asyncio.run(main())
